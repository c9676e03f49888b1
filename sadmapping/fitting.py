"""Statistics, geometric fitting and small numeric helpers."""

from __future__ import annotations

import logging
import math
from typing import Callable, Iterable

import numpy as np

logger = logging.getLogger(__name__)


def _extract(data: Iterable, getter: Callable | None) -> list:
    if getter is None:
        return list(data)
    return [getter(item) for item in data]


def _samples(data: Iterable, getter: Callable | None) -> np.ndarray:
    values = [np.asarray(value, dtype=float) for value in _extract(data, getter)]
    if len(values) < 2:
        raise ValueError("at least two samples are needed")
    return np.array(values)


def compute_mean_and_cov_diag(data, getter=None):
    """Mean and per-component sample variance of the values getter extracts."""
    values = _samples(data, getter)
    mean = values.mean(axis=0)
    cov_diag = ((values - mean) ** 2).sum(axis=0) / (len(values) - 1)
    return mean, cov_diag


def compute_mean_and_cov(data, getter=None):
    """Mean vector and sample covariance matrix of the values getter extracts."""
    values = _samples(data, getter)
    if values.ndim == 1:
        values = values.reshape(-1, 1)
    mean = values.mean(axis=0)
    diff = values - mean
    cov = diff.T @ diff / (len(values) - 1)
    return mean, cov


def update_mean_and_cov(hist_m, curr_n, hist_mean, hist_var, curr_mean, curr_var):
    """Merge two Gaussian estimates given their sample counts."""
    if hist_m <= 0 or curr_n <= 0:
        raise ValueError("sample counts must be positive")
    hist_mean = np.asarray(hist_mean, dtype=float)
    curr_mean = np.asarray(curr_mean, dtype=float)
    hist_var = np.asarray(hist_var, dtype=float)
    curr_var = np.asarray(curr_var, dtype=float)
    total = hist_m + curr_n
    new_mean = (hist_m * hist_mean + curr_n * curr_mean) / total
    dh = hist_mean - new_mean
    dc = curr_mean - new_mean
    new_var = (hist_m * (hist_var + np.outer(dh, dh)) + curr_n * (curr_var + np.outer(dc, dc))) / total
    return new_mean, new_var


def compute_median(data, getter=None):
    """Element at position len // 2 of the sorted extracted values."""
    values = sorted(_extract(data, getter))
    if len(values) < 2:
        raise ValueError("at least two samples are needed")
    return values[len(values) // 2]


def fit_plane(data, eps=1e-2):
    """Plane (a, b, c, d) through the points, or None if they do not fit within eps."""
    pts = np.asarray(data, dtype=float).reshape(-1, 3)
    if len(pts) < 3:
        return None
    a = np.hstack([pts, np.ones((len(pts), 1))])
    _, _, vh = np.linalg.svd(a, full_matrices=True)
    coeffs = vh[3]
    errors = pts @ coeffs[:3] + coeffs[3]
    if np.any(errors * errors > eps):
        return None
    return coeffs


def fit_line(data, eps=0.2):
    """Line (origin, direction) through the points, or None if they do not fit within eps."""
    pts = np.asarray(data, dtype=float).reshape(-1, 3)
    if len(pts) < 2:
        return None
    origin = pts.mean(axis=0)
    _, _, vh = np.linalg.svd(pts - origin, full_matrices=True)
    direction = vh[0]
    deviation = np.cross(direction, pts - origin)
    if np.any((deviation**2).sum(axis=1) > eps):
        return None
    return origin, direction


def fit_line_2d(data):
    """Coefficients (a, b, c) of the line a*x + b*y + c = 0, or None with under two points."""
    pts = np.asarray(data, dtype=float).reshape(-1, 2)
    if len(pts) < 2:
        return None
    a = np.hstack([pts, np.ones((len(pts), 1))])
    _, _, vh = np.linalg.svd(a, full_matrices=True)
    return vh[2]


def history_mean_and_var(hist_n, hist_mean, hist_var2, curr_n, curr_mean, curr_var2):
    """Merge two scalar mean/variance pairs; returns (mean, variance)."""
    total = hist_n + curr_n
    new_mean = (hist_n * hist_mean + curr_n * curr_mean) / total
    new_var2 = (
        hist_n * (hist_var2 + (new_mean - hist_mean) ** 2) + curr_n * (curr_var2 + (new_mean - curr_mean) ** 2)
    ) / total
    return new_mean, new_var2


def esti_plane_dynamic(points, threshold):
    """Plane (a, b, c, d) with unit normal from A n = -1, or None if any point is off by more than threshold."""
    pts = np.asarray(points, dtype=float).reshape(-1, 3)
    if len(pts) < 3:
        logger.error("the number of points should not be less than 3, given %d", len(pts))
        return None
    normvec = np.linalg.lstsq(pts, -np.ones(len(pts)), rcond=None)[0]
    norm = float(np.linalg.norm(normvec))
    if norm == 0.0:
        return None
    len_inv = 1.0 / norm
    normvec = normvec * len_inv
    if not np.all(np.abs(pts @ normvec + len_inv) <= threshold):
        return None
    return np.append(normvec, len_inv)


def gaussian_pdf(mean, cov, x):
    """Normal density with the 2D normalisation constant 2*pi*sqrt(|det|)."""
    mean = np.asarray(mean, dtype=float)
    cov = np.asarray(cov, dtype=float)
    diff = np.asarray(x, dtype=float) - mean
    det = abs(float(np.linalg.det(cov)))
    exp_part = float(diff @ np.linalg.inv(cov) @ diff)
    return math.exp(-0.5 * exp_part) / (2 * math.pi * math.sqrt(det))


def check_nan(m) -> bool:
    """True if the array holds any NaN."""
    arr = np.asarray(m, dtype=float)
    if np.isnan(arr).any():
        logger.error("matrix has nan:\n%s", arr)
        return True
    return False


def keep_angle_in_pi(angle: float) -> float:
    """Shift an angle by multiples of 2*pi into [-pi, pi]."""
    while angle < -math.pi:
        angle += 2 * math.pi
    while angle > math.pi:
        angle -= 2 * math.pi
    return angle


def limit_in_range(num, min_limit, max_limit):
    """Clamp num to [min_limit, max_limit]."""
    if num < min_limit:
        num = min_limit
    if num >= max_limit:
        num = max_limit
    return num


def rad2deg(radians):
    return radians * 180.0 / math.pi


def deg2rad(degrees):
    return degrees * math.pi / 180.0


def get_pixel_value(img, x, y) -> float:
    """Bilinear sample of a 2D image at (x, y), clamped to the image."""
    img = np.asarray(img)
    rows, cols = img.shape[:2]
    x = min(max(x, 0.0), cols - 1)
    y = min(max(y, 0.0), rows - 1)
    x0, y0 = int(math.floor(x)), int(math.floor(y))
    xx, yy = x - x0, y - y0
    x1, y1 = min(x0 + 1, cols - 1), min(y0 + 1, rows - 1)
    return float(
        (1 - xx) * (1 - yy) * img[y0, x0]
        + xx * (1 - yy) * img[y0, x1]
        + (1 - xx) * yy * img[y1, x0]
        + xx * yy * img[y1, x1]
    )