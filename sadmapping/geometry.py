"""Rigid-body types: SO(3) rotations, SE(3) poses and navigation states."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

import numpy as np

_SMALL = 1e-10


def _vec3(v) -> np.ndarray:
    return np.asarray(v, dtype=float).reshape(3).copy()


def _matrix_to_quaternion(m: np.ndarray) -> np.ndarray:
    """Quaternion (w, x, y, z) of a 3x3 matrix, normalised."""
    m = np.asarray(m, dtype=float)
    trace = m[0, 0] + m[1, 1] + m[2, 2]
    if trace > 0.0:
        t = math.sqrt(trace + 1.0)
        w = 0.5 * t
        t = 0.5 / t
        q = np.array([w, (m[2, 1] - m[1, 2]) * t, (m[0, 2] - m[2, 0]) * t, (m[1, 0] - m[0, 1]) * t])
    else:
        i = 0
        if m[1, 1] > m[0, 0]:
            i = 1
        if m[2, 2] > m[i, i]:
            i = 2
        j = (i + 1) % 3
        k = (j + 1) % 3
        t = math.sqrt(m[i, i] - m[j, j] - m[k, k] + 1.0)
        imag = np.zeros(3)
        imag[i] = 0.5 * t
        t = 0.5 / t
        w = (m[k, j] - m[j, k]) * t
        imag[j] = (m[j, i] + m[i, j]) * t
        imag[k] = (m[k, i] + m[i, k]) * t
        q = np.array([w, imag[0], imag[1], imag[2]])
    norm = np.linalg.norm(q)
    if norm == 0.0:
        raise ValueError("matrix does not describe a rotation")
    return q / norm


class SO3:
    """A 3D rotation stored as an orthonormal matrix."""

    __slots__ = ("_m",)

    def __init__(self, matrix=None):
        self._m = np.eye(3) if matrix is None else np.array(matrix, dtype=float).reshape(3, 3)

    @staticmethod
    def hat(v) -> np.ndarray:
        """Skew-symmetric matrix of a 3-vector."""
        x, y, z = _vec3(v)
        return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]])

    @classmethod
    def from_quaternion(cls, w, x, y, z) -> "SO3":
        q = np.array([w, x, y, z], dtype=float)
        norm = np.linalg.norm(q)
        if norm == 0.0:
            raise ValueError("zero quaternion cannot describe a rotation")
        w, x, y, z = q / norm
        return cls(
            [
                [1 - 2 * (y * y + z * z), 2 * (x * y - w * z), 2 * (x * z + w * y)],
                [2 * (x * y + w * z), 1 - 2 * (x * x + z * z), 2 * (y * z - w * x)],
                [2 * (x * z - w * y), 2 * (y * z + w * x), 1 - 2 * (x * x + y * y)],
            ]
        )

    @classmethod
    def exp(cls, omega) -> "SO3":
        omega = _vec3(omega)
        theta = float(np.linalg.norm(omega))
        if theta < _SMALL:
            theta2 = theta * theta
            theta4 = theta2 * theta2
            imag_factor = 0.5 - theta2 / 48.0 + theta4 / 3840.0
            real = 1.0 - theta2 / 8.0 + theta4 / 384.0
        else:
            imag_factor = math.sin(0.5 * theta) / theta
            real = math.cos(0.5 * theta)
        x, y, z = imag_factor * omega
        return cls.from_quaternion(real, x, y, z)

    @staticmethod
    def jr_inv(omega) -> np.ndarray:
        """Inverse of the right Jacobian of SO(3)."""
        omega = _vec3(omega)
        theta = float(np.linalg.norm(omega))
        k = SO3.hat(omega)
        if theta < 1e-5:
            return np.eye(3) + 0.5 * k
        coeff = 1.0 / theta**2 - (1.0 + math.cos(theta)) / (2.0 * theta * math.sin(theta))
        return np.eye(3) + 0.5 * k + coeff * (k @ k)

    def quaternion(self) -> np.ndarray:
        """Unit quaternion as (w, x, y, z)."""
        return _matrix_to_quaternion(self._m)

    def log(self) -> np.ndarray:
        w, x, y, z = self.quaternion()
        vec = np.array([x, y, z])
        squared_n = float(vec @ vec)
        n = math.sqrt(squared_n)
        if squared_n < _SMALL * _SMALL:
            two_atan_nbyw_by_n = 2.0 / w - 2.0 / 3.0 * squared_n / (w**3)
        elif abs(w) < _SMALL:
            two_atan_nbyw_by_n = math.pi / n if w > 0 else -math.pi / n
        else:
            two_atan_nbyw_by_n = 2.0 * math.atan(n / w) / n
        return two_atan_nbyw_by_n * vec

    def inverse(self) -> "SO3":
        return SO3(self._m.T)

    def matrix(self) -> np.ndarray:
        return self._m.copy()

    def __mul__(self, other):
        if isinstance(other, SO3):
            return SO3(self._m @ other._m)
        if isinstance(other, (np.ndarray, list, tuple)):
            pts = np.asarray(other, dtype=float)
            return self._m @ pts if pts.ndim == 1 else pts @ self._m.T
        return NotImplemented

    def __repr__(self) -> str:
        return f"SO3(log={self.log().tolist()})"


def _left_jacobian(omega: np.ndarray) -> np.ndarray:
    theta = float(np.linalg.norm(omega))
    k = SO3.hat(omega)
    if theta < _SMALL:
        return np.eye(3) + 0.5 * k + (k @ k) / 6.0
    return (
        np.eye(3)
        + (1.0 - math.cos(theta)) / theta**2 * k
        + (theta - math.sin(theta)) / theta**3 * (k @ k)
    )


def _left_jacobian_inv(omega: np.ndarray) -> np.ndarray:
    theta = float(np.linalg.norm(omega))
    k = SO3.hat(omega)
    if theta < _SMALL:
        return np.eye(3) - 0.5 * k + (k @ k) / 12.0
    coeff = (1.0 - theta * math.sin(theta) / (2.0 * (1.0 - math.cos(theta)))) / theta**2
    return np.eye(3) - 0.5 * k + coeff * (k @ k)


class SE3:
    """A rigid transform: rotation followed by translation."""

    __slots__ = ("so3", "translation")

    def __init__(self, rotation=None, translation=None):
        if rotation is None:
            self.so3 = SO3()
        elif isinstance(rotation, SO3):
            self.so3 = rotation
        else:
            self.so3 = SO3(rotation)
        self.translation = np.zeros(3) if translation is None else _vec3(translation)

    @classmethod
    def from_matrix(cls, m) -> "SE3":
        """Build from a 4x4 matrix; the rotation block is re-normalised."""
        m = np.asarray(m, dtype=float).reshape(4, 4)
        q = _matrix_to_quaternion(m[:3, :3])
        return cls(SO3.from_quaternion(*q), m[:3, 3])

    @classmethod
    def from_quaternion(cls, w, x, y, z, translation) -> "SE3":
        return cls(SO3.from_quaternion(w, x, y, z), translation)

    @classmethod
    def exp(cls, xi) -> "SE3":
        """Exponential of a twist ordered (translation part, rotation part)."""
        xi = np.asarray(xi, dtype=float).reshape(6)
        upsilon, omega = xi[:3], xi[3:]
        return cls(SO3.exp(omega), _left_jacobian(omega) @ upsilon)

    def log(self) -> np.ndarray:
        omega = self.so3.log()
        upsilon = _left_jacobian_inv(omega) @ self.translation
        return np.concatenate([upsilon, omega])

    def inverse(self) -> "SE3":
        r_inv = self.so3.inverse()
        return SE3(r_inv, -(r_inv.matrix() @ self.translation))

    def matrix(self) -> np.ndarray:
        m = np.eye(4)
        m[:3, :3] = self.so3.matrix()
        m[:3, 3] = self.translation
        return m

    def act(self, points) -> np.ndarray:
        """Transform one point of shape (3,) or many of shape (N, 3)."""
        pts = np.asarray(points, dtype=float)
        r = self.so3.matrix()
        if pts.ndim == 1:
            return r @ pts + self.translation
        return pts @ r.T + self.translation

    def __mul__(self, other):
        if isinstance(other, SE3):
            return SE3(self.so3 * other.so3, self.so3.matrix() @ other.translation + self.translation)
        if isinstance(other, (np.ndarray, list, tuple)):
            return self.act(other)
        return NotImplemented

    def __repr__(self) -> str:
        return f"SE3(translation={self.translation.tolist()}, rotation_log={self.so3.log().tolist()})"


@dataclass(eq=False)
class NavState:
    """Navigation state: time, rotation, position, velocity and IMU biases."""

    timestamp: float = 0.0
    R: SO3 = field(default_factory=SO3)
    p: np.ndarray = field(default_factory=lambda: np.zeros(3))
    v: np.ndarray = field(default_factory=lambda: np.zeros(3))
    bg: np.ndarray = field(default_factory=lambda: np.zeros(3))
    ba: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        self.p = _vec3(self.p)
        self.v = _vec3(self.v)
        self.bg = _vec3(self.bg)
        self.ba = _vec3(self.ba)

    @classmethod
    def from_pose(cls, timestamp, pose: SE3, vel=None) -> "NavState":
        return cls(
            timestamp=timestamp,
            R=pose.so3,
            p=pose.translation,
            v=np.zeros(3) if vel is None else vel,
        )

    def get_se3(self) -> SE3:
        return SE3(self.R, self.p)

    def __str__(self) -> str:
        return (
            f"p: {self.p.tolist()}, v: {self.v.tolist()}, q: {self.R.quaternion().tolist()}, "
            f"bg: {self.bg.tolist()}, ba: {self.ba.tolist()}"
        )


def _wrap_int32(x: int) -> int:
    return (x + 2**31) % 2**32 - 2**31


def hash_vec(v) -> int:
    """Spatial hash of a 2D or 3D integer grid index."""
    primes = (73856093, 471943, 83492791)
    coords = [int(c) for c in v]
    if len(coords) not in (2, 3):
        raise ValueError("hash_vec expects a 2D or 3D index")
    h = 0
    for c, prime in zip(coords, primes):
        h = _wrap_int32(h ^ _wrap_int32(c * prime))
    r = abs(h) % 10000000
    if h < 0:
        r = -r
    return r % 2**64


def mat4_to_se3(m) -> SE3:
    """Convert a 4x4 matrix to an SE3, normalising its rotation part."""
    return SE3.from_matrix(m)