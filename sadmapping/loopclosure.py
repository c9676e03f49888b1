"""Loop detection between keyframes and NDT verification of the candidates."""

from __future__ import annotations

import argparse
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import reduce
from itertools import chain
from pathlib import Path

import numpy as np
import yaml
from scipy.spatial import cKDTree

from .geometry import SE3, SO3, mat4_to_se3
from .keyframe import Keyframe, LoopCandidate, load_keyframes, save_loops
from .pointcloud import PointCloud, load_pcd, remove_ground, voxel_grid

logger = logging.getLogger(__name__)

KEYFRAMES_FILE = "keyframes.txt"
LOOPS_FILE = "loops.txt"

SUBMAP_IDX_RANGE = 40
SUBMAP_IDX_STEP = 4
GROUND_Z_MIN = 0.1
NDT_RESOLUTIONS = (10.0, 5.0, 4.0, 3.0)
NDT_TRANSFORMATION_EPSILON = 0.05
NDT_STEP_SIZE = 0.7
NDT_MAX_ITERATIONS = 40
NDT_OUTLIER_RATIO = 0.55
NDT_MIN_POINTS_PER_VOXEL = 6
NDT_MIN_EIGEN_RATIO = 0.01
_BACKTRACK_STEPS = 6


def _hat_many(q: np.ndarray) -> np.ndarray:
    out = np.zeros((len(q), 3, 3))
    out[:, 0, 1] = -q[:, 2]
    out[:, 0, 2] = q[:, 1]
    out[:, 1, 0] = q[:, 2]
    out[:, 1, 2] = -q[:, 0]
    out[:, 2, 0] = -q[:, 1]
    out[:, 2, 1] = q[:, 0]
    return out


@dataclass
class _NdtTarget:
    means: np.ndarray
    inv_covs: np.ndarray
    tree: cKDTree | None


class _Ndt:
    """Normal distributions transform matching a source cloud against a target cloud."""

    def __init__(self, resolution: float, target: PointCloud):
        self.resolution = resolution
        gauss_c1 = 10.0 * (1.0 - NDT_OUTLIER_RATIO)
        gauss_c2 = NDT_OUTLIER_RATIO / resolution**3
        gauss_d3 = -math.log(gauss_c2)
        self.d1 = -math.log(gauss_c1 + gauss_c2) - gauss_d3
        self.d2 = -2.0 * math.log((-math.log(gauss_c1 * math.exp(-0.5) + gauss_c2) - gauss_d3) / self.d1)
        self.target = self._build_target(target)

    def _build_target(self, cloud: PointCloud) -> _NdtTarget:
        pts = cloud.points[np.isfinite(cloud.points).all(axis=1)]
        means, inv_covs = [], []
        if len(pts):
            keys = np.floor(pts / self.resolution).astype(np.int64)
            _, inverse, counts = np.unique(keys, axis=0, return_inverse=True, return_counts=True)
            inverse = inverse.reshape(-1)
            order = np.argsort(inverse, kind="stable")
            for group in np.split(pts[order], np.cumsum(counts)[:-1]):
                if len(group) < NDT_MIN_POINTS_PER_VOXEL:
                    continue
                w, v = np.linalg.eigh(np.cov(group.T))
                if w.max() <= 0:
                    continue
                w = np.maximum(w, NDT_MIN_EIGEN_RATIO * w.max())
                means.append(group.mean(axis=0))
                inv_covs.append((v / w) @ v.T)
        if not means:
            return _NdtTarget(np.zeros((0, 3)), np.zeros((0, 3, 3)), None)
        means_arr = np.array(means)
        return _NdtTarget(means_arr, np.array(inv_covs), cKDTree(means_arr))

    @property
    def has_target(self) -> bool:
        return self.target.tree is not None

    def _pairs(self, q: np.ndarray):
        neighbours = self.target.tree.query_ball_point(q, self.resolution)
        sizes = [len(n) for n in neighbours]
        point_idx = np.repeat(np.arange(len(q)), sizes)
        voxel_idx = np.fromiter(chain.from_iterable(neighbours), dtype=int, count=sum(sizes))
        x = q[point_idx] - self.target.means[voxel_idx]
        c = self.target.inv_covs[voxel_idx]
        cx = np.einsum("nij,nj->ni", c, x)
        e = np.exp(-0.5 * self.d2 * np.einsum("ni,ni->n", x, cx))
        return point_idx, c, cx, e

    def score(self, q: np.ndarray) -> float:
        if not self.has_target or len(q) == 0:
            return 0.0
        _, _, _, e = self._pairs(q)
        return float(np.sum(-self.d1 * e))

    def _derivatives(self, q: np.ndarray):
        point_idx, c, cx, e = self._pairs(q)
        if len(point_idx) == 0:
            return 0.0, None, None
        jac = np.zeros((len(point_idx), 3, 6))
        jac[:, :, :3] = -_hat_many(q[point_idx])
        jac[:, :, 3:] = np.eye(3)
        w = self.d1 * self.d2 * e
        gradient = np.einsum("n,nai,na->i", w, jac, cx)
        hessian = np.einsum("n,nai,nab,nbj->ij", -w, jac, c, jac)
        return float(np.sum(-self.d1 * e)), gradient, hessian

    def align(self, source: PointCloud, guess: SE3) -> SE3:
        """Transform that maps the source onto the target, starting from guess."""
        if not self.has_target or len(source) == 0:
            return guess
        src = source.points
        pose = guess
        for _ in range(NDT_MAX_ITERATIONS):
            score, gradient, hessian = self._derivatives(pose.act(src))
            if gradient is None:
                break
            try:
                dx = np.linalg.solve(hessian + 1e-9 * np.eye(6), gradient)
            except np.linalg.LinAlgError:
                break
            norm = float(np.linalg.norm(dx))
            if not math.isfinite(norm) or norm == 0.0:
                break
            if norm > NDT_STEP_SIZE:
                dx *= NDT_STEP_SIZE / norm
            scale = 1.0
            accepted = None
            for _ in range(_BACKTRACK_STEPS):
                step = dx * scale
                candidate = SE3(SO3.exp(step[:3]), step[3:]) * pose
                if self.score(candidate.act(src)) >= score:
                    accepted = candidate
                    break
                scale *= 0.5
            if accepted is None:
                break
            pose = accepted
            if np.linalg.norm(dx * scale) < NDT_TRANSFORMATION_EPSILON:
                break
        return pose

    def transformation_probability(self, source: PointCloud, pose: SE3) -> float:
        if len(source) == 0:
            return 0.0
        return self.score(pose.act(source.points)) / len(source)


class LoopClosure:
    """Finds loop candidates from first-stage poses and verifies them by NDT matching."""

    def __init__(self, config_yaml, data_dir="./data/ch9/"):
        self.config_yaml = Path(config_yaml)
        self.data_dir = Path(data_dir)
        self.keyframes: dict[int, Keyframe] = {}
        self.loop_candidates: list[LoopCandidate] = []
        self.min_id_interval = 50
        self.min_distance = 30.0
        self.skip_id = 5
        self.ndt_score_th = 2.5

    def init(self) -> "LoopClosure":
        """Load keyframes and the loop_closing parameters."""
        self.keyframes = load_keyframes(self.data_dir / KEYFRAMES_FILE)
        logger.info("keyframes: %d", len(self.keyframes))
        with open(self.config_yaml, encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
        params = cfg["loop_closing"]
        self.min_id_interval = int(params["min_id_interval"])
        self.min_distance = float(params["min_distance"])
        self.skip_id = int(params["skip_id"])
        self.ndt_score_th = float(params["ndt_score_th"])
        return self

    def run(self) -> None:
        self.detect_loop_candidates()
        self.compute_loop_candidates()
        self.save_results()

    def detect_loop_candidates(self) -> list[LoopCandidate]:
        """Pairs of keyframes far apart in id but close in the x-y plane."""
        logger.info("detecting loop candidates from pose in stage 1")
        frames = sorted(self.keyframes.values(), key=lambda kf: kf.id)
        check_first = None
        check_second = None
        for i, kf_first in enumerate(frames):
            if check_first is not None and abs(kf_first.id - check_first.id) <= self.skip_id:
                continue
            for kf_second in frames[i:]:
                if check_second is not None and abs(kf_second.id - check_second.id) <= self.skip_id:
                    continue
                if abs(kf_first.id - kf_second.id) < self.min_id_interval:
                    continue
                dt = kf_first.opti_pose_1.translation - kf_second.opti_pose_1.translation
                if float(np.linalg.norm(dt[:2])) < self.min_distance:
                    self.loop_candidates.append(
                        LoopCandidate(
                            kf_first.id,
                            kf_second.id,
                            kf_first.opti_pose_1.inverse() * kf_second.opti_pose_1,
                        )
                    )
                    check_first = kf_first
                    check_second = kf_second
        logger.info("detected candidates: %d", len(self.loop_candidates))
        return self.loop_candidates

    def compute_loop_candidates(self) -> list[LoopCandidate]:
        """Match every candidate and keep those scoring above the threshold."""
        with ThreadPoolExecutor() as pool:
            list(pool.map(self.compute_for_candidate, self.loop_candidates))
        succeeded = [lc for lc in self.loop_candidates if lc.ndt_score > self.ndt_score_th]
        logger.info("success: %d/%d", len(succeeded), len(self.loop_candidates))
        self.loop_candidates = succeeded
        return succeeded

    def _load_scan(self, kf_id: int) -> PointCloud:
        path = self.data_dir / f"{kf_id}.pcd"
        try:
            return load_pcd(path)
        except FileNotFoundError:
            logger.error("cannot load scan %s", path)
            return PointCloud()

    def _build_submap(self, given_id: int, build_in_world: bool = True) -> PointCloud:
        pieces = []
        for offset in range(-SUBMAP_IDX_RANGE, SUBMAP_IDX_RANGE, SUBMAP_IDX_STEP):
            kf_id = given_id + offset
            if kf_id < 0 or kf_id not in self.keyframes:
                continue
            cloud = remove_ground(self._load_scan(kf_id), GROUND_Z_MIN)
            if len(cloud) == 0:
                continue
            twb = self.keyframes[kf_id].opti_pose_1
            if not build_in_world:
                twb = self.keyframes[given_id].opti_pose_1.inverse() * twb
            pieces.append(cloud.transformed(twb))
        return reduce(lambda a, b: a + b, pieces, PointCloud())

    def compute_for_candidate(self, candidate: LoopCandidate) -> LoopCandidate:
        """Align the scan of idx2 to the submap around idx1 and store Tij and the score."""
        logger.info("aligning %d with %d", candidate.idx1, candidate.idx2)
        kf1 = self.keyframes[candidate.idx1]
        kf2 = self.keyframes[candidate.idx2]

        submap_kf1 = self._build_submap(kf1.id, True)
        submap_kf2 = self._load_scan(kf2.id)
        if len(submap_kf1) == 0 or len(submap_kf2) == 0:
            candidate.ndt_score = 0.0
            return candidate

        tw2 = kf2.opti_pose_1
        score = 0.0
        for resolution in NDT_RESOLUTIONS:
            ndt = _Ndt(resolution, voxel_grid(submap_kf1, resolution * 0.1))
            source = voxel_grid(submap_kf2, resolution * 0.1)
            tw2 = ndt.align(source, tw2)
            score = ndt.transformation_probability(source, tw2)

        candidate.Tij = kf1.opti_pose_1.inverse() * mat4_to_se3(tw2.matrix())
        candidate.ndt_score = score
        return candidate

    def save_results(self) -> None:
        save_loops(self.data_dir / LOOPS_FILE, self.loop_candidates)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Detect and verify loop closures.")
    parser.add_argument("--config_yaml", default="./config/mapping.yaml", help="configuration file")
    parser.add_argument("--data_dir", default="./data/ch9/", help="directory of keyframes and scans")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    lc = LoopClosure(args.config_yaml, args.data_dir)
    try:
        lc.init()
    except (FileNotFoundError, KeyError, ValueError) as exc:
        logger.error("cannot init loop closure: %s", exc)
        return -1
    lc.run()
    return 0