"""Pose-graph back end: RTK, lidar odometry and loop constraints over keyframe poses."""

from __future__ import annotations

import argparse
import logging
import math
from pathlib import Path

import numpy as np
import yaml
from scipy import sparse
from scipy.sparse.linalg import spsolve

from .edges import (
    CauchyKernel,
    EdgeGNSS,
    EdgeGNSSTransOnly,
    EdgeRelativeMotion,
    HuberKernel,
    VertexPose,
)
from .geometry import SE3, SO3
from .keyframe import Keyframe, load_keyframes, load_loops, save_keyframes

logger = logging.getLogger(__name__)

DEG2RAD = math.pi / 180.0
KEYFRAMES_FILE = "keyframes.txt"
LOOPS_FILE = "loops.txt"
BEFORE_G2O = "before.g2o"
AFTER_G2O = "after.g2o"

LIDAR_POS_NOISE = 0.01
LIDAR_ANG_NOISE = 0.1 * DEG2RAD
LOOP_POS_NOISE = 0.1
LOOP_ANG_NOISE = 0.5 * DEG2RAD
LOOP_ROBUST_TH = 5.2
STAGE_2_RTK_SCALE = 0.01

_DOF = 6
_MAX_INNER_TRIES = 10
_LAMBDA_TAU = 1e-5


def chi2_summary(edges, threshold) -> str:
    """Statistics of the chi2 values of the active (level 0) edges, or '' when there are none."""
    chi2 = sorted(edge.chi2() for edge in edges if edge.level == 0)
    if not chi2:
        return ""
    n = len(chi2)
    mean = sum(chi2) / n
    return (
        f"count: {n}, mean: {mean:f}, median: {chi2[n // 2]:f}, "
        f"0.1 quantile: {chi2[int(n * 0.1)]:f}, 0.9 quantile: {chi2[int(n * 0.9)]:f}, "
        f"0.95 quantile: {chi2[int(n * 0.95)]:f}, max: {chi2[-1]:f}, threshold: {float(threshold):f}\n"
    )


def _info_blocks(first: np.ndarray, second: np.ndarray) -> np.ndarray:
    info = np.eye(6)
    info[0:3, 0:3] = first
    info[3:6, 3:6] = second
    return info


def _robust_chi2(edge) -> float:
    e2 = edge.chi2()
    if edge.robust_kernel is None:
        return e2
    return edge.robust_kernel.rho(e2)[0]


class Optimization:
    """Optimises keyframe poses in stage 1 (RTK + lidar) or stage 2 (adds loops)."""

    def __init__(self, yaml_path, data_dir="./data/ch9/"):
        self.yaml_path = Path(yaml_path)
        self.data_dir = Path(data_dir)
        self.keyframes: dict[int, Keyframe] = {}
        self.stage = 1
        self.rtk_has_rot = False
        self.tbg = SE3()
        self.loop_candidates = []
        self.vertices: dict[int, VertexPose] = {}
        self.gnss_edges: list[EdgeGNSS] = []
        self.gnss_trans_edges: list[EdgeGNSSTransOnly] = []
        self.lidar_edges: list[EdgeRelativeMotion] = []
        self.loop_edges: list[EdgeRelativeMotion] = []
        self.rtk_outlier_th = 1.0
        self.lidar_continuous_num = 3
        self.rtk_pos_noise = 0.5
        self.rtk_ang_noise = 2.0 * DEG2RAD
        self.rtk_height_noise_ratio = 20.0
        self.max_iterations = 100

    def init(self, stage=1) -> "Optimization":
        """Load keyframes, parameters and (in stage 2) loop candidates."""
        if stage not in (1, 2):
            raise ValueError(f"stage must be 1 or 2, got {stage}")
        self.stage = stage
        self.keyframes = load_keyframes(self.data_dir / KEYFRAMES_FILE)
        logger.info("keyframes: %d", len(self.keyframes))

        with open(self.yaml_path, encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
        self.rtk_outlier_th = float(cfg["rtk_outlier_th"])
        self.lidar_continuous_num = int(cfg["lidar_continuous_num"])
        self.rtk_has_rot = bool(cfg["rtk_has_rot"])
        self.rtk_pos_noise = float(cfg["rtk_pos_noise"])
        self.rtk_ang_noise = float(cfg["rtk_ang_noise"]) * DEG2RAD
        self.rtk_height_noise_ratio = float(cfg["rtk_height_noise_ratio"])
        ext_t = [float(v) for v in cfg["rtk_ext"]["t"]]
        if len(ext_t) < 3:
            raise ValueError("rtk_ext.t needs three values")
        self.tbg = SE3(SO3(), ext_t[:3])
        logger.info("TBG =\n%s", self.tbg.matrix())

        self.loop_candidates = load_loops(self.data_dir / LOOPS_FILE) if stage == 2 else []
        return self

    def run(self) -> None:
        logger.info("running optimization on stage %d", self.stage)
        if not self.rtk_has_rot and self.stage == 1:
            self.initial_align()

        self.build_problem()
        self.save_g2o(self.data_dir / BEFORE_G2O)
        self._log_errors(include_loops=False)

        self.solve()
        self.remove_outliers()
        self.solve()

        self.save_g2o(self.data_dir / AFTER_G2O)
        self.save_results()
        logger.info("done")

    def initial_align(self):
        """Rigidly align the lidar trajectory to the RTK positions; returns the transform."""
        if not self.keyframes:
            return None
        frames = list(self.keyframes.values())
        pts1 = np.array([kf.rtk_pose.translation for kf in frames])
        pts2 = np.array([kf.lidar_pose.translation for kf in frames])
        p1 = pts1.mean(axis=0)
        p2 = pts2.mean(axis=0)
        logger.info("p1: %s, p2: %s", p1, p2)

        w = (pts1 - p1).T @ (pts2 - p2)
        u, _, vt = np.linalg.svd(w)
        r = u @ vt
        if np.linalg.det(r) < 0:
            r = -r
        t = p1 - r @ p2

        transform = SE3(SO3(r), t)
        logger.info("initial trans:\n%s", transform.matrix())
        for kf in frames:
            kf.lidar_pose = transform * kf.lidar_pose
        return transform

    def build_problem(self) -> None:
        self.vertices = {}
        self.gnss_edges = []
        self.gnss_trans_edges = []
        self.lidar_edges = []
        self.loop_edges = []
        self._add_vertices()
        self._add_rtk_edges()
        self._add_lidar_edges()
        self._add_loop_edges()

    def _add_vertices(self) -> None:
        for kf in self.keyframes.values():
            estimate = kf.lidar_pose if self.stage == 1 else kf.opti_pose_1
            self.vertices[kf.id] = VertexPose(kf.id, estimate)
        logger.info("vertex: %d", len(self.vertices))

    def _rtk_information(self) -> tuple[np.ndarray, np.ndarray]:
        info_pos = np.eye(3) / (self.rtk_pos_noise * self.rtk_pos_noise)
        height_noise = self.rtk_height_noise_ratio * self.rtk_pos_noise
        info_pos[2, 2] = 1.0 / (height_noise * height_noise)
        info_ang = np.eye(3) / (self.rtk_ang_noise * self.rtk_ang_noise)
        info_all = _info_blocks(info_ang, info_pos)
        logger.info("Info of rtk trans: %s", np.diag(info_pos))
        if self.stage == 2:
            info_pos = info_pos * STAGE_2_RTK_SCALE
            info_all = info_all * STAGE_2_RTK_SCALE
        return info_pos, info_all

    def _add_rtk_edges(self) -> None:
        info_pos, info_all = self._rtk_information()
        for kf in self.keyframes.values():
            if not kf.rtk_valid:
                continue
            vertex = self.vertices[kf.id]
            if kf.rtk_heading_valid:
                edge = EdgeGNSS(vertex, kf.rtk_pose, info_all)
                edge.robust_kernel = HuberKernel(self.rtk_outlier_th)
                self.gnss_edges.append(edge)
            else:
                edge = EdgeGNSSTransOnly(vertex, kf.rtk_pose.translation, self.tbg, info_pos)
                edge.robust_kernel = CauchyKernel(self.rtk_outlier_th)
                self.gnss_trans_edges.append(edge)
        logger.info("gnss edges: %d, %d", len(self.gnss_edges), len(self.gnss_trans_edges))

    def _add_lidar_edges(self) -> None:
        info_all = _info_blocks(
            np.eye(3) / (LIDAR_POS_NOISE * LIDAR_POS_NOISE),
            np.eye(3) / (LIDAR_ANG_NOISE * LIDAR_ANG_NOISE),
        )
        frames = list(self.keyframes.values())
        for i, kf in enumerate(frames):
            for other in frames[i + 1 : i + 1 + self.lidar_continuous_num]:
                edge = EdgeRelativeMotion(
                    self.vertices[kf.id],
                    self.vertices[other.id],
                    kf.lidar_pose.inverse() * other.lidar_pose,
                    info_all,
                )
                self.lidar_edges.append(edge)
        logger.info("lidar edges: %d", len(self.lidar_edges))

    def _add_loop_edges(self) -> None:
        if self.stage == 1:
            return
        info_all = _info_blocks(
            np.eye(3) / (LOOP_POS_NOISE * LOOP_POS_NOISE),
            np.eye(3) / (LOOP_ANG_NOISE * LOOP_ANG_NOISE),
        )
        for lc in self.loop_candidates:
            edge = EdgeRelativeMotion(self.vertices[lc.idx1], self.vertices[lc.idx2], lc.Tij, info_all)
            edge.robust_kernel = CauchyKernel(LOOP_ROBUST_TH)
            self.loop_edges.append(edge)

    def _all_edges(self) -> list:
        return [*self.gnss_edges, *self.gnss_trans_edges, *self.lidar_edges, *self.loop_edges]

    def _log_errors(self, include_loops: bool = True) -> None:
        logger.info("RTK error: %s", chi2_summary(self.gnss_edges, self.rtk_outlier_th))
        logger.info("RTK translation error: %s", chi2_summary(self.gnss_trans_edges, self.rtk_outlier_th))
        logger.info("lidar error: %s", chi2_summary(self.lidar_edges, 0))
        if include_loops:
            logger.info("loop error: %s", chi2_summary(self.loop_edges, 0))

    def solve(self) -> None:
        """Run Levenberg-Marquardt on the active edges."""
        self._optimize(self.max_iterations)
        self._log_errors()

    def _linearize(self, edges, index, dim):
        rows, cols, vals = [], [], []
        gradient = np.zeros(dim)
        for edge in edges:
            err = edge.compute_error()
            e2 = float(err @ edge.information @ err)
            weight = edge.information
            if edge.robust_kernel is not None:
                weight = edge.robust_kernel.rho(e2)[1] * edge.information
            blocks = [
                (index[v.id] * _DOF, j) for v, j in zip(edge.vertices, edge.jacobians())
            ]
            for a, ja in blocks:
                gradient[a : a + _DOF] += ja.T @ weight @ err
                for b, jb in blocks:
                    rows.append(np.repeat(np.arange(a, a + _DOF), _DOF))
                    cols.append(np.tile(np.arange(b, b + _DOF), _DOF))
                    vals.append((ja.T @ weight @ jb).ravel())
        hessian = sparse.csr_matrix(
            (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))), shape=(dim, dim)
        )
        return hessian, gradient

    def _optimize(self, iterations: int) -> None:
        vertices = list(self.vertices.values())
        edges = [e for e in self._all_edges() if e.level == 0]
        if not vertices or not edges:
            return
        index = {v.id: i for i, v in enumerate(vertices)}
        dim = _DOF * len(vertices)
        identity = sparse.identity(dim, format="csr")

        chi = sum(_robust_chi2(e) for e in edges)
        lam = None
        ni = 2.0
        for iteration in range(iterations):
            hessian, gradient = self._linearize(edges, index, dim)
            if lam is None:
                max_diag = float(hessian.diagonal().max())
                lam = _LAMBDA_TAU * max_diag if max_diag > 0 else _LAMBDA_TAU
            accepted = False
            improvement = 0.0
            for _ in range(_MAX_INNER_TRIES):
                saved = [v.estimate for v in vertices]
                dx = spsolve((hessian + lam * identity).tocsc(), -gradient)
                if not np.all(np.isfinite(dx)):
                    lam *= ni
                    ni *= 2.0
                    continue
                for i, v in enumerate(vertices):
                    v.oplus(dx[i * _DOF : (i + 1) * _DOF])
                new_chi = sum(_robust_chi2(e) for e in edges)
                scale = float(dx @ (lam * dx - gradient)) + 1e-3
                rho = (chi - new_chi) / scale
                if math.isfinite(new_chi) and rho > 0:
                    alpha = min(1.0 - (2.0 * rho - 1.0) ** 3, 2.0 / 3.0)
                    lam *= max(1.0 / 3.0, alpha)
                    ni = 2.0
                    improvement = chi - new_chi
                    chi = new_chi
                    accepted = True
                    break
                for v, estimate in zip(vertices, saved):
                    v.estimate = estimate
                lam *= ni
                ni *= 2.0
            logger.debug("iteration %d chi2 %.6g lambda %.3g", iteration, chi, lam)
            if not accepted or improvement <= 1e-12 * max(chi, 1.0):
                break

    def remove_outliers(self) -> tuple[int, int]:
        """Disable robust edges whose chi2 exceeds their kernel delta; drop the kernel of the rest.

        Returns (gnss outliers, loop outliers).
        """

        def remove(edges) -> int:
            removed = 0
            for edge in edges:
                kernel = edge.robust_kernel
                if kernel is None:
                    continue
                if edge.chi2() > kernel.delta:
                    edge.level = 1
                    removed += 1
                else:
                    edge.robust_kernel = None
            return removed

        gnss_removed = remove(self.gnss_edges) + remove(self.gnss_trans_edges)
        logger.info(
            "gnss outlier: %d/%d", gnss_removed, len(self.gnss_edges) + len(self.gnss_trans_edges)
        )
        loop_removed = remove(self.loop_edges)
        logger.info("loop outlier: %d/%d", loop_removed, len(self.loop_edges))
        return gnss_removed, loop_removed

    def save_results(self):
        """Store the optimised poses in the keyframes and rewrite keyframes.txt.

        Returns the median horizontal RTK error, or None without keyframes.
        """
        for kf_id, vertex in self.vertices.items():
            if self.stage == 1:
                self.keyframes[kf_id].opti_pose_1 = vertex.estimate
            else:
                self.keyframes[kf_id].opti_pose_2 = vertex.estimate

        errors = sorted(
            float(np.linalg.norm((kf.rtk_pose.translation - (kf.opti_pose_1 * self.tbg).translation)[:2]))
            for kf in self.keyframes.values()
        )
        median = errors[len(errors) // 2] if errors else None
        if median is not None:
            logger.info("med error: %f", median)

        save_keyframes(self.data_dir / KEYFRAMES_FILE, self.keyframes)
        return median

    def save_g2o(self, file_name) -> None:
        """Write vertices, lidar edges and loop edges in g2o text form."""
        with open(file_name, "w", encoding="utf-8") as out:
            for vertex in self.vertices.values():
                out.write(vertex.to_g2o() + "\n")
            for edge in self.lidar_edges:
                out.write(edge.to_g2o() + "\n")
            for edge in self.loop_edges:
                out.write(edge.to_g2o() + "\n")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run the pose-graph optimisation.")
    parser.add_argument("--config_yaml", default="./config/mapping.yaml", help="configuration file")
    parser.add_argument("--stage", type=int, choices=(1, 2), default=1, help="optimisation stage")
    parser.add_argument("--data_dir", default="./data/ch9/", help="directory of keyframes and loops")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    logger.info("testing optimization")
    opti = Optimization(args.config_yaml, args.data_dir)
    try:
        opti.init(args.stage)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        logger.error("failed to init optimization: %s", exc)
        return -1
    opti.run()
    return 0