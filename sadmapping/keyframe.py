"""Keyframes, loop candidates and their text file formats."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .geometry import SE3
from .pointcloud import PointCloud, load_pcd, save_pcd

logger = logging.getLogger(__name__)

_SE3_TOKENS = 7
_KEYFRAME_TOKENS = 5 + 4 * _SE3_TOKENS


def _format_se3(pose: SE3, digits: int) -> str:
    w, x, y, z = pose.so3.quaternion()
    values = (*pose.translation, x, y, z, w)
    return " ".join(f"{v:.{digits}g}" for v in values)


def format_se3(pose: SE3) -> str:
    """Pose as 'tx ty tz qx qy qz qw' with 18 significant digits."""
    return _format_se3(pose, 18)


def parse_se3(tokens) -> SE3:
    """Pose from seven values 'tx ty tz qx qy qz qw'."""
    values = [float(t) for t in tokens]
    if len(values) != _SE3_TOKENS:
        raise ValueError(f"a pose needs {_SE3_TOKENS} values, got {len(values)}")
    tx, ty, tz, qx, qy, qz, qw = values
    return SE3.from_quaternion(qw, qx, qy, qz, translation=[tx, ty, tz])


def _parse_bool(token: str) -> bool:
    value = int(token)
    if value not in (0, 1):
        raise ValueError(f"expected 0 or 1, got {token!r}")
    return bool(value)


@dataclass(eq=False)
class Keyframe:
    """A mapping keyframe with its poses from each processing stage."""

    timestamp: float = 0.0
    id: int = 0
    lidar_pose: SE3 = field(default_factory=SE3)
    rtk_pose: SE3 = field(default_factory=SE3)
    opti_pose_1: SE3 = field(default_factory=SE3)
    opti_pose_2: SE3 = field(default_factory=SE3)
    rtk_heading_valid: bool = False
    rtk_valid: bool = True
    rtk_inlier: bool = True
    cloud: PointCloud | None = None

    def _scan_path(self, path) -> Path:
        return Path(path) / f"{self.id}.pcd"

    def save_and_unload_scan(self, path) -> None:
        """Write the scan to <path>/<id>.pcd and drop it from memory."""
        if self.cloud is None:
            return
        if len(self.cloud):
            save_pcd(self._scan_path(path), self.cloud)
        else:
            logger.error("keyframe %d has an empty scan, nothing written", self.id)
        self.cloud = None

    def load_scan(self, path) -> None:
        """Read the scan back from <path>/<id>.pcd."""
        self.cloud = load_pcd(self._scan_path(path))

    def to_line(self) -> str:
        """One text line (without newline) holding id, time, flags and the four poses."""
        head = (
            f"{self.id} {self.timestamp:.18g} {int(self.rtk_heading_valid)} "
            f"{int(self.rtk_valid)} {int(self.rtk_inlier)} "
        )
        poses = (self.lidar_pose, self.rtk_pose, self.opti_pose_1, self.opti_pose_2)
        return head + "".join(format_se3(p) + " " for p in poses)

    @classmethod
    def from_line(cls, line: str) -> "Keyframe":
        """Parse a line written by to_line."""
        tokens = line.split()
        if len(tokens) < _KEYFRAME_TOKENS:
            raise ValueError(f"keyframe line needs {_KEYFRAME_TOKENS} values, got {len(tokens)}")
        kf_id = int(tokens[0])
        if kf_id < 0:
            raise ValueError("keyframe id must be non-negative")
        poses = [
            parse_se3(tokens[5 + i * _SE3_TOKENS : 5 + (i + 1) * _SE3_TOKENS]) for i in range(4)
        ]
        return cls(
            timestamp=float(tokens[1]),
            id=kf_id,
            rtk_heading_valid=_parse_bool(tokens[2]),
            rtk_valid=_parse_bool(tokens[3]),
            rtk_inlier=_parse_bool(tokens[4]),
            lidar_pose=poses[0],
            rtk_pose=poses[1],
            opti_pose_1=poses[2],
            opti_pose_2=poses[3],
        )


@dataclass(eq=False)
class LoopCandidate:
    """A pair of keyframes that may close a loop, with their relative pose."""

    idx1: int = 0
    idx2: int = 0
    Tij: SE3 = field(default_factory=SE3)
    ndt_score: float = 0.0


def _content_lines(f):
    """Lines of a file up to (not including) the first empty one."""
    for raw in f:
        line = raw.rstrip("\r\n")
        if not line:
            return
        yield line


def load_keyframes(path) -> dict[int, Keyframe]:
    """Read keyframes by id; the first keyframe of a repeated id wins."""
    keyframes: dict[int, Keyframe] = {}
    with open(path, encoding="utf-8") as f:
        for line in _content_lines(f):
            kf = Keyframe.from_line(line)
            keyframes.setdefault(kf.id, kf)
    logger.info("Loaded kfs: %d", len(keyframes))
    return dict(sorted(keyframes.items()))


def save_keyframes(path, keyframes) -> None:
    """Write keyframes (a mapping or an iterable) one per line, ordered by id."""
    frames: Iterable[Keyframe] = keyframes.values() if isinstance(keyframes, Mapping) else keyframes
    with open(path, "w", encoding="utf-8") as out:
        for kf in sorted(frames, key=lambda k: k.id):
            out.write(kf.to_line() + "\n")


def load_loops(path) -> list[LoopCandidate]:
    """Read loop candidates; a missing file gives an empty list."""
    try:
        f = open(path, encoding="utf-8")
    except FileNotFoundError:
        logger.warning("cannot load file: %s", path)
        return []
    candidates = []
    with f:
        for line in _content_lines(f):
            tokens = line.split()
            if len(tokens) < 3 + _SE3_TOKENS:
                raise ValueError(f"loop line needs {3 + _SE3_TOKENS} values, got {len(tokens)}")
            candidates.append(
                LoopCandidate(
                    idx1=int(tokens[0]),
                    idx2=int(tokens[1]),
                    ndt_score=float(tokens[2]),
                    Tij=parse_se3(tokens[3 : 3 + _SE3_TOKENS]),
                )
            )
    logger.info("loaded loops: %d", len(candidates))
    return candidates


def save_loops(path, candidates) -> None:
    """Write loop candidates one per line with six significant digits."""
    with open(path, "w", encoding="utf-8") as out:
        for lc in candidates:
            out.write(f"{lc.idx1} {lc.idx2} {lc.ndt_score:g} {_format_se3(lc.Tij, 6)} \n")