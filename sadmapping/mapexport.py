"""Export the optimised keyframe scans as one merged map or as grid tiles."""

from __future__ import annotations

import argparse
import logging
import shutil
from collections import defaultdict
from pathlib import Path

import numpy as np

from .keyframe import Keyframe, load_keyframes
from .pointcloud import PointCloud, save_pcd, voxel_grid

logger = logging.getLogger(__name__)

KEYFRAMES_FILE = "keyframes.txt"
MAP_FILE = "map.pcd"
MAP_DATA_DIR = "map_data"
MAP_INDEX_FILE = "map_index.txt"
GRID_SIZE = 100.0
GRID_OFFSET = 50.0
TILE_VOXEL_SIZE = 0.1

POSE_SOURCES = {
    "lidar": lambda kf: kf.lidar_pose,
    "rtk": lambda kf: kf.rtk_pose,
    "opti1": lambda kf: kf.opti_pose_1,
    "opti2": lambda kf: kf.opti_pose_2,
}


def _concat(clouds: list[PointCloud]) -> PointCloud:
    if not clouds:
        return PointCloud()
    return PointCloud(
        np.vstack([c.points for c in clouds]), np.concatenate([c.intensity for c in clouds])
    )


def _world_scan(kf: Keyframe, data_dir, pose, voxel_size: float) -> PointCloud:
    kf.load_scan(data_dir)
    cloud = voxel_grid(kf.cloud.transformed(pose), voxel_size)
    kf.cloud = None
    return cloud


def dump_map(data_dir="./data/ch9/", dump_to="./data/ch9/", voxel_size=0.1, pose_source="lidar"):
    """Merge all keyframe scans in world frame into <dump_to>/map.pcd.

    Returns the merged cloud, or None when there are no keyframes.
    """
    try:
        take_pose = POSE_SOURCES[pose_source]
    except KeyError:
        raise ValueError(f"unknown pose source {pose_source!r}; use one of {sorted(POSE_SOURCES)}") from None
    keyframes = load_keyframes(Path(data_dir) / KEYFRAMES_FILE)
    if not keyframes:
        logger.info("keyframes are empty")
        return None

    logger.info("merging")
    pieces = []
    total = 0
    for cnt, kf in enumerate(keyframes.values()):
        cloud = _world_scan(kf, data_dir, take_pose(kf), voxel_size)
        pieces.append(cloud)
        total += len(cloud)
        logger.info("merging %d in %d, pts: %d global pts: %d", cnt, len(keyframes), len(cloud), total)

    global_cloud = _concat(pieces)
    if len(global_cloud):
        save_pcd(Path(dump_to) / MAP_FILE, global_cloud)
    logger.info("done.")
    return global_cloud


def _clear_directory(directory: Path) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    for child in directory.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


def split_map(data_dir="./data/ch9/", voxel_size=0.1) -> dict[tuple[int, int], PointCloud]:
    """Cut the map (second-stage poses) into 100 m tiles under <data_dir>/map_data.

    Writes one <gx>_<gy>.pcd per tile and an index of tile keys; returns the tiles.
    """
    keyframes = load_keyframes(Path(data_dir) / KEYFRAMES_FILE)
    pieces: dict[tuple[int, int], list[PointCloud]] = defaultdict(list)

    for kf in keyframes.values():
        cloud = _world_scan(kf, data_dir, kf.opti_pose_2, voxel_size)
        logger.info("building kf %d in %d", kf.id, len(keyframes))
        if not len(cloud):
            continue
        keys = np.floor((cloud.points[:, :2] - GRID_OFFSET) / GRID_SIZE).astype(int)
        unique_keys, inverse = np.unique(keys, axis=0, return_inverse=True)
        inverse = inverse.reshape(-1)
        for idx, (gx, gy) in enumerate(unique_keys):
            mask = inverse == idx
            pieces[(int(gx), int(gy))].append(PointCloud(cloud.points[mask], cloud.intensity[mask]))

    logger.info("saving maps, grids: %d", len(pieces))
    out_dir = Path(data_dir) / MAP_DATA_DIR
    _clear_directory(out_dir)

    tiles = {}
    with open(out_dir / MAP_INDEX_FILE, "w", encoding="utf-8") as index:
        for gx, gy in sorted(pieces):
            index.write(f"{gx} {gy}\n")
            tile = voxel_grid(_concat(pieces[(gx, gy)]), TILE_VOXEL_SIZE)
            save_pcd(out_dir / f"{gx}_{gy}.pcd", tile)
            tiles[(gx, gy)] = tile
    logger.info("done.")
    return tiles


def dump_main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Merge keyframe scans into one map file.")
    parser.add_argument("--voxel_size", type=float, default=0.1, help="map resolution")
    parser.add_argument("--pose_source", choices=sorted(POSE_SOURCES), default="lidar", help="pose to use")
    parser.add_argument("--dump_to", default="./data/ch9/", help="output directory")
    parser.add_argument("--data_dir", default="./data/ch9/", help="directory of keyframes and scans")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    try:
        dump_map(args.data_dir, args.dump_to, args.voxel_size, args.pose_source)
    except FileNotFoundError:
        logger.error("failed to load keyframes.txt")
        return -1
    return 0


def split_main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Split the map into grid tiles.")
    parser.add_argument("--map_path", default="./data/ch9/", help="directory of keyframes and scans")
    parser.add_argument("--voxel_size", type=float, default=0.1, help="map resolution")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    try:
        split_map(args.map_path, args.voxel_size)
    except FileNotFoundError:
        logger.error("failed to load keyframes")
    return 0