import numpy as np
import pytest

from sadmapping.geometry import SE3, SO3
from sadmapping.keyframe import Keyframe, save_keyframes
from sadmapping.mapexport import dump_main, dump_map, split_main, split_map
from sadmapping.pointcloud import PointCloud, load_pcd


def _write_dataset(directory, keyframes_and_points):
    frames = []
    for kf, points in keyframes_and_points:
        kf.cloud = PointCloud(points, np.ones(len(points)))
        kf.save_and_unload_scan(directory)
        frames.append(kf)
    save_keyframes(directory / "keyframes.txt", frames)


@pytest.fixture
def dataset(tmp_path):
    kf0 = Keyframe(timestamp=1.0, id=0, lidar_pose=SE3(SO3(), [10, 0, 0]), rtk_pose=SE3(SO3(), [0, 20, 0]))
    kf1 = Keyframe(timestamp=2.0, id=1, lidar_pose=SE3(SO3(), [0, 0, 5]))
    _write_dataset(tmp_path, [(kf0, [[0.0, 0.0, 0.0]]), (kf1, [[1.0, 1.0, 1.0]])])
    return tmp_path


def test_dump_map_uses_lidar_pose(dataset):
    cloud = dump_map(dataset, dataset, 0.1, "lidar")
    assert len(cloud) == 2
    pts = sorted(map(tuple, np.round(cloud.points, 6)))
    assert pts == [(1.0, 1.0, 6.0), (10.0, 0.0, 0.0)]
    saved = load_pcd(dataset / "map.pcd")
    np.testing.assert_allclose(saved.points, cloud.points, atol=1e-5)


def test_dump_map_rtk_pose_differs(dataset):
    cloud = dump_map(dataset, dataset, 0.1, "rtk")
    pts = sorted(map(tuple, np.round(cloud.points, 6)))
    assert (0.0, 20.0, 0.0) in pts
    assert (1.0, 1.0, 1.0) in pts


def test_dump_map_unknown_source(dataset):
    with pytest.raises(ValueError):
        dump_map(dataset, dataset, 0.1, "gps")


def test_dump_map_empty_keyframes(tmp_path):
    (tmp_path / "keyframes.txt").write_text("")
    assert dump_map(tmp_path, tmp_path) is None
    assert not (tmp_path / "map.pcd").exists()


def test_dump_map_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        dump_map(tmp_path, tmp_path)


def test_dump_main_exit_codes(dataset, tmp_path_factory):
    assert dump_main(["--data_dir", str(dataset), "--dump_to", str(dataset)]) == 0
    assert (dataset / "map.pcd").exists()
    empty = tmp_path_factory.mktemp("empty")
    assert dump_main(["--data_dir", str(empty), "--dump_to", str(empty)]) == -1


def test_split_map_tiles(tmp_path):
    kf = Keyframe(timestamp=1.0, id=0)
    _write_dataset(tmp_path, [(kf, [[0.0, 0.0, 0.0], [100.0, 0.0, 0.0]])])
    stale = tmp_path / "map_data"
    stale.mkdir()
    (stale / "old.pcd").write_text("stale")

    tiles = split_map(tmp_path, 0.1)
    assert sorted(tiles) == [(-1, -1), (0, -1)]
    assert sum(len(t) for t in tiles.values()) == 2
    index = (tmp_path / "map_data" / "map_index.txt").read_text().splitlines()
    assert index == ["-1 -1", "0 -1"]
    assert not (stale / "old.pcd").exists()
    tile = load_pcd(tmp_path / "map_data" / "0_-1.pcd")
    np.testing.assert_allclose(tile.points, [[100.0, 0.0, 0.0]], atol=1e-5)


def test_split_main_returns_zero_even_without_data(tmp_path):
    assert split_main(["--map_path", str(tmp_path)]) == 0
    assert not (tmp_path / "map_data").exists()