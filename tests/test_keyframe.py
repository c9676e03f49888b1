import numpy as np
import pytest

from sadmapping.geometry import SE3, SO3
from sadmapping.keyframe import (
    Keyframe,
    LoopCandidate,
    format_se3,
    load_keyframes,
    load_loops,
    parse_se3,
    save_keyframes,
    save_loops,
)
from sadmapping.pointcloud import PointCloud


def _pose(seed):
    rng = np.random.default_rng(seed)
    return SE3(SO3.exp(rng.normal(size=3)), rng.normal(size=3) * 10)


def _keyframe(kf_id, seed=0, timestamp=1357847238.123456):
    return Keyframe(
        timestamp=timestamp,
        id=kf_id,
        lidar_pose=_pose(seed),
        rtk_pose=_pose(seed + 1),
        opti_pose_1=_pose(seed + 2),
        opti_pose_2=_pose(seed + 3),
        rtk_heading_valid=True,
        rtk_valid=False,
        rtk_inlier=True,
    )


def _same_pose(a, b, atol=1e-9):
    return np.allclose(a.matrix(), b.matrix(), atol=atol)


def test_format_identity_pose():
    assert format_se3(SE3()) == "0 0 0 0 0 0 1"


def test_parse_se3_round_trip():
    pose = _pose(7)
    back = parse_se3(format_se3(pose).split())
    assert np.allclose(back.matrix(), pose.matrix(), atol=1e-9)
    assert np.allclose(back.translation, pose.translation, atol=1e-9)


def test_parse_se3_needs_seven_values():
    with pytest.raises(ValueError):
        parse_se3(["1", "2", "3"])


def test_keyframe_line_layout():
    line = _keyframe(3).to_line()
    tokens = line.split()
    assert len(tokens) == 33
    assert tokens[0] == "3"
    assert tokens[2:5] == ["1", "0", "1"]


def test_keyframe_line_round_trip():
    kf = _keyframe(12, seed=4)
    back = Keyframe.from_line(kf.to_line())
    assert back.id == 12
    assert back.timestamp == kf.timestamp
    assert (back.rtk_heading_valid, back.rtk_valid, back.rtk_inlier) == (True, False, True)
    for attr in ("lidar_pose", "rtk_pose", "opti_pose_1", "opti_pose_2"):
        assert _same_pose(getattr(back, attr), getattr(kf, attr))


def test_from_line_rejects_bad_input():
    with pytest.raises(ValueError):
        Keyframe.from_line("1 2.0 0 1")
    tokens = _keyframe(1).to_line().split()
    tokens[3] = "2"
    with pytest.raises(ValueError):
        Keyframe.from_line(" ".join(tokens))


def test_save_and_load_keyframes_sorted(tmp_path):
    path = tmp_path / "keyframes.txt"
    save_keyframes(path, {5: _keyframe(5, 1), 2: _keyframe(2, 2)})
    loaded = load_keyframes(path)
    assert list(loaded) == [2, 5]
    assert _same_pose(loaded[5].opti_pose_1, _keyframe(5, 1).opti_pose_1)


def test_load_keyframes_stops_at_blank_line_and_keeps_first(tmp_path):
    path = tmp_path / "keyframes.txt"
    first = _keyframe(1, timestamp=10.0)
    repeat = _keyframe(1, timestamp=20.0)
    later = _keyframe(9)
    path.write_text(first.to_line() + "\n" + repeat.to_line() + "\n\n" + later.to_line() + "\n")
    loaded = load_keyframes(path)
    assert list(loaded) == [1]
    assert loaded[1].timestamp == 10.0


def test_load_keyframes_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_keyframes(tmp_path / "absent.txt")


def test_scan_save_unload_and_load(tmp_path):
    kf = _keyframe(4)
    kf.cloud = PointCloud([[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]], [7.0, 8.0])
    kf.save_and_unload_scan(tmp_path)
    assert kf.cloud is None
    assert (tmp_path / "4.pcd").exists()
    kf.load_scan(tmp_path)
    assert np.allclose(kf.cloud.points, [[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]])
    assert np.allclose(kf.cloud.intensity, [7.0, 8.0])


def test_loops_round_trip(tmp_path):
    path = tmp_path / "loops.txt"
    pose = SE3(SO3.exp([0.0, 0.0, 0.5]), [1.5, -2.25, 0.0])
    save_loops(path, [LoopCandidate(3, 80, pose, 3.25), LoopCandidate(10, 95, SE3(), 4.5)])
    loaded = load_loops(path)
    assert [(lc.idx1, lc.idx2, lc.ndt_score) for lc in loaded] == [(3, 80, 3.25), (10, 95, 4.5)]
    assert _same_pose(loaded[0].Tij, pose, atol=1e-5)


def test_load_loops_missing_file_is_empty(tmp_path):
    assert load_loops(tmp_path / "absent.txt") == []


def test_load_loops_rejects_short_line(tmp_path):
    path = tmp_path / "loops.txt"
    path.write_text("1 2 3.0\n")
    with pytest.raises(ValueError):
        load_loops(path)