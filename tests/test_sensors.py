import numpy as np
import pytest

from sadmapping.sensors import (
    GNSS,
    IMU,
    DatasetType,
    GpsStatusType,
    Odom,
    UTMCoordinate,
    imu_topic_name,
    lidar_topic_name,
    str_to_dataset_type,
)


@pytest.mark.parametrize(
    "name, expected",
    [
        ("NCLT", DatasetType.NCLT),
        ("KITTI", DatasetType.KITTI),
        ("ULHK", DatasetType.ULHK),
        ("UTBM", DatasetType.UTBM),
        ("WXB3D", DatasetType.WXB_3D),
        ("AVIA", DatasetType.AVIA),
    ],
)
def test_str_to_dataset_type(name, expected):
    assert str_to_dataset_type(name) is expected


@pytest.mark.parametrize("name", ["nclt", "", "WXB_3D", "other"])
def test_unknown_dataset_names(name):
    assert str_to_dataset_type(name) is DatasetType.UNKNOWN


@pytest.mark.parametrize(
    "dataset, topic",
    [
        (DatasetType.NCLT, "points_raw"),
        (DatasetType.ULHK, "/velodyne_points_0"),
        (DatasetType.WXB_3D, "/velodyne_packets_1"),
        (DatasetType.UTBM, "/velodyne_points"),
        (DatasetType.AVIA, "/livox/lidar"),
    ],
)
def test_lidar_topic_names(dataset, topic):
    assert lidar_topic_name(dataset) == topic


@pytest.mark.parametrize(
    "dataset, topic",
    [
        (DatasetType.ULHK, "/imu/data"),
        (DatasetType.UTBM, "/imu/data"),
        (DatasetType.NCLT, "imu_raw"),
        (DatasetType.WXB_3D, "/ivsensorimu"),
        (DatasetType.AVIA, "/livox/imu"),
    ],
)
def test_imu_topic_names(dataset, topic):
    assert imu_topic_name(dataset) == topic


@pytest.mark.parametrize("dataset", [DatasetType.KITTI, DatasetType.UNKNOWN])
def test_topics_for_unsupported_dataset_raise(dataset):
    with pytest.raises(ValueError):
        lidar_topic_name(dataset)
    with pytest.raises(ValueError):
        imu_topic_name(dataset)


def test_gnss_status_from_int():
    g = GNSS(1.5, 4, [30.0, 120.0, 10.0], 90.0, True)
    assert g.status is GpsStatusType.GNSS_FIXED_SOLUTION
    assert np.allclose(g.lat_lon_alt, [30.0, 120.0, 10.0])
    assert g.heading_valid is True
    assert g.utm_valid is False


def test_gnss_invalid_status_raises():
    with pytest.raises(ValueError):
        GNSS(0.0, 3)


@pytest.mark.parametrize(
    "status, expected",
    [
        (0, GpsStatusType.GNSS_FIXED_SOLUTION),
        (2, GpsStatusType.GNSS_FIXED_SOLUTION),
        (-1, GpsStatusType.GNSS_OTHER),
    ],
)
def test_gnss_from_nav_sat_fix(status, expected):
    g = GNSS.from_nav_sat_fix(100.0, status, 42.0, -83.0, 270.0)
    assert g.status is expected
    assert g.unix_time == 100.0
    assert np.allclose(g.lat_lon_alt, [42.0, -83.0, 270.0])


def test_imu_holds_arrays():
    imu = IMU(2.0, [0.1, 0.2, 0.3], (0.0, 0.0, 9.8))
    assert isinstance(imu.gyro, np.ndarray)
    assert np.allclose(imu.acce, [0.0, 0.0, 9.8])
    assert imu.timestamp == 2.0


def test_odom_fields():
    odom = Odom(3.0, 10.0, 12.0)
    assert (odom.timestamp, odom.left_pulse, odom.right_pulse) == (3.0, 10.0, 12.0)


def test_utm_coordinate_xy_shape():
    utm = UTMCoordinate(zone=50, xy=[1.0, 2.0], north=False)
    assert np.allclose(utm.xy, [1.0, 2.0])
    assert utm.zone == 50
    assert utm.north is False