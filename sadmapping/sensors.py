"""Sensor readings and dataset descriptions."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum

import numpy as np

from .geometry import SE3


class DatasetType(Enum):
    UNKNOWN = -1
    NCLT = 0
    KITTI = 1
    ULHK = 3
    UTBM = 4
    AVIA = 5
    WXB_3D = 6


_DATASET_NAMES = {
    "NCLT": DatasetType.NCLT,
    "KITTI": DatasetType.KITTI,
    "ULHK": DatasetType.ULHK,
    "UTBM": DatasetType.UTBM,
    "WXB3D": DatasetType.WXB_3D,
    "AVIA": DatasetType.AVIA,
}

NCLT_RTK_TOPIC = "gps_rtk_fix"

NCLT_LIDAR_TOPIC = "points_raw"
ULHK_LIDAR_TOPIC = "/velodyne_points_0"
WXB_LIDAR_TOPIC = "/velodyne_packets_1"
UTBM_LIDAR_TOPIC = "/velodyne_points"
AVIA_LIDAR_TOPIC = "/livox/lidar"

ULHK_IMU_TOPIC = "/imu/data"
UTBM_IMU_TOPIC = "/imu/data"
NCLT_IMU_TOPIC = "imu_raw"
WXB_IMU_TOPIC = "/ivsensorimu"
AVIA_IMU_TOPIC = "/livox/imu"

_LIDAR_TOPICS = {
    DatasetType.NCLT: NCLT_LIDAR_TOPIC,
    DatasetType.ULHK: ULHK_LIDAR_TOPIC,
    DatasetType.WXB_3D: WXB_LIDAR_TOPIC,
    DatasetType.UTBM: UTBM_LIDAR_TOPIC,
    DatasetType.AVIA: AVIA_LIDAR_TOPIC,
}

_IMU_TOPICS = {
    DatasetType.ULHK: ULHK_IMU_TOPIC,
    DatasetType.UTBM: UTBM_IMU_TOPIC,
    DatasetType.NCLT: NCLT_IMU_TOPIC,
    DatasetType.WXB_3D: WXB_IMU_TOPIC,
    DatasetType.AVIA: AVIA_IMU_TOPIC,
}


def str_to_dataset_type(name: str) -> DatasetType:
    """Map a dataset name to its type; unknown names give UNKNOWN."""
    return _DATASET_NAMES.get(name, DatasetType.UNKNOWN)


def lidar_topic_name(dataset_type: DatasetType) -> str:
    try:
        return _LIDAR_TOPICS[dataset_type]
    except KeyError:
        raise ValueError(f"no lidar topic known for dataset {dataset_type.name}") from None


def imu_topic_name(dataset_type: DatasetType) -> str:
    try:
        return _IMU_TOPICS[dataset_type]
    except KeyError:
        raise ValueError(f"cannot load imu topic name of dataset {dataset_type.value}") from None


class GpsStatusType(IntEnum):
    GNSS_FLOAT_SOLUTION = 5
    GNSS_FIXED_SOLUTION = 4
    GNSS_PSEUDO_SOLUTION = 2
    GNSS_SINGLE_POINT_SOLUTION = 1
    GNSS_NOT_EXIST = 0
    GNSS_OTHER = -1


# Status value of a navigation fix message that carries a valid fix.
NAV_SAT_STATUS_FIX = 0


def _array(v, n: int) -> np.ndarray:
    return np.asarray(v, dtype=float).reshape(n).copy()


@dataclass(eq=False)
class UTMCoordinate:
    zone: int = 0
    xy: np.ndarray = field(default_factory=lambda: np.zeros(2))
    z: float = 0.0
    north: bool = True

    def __post_init__(self):
        self.xy = _array(self.xy, 2)


@dataclass(eq=False)
class GNSS:
    """One GNSS reading; heading is in degrees."""

    unix_time: float = 0.0
    status: GpsStatusType = GpsStatusType.GNSS_NOT_EXIST
    lat_lon_alt: np.ndarray = field(default_factory=lambda: np.zeros(3))
    heading: float = 0.0
    heading_valid: bool = False
    utm: UTMCoordinate = field(default_factory=UTMCoordinate)
    utm_valid: bool = False
    utm_pose: SE3 = field(default_factory=SE3)

    def __post_init__(self):
        self.status = GpsStatusType(self.status)
        self.lat_lon_alt = _array(self.lat_lon_alt, 3)

    @classmethod
    def from_nav_sat_fix(cls, timestamp, status, latitude, longitude, altitude) -> "GNSS":
        """Build from a position-only navigation fix; no heading is set."""
        fixed = int(status) >= NAV_SAT_STATUS_FIX
        return cls(
            unix_time=timestamp,
            status=GpsStatusType.GNSS_FIXED_SOLUTION if fixed else GpsStatusType.GNSS_OTHER,
            lat_lon_alt=[latitude, longitude, altitude],
        )


@dataclass(eq=False)
class IMU:
    timestamp: float = 0.0
    gyro: np.ndarray = field(default_factory=lambda: np.zeros(3))
    acce: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        self.gyro = _array(self.gyro, 3)
        self.acce = _array(self.acce, 3)


@dataclass
class Odom:
    """Wheel odometry: pulses per unit time of the left and right wheels."""

    timestamp: float = 0.0
    left_pulse: float = 0.0
    right_pulse: float = 0.0