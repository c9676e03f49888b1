"""XYZI point clouds, filters and PCD file input/output."""

from __future__ import annotations

import numpy as np

from .geometry import SE3


class PointCloud:
    """Points with x, y, z coordinates and an intensity each."""

    __slots__ = ("points", "intensity")

    def __init__(self, points=None, intensity=None):
        self.points = (
            np.zeros((0, 3)) if points is None else np.asarray(points, dtype=float).reshape(-1, 3).copy()
        )
        if intensity is None:
            self.intensity = np.zeros(len(self.points))
        else:
            self.intensity = np.asarray(intensity, dtype=float).reshape(-1).copy()
        if len(self.intensity) != len(self.points):
            raise ValueError("intensity must have one value per point")

    def __len__(self) -> int:
        return len(self.points)

    def __add__(self, other: "PointCloud") -> "PointCloud":
        if not isinstance(other, PointCloud):
            return NotImplemented
        return PointCloud(
            np.vstack([self.points, other.points]), np.concatenate([self.intensity, other.intensity])
        )

    def transformed(self, pose) -> "PointCloud":
        """A copy with every point moved by an SE3 or a 4x4 matrix."""
        if isinstance(pose, SE3):
            pts = pose.act(self.points) if len(self) else self.points
        else:
            m = np.asarray(pose, dtype=float).reshape(4, 4)
            pts = self.points @ m[:3, :3].T + m[:3, 3]
        return PointCloud(pts, self.intensity)

    def __repr__(self) -> str:
        return f"PointCloud({len(self)} points)"


def voxel_grid(cloud: PointCloud, voxel_size: float = 0.05) -> PointCloud:
    """Replace the points of each voxel by their centroid; voxels ordered by z, y, then x index."""
    if voxel_size <= 0:
        raise ValueError("voxel size must be positive")
    finite = np.isfinite(cloud.points).all(axis=1)
    pts = cloud.points[finite]
    inten = cloud.intensity[finite]
    if len(pts) == 0:
        return PointCloud()
    keys = np.floor(pts / voxel_size).astype(np.int64)
    _, inverse = np.unique(keys[:, ::-1], axis=0, return_inverse=True)
    inverse = inverse.reshape(-1)
    count = np.bincount(inverse).astype(float)
    centroid = np.column_stack([np.bincount(inverse, weights=pts[:, i]) for i in range(3)]) / count[:, None]
    mean_intensity = np.bincount(inverse, weights=inten) / count
    return PointCloud(centroid, mean_intensity)


def remove_ground(cloud: PointCloud, z_min: float = 0.5) -> PointCloud:
    """Keep only the points strictly above z_min."""
    keep = cloud.points[:, 2] > z_min
    return PointCloud(cloud.points[keep], cloud.intensity[keep])


def save_pcd(path, cloud: PointCloud) -> None:
    """Write an unorganised ASCII PCD file with fields x y z intensity."""
    if len(cloud) == 0:
        raise ValueError("input point cloud has no data")
    n = len(cloud)
    header = (
        "# .PCD v0.7 - Point Cloud Data file format\n"
        "VERSION 0.7\n"
        "FIELDS x y z intensity\n"
        "SIZE 4 4 4 4\n"
        "TYPE F F F F\n"
        "COUNT 1 1 1 1\n"
        f"WIDTH {n}\n"
        "HEIGHT 1\n"
        "VIEWPOINT 0 0 0 1 0 0 0\n"
        f"POINTS {n}\n"
        "DATA ascii\n"
    )
    with open(path, "w", encoding="ascii") as out:
        out.write(header)
        for (x, y, z), i in zip(cloud.points, cloud.intensity):
            out.write(f"{x:.8g} {y:.8g} {z:.8g} {i:.8g}\n")


_PCD_TYPES = {
    ("F", 4): "<f4",
    ("F", 8): "<f8",
    ("I", 1): "<i1",
    ("I", 2): "<i2",
    ("I", 4): "<i4",
    ("I", 8): "<i8",
    ("U", 1): "<u1",
    ("U", 2): "<u2",
    ("U", 4): "<u4",
    ("U", 8): "<u8",
}


def _read_header(raw: bytes):
    header: dict[str, list[str]] = {}
    offset = 0
    while True:
        end = raw.find(b"\n", offset)
        if end < 0:
            if "DATA" not in header:
                raise ValueError("PCD header has no DATA line")
            end = len(raw)
        line = raw[offset:end].decode("ascii").strip()
        offset = end + 1
        if not line or line.startswith("#"):
            continue
        key, *values = line.split()
        header[key.upper()] = values
        if key.upper() == "DATA":
            return header, offset


def load_pcd(path) -> PointCloud:
    """Read x, y, z and (if present) intensity from an ASCII or binary PCD file."""
    with open(path, "rb") as f:
        raw = f.read()
    header, offset = _read_header(raw)
    fields = header.get("FIELDS")
    if not fields:
        raise ValueError("PCD header has no FIELDS line")
    counts = [int(c) for c in header.get("COUNT", ["1"] * len(fields))]
    if "POINTS" in header:
        n = int(header["POINTS"][0])
    else:
        n = int(header.get("WIDTH", ["0"])[0]) * int(header.get("HEIGHT", ["1"])[0])
    kind = header["DATA"][0].lower()

    if kind == "ascii":
        values = np.array(raw[offset:].decode("ascii").split(), dtype=float)
        width = sum(counts)
        if values.size < n * width:
            raise ValueError("PCD file holds fewer values than its header declares")
        table = values[: n * width].reshape(n, width)
        starts = np.cumsum([0] + counts[:-1])
        columns = {name: table[:, start] for name, start in zip(fields, starts)}
    elif kind == "binary":
        sizes = [int(s) for s in header["SIZE"]]
        types = [t.upper() for t in header["TYPE"]]
        try:
            dtype = np.dtype(
                [
                    (f"f{i}", _PCD_TYPES[(t, s)], (c,)) if c > 1 else (f"f{i}", _PCD_TYPES[(t, s)])
                    for i, (t, s, c) in enumerate(zip(types, sizes, counts))
                ]
            )
        except KeyError as exc:
            raise ValueError(f"unsupported PCD field type {exc.args[0]}") from None
        if len(raw) - offset < n * dtype.itemsize:
            raise ValueError("PCD file holds fewer bytes than its header declares")
        arr = np.frombuffer(raw, dtype=dtype, count=n, offset=offset)
        columns = {}
        for i, (name, c) in enumerate(zip(fields, counts)):
            col = arr[f"f{i}"]
            columns[name] = (col[:, 0] if c > 1 else col).astype(float)
    else:
        raise ValueError(f"unsupported PCD data kind: {kind}")

    try:
        points = np.column_stack([columns["x"], columns["y"], columns["z"]])
    except KeyError:
        raise ValueError("PCD file lacks x, y or z") from None
    intensity = columns.get("intensity")
    return PointCloud(points, intensity)


def cast_to_int(value) -> np.ndarray:
    """Round each component half away from zero and convert to integers."""
    arr = np.asarray(value, dtype=float)
    return (np.sign(arr) * np.floor(np.abs(arr) + 0.5)).astype(int)