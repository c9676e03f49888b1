"""Graph vertices, residual edges and robust kernels for pose-graph problems."""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Sequence

import numpy as np

from .geometry import SE3, SO3, NavState

# Step used for central-difference Jacobians of edges without an analytic one.
_NUMERIC_DELTA = 1e-9


@dataclass
class HuberKernel:
    """Huber robust kernel; rho returns (rho, rho', rho'') at a squared error."""

    delta: float = 1.0

    def rho(self, e2: float) -> tuple[float, float, float]:
        dsqr = self.delta * self.delta
        if e2 <= dsqr:
            return e2, 1.0, 0.0
        sqrte = math.sqrt(e2)
        rho1 = self.delta / sqrte
        return 2.0 * sqrte * self.delta - dsqr, rho1, -0.5 * rho1 / e2


@dataclass
class CauchyKernel:
    """Cauchy robust kernel; rho returns (rho, rho', rho'') at a squared error."""

    delta: float = 1.0

    def rho(self, e2: float) -> tuple[float, float, float]:
        dsqr = self.delta * self.delta
        dsqr_reci = 1.0 / dsqr
        aux = dsqr_reci * e2 + 1.0
        rho1 = 1.0 / aux
        return dsqr * math.log(aux), rho1, -dsqr_reci * rho1 * rho1


def _fmt(values) -> str:
    return " ".join(f"{float(v):g}" for v in values)


class VertexPose:
    """SE3 pose vertex; updates are (rotation, translation), rotation applied on the right."""

    dimension = 6

    def __init__(self, id: int = 0, estimate: SE3 | None = None):
        self.id = id
        self.estimate = SE3() if estimate is None else estimate
        self.fixed = False

    def oplus(self, update) -> None:
        update = np.asarray(update, dtype=float).reshape(6)
        self.estimate = SE3(
            self.estimate.so3 * SO3.exp(update[:3]), self.estimate.translation + update[3:]
        )

    def to_g2o(self) -> str:
        """The vertex as a 'VERTEX_SE3:QUAT id tx ty tz qx qy qz qw' line."""
        w, x, y, z = self.estimate.so3.quaternion()
        return f"VERTEX_SE3:QUAT {self.id} {_fmt(self.estimate.translation)} {_fmt((x, y, z, w))}"

    def read(self, tokens) -> None:
        """Set the estimate from seven values 'tx ty tz qx qy qz qw'."""
        values = [float(t) for t in tokens]
        if len(values) < 7:
            raise ValueError(f"a pose vertex needs 7 values, got {len(values)}")
        tx, ty, tz, qx, qy, qz, qw = values[:7]
        self.estimate = SE3.from_quaternion(qw, qx, qy, qz, translation=[tx, ty, tz])


class VertexVelocity:
    """Plain 3-vector vertex."""

    dimension = 3

    def __init__(self, id: int = 0, estimate=None):
        self.id = id
        self.estimate = np.zeros(3) if estimate is None else np.asarray(estimate, dtype=float).reshape(3).copy()
        self.fixed = False

    def oplus(self, update) -> None:
        self.estimate = self.estimate + np.asarray(update, dtype=float).reshape(3)


class VertexGyroBias(VertexVelocity):
    """Gyroscope bias vertex."""


class VertexAccBias(VertexVelocity):
    """Accelerometer bias vertex."""


class Edge(ABC):
    """A residual over one or more vertices with an information matrix."""

    dimension = 0

    def __init__(self, vertices: Sequence, measurement=None, information=None):
        self.vertices = list(vertices)
        self.measurement = measurement
        self.information = (
            np.eye(self.dimension) if information is None else np.asarray(information, dtype=float).copy()
        )
        self.level = 0
        self.robust_kernel = None
        self.error = np.zeros(self.dimension)

    @abstractmethod
    def _residual(self) -> np.ndarray:
        """Residual at the current vertex estimates."""

    def compute_error(self) -> np.ndarray:
        self.error = np.asarray(self._residual(), dtype=float).reshape(self.dimension)
        return self.error

    def jacobians(self) -> list[np.ndarray]:
        """Jacobian of the residual with respect to each vertex update (central differences)."""
        result = []
        for vertex in self.vertices:
            saved = vertex.estimate
            columns = []
            for step in np.eye(vertex.dimension) * _NUMERIC_DELTA:
                vertex.oplus(step)
                plus = np.asarray(self._residual(), dtype=float)
                vertex.estimate = saved
                vertex.oplus(-step)
                minus = np.asarray(self._residual(), dtype=float)
                vertex.estimate = saved
                columns.append((plus - minus) * (0.5 / _NUMERIC_DELTA))
            result.append(np.column_stack(columns))
        return result

    def chi2(self) -> float:
        e = self.compute_error()
        return float(e @ self.information @ e)

    def hessian(self) -> np.ndarray:
        j = np.hstack(self.jacobians())
        return j.T @ self.information @ j


class _RandomWalkEdge(Edge):
    dimension = 3

    def __init__(self, v1, v2, information=None):
        super().__init__([v1, v2], np.zeros(3), information)

    def _residual(self) -> np.ndarray:
        return self.vertices[1].estimate - self.vertices[0].estimate

    def jacobians(self) -> list[np.ndarray]:
        return [-np.eye(3), np.eye(3)]


class EdgeGyroRW(_RandomWalkEdge):
    """Random walk between two gyroscope bias vertices."""


class EdgeAccRW(_RandomWalkEdge):
    """Random walk between two accelerometer bias vertices."""


class EdgePriorPoseNavState(Edge):
    """Prior on pose, velocity and biases; vertices (pose, v, bg, ba), residual (R, p, v, bg, ba)."""

    dimension = 15

    def __init__(self, state: NavState, information, vertices: Sequence):
        if len(vertices) != 4:
            raise ValueError("prior edge needs pose, velocity, gyro bias and acc bias vertices")
        super().__init__(vertices, None, information)
        self.state = state

    def _rotation_error(self) -> np.ndarray:
        pose = self.vertices[0].estimate
        return SO3(self.state.R.matrix().T @ pose.so3.matrix()).log()

    def _residual(self) -> np.ndarray:
        vp, vv, vg, va = self.vertices
        return np.concatenate(
            [
                self._rotation_error(),
                vp.estimate.translation - self.state.p,
                vv.estimate - self.state.v,
                vg.estimate - self.state.bg,
                va.estimate - self.state.ba,
            ]
        )

    def jacobians(self) -> list[np.ndarray]:
        j_pose = np.zeros((15, 6))
        j_pose[0:3, 0:3] = SO3.jr_inv(self._rotation_error())
        j_pose[3:6, 3:6] = np.eye(3)
        blocks = [j_pose]
        for row in (6, 9, 12):
            j = np.zeros((15, 3))
            j[row : row + 3, :] = np.eye(3)
            blocks.append(j)
        return blocks


class EdgeGNSS(Edge):
    """Six-dof GNSS observation; residual is (rotation, translation)."""

    dimension = 6

    def __init__(self, vertex: VertexPose, measurement: SE3, information=None):
        super().__init__([vertex], measurement, information)

    def _rotation_error(self) -> np.ndarray:
        return (self.measurement.so3.inverse() * self.vertices[0].estimate.so3).log()

    def _residual(self) -> np.ndarray:
        pose = self.vertices[0].estimate
        return np.concatenate([self._rotation_error(), pose.translation - self.measurement.translation])

    def jacobians(self) -> list[np.ndarray]:
        j = np.zeros((6, 6))
        j[0:3, 0:3] = SO3.jr_inv(self._rotation_error())
        j[3:6, 3:6] = np.eye(3)
        return [j]


class EdgeGNSSTransOnly(Edge):
    """Translation-only GNSS observation t_WG, using the body-to-antenna extrinsic TBG."""

    dimension = 3

    def __init__(self, vertex: VertexPose, measurement, tbg: SE3, information=None):
        super().__init__([vertex], np.asarray(measurement, dtype=float).reshape(3).copy(), information)
        self.tbg = tbg

    def _residual(self) -> np.ndarray:
        return (self.vertices[0].estimate * self.tbg).translation - self.measurement


class EdgeRelativeMotion(Edge):
    """Relative motion T12 between two poses; residual is (translation, rotation)."""

    dimension = 6

    def __init__(self, v1: VertexPose, v2: VertexPose, measurement: SE3, information=None):
        super().__init__([v1, v2], measurement, information)

    def _residual(self) -> np.ndarray:
        v1, v2 = self.vertices
        return (self.measurement.inverse() * v1.estimate.inverse() * v2.estimate).log()

    def to_g2o(self) -> str:
        """The edge as an 'EDGE_SE3:QUAT' line with the upper triangle of the information."""
        v1, v2 = self.vertices
        w, x, y, z = self.measurement.so3.quaternion()
        upper = self.information[np.triu_indices(self.dimension)]
        return (
            f"EDGE_SE3:QUAT {v1.id} {v2.id} {_fmt(self.measurement.translation)} "
            f"{_fmt((x, y, z, w))} {_fmt(upper)} "
        )

    def read(self, tokens) -> None:
        """Set measurement and information from 'tx ty tz qx qy qz qw' and the upper triangle."""
        values = [float(t) for t in tokens]
        if len(values) < 7:
            raise ValueError(f"a relative motion needs 7 pose values, got {len(values)}")
        tx, ty, tz, qx, qy, qz, qw = values[:7]
        self.measurement = SE3.from_quaternion(qw, qx, qy, qz, translation=[tx, ty, tz])
        rows, cols = np.triu_indices(self.dimension)
        for i, j, value in zip(rows, cols, values[7:]):
            self.information[i, j] = value
            self.information[j, i] = value


class EdgeEncoder3D(Edge):
    """Wheel speed observation of the velocity vertex."""

    dimension = 3

    def __init__(self, vertex: VertexVelocity, speed, information=None):
        super().__init__([vertex], np.asarray(speed, dtype=float).reshape(3).copy(), information)

    def _residual(self) -> np.ndarray:
        return self.vertices[0].estimate - self.measurement

    def jacobians(self) -> list[np.ndarray]:
        return [np.eye(3)]


class EdgeNDT(Edge):
    """NDT residual R*p + t - mu; query maps a world point to (mu, info) or None."""

    dimension = 3

    def __init__(self, vertex: VertexPose, point, query: Callable):
        super().__init__([vertex], None, None)
        self.point = np.asarray(point, dtype=float).reshape(3).copy()
        self.query = query
        self.mu = np.zeros(3)
        self.valid = False
        found = self.query(self._world_point())
        if found is not None:
            self.mu, info = np.asarray(found[0], dtype=float), np.asarray(found[1], dtype=float)
            self.information = info.copy()
            self.valid = True

    def _world_point(self) -> np.ndarray:
        return self.vertices[0].estimate.act(self.point)

    def is_valid(self) -> bool:
        return self.valid

    def _residual(self) -> np.ndarray:
        q = self._world_point()
        found = self.query(q)
        if found is None:
            self.valid = False
            self.level = 1
            return np.zeros(3)
        self.mu = np.asarray(found[0], dtype=float)
        self.information = np.asarray(found[1], dtype=float).copy()
        self.valid = True
        return q - self.mu

    def jacobians(self) -> list[np.ndarray]:
        j = np.zeros((3, 6))
        if self.valid:
            r = self.vertices[0].estimate.so3.matrix()
            j[:, 0:3] = -r @ SO3.hat(self.point)
            j[:, 3:6] = np.eye(3)
        return [j]