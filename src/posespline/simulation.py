"""
Closed-form motion profiles and their spline approximations.

Each generator samples its ground-truth motion at a fixed rate over the
configured interval and fits a PoseSpline to the samples, so a constructed
generator already holds both the discrete pose sequence and the fitted
continuous trajectory.
"""
import copy
import logging
import time

import numpy as np

from .estimator import TrajectoryEstimator
from .factors import OptimizationOption
from .geometry import PoseStamped, make_pose, rotation_from_axes
from .trajectory import PoseSpline, _as_transform

logger = logging.getLogger(__name__)


def _rot_x(angle):
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[1.0, 0.0, 0.0], [0.0, c, -s], [0.0, s, c]])


def _rot_y(angle):
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[c, 0.0, s], [0.0, 1.0, 0.0], [-s, 0.0, c]])


def _rot_z(angle):
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


def _as_point(p, name):
    p = np.array(p, dtype=float)
    if p.shape != (3,):
        raise ValueError(f"{name} must be a 3D point.")
    return p


def _orbit_pose(position, t):
    """
    Pose on a vertical-axis orbit: y looks at the origin, x is the horizontal
    tangent of the circle, z = x cross y.
    """
    y_axis = -position / np.linalg.norm(position)
    x_axis = np.array([-position[1], position[0], 0.0])
    x_axis /= np.linalg.norm(x_axis)
    z_axis = np.cross(x_axis, y_axis)
    return PoseStamped(rotation_from_axes(x_axis, y_axis, z_axis), position, t)


def _travel_rotation(direction):
    """Frame with x along direction and y horizontal."""
    x_axis = direction / np.linalg.norm(direction)
    y_axis = np.array([-x_axis[1], x_axis[0], 0.0])
    if np.linalg.norm(y_axis) < 1e-9:
        # Vertical travel: any horizontal y keeps the frame right-handed
        y_axis = np.array([0.0, 1.0, 0.0])
    y_axis /= np.linalg.norm(y_axis)
    return rotation_from_axes(x_axis, y_axis, np.cross(x_axis, y_axis))


class SimuTrajectory:
    """
    Base class of the motion generators.

    Subclasses set their own parameters and then call this constructor, which
    samples pose_at() every 1 / hz over the spline interval and fits the
    spline (knot spacing 2 / hz) to the samples.
    """
    __array_ufunc__ = None

    def __init__(self, start_time, end_time, hz, degree=3):
        if not hz > 0:
            raise ValueError("hz must be positive.")
        self._hz = float(hz)
        self._start_time = float(start_time)
        self._end_time = float(end_time)
        self._trajectory = PoseSpline(2.0 / self._hz, start_time, end_time, degree)
        self._pose_sequence = []
        self._summary = None
        self._simulate()

    @property
    def pose_sequence(self):
        return list(self._pose_sequence)

    @property
    def trajectory(self):
        return self._trajectory

    @property
    def hz(self):
        return self._hz

    @property
    def summary(self):
        """SolveSummary of the fit performed at construction."""
        return self._summary

    def pose_at(self, t):
        raise NotImplementedError

    def _simulate(self):
        step = 1.0 / self._hz
        t0, t1 = self._trajectory.min_time, self._trajectory.max_time
        i = 0
        while t0 + i * step < t1:
            self._pose_sequence.append(self.pose_at(t0 + i * step))
            i += 1
        self._summary = self._estimate()

    def _estimate(self):
        estimator = TrajectoryEstimator.create(self._trajectory)
        estimator.initialize_knots(self._pose_sequence)
        for pose in self._pose_sequence:
            estimator.add_se3_measurement(
                pose, OptimizationOption.OPT_SO3 | OptimizationOption.OPT_POS, 1.0, 1.0)
        summary = estimator.solve()
        logger.info("%s fitted to %d poses.", type(self).__name__, len(self._pose_sequence))
        return summary

    def _transformed(self, spline, pose_map):
        new = copy.copy(self)
        new._trajectory = spline
        new._pose_sequence = [pose_map(p) for p in self._pose_sequence]
        return new

    def __matmul__(self, other):
        """generator @ T: right-multiplies the poses and knots by T."""
        if isinstance(other, (SimuTrajectory, PoseSpline)):
            return NotImplemented
        T = _as_transform(other)
        return self._transformed(self._trajectory @ T, lambda p: p.right_multiply(T))

    def __rmatmul__(self, other):
        """T @ generator: left-multiplies the poses and knots by T."""
        T = _as_transform(other)
        return self._transformed(T @ self._trajectory, lambda p: p.left_multiply(T))

    def __invert__(self):
        return self._transformed(~self._trajectory, PoseStamped.inverse)


class SimuCircularMotion(SimuTrajectory):
    """Horizontal circle of the given radius around the origin, 1 rad per time unit."""

    def __init__(self, radius, start_time=0.0, end_time=2 * np.pi, hz=10.0, degree=3):
        if not radius > 0:
            raise ValueError("radius must be positive.")
        self._radius = float(radius)
        super().__init__(start_time, end_time, hz, degree)

    def pose_at(self, t):
        return _orbit_pose(np.array([np.cos(t) * self._radius, np.sin(t) * self._radius, 0.0]), t)


class SimuSpiralMotion(SimuTrajectory):
    """Circular motion climbing height_each_circle per full turn."""

    def __init__(self, radius, height_each_circle, start_time=0.0, end_time=4 * np.pi, hz=10.0, degree=3):
        if not radius > 0:
            raise ValueError("radius must be positive.")
        self._radius = float(radius)
        self._height_each_circle = float(height_each_circle)
        super().__init__(start_time, end_time, hz, degree)

    def pose_at(self, t):
        position = np.array([
            np.cos(t) * self._radius,
            np.sin(t) * self._radius,
            t / (2.0 * np.pi) * self._height_each_circle,
        ])
        return _orbit_pose(position, t)


class SimuWaveMotion(SimuTrajectory):
    """Circular motion whose height oscillates once per time unit."""

    def __init__(self, radius, height, start_time=0.0, end_time=2 * np.pi, hz=10.0, degree=3):
        if not radius > 0:
            raise ValueError("radius must be positive.")
        self._radius = float(radius)
        self._height = float(height)
        super().__init__(start_time, end_time, hz, degree)

    def pose_at(self, t):
        position = np.array([
            np.cos(t) * self._radius,
            np.sin(t) * self._radius,
            np.sin(2.0 * np.pi * t) * self._height,
        ])
        return _orbit_pose(position, t)


class SimuUniformLinearMotion(SimuTrajectory):
    """Constant velocity from `from_point` (at start_time) to `to_point` (at end_time)."""

    def __init__(self, from_point, to_point, start_time=0.0, end_time=10.0, hz=10.0, degree=3):
        self._from = _as_point(from_point, "from_point")
        self._to = _as_point(to_point, "to_point")
        if np.allclose(self._from, self._to):
            raise ValueError("from_point and to_point must differ.")
        self._rotation = _travel_rotation(self._to - self._from)
        self._duration = float(end_time) - float(start_time)
        super().__init__(start_time, end_time, hz, degree)

    def pose_at(self, t):
        ratio = (t - self._start_time) / self._duration
        return PoseStamped(self._rotation, self._from + (self._to - self._from) * ratio, t)


class SimuUniformAcceleratedMotion(SimuTrajectory):
    """
    Starts at rest at `from_point` and reaches `to_point` at end_time under
    constant acceleration a = 2 (to - from) / T^2.
    """

    def __init__(self, from_point, to_point, start_time=0.0, end_time=10.0, hz=10.0, degree=3):
        self._from = _as_point(from_point, "from_point")
        self._to = _as_point(to_point, "to_point")
        if np.allclose(self._from, self._to):
            raise ValueError("from_point and to_point must differ.")
        self._rotation = _travel_rotation(self._to - self._from)
        duration = float(end_time) - float(start_time)
        if not duration > 0:
            raise ValueError("end_time must be after start_time.")
        self._acceleration = 2.0 * (self._to - self._from) / duration ** 2
        super().__init__(start_time, end_time, hz, degree)

    @property
    def acceleration(self):
        return self._acceleration.copy()

    def pose_at(self, t):
        dt = t - self._start_time
        return PoseStamped(self._rotation, self._from + 0.5 * self._acceleration * dt * dt, t)


class SimuDrunkardMotion(SimuTrajectory):
    """
    Random walk: every sample perturbs the previous pose by a uniform random
    stride per axis and a random rotation Rx Ry Rz composed onto the previous
    orientation.

    pose_at() is stateful and must be called with increasing times; the
    generator owns its numpy Generator and is not thread-safe.
    """

    def __init__(self, origin, max_stride, max_angle_deg, start_time=0.0, end_time=10.0, hz=10.0,
                 degree=3, seed=None):
        if max_stride < 0 or max_angle_deg < 0:
            raise ValueError("max_stride and max_angle_deg must be non-negative.")
        self._max_stride = float(max_stride)
        self._max_angle = np.deg2rad(max_angle_deg)
        self._seed = time.monotonic_ns() if seed is None else seed
        self._rng = np.random.default_rng(self._seed)
        self._last_state = make_pose(np.eye(3), _as_point(origin, "origin"))
        super().__init__(start_time, end_time, hz, degree)

    @property
    def seed(self):
        return self._seed

    def _transformed(self, spline, pose_map):
        new = super()._transformed(spline, pose_map)
        # Transformed copies continue the walk on their own engine
        new._rng = copy.deepcopy(self._rng)
        new._last_state = self._last_state.copy()
        return new

    def pose_at(self, t):
        stride = self._rng.uniform(-self._max_stride, self._max_stride, size=3)
        angle_z, angle_y, angle_x = self._rng.uniform(-self._max_angle, self._max_angle, size=3)
        delta_rotation = _rot_x(angle_x) @ _rot_y(angle_y) @ _rot_z(angle_z)

        state = self._last_state.copy()
        state[:3, 3] += stride
        state[:3, :3] = delta_rotation @ state[:3, :3]
        self._last_state = state
        return PoseStamped.from_matrix(state, t)
