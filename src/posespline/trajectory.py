import numpy as np

from .geometry import PoseStamped, pose_inverse
from .spline_helper import (
    SplineMeta, compute_blending_matrix, compute_spline_index, evaluate_se3
)


def _as_transform(T):
    T = np.asarray(T, dtype=float)
    if T.shape != (4, 4):
        raise ValueError("Rigid transform must be a 4x4 numpy array.")
    return T


class PoseSampling:
    """
    Lazy, finite and restartable sequence of poses sampled from a spline.

    Every iteration re-evaluates the spline from min_time in steps of
    time_step, so iterating twice yields the same poses.
    """

    def __init__(self, spline, time_step):
        if time_step <= 0:
            raise ValueError("time_step must be positive.")
        self._spline = spline
        self._time_step = float(time_step)

    def times(self):
        # Integer stepping keeps the sample times free of accumulated drift
        t0 = self._spline.min_time
        i = 0
        while True:
            t = t0 + i * self._time_step
            if t >= self._spline.max_time:
                return
            yield t
            i += 1

    def __iter__(self):
        for t in self.times():
            yield PoseStamped.from_matrix(self._spline.pose(t), t)

    def __len__(self):
        return sum(1 for _ in self.times())


class PoseSpline:
    """
    Uniform cumulative B-spline on SE(3).

    Knot i is a 4x4 rigid transform located at start_time + i * dt. A segment
    is blended from degree + 1 consecutive knots, so the spline can be
    evaluated on [start_time, start_time + (num_knots - degree) * dt).
    """
    # Make numpy defer `T @ spline` to __rmatmul__
    __array_ufunc__ = None

    def __init__(self, dt, start_time, end_time, degree=3):
        """
        Args:
            dt (float): Knot spacing, must be positive.
            start_time (float): First valid query time.
            end_time (float): The validity interval covers [start_time, end_time).
            degree (int): Polynomial degree (3 = cubic).
        """
        if not dt > 0:
            raise ValueError("dt must be positive.")
        if not end_time > start_time:
            raise ValueError("end_time must be after start_time.")
        if int(degree) < 1:
            raise ValueError("degree must be at least 1.")

        self._dt = float(dt)
        self._start_time = float(start_time)
        self._degree = int(degree)

        # Small slack so an end time on the knot grid does not add a segment
        num_segments = max(1, int(np.ceil((end_time - start_time) / dt - 1e-9)))
        self._knots = np.tile(np.eye(4), (self._degree + num_segments, 1, 1))
        self._cum_blending = compute_blending_matrix(self._degree + 1, cumulative=True)

    @property
    def dt(self):
        return self._dt

    @property
    def degree(self):
        return self._degree

    @property
    def num_knots(self):
        return self._knots.shape[0]

    @property
    def min_time(self):
        return self._start_time

    @property
    def max_time(self):
        return self._start_time + (self.num_knots - self._degree) * self._dt

    def meta(self):
        return SplineMeta(self._start_time, self._dt, self.num_knots, self._degree)

    def knot_time(self, i):
        return self._start_time + i * self._dt

    def _check_index(self, i):
        if not 0 <= i < self.num_knots:
            raise IndexError(f"Knot index {i} out of range [0, {self.num_knots}).")

    def get_knot(self, i):
        self._check_index(i)
        return self._knots[i].copy()

    def set_knot(self, T, i):
        self._check_index(i)
        self._knots[i] = _as_transform(T)

    def rotation_knot(self, i):
        self._check_index(i)
        return self._knots[i, :3, :3].copy()

    def position_knot(self, i):
        self._check_index(i)
        return self._knots[i, :3, 3].copy()

    def knots(self):
        """All knots as a (num_knots, 4, 4) array (copy)."""
        return self._knots.copy()

    def window(self, t):
        return compute_spline_index(t, self._start_time, self._dt, self.num_knots - self._degree)

    def _evaluate(self, t, need_pose=True, need_vel=False, need_accel=False):
        base_index, u = self.window(t)
        window = self._knots[base_index:base_index + self._degree + 1]
        return evaluate_se3(window, u, 1.0 / self._dt, self._cum_blending,
                            need_pose=need_pose, need_vel=need_vel, need_accel=need_accel)

    def pose(self, t):
        """4x4 pose at time t."""
        return self._evaluate(t)[0]

    def rotation(self, t):
        return self.pose(t)[:3, :3]

    def position(self, t):
        return self.pose(t)[:3, 3]

    def pose_stamped(self, t):
        return PoseStamped.from_matrix(self.pose(t), t)

    def angular_velocity(self, t):
        """Angular velocity in the body frame (rad / time unit)."""
        return self._evaluate(t, need_pose=False, need_vel=True)[1][3:]

    def angular_acceleration(self, t):
        """Angular acceleration in the body frame."""
        return self._evaluate(t, need_pose=False, need_accel=True)[2][3:]

    def linear_velocity(self, t):
        """Velocity of the body origin expressed in the world frame."""
        T, twist, _ = self._evaluate(t, need_vel=True)
        return T[:3, :3] @ twist[:3]

    def linear_acceleration(self, t):
        """Acceleration of the body origin expressed in the world frame."""
        T, twist, twist_dot = self._evaluate(t, need_accel=True)
        v_body, omega = twist[:3], twist[3:]
        return T[:3, :3] @ (np.cross(omega, v_body) + twist_dot[:3])

    def sampling(self, time_step):
        return PoseSampling(self, time_step)

    def copy(self):
        new = PoseSpline.__new__(PoseSpline)
        new._dt = self._dt
        new._start_time = self._start_time
        new._degree = self._degree
        new._knots = self._knots.copy()
        new._cum_blending = self._cum_blending
        return new

    def assign(self, other):
        """
        Overwrites timing and knots with those of other, in place.

        The degree is fixed at construction, so other must have the same one.
        A TrajectoryEstimator created on this spline keeps the old timing and
        has to be re-created after an assign.
        """
        if not isinstance(other, PoseSpline):
            raise TypeError("Can only assign from another PoseSpline.")
        if other._degree != self._degree:
            raise ValueError(f"Cannot assign a degree {other._degree} spline to a degree {self._degree} spline.")
        self._dt = other._dt
        self._start_time = other._start_time
        self._knots = other._knots.copy()

    def __matmul__(self, other):
        """spline @ T: right-multiplies every knot by T."""
        if isinstance(other, PoseSpline):
            return NotImplemented
        T = _as_transform(other)
        new = self.copy()
        new._knots = self._knots @ T
        return new

    def __rmatmul__(self, other):
        """T @ spline: left-multiplies every knot by T."""
        T = _as_transform(other)
        new = self.copy()
        new._knots = T @ self._knots
        return new

    def __invert__(self):
        """~spline: inverts every knot."""
        return self.inverse()

    def inverse(self):
        new = self.copy()
        new._knots = np.array([pose_inverse(T) for T in self._knots])
        return new

    def __repr__(self):
        return (f"PoseSpline(degree={self._degree}, dt={self._dt}, knots={self.num_knots}, "
                f"interval=[{self.min_time}, {self.max_time}))")
