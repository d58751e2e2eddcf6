"""
Time indexing and evaluation kernels for uniform B-splines.

The kernels work on raw knot arrays (a window of ``degree + 1`` knots) so the
same code serves the spline object and the residuals handed to the solver.
"""
import numpy as np
from math import comb, factorial

from .geometry import so3_exp, so3_log, se3_exp, se3_log, se3_adjoint, se3_ad, pose_inverse


class OutOfRangeError(ValueError):
    """Raised when a time query falls outside a spline's validity interval."""


def compute_blending_matrix(order, cumulative):
    """
    Builds the uniform B-spline basis matrix.

    Row j holds the polynomial coefficients (in increasing powers of u) of the
    basis function weighting knot j of the active window. The cumulative form
    sums every row with all rows below it, which is the weighting needed when
    the spline is written as a chain of increments between consecutive knots.

    Args:
        order (int): Number of knots in a window (degree + 1).
        cumulative (bool): Return the cumulative basis.

    Returns:
        np.ndarray: (order, order) matrix.
    """
    if order < 2:
        raise ValueError("order must be at least 2.")
    n = order
    M = np.zeros((n, n))
    for i in range(n):
        for j in range(n):
            s_sum = 0.0
            for s in range(j, n):
                s_sum += (-1) ** (s - j) * comb(n, s - j) * (n - s - 1) ** (n - 1 - i)
            M[j, i] = comb(n - 1, n - 1 - i) * s_sum
    M /= factorial(n - 1)

    if cumulative:
        for i in range(n):
            for j in range(i + 1, n):
                M[i, :] += M[j, :]
    return M


def base_coefficients(order, derivative, u):
    """
    d^n/du^n of the monomial vector [1, u, u^2, ..., u^(order-1)].
    """
    p = np.zeros(order)
    for i in range(derivative, order):
        p[i] = factorial(i) / factorial(i - derivative) * u ** (i - derivative)
    return p


def compute_spline_index(t, start_time, dt, num_segments):
    """
    Maps an absolute time onto (index of the first knot of the window, u).

    Args:
        t (float): Query time.
        start_time (float): Time of the first knot.
        dt (float): Knot spacing.
        num_segments (int): Number of evaluable segments (num_knots - degree).

    Returns:
        tuple: (base_index (int), u (float in [0, 1)))
    """
    end_time = start_time + num_segments * dt
    if not (start_time <= t < end_time):
        raise OutOfRangeError(
            f"Time {t} is outside the spline validity interval [{start_time}, {end_time})."
        )
    s = (t - start_time) / dt
    base_index = int(np.floor(s))
    if base_index >= num_segments:
        # t < end_time but the division rounded up onto the boundary
        base_index = num_segments - 1
    u = s - base_index
    if u >= 1.0:
        u = np.nextafter(1.0, 0.0)
    return base_index, u


class SplineMeta:
    """
    Timing of a uniform spline without its knot values.

    Residuals keep one of these so they can locate their knot window without
    holding on to the spline itself.
    """

    def __init__(self, start_time, dt, num_knots, degree):
        self.start_time = float(start_time)
        self.dt = float(dt)
        self.num_knots = int(num_knots)
        self.degree = int(degree)
        self._cumulative_blending = None

    @property
    def cumulative_blending(self):
        if self._cumulative_blending is None:
            self._cumulative_blending = compute_blending_matrix(self.order, cumulative=True)
        return self._cumulative_blending

    @property
    def order(self):
        return self.degree + 1

    @property
    def num_segments(self):
        return self.num_knots - self.degree

    @property
    def min_time(self):
        return self.start_time

    @property
    def max_time(self):
        return self.start_time + self.num_segments * self.dt

    def compute_spline_index(self, t):
        return compute_spline_index(t, self.start_time, self.dt, self.num_segments)

    def window(self, t):
        """Knot indices of the active window at t, and the local parameter u."""
        base_index, u = self.compute_spline_index(t)
        return range(base_index, base_index + self.order), u


def evaluate_so3(knots, u, dt_inv, cum_blending, need_pose=True, need_vel=False, need_accel=False):
    """
    Evaluates a cumulative B-spline on SO(3).

    R(u) = R_0 * prod_i exp(lambda_i(u) * d_i), with d_i = log(R_{i-1}^T R_i).

    Args:
        knots (np.ndarray): (order, 3, 3) rotation knots of the active window.
        u (float): Normalized time inside the segment.
        dt_inv (float): 1 / dt, scales the time derivatives.
        cum_blending (np.ndarray): Cumulative blending matrix.

    Returns:
        tuple: (R or None, body angular velocity or None,
                body angular acceleration or None)
    """
    order = cum_blending.shape[0]
    coeff = cum_blending @ base_coefficients(order, 0, u)
    need_vel = need_vel or need_accel
    if need_vel:
        dcoeff = dt_inv * (cum_blending @ base_coefficients(order, 1, u))
    if need_accel:
        ddcoeff = dt_inv * dt_inv * (cum_blending @ base_coefficients(order, 2, u))

    R = np.array(knots[0], dtype=float)
    omega = np.zeros(3)
    alpha = np.zeros(3)
    for i in range(1, order):
        delta = so3_log(knots[i - 1].T @ knots[i])
        A = so3_exp(coeff[i] * delta)
        if need_pose:
            R = R @ A
        if need_vel:
            omega = A.T @ omega + dcoeff[i] * delta
        if need_accel:
            alpha = A.T @ alpha + ddcoeff[i] * delta + dcoeff[i] * np.cross(omega, delta)

    return (R if need_pose else None,
            omega if need_vel else None,
            alpha if need_accel else None)


def evaluate_se3(knots, u, dt_inv, cum_blending, need_pose=True, need_vel=False, need_accel=False):
    """
    Evaluates a cumulative B-spline on SE(3).

    Same recursion as evaluate_so3 with twists [v, omega] and the 6x6 adjoint.
    The body twist derivative picks up the bracket term
    dlambda_i * ad(xi_i) d_i from differentiating Ad(A_i^-1).

    Args:
        knots (np.ndarray): (order, 4, 4) knot transforms of the active window.

    Returns:
        tuple: (T or None, body twist or None, body twist derivative or None)
    """
    order = cum_blending.shape[0]
    coeff = cum_blending @ base_coefficients(order, 0, u)
    need_vel = need_vel or need_accel
    if need_vel:
        dcoeff = dt_inv * (cum_blending @ base_coefficients(order, 1, u))
    if need_accel:
        ddcoeff = dt_inv * dt_inv * (cum_blending @ base_coefficients(order, 2, u))

    T = np.array(knots[0], dtype=float)
    twist = np.zeros(6)
    twist_dot = np.zeros(6)
    for i in range(1, order):
        delta = se3_log(pose_inverse(knots[i - 1]) @ knots[i])
        A = se3_exp(coeff[i] * delta)
        if need_pose:
            T = T @ A
        if need_vel:
            Ad_inv = se3_adjoint(pose_inverse(A))
            twist = Ad_inv @ twist + dcoeff[i] * delta
        if need_accel:
            twist_dot = (Ad_inv @ twist_dot + ddcoeff[i] * delta
                         + dcoeff[i] * (se3_ad(twist) @ delta))

    return (T if need_pose else None,
            twist if need_vel else None,
            twist_dot if need_accel else None)
