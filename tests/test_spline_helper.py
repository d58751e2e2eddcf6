import pytest
import numpy as np
from posespline.geometry import so3_exp, make_pose
from posespline.spline_helper import (
    OutOfRangeError, SplineMeta, base_coefficients, compute_blending_matrix,
    compute_spline_index, evaluate_se3, evaluate_so3,
)

CUBIC = np.array([
    [1, -3, 3, -1],
    [4, 0, -6, 3],
    [1, 3, 3, -3],
    [0, 0, 0, 1],
], dtype=float) / 6.0


def test_cubic_blending_matrix():
    assert np.allclose(compute_blending_matrix(4, cumulative=False), CUBIC)
    cumulative = compute_blending_matrix(4, cumulative=True)
    expected = np.array([
        [6, 0, 0, 0],
        [5, 3, -3, 1],
        [1, 3, 3, -2],
        [0, 0, 0, 1],
    ], dtype=float) / 6.0
    assert np.allclose(cumulative, expected)


@pytest.mark.parametrize("order", [2, 3, 4, 5, 6])
def test_blending_partition_of_unity(order):
    M = compute_blending_matrix(order, cumulative=False)
    for u in np.linspace(0.0, 0.999, 7):
        weights = M @ base_coefficients(order, 0, u)
        assert np.isclose(weights.sum(), 1.0)
        assert np.all(weights >= -1e-12)
    # The first cumulative weight is always 1: the base knot is never scaled
    C = compute_blending_matrix(order, cumulative=True)
    assert np.allclose(C[0], np.eye(order)[0])


def test_blending_matrix_rejects_small_order():
    with pytest.raises(ValueError, match="at least 2"):
        compute_blending_matrix(1, cumulative=False)


def test_base_coefficients():
    assert np.allclose(base_coefficients(4, 0, 0.5), [1, 0.5, 0.25, 0.125])
    assert np.allclose(base_coefficients(4, 1, 0.5), [0, 1, 1.0, 0.75])
    assert np.allclose(base_coefficients(4, 2, 0.5), [0, 0, 2, 3.0])
    assert np.allclose(base_coefficients(4, 3, 0.5), [0, 0, 0, 6])


def test_compute_spline_index_values():
    assert compute_spline_index(1.0, 1.0, 0.1, 10) == (0, 0.0)
    base_index, u = compute_spline_index(1.25, 1.0, 0.1, 10)
    assert base_index == 2
    assert np.isclose(u, 0.5)


def test_compute_spline_index_consistency():
    start, dt, num_segments = -0.3, 0.07, 25
    for t in np.linspace(start, start + num_segments * dt, 1000, endpoint=False):
        base_index, u = compute_spline_index(t, start, dt, num_segments)
        assert 0 <= base_index < num_segments
        assert 0.0 <= u < 1.0
        assert np.isclose(start + (base_index + u) * dt, t)


def test_compute_spline_index_boundaries():
    start, dt, num_segments = 0.0, 0.1, 10
    end = start + num_segments * dt
    base_index, u = compute_spline_index(np.nextafter(end, 0.0), start, dt, num_segments)
    assert base_index == num_segments - 1
    assert u < 1.0
    with pytest.raises(OutOfRangeError, match="outside the spline validity interval"):
        compute_spline_index(end, start, dt, num_segments)
    with pytest.raises(OutOfRangeError):
        compute_spline_index(start - 1e-12, start, dt, num_segments)
    # Callers catching ValueError also see time errors
    with pytest.raises(ValueError):
        compute_spline_index(100.0, start, dt, num_segments)


def test_spline_meta():
    meta = SplineMeta(start_time=2.0, dt=0.5, num_knots=7, degree=3)
    assert meta.order == 4
    assert meta.num_segments == 4
    assert meta.min_time == 2.0
    assert meta.max_time == 4.0
    window, u = meta.window(3.2)
    assert list(window) == [2, 3, 4, 5]
    assert np.isclose(u, 0.4)
    assert list(meta.window(2.0)[0]) == [0, 1, 2, 3]
    assert meta.cumulative_blending is meta.cumulative_blending # Cached
    with pytest.raises(OutOfRangeError):
        meta.window(4.0)


def test_evaluate_se3_reproduces_pure_translation():
    # Knots on a line: the cubic B-spline reproduces it exactly, shifted by one knot
    direction = np.array([1.0, 2.0, -1.0])
    knots = np.array([make_pose(np.eye(3), j * direction) for j in range(4)])
    cum_blending = compute_blending_matrix(4, cumulative=True)
    dt = 0.5
    for u in [0.0, 0.3, 0.9]:
        T, twist, twist_dot = evaluate_se3(knots, u, 1.0 / dt, cum_blending, need_vel=True, need_accel=True)
        assert np.allclose(T[:3, :3], np.eye(3))
        assert np.allclose(T[:3, 3], (1.0 + u) * direction)
        assert np.allclose(twist, np.concatenate((direction / dt, np.zeros(3))))
        assert np.allclose(twist_dot, 0.0)


def test_evaluate_so3_constant_rate():
    dt, rate = 0.2, 0.7
    axis = np.array([0.0, 0.6, 0.8])
    knots = np.array([so3_exp(rate * dt * j * axis) for j in range(4)])
    C = compute_blending_matrix(4, cumulative=True)
    R, omega, alpha = evaluate_so3(knots, 0.4, 1.0 / dt, C, need_pose=True, need_vel=True, need_accel=True)
    assert np.allclose(R, so3_exp(rate * dt * 1.4 * axis))
    assert np.allclose(omega, rate * axis)
    assert np.allclose(alpha, 0.0, atol=1e-12)


def test_evaluate_so3_only_requested_outputs():
    knots = np.tile(np.eye(3), (4, 1, 1))
    C = compute_blending_matrix(4, cumulative=True)
    R, omega, alpha = evaluate_so3(knots, 0.5, 10.0, C)
    assert np.allclose(R, np.eye(3))
    assert omega is None and alpha is None
    R, omega, alpha = evaluate_so3(knots, 0.5, 10.0, C, need_pose=False, need_vel=True)
    assert R is None and alpha is None
    assert np.allclose(omega, 0.0)


def test_evaluate_se3_rotation_part_matches_so3():
    rng = np.random.default_rng(7)
    knots = np.array([make_pose(so3_exp(rng.normal(scale=0.3, size=3)), rng.normal(size=3))
                      for _ in range(4)])
    C = compute_blending_matrix(4, cumulative=True)
    T, twist, _ = evaluate_se3(knots, 0.35, 5.0, C, need_vel=True)
    R, omega, _ = evaluate_so3(knots[:, :3, :3], 0.35, 5.0, C, need_vel=True)
    assert np.allclose(T[:3, :3], R)
    assert np.allclose(twist[3:], omega)
    # Segment start sits on the blend of the first three knots, not on a knot
    T0, _, _ = evaluate_se3(knots, 0.0, 5.0, C)
    assert np.allclose(T0[3], [0, 0, 0, 1])
