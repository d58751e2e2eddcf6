"""
Residual terms tying measurements to the knot window they depend on.

A factor is bound at construction to one measurement and to the keys of the
parameter blocks it reads. The estimator hands it a mapping from those keys
to current parameter values; the factor never touches the spline itself.
"""
import enum

import numpy as np

from .geometry import so3_log
from .spline_helper import evaluate_so3, evaluate_se3


class OptimizationOption(enum.IntFlag):
    NONE = 0
    OPT_SO3 = 1
    OPT_POS = 2
    OPT_GYRO_BIAS = 4
    OPT_GYRO_MAP_COEFF = 8
    OPT_SO3_SENSOR_TO_BODY = 16


# Keys of the auxiliary parameter blocks
GYRO_BIAS = 'gyro_bias'
GYRO_MAP_COEFF = 'gyro_map_coeff'
SO3_SENSOR_TO_BODY = 'so3_sensor_to_body'


def so3_key(i):
    return ('so3', i)


def pos_key(i):
    return ('pos', i)


def gyro_map_matrix(coeffs):
    """
    Upper-triangular scale/misalignment matrix from its 6 free coefficients.

    Args:
        coeffs (array_like): [m00, m11, m22, m01, m02, m12]. The diagonal holds
            per-axis scale factors, the strict upper triangle the cross-axis
            coupling.

    Returns:
        np.ndarray: (3,3) matrix with a structurally zero lower triangle.
    """
    coeffs = np.asarray(coeffs, dtype=float)
    if coeffs.shape != (6,):
        raise ValueError("Gyroscope map coefficients must be a (6,) vector.")
    M = np.diag(coeffs[:3])
    M[0, 1] = coeffs[3]
    M[0, 2] = coeffs[4]
    M[1, 2] = coeffs[5]
    return M


IDENTITY_GYRO_MAP_COEFF = np.array([1.0, 1.0, 1.0, 0.0, 0.0, 0.0])


class SE3Factor:
    """
    Compares the spline pose at the measurement time against a measured pose.

    Residual (blocks kept according to options):
        [rotation_weight * log(R_meas^T R(t)), position_weight * (p(t) - p_meas)]
    """

    def __init__(self, meta, pose, options, position_weight, rotation_weight):
        options = OptimizationOption(options)
        if not options & (OptimizationOption.OPT_SO3 | OptimizationOption.OPT_POS):
            raise ValueError("SE3 measurement options must select OPT_SO3 and/or OPT_POS.")
        window, u = meta.window(pose.timestamp)

        self._pose = pose
        self._u = u
        self._dt_inv = 1.0 / meta.dt
        self._cum_blending = meta.cumulative_blending
        self._use_rot = bool(options & OptimizationOption.OPT_SO3)
        self._use_pos = bool(options & OptimizationOption.OPT_POS)
        self._position_weight = float(position_weight)
        self._rotation_weight = float(rotation_weight)

        self._so3_keys = [so3_key(i) for i in window]
        self._pos_keys = [pos_key(i) for i in window] if self._use_pos else []

    @property
    def parameter_keys(self):
        return self._so3_keys + self._pos_keys

    @property
    def num_residuals(self):
        return 3 * (int(self._use_rot) + int(self._use_pos))

    def __call__(self, values):
        rotations = np.array([values[k] for k in self._so3_keys])
        if self._use_pos:
            knots = np.tile(np.eye(4), (len(rotations), 1, 1))
            knots[:, :3, :3] = rotations
            knots[:, :3, 3] = [values[k] for k in self._pos_keys]
            T = evaluate_se3(knots, self._u, self._dt_inv, self._cum_blending)[0]
            R, p = T[:3, :3], T[:3, 3]
        else:
            R = evaluate_so3(rotations, self._u, self._dt_inv, self._cum_blending)[0]

        residuals = []
        if self._use_rot:
            residuals.append(self._rotation_weight * so3_log(self._pose.rotation.T @ R))
        if self._use_pos:
            residuals.append(self._position_weight * (p - self._pose.translation))
        return np.concatenate(residuals)


class IMUGyroFactor:
    """
    Gyroscope residual:

        weight * (M (R_s2b omega(t)) + b - g_meas)

    omega(t) is the body-frame angular velocity of the rotation spline, M the
    scale/misalignment matrix, b the gyroscope bias and R_s2b the extra
    sensor-to-body rotation.

    Parameter blocks: [SO3 | ... | SO3 | GYRO_BIAS | GYRO_MAP_COEFF | SO3_SENSOR_TO_BODY]
    """

    def __init__(self, meta, imu_frame, weight):
        window, u = meta.window(imu_frame.timestamp)
        self._imu_frame = imu_frame
        self._u = u
        self._dt_inv = 1.0 / meta.dt
        self._cum_blending = meta.cumulative_blending
        self._weight = float(weight)
        self._so3_keys = [so3_key(i) for i in window]

    @property
    def parameter_keys(self):
        return self._so3_keys + [GYRO_BIAS, GYRO_MAP_COEFF, SO3_SENSOR_TO_BODY]

    @property
    def num_residuals(self):
        return 3

    def residual(self, rotation_knots, gyro_bias, gyro_map_coeff, so3_sensor_to_body):
        _, omega, _ = evaluate_so3(np.asarray(rotation_knots, dtype=float), self._u, self._dt_inv,
                                   self._cum_blending, need_pose=False, need_vel=True)
        M = gyro_map_matrix(gyro_map_coeff)
        predicted = M @ (so3_sensor_to_body @ omega) + gyro_bias
        return self._weight * (predicted - self._imu_frame.gyro)

    def __call__(self, values):
        return self.residual(
            [values[k] for k in self._so3_keys],
            values[GYRO_BIAS],
            values[GYRO_MAP_COEFF],
            values[SO3_SENSOR_TO_BODY],
        )
