import logging
from collections import namedtuple

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from .factors import (
    GYRO_BIAS, GYRO_MAP_COEFF, IDENTITY_GYRO_MAP_COEFF, SO3_SENSOR_TO_BODY,
    IMUGyroFactor, OptimizationOption, SE3Factor,
)
from .geometry import EuclideanManifold, SO3Manifold, make_pose, so3_exp, so3_log

logger = logging.getLogger(__name__)

DEFAULT_POSE_OPTIONS = OptimizationOption.OPT_SO3 | OptimizationOption.OPT_POS
DEFAULT_GYRO_OPTIONS = OptimizationOption.OPT_SO3 | OptimizationOption.OPT_GYRO_BIAS


SolverOptions = namedtuple(
    'SolverOptions',
    ['max_nfev', 'ftol', 'xtol', 'gtol', 'loss', 'verbose'],
    defaults=(500, 1e-8, 1e-8, 1e-8, 'linear', 0),
)


class SolveSummary(namedtuple('SolveSummary', [
        'initial_cost', 'final_cost', 'iterations', 'num_residuals',
        'num_parameters', 'converged', 'message'])):
    __slots__ = ()

    def brief_report(self):
        status = "CONVERGENCE" if self.converged else "NO_CONVERGENCE"
        return (f"least_squares: {self.num_parameters} parameters, {self.num_residuals} residuals, "
                f"iterations: {self.iterations}, initial cost: {self.initial_cost:.6e}, "
                f"final cost: {self.final_cost:.6e}, termination: {status} ({self.message})")


def interpolate_pose_sequence(pose_seq, query_times):
    """
    Interpolates a discrete pose sequence at query_times.

    Rotation is interpolated along the geodesic between the bracketing poses,
    translation linearly; queries outside the sequence are clamped to its
    first/last pose.

    Args:
        pose_seq (list): PoseStamped samples (any order).
        query_times (array_like): Times to interpolate at.

    Returns:
        list: 4x4 poses, one per query time.
    """
    if len(pose_seq) == 0:
        raise ValueError("At least one pose is required for interpolation.")
    ordered = sorted(pose_seq, key=lambda p: p.timestamp)
    stamps = np.array([p.timestamp for p in ordered])

    poses = []
    for t_query in query_times:
        # imu-style bracketing: stamps[idx-1] <= t_query < stamps[idx]
        idx = np.searchsorted(stamps, t_query, side='right')
        if idx == 0:
            poses.append(ordered[0].matrix())
            continue
        if idx == len(stamps):
            poses.append(ordered[-1].matrix())
            continue

        p1, p2 = ordered[idx - 1], ordered[idx]
        span = p2.timestamp - p1.timestamp
        alpha = 0.0 if np.isclose(span, 0.0) else np.clip((t_query - p1.timestamp) / span, 0.0, 1.0)
        R = p1.rotation @ so3_exp(alpha * so3_log(p1.rotation.T @ p2.rotation))
        p = (1.0 - alpha) * p1.translation + alpha * p2.translation
        poses.append(make_pose(R, p))
    return poses


class TrajectoryEstimator:
    """
    Fits the knots of a PoseSpline (plus gyroscope calibration blocks) to
    measurements by nonlinear least squares.

    The estimator shares the spline with its caller and writes the solution
    back into it; the caller must not mutate or evaluate the spline from
    another thread while solve() runs. Each residual references only the
    degree + 1 knots of its window, which keeps the Jacobian sparse.
    """

    def __init__(self, spline, gyro_bias=None, gyro_map_coeff=None, so3_sensor_to_body=None):
        self._spline = spline
        self._meta = spline.meta()

        self._gyro_bias = np.zeros(3) if gyro_bias is None else np.array(gyro_bias, dtype=float)
        self._gyro_map_coeff = (IDENTITY_GYRO_MAP_COEFF.copy() if gyro_map_coeff is None
                                else np.array(gyro_map_coeff, dtype=float))
        self._so3_sensor_to_body = (np.eye(3) if so3_sensor_to_body is None
                                    else np.array(so3_sensor_to_body, dtype=float))
        if self._gyro_bias.shape != (3,):
            raise ValueError("gyro_bias must be a (3,) vector.")
        if self._gyro_map_coeff.shape != (6,):
            raise ValueError("gyro_map_coeff must be a (6,) vector.")
        if self._so3_sensor_to_body.shape != (3, 3):
            raise ValueError("so3_sensor_to_body must be a (3,3) rotation matrix.")

        self._factors = []
        self._free_keys = set()

    @classmethod
    def create(cls, spline, **kwargs):
        return cls(spline, **kwargs)

    @property
    def spline(self):
        return self._spline

    @property
    def gyro_bias(self):
        return self._gyro_bias.copy()

    @property
    def gyro_map_coeff(self):
        return self._gyro_map_coeff.copy()

    @property
    def so3_sensor_to_body(self):
        return self._so3_sensor_to_body.copy()

    @property
    def num_residual_blocks(self):
        return len(self._factors)

    def add_se3_measurement(self, pose, options=DEFAULT_POSE_OPTIONS, position_weight=1.0, rotation_weight=1.0):
        """
        Adds a pose residual at pose.timestamp.

        Args:
            pose (PoseStamped): Measured pose.
            options (OptimizationOption): OPT_SO3 and/or OPT_POS, selecting the
                rotation and position parts of the residual.
            position_weight (float): Weight of the position residual.
            rotation_weight (float): Weight of the rotation residual.

        Raises:
            OutOfRangeError: If the timestamp is outside the spline interval.
        """
        factor = SE3Factor(self._meta, pose, options, position_weight, rotation_weight)
        self._factors.append(factor)
        self._free_keys.update(factor.parameter_keys)
        return factor

    def add_gyro_measurement(self, imu_frame, weight=1.0, options=DEFAULT_GYRO_OPTIONS):
        """
        Adds a gyroscope residual at imu_frame.timestamp.

        options decide which of the referenced blocks the solver may change:
        OPT_SO3 frees the window's rotation knots, OPT_GYRO_BIAS,
        OPT_GYRO_MAP_COEFF and OPT_SO3_SENSOR_TO_BODY free the corresponding
        calibration blocks. Blocks left out are held constant unless another
        residual frees them.
        """
        options = OptimizationOption(options)
        factor = IMUGyroFactor(self._meta, imu_frame, weight)
        self._factors.append(factor)

        keys = factor.parameter_keys
        if options & OptimizationOption.OPT_SO3:
            self._free_keys.update(keys[:self._meta.order])
        if options & OptimizationOption.OPT_GYRO_BIAS:
            self._free_keys.add(GYRO_BIAS)
        if options & OptimizationOption.OPT_GYRO_MAP_COEFF:
            self._free_keys.add(GYRO_MAP_COEFF)
        if options & OptimizationOption.OPT_SO3_SENSOR_TO_BODY:
            self._free_keys.add(SO3_SENSOR_TO_BODY)
        return factor

    def initialize_knots(self, pose_seq):
        """
        Seeds every knot with the pose sequence interpolated at the centre of
        the knot's support, giving the solver a warm start instead of identity.
        """
        half_support = (self._spline.degree - 1) / 2.0
        centres = [self._spline.knot_time(i - half_support) for i in range(self._spline.num_knots)]
        for i, T in enumerate(interpolate_pose_sequence(pose_seq, centres)):
            self._spline.set_knot(T, i)

    def _manifold(self, key):
        if key == SO3_SENSOR_TO_BODY or (isinstance(key, tuple) and key[0] == 'so3'):
            return SO3Manifold
        if key == GYRO_MAP_COEFF:
            return EuclideanManifold(6)
        return EuclideanManifold(3)

    def _value(self, key):
        if key == GYRO_BIAS:
            return self._gyro_bias.copy()
        if key == GYRO_MAP_COEFF:
            return self._gyro_map_coeff.copy()
        if key == SO3_SENSOR_TO_BODY:
            return self._so3_sensor_to_body.copy()
        kind, i = key
        if kind == 'so3':
            return self._spline.rotation_knot(i)
        return self._spline.position_knot(i)

    def _write_back(self, values):
        for key, value in values.items():
            if key == GYRO_BIAS:
                self._gyro_bias = value
            elif key == GYRO_MAP_COEFF:
                self._gyro_map_coeff = value
            elif key == SO3_SENSOR_TO_BODY:
                self._so3_sensor_to_body = value
            else:
                kind, i = key
                knot = self._spline.get_knot(i)
                if kind == 'so3':
                    knot[:3, :3] = value
                else:
                    knot[:3, 3] = value
                self._spline.set_knot(knot, i)

    def solve(self, options=None):
        """
        Minimizes the total residual energy over all free parameter blocks.

        Rotation blocks are optimized through SO3Manifold (the solver sees a
        tangent-space delta per block), everything else as plain vectors.
        The best iterate is written back into the spline and calibration
        blocks even when the solver stops without converging.

        Returns:
            SolveSummary
        """
        options = options or SolverOptions()

        referenced = []
        seen = set()
        for factor in self._factors:
            for key in factor.parameter_keys:
                if key not in seen:
                    seen.add(key)
                    referenced.append(key)
        free = [key for key in referenced if key in self._free_keys]
        base = {key: self._value(key) for key in referenced}
        manifolds = {key: self._manifold(key) for key in free}

        offsets = {}
        num_parameters = 0
        for key in free:
            size = manifolds[key].tangent_size
            offsets[key] = slice(num_parameters, num_parameters + size)
            num_parameters += size
        num_residuals = sum(f.num_residuals for f in self._factors)

        def unpack(x):
            values = dict(base)
            for key in free:
                values[key] = manifolds[key].plus(base[key], x[offsets[key]])
            return values

        def residuals(x):
            values = unpack(x)
            return np.concatenate([factor(values) for factor in self._factors])

        if num_residuals == 0:
            return SolveSummary(0.0, 0.0, 0, 0, 0, True, "No residual blocks.")

        x0 = np.zeros(num_parameters)
        r0 = residuals(x0)
        initial_cost = 0.5 * float(r0 @ r0)
        if num_parameters == 0:
            return SolveSummary(initial_cost, initial_cost, 0, num_residuals, 0, True,
                                "All parameter blocks are constant.")

        sparsity = lil_matrix((num_residuals, num_parameters), dtype=bool)
        row = 0
        for factor in self._factors:
            rows = slice(row, row + factor.num_residuals)
            for key in factor.parameter_keys:
                if key in offsets:
                    sparsity[rows, offsets[key]] = 1
            row += factor.num_residuals

        logger.debug("Solving %d residuals over %d parameters (%d blocks).",
                     num_residuals, num_parameters, len(free))
        result = least_squares(
            residuals,
            x0,
            jac_sparsity=sparsity,
            method='trf',
            loss=options.loss,
            ftol=options.ftol,
            xtol=options.xtol,
            gtol=options.gtol,
            max_nfev=options.max_nfev,
            verbose=options.verbose,
        )
        self._write_back(unpack(result.x))

        iterations = result.njev if result.njev is not None else result.nfev
        summary = SolveSummary(
            initial_cost=initial_cost,
            final_cost=float(result.cost),
            iterations=int(iterations),
            num_residuals=num_residuals,
            num_parameters=num_parameters,
            converged=bool(result.status > 0),
            message=result.message,
        )
        if summary.converged:
            logger.info(summary.brief_report())
        else:
            logger.warning("Trajectory estimation did not converge: %s", summary.brief_report())
        return summary
