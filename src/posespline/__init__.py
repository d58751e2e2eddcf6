from .geometry import PoseStamped, SO3Manifold, EuclideanManifold
from .spline_helper import OutOfRangeError, SplineMeta, compute_spline_index
from .trajectory import PoseSpline, PoseSampling
from .imu import IMUFrame
from .factors import OptimizationOption, SE3Factor, IMUGyroFactor, gyro_map_matrix
from .estimator import TrajectoryEstimator, SolverOptions, SolveSummary
from .simulation import (
    SimuTrajectory, SimuCircularMotion, SimuSpiralMotion, SimuWaveMotion,
    SimuUniformLinearMotion, SimuUniformAcceleratedMotion, SimuDrunkardMotion,
)

__version__ = "0.1.0"
