import numpy as np
from collections import namedtuple
from scipy.spatial.transform import Rotation

# Below this angle (rad) the closed forms switch to their Taylor expansions
_SMALL_ANGLE = 1e-6
# Above pi minus this margin so3_log recovers the axis from the symmetric part
_NEAR_PI_MARGIN = 1e-2


def _check_vector(vec, size, name):
    if not isinstance(vec, np.ndarray) or vec.shape != (size,):
        raise ValueError(f"Input {name} must be a ({size},) numpy array.")


def _check_matrix(mat, size, name):
    if not isinstance(mat, np.ndarray) or mat.shape != (size, size):
        raise ValueError(f"Input {name} must be a ({size},{size}) numpy array.")


# SO(3) operations

def so3_hat(omega):
    """
    Maps a 3-vector omega to its corresponding skew-symmetric matrix (so(3)).
    omega: (3,) array
    Returns: (3,3) skew-symmetric matrix
    """
    _check_vector(omega, 3, "omega")
    return np.array([
        [0.0, -omega[2], omega[1]],
        [omega[2], 0.0, -omega[0]],
        [-omega[1], omega[0], 0.0]
    ])


def so3_vee(Omega):
    """
    Maps a skew-symmetric matrix Omega (so(3)) to its corresponding 3-vector.
    Omega: (3,3) skew-symmetric matrix
    Returns: (3,) array
    """
    _check_matrix(Omega, 3, "Omega")
    if not np.allclose(Omega, -Omega.T, atol=1e-7):
        raise ValueError("Input Omega must be skew-symmetric.")
    return np.array([Omega[2, 1], Omega[0, 2], Omega[1, 0]])


def so3_exp(phi):
    """
    Exponential map from a rotation vector to a rotation matrix (Rodrigues).

    Args:
        phi (np.ndarray): (3,) rotation vector (axis scaled by angle, rad).

    Returns:
        np.ndarray: (3,3) rotation matrix.
    """
    _check_vector(phi, 3, "phi")
    theta_sq = float(phi @ phi)
    theta = np.sqrt(theta_sq)
    Phi = so3_hat(phi)
    if theta < _SMALL_ANGLE:
        # Second order expansion, exact to machine precision at this scale
        return np.eye(3) + Phi + 0.5 * Phi @ Phi
    a = np.sin(theta) / theta
    b = (1.0 - np.cos(theta)) / theta_sq
    return np.eye(3) + a * Phi + b * Phi @ Phi


def so3_log(R):
    """
    Logarithm map from a rotation matrix to its rotation vector.

    Handles the two numerically delicate regimes explicitly: angles close to
    zero (Taylor expansion of theta / sin(theta)) and angles close to pi,
    where the antisymmetric part of R vanishes and the axis has to be read
    from the symmetric part instead.

    Args:
        R (np.ndarray): (3,3) rotation matrix.

    Returns:
        np.ndarray: (3,) rotation vector with norm in [0, pi].
    """
    _check_matrix(R, 3, "R")
    cos_theta = np.clip((np.trace(R) - 1.0) / 2.0, -1.0, 1.0)
    theta = np.arccos(cos_theta)
    skew = so3_vee((R - R.T) / 2.0)

    if theta < _SMALL_ANGLE:
        return skew * (1.0 + theta * theta / 6.0)

    if theta > np.pi - _NEAR_PI_MARGIN:
        # R_sym = cos(theta) I + (1 - cos(theta)) n n^T
        nn_t = ((R + R.T) / 2.0 - cos_theta * np.eye(3)) / (1.0 - cos_theta)
        col = int(np.argmax(np.diag(nn_t)))
        axis = nn_t[:, col] / np.sqrt(nn_t[col, col])
        if axis @ skew < 0.0:
            axis = -axis
        return theta * axis

    return skew * (theta / np.sin(theta))


def so3_left_jacobian(phi):
    """Left Jacobian of SO(3), also the V matrix of the SE(3) exponential."""
    _check_vector(phi, 3, "phi")
    theta_sq = float(phi @ phi)
    theta = np.sqrt(theta_sq)
    Phi = so3_hat(phi)
    if theta < _SMALL_ANGLE:
        return np.eye(3) + 0.5 * Phi + Phi @ Phi / 6.0
    a = (1.0 - np.cos(theta)) / theta_sq
    b = (theta - np.sin(theta)) / (theta_sq * theta)
    return np.eye(3) + a * Phi + b * Phi @ Phi


def so3_left_jacobian_inv(phi):
    _check_vector(phi, 3, "phi")
    theta_sq = float(phi @ phi)
    theta = np.sqrt(theta_sq)
    Phi = so3_hat(phi)
    if theta < _SMALL_ANGLE:
        c = 1.0 / 12.0 + theta_sq / 720.0
    else:
        # sin / (1 - cos) form stays finite as theta approaches pi
        c = (1.0 - theta * np.sin(theta) / (2.0 * (1.0 - np.cos(theta)))) / theta_sq
    return np.eye(3) - 0.5 * Phi + c * Phi @ Phi


# SE(3) operations (represented as 4x4 homogeneous matrices)

def se3_exp(xi):
    """
    Exponential map from twist coordinates [v, omega] to a 4x4 rigid transform.
    """
    _check_vector(xi, 6, "xi")
    T = np.eye(4)
    T[:3, :3] = so3_exp(xi[3:])
    T[:3, 3] = so3_left_jacobian(xi[3:]) @ xi[:3]
    return T


def se3_log(T):
    """
    Logarithm map from a 4x4 rigid transform to twist coordinates [v, omega].
    """
    _check_matrix(T, 4, "T")
    phi = so3_log(T[:3, :3])
    v = so3_left_jacobian_inv(phi) @ T[:3, 3]
    return np.concatenate((v, phi))


def se3_adjoint(T):
    """
    6x6 adjoint of T for the [v, omega] ordering: Ad(T) xi = vee(T hat(xi) T^-1).
    """
    _check_matrix(T, 4, "T")
    R = T[:3, :3]
    Ad = np.zeros((6, 6))
    Ad[:3, :3] = R
    Ad[:3, 3:] = so3_hat(T[:3, 3]) @ R
    Ad[3:, 3:] = R
    return Ad


def se3_ad(xi):
    """Lie bracket operator of se(3): ad(xi) eta = [xi, eta]."""
    _check_vector(xi, 6, "xi")
    ad = np.zeros((6, 6))
    omega_hat = so3_hat(xi[3:])
    ad[:3, :3] = omega_hat
    ad[:3, 3:] = so3_hat(xi[:3])
    ad[3:, 3:] = omega_hat
    return ad


def make_pose(R, p):
    """Builds a 4x4 homogeneous transform from a rotation matrix and a translation."""
    _check_matrix(R, 3, "R")
    _check_vector(p, 3, "p")
    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = p
    return T


def pose_inverse(T):
    _check_matrix(T, 4, "T")
    R_t = T[:3, :3].T
    return make_pose(R_t, -R_t @ T[:3, 3])


def rotation_from_axes(x_axis, y_axis, z_axis):
    """Stacks three unit axes as the columns of a rotation matrix."""
    return np.column_stack((x_axis, y_axis, z_axis))


def rotation_to_quaternion(R):
    """Returns the [qx, qy, qz, qw] quaternion of a rotation matrix."""
    _check_matrix(R, 3, "R")
    return Rotation.from_matrix(R).as_quat()


def quaternion_to_rotation(q):
    """Rotation matrix of a [qx, qy, qz, qw] quaternion (normalised on the way)."""
    q = np.asarray(q, dtype=float)
    _check_vector(q, 4, "q")
    if np.linalg.norm(q) < 1e-12:
        raise ValueError("Quaternion must have non-zero norm.")
    return Rotation.from_quat(q).as_matrix()


class PoseStamped(namedtuple('PoseStamped', ['rotation', 'translation', 'timestamp'])):
    """
    Immutable timestamped rigid pose.

    Fields:
        rotation (np.ndarray): (3,3) rotation matrix, body to world.
        translation (np.ndarray): (3,) position of the body in the world.
        timestamp (float): Time of the pose.
    """
    __slots__ = ()

    def __new__(cls, rotation, translation, timestamp):
        rotation = np.array(rotation, dtype=float)
        translation = np.array(translation, dtype=float)
        _check_matrix(rotation, 3, "rotation")
        _check_vector(translation, 3, "translation")
        rotation.setflags(write=False)
        translation.setflags(write=False)
        return super().__new__(cls, rotation, translation, float(timestamp))

    @classmethod
    def from_matrix(cls, T, timestamp):
        _check_matrix(T, 4, "T")
        return cls(T[:3, :3], T[:3, 3], timestamp)

    def matrix(self):
        return make_pose(self.rotation, self.translation)

    def inverse(self):
        return PoseStamped.from_matrix(pose_inverse(self.matrix()), self.timestamp)

    def left_multiply(self, T):
        """Returns T * self, keeping the timestamp."""
        return PoseStamped.from_matrix(T @ self.matrix(), self.timestamp)

    def right_multiply(self, T):
        """Returns self * T, keeping the timestamp."""
        return PoseStamped.from_matrix(self.matrix() @ T, self.timestamp)


class SO3Manifold:
    """
    Local parameterization of rotation-valued parameter blocks.

    The optimizer works on flat 3-vectors; plus() maps such a vector onto the
    manifold through the exponential map, minus() is its inverse.
    """
    tangent_size = 3

    @staticmethod
    def plus(R, delta):
        return R @ so3_exp(delta)

    @staticmethod
    def minus(R1, R0):
        return so3_log(R0.T @ R1)


class EuclideanManifold:
    """Vector-valued parameter blocks; plus and minus are plain arithmetic."""

    def __init__(self, size):
        self.tangent_size = size

    def plus(self, x, delta):
        return x + delta

    def minus(self, x1, x0):
        return x1 - x0
