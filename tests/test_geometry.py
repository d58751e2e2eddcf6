import pytest
import numpy as np
from scipy.linalg import expm # Reference for the closed-form exponentials
from posespline.geometry import (
    so3_hat, so3_vee, so3_exp, so3_log, so3_left_jacobian, so3_left_jacobian_inv,
    se3_exp, se3_log, se3_adjoint, se3_ad,
    make_pose, pose_inverse, rotation_to_quaternion, quaternion_to_rotation,
    PoseStamped, SO3Manifold, EuclideanManifold,
)


def twist_matrix(xi):
    """4x4 se(3) matrix of a [v, omega] twist, the reference for the closed forms."""
    Xi = np.zeros((4, 4))
    Xi[:3, :3] = so3_hat(xi[3:])
    Xi[:3, 3] = xi[:3]
    return Xi


# Fixtures for random data
@pytest.fixture
def rng():
    return np.random.default_rng(42)

@pytest.fixture
def random_so3_vector(rng):
    axis = rng.normal(size=3)
    return axis / np.linalg.norm(axis) * rng.uniform(0.1, 3.0) # Angle below pi

@pytest.fixture
def random_se3_vector(rng, random_so3_vector):
    v = (rng.random(3) - 0.5) * 10 # Translations up to +/- 5 units
    return np.concatenate((v, random_so3_vector))

def test_so3_hat_properties(random_so3_vector):
    omega = random_so3_vector
    Omega_hat = so3_hat(omega)
    assert Omega_hat.shape == (3,3)
    assert np.allclose(Omega_hat, -Omega_hat.T)
    assert Omega_hat[0,1] == -omega[2]
    assert Omega_hat[0,2] == omega[1]
    assert Omega_hat[1,2] == -omega[0]
    # hat(a) b == a x b
    b = np.array([0.3, -1.0, 2.0])
    assert np.allclose(Omega_hat @ b, np.cross(omega, b))

def test_so3_vee_properties():
    mat = np.array([[0, -3, 2], [3, 0, -1], [-2, 1, 0]], dtype=float)
    assert np.allclose(so3_vee(mat), [1, 2, 3])
    with pytest.raises(ValueError, match="skew-symmetric"):
        so3_vee(np.eye(3))

def test_shape_validation():
    with pytest.raises(ValueError, match=r"\(3,\) numpy array"):
        so3_hat(np.zeros(4))
    with pytest.raises(ValueError, match=r"\(3,\) numpy array"):
        so3_exp([0.0, 0.0, 1.0]) # Lists are rejected like in the other primitives
    with pytest.raises(ValueError, match=r"\(4,4\) numpy array"):
        se3_log(np.eye(3))

def test_so3_exp_matches_expm(random_so3_vector):
    R = so3_exp(random_so3_vector)
    assert np.allclose(R, expm(so3_hat(random_so3_vector)), atol=1e-10)
    assert np.allclose(R @ R.T, np.eye(3), atol=1e-10)
    assert np.isclose(np.linalg.det(R), 1.0)

def test_so3_exp_log_roundtrip(random_so3_vector):
    assert np.allclose(so3_log(so3_exp(random_so3_vector)), random_so3_vector, atol=1e-9)

@pytest.mark.parametrize("angle", [0.0, 1e-9, 1e-4, np.pi - 1e-3, np.pi - 1e-7])
def test_so3_log_delicate_angles(angle):
    axis = np.array([1.0, -2.0, 0.5])
    axis /= np.linalg.norm(axis)
    phi = angle * axis
    R = so3_exp(phi)
    phi_rt = so3_log(R)
    # Rotation reconstructed exactly, even where the vector itself is ambiguous
    assert np.allclose(so3_exp(phi_rt), R, atol=1e-8)
    assert np.linalg.norm(phi_rt) <= np.pi + 1e-12
    if angle < np.pi - 1e-4:
        assert np.allclose(phi_rt, phi, atol=1e-8)

def test_so3_exp_known_values():
    # 90 deg rotation around z-axis
    R_z_90_expected = np.array([
        [0, -1, 0],
        [1, 0, 0],
        [0, 0, 1]
    ], dtype=float)
    omega = np.array([0, 0, np.pi/2])
    assert np.allclose(so3_exp(omega), R_z_90_expected, atol=1e-12)
    assert np.allclose(so3_log(R_z_90_expected), omega, atol=1e-12)

def test_left_jacobian_inverse(random_so3_vector):
    J = so3_left_jacobian(random_so3_vector)
    J_inv = so3_left_jacobian_inv(random_so3_vector)
    assert np.allclose(J @ J_inv, np.eye(3), atol=1e-9)
    small = np.array([1e-8, 0.0, -2e-8])
    assert np.allclose(so3_left_jacobian(small) @ so3_left_jacobian_inv(small), np.eye(3), atol=1e-12)

def test_se3_exp_matches_expm(random_se3_vector):
    T = se3_exp(random_se3_vector)
    assert np.allclose(T, expm(twist_matrix(random_se3_vector)), atol=1e-9)
    assert np.allclose(T[3,:], [0,0,0,1])

def test_se3_exp_log_roundtrip(random_se3_vector):
    assert np.allclose(se3_log(se3_exp(random_se3_vector)), random_se3_vector, atol=1e-9)

def test_se3_adjoint(random_se3_vector, rng):
    T = se3_exp(random_se3_vector)
    eta = rng.normal(size=6)
    lhs = T @ twist_matrix(eta) @ pose_inverse(T)
    assert np.allclose(twist_matrix(se3_adjoint(T) @ eta), lhs, atol=1e-9)
    # Ad is a homomorphism
    assert np.allclose(se3_adjoint(pose_inverse(T)), np.linalg.inv(se3_adjoint(T)), atol=1e-9)

def test_se3_ad_is_lie_bracket(rng):
    xi, eta = rng.normal(size=6), rng.normal(size=6)
    bracket = twist_matrix(xi) @ twist_matrix(eta) - twist_matrix(eta) @ twist_matrix(xi)
    assert np.allclose(twist_matrix(se3_ad(xi) @ eta), bracket, atol=1e-12)

def test_pose_inverse(random_se3_vector):
    T = se3_exp(random_se3_vector)
    assert np.allclose(T @ pose_inverse(T), np.eye(4), atol=1e-12)

def test_quaternion_roundtrip(random_so3_vector):
    R = so3_exp(random_so3_vector)
    q = rotation_to_quaternion(R)
    assert q.shape == (4,)
    assert np.isclose(np.linalg.norm(q), 1.0)
    assert np.allclose(quaternion_to_rotation(q), R, atol=1e-12)
    # Unnormalized input is accepted
    assert np.allclose(quaternion_to_rotation(2.0 * q), R, atol=1e-12)
    with pytest.raises(ValueError, match="non-zero norm"):
        quaternion_to_rotation(np.zeros(4))
    # [qx, qy, qz, qw] ordering
    assert np.allclose(rotation_to_quaternion(np.eye(3)), [0, 0, 0, 1])

def test_pose_stamped_is_immutable(random_se3_vector):
    T = se3_exp(random_se3_vector)
    pose = PoseStamped.from_matrix(T, 1.5)
    assert pose.timestamp == 1.5
    assert np.allclose(pose.matrix(), T)
    with pytest.raises(ValueError):
        pose.translation[0] = 10.0
    with pytest.raises(AttributeError):
        pose.timestamp = 2.0
    # Source matrix is copied, not aliased
    T[0, 3] += 1.0
    assert not np.isclose(pose.translation[0], T[0, 3])

def test_pose_stamped_composition(random_se3_vector):
    T = se3_exp(random_se3_vector)
    S = make_pose(so3_exp(np.array([0.1, 0.2, 0.3])), np.array([1.0, 2.0, 3.0]))
    pose = PoseStamped.from_matrix(T, 0.25)
    assert np.allclose(pose.left_multiply(S).matrix(), S @ T)
    assert np.allclose(pose.right_multiply(S).matrix(), T @ S)
    assert np.allclose(pose.inverse().matrix(), pose_inverse(T))
    assert pose.inverse().timestamp == 0.25
    with pytest.raises(ValueError, match=r"\(3,\) numpy array"):
        PoseStamped(np.eye(3), np.zeros(2), 0.0)

def test_manifolds(random_so3_vector):
    R = so3_exp(random_so3_vector)
    delta = np.array([0.01, -0.02, 0.03])
    R_plus = SO3Manifold.plus(R, delta)
    assert np.allclose(R_plus @ R_plus.T, np.eye(3), atol=1e-12)
    assert np.allclose(SO3Manifold.minus(R_plus, R), delta, atol=1e-12)

    euclid = EuclideanManifold(6)
    x = np.arange(6, dtype=float)
    assert euclid.tangent_size == 6
    assert np.allclose(euclid.minus(euclid.plus(x, np.ones(6)), x), np.ones(6))
