import math

import numpy as np
import pytest

from sadmapping.geometry import SE3, SO3, NavState, hash_vec, mat4_to_se3


def test_so3_exp_log_round_trip():
    omega = np.array([0.1, -0.2, 0.3])
    assert np.allclose(SO3.exp(omega).log(), omega)


def test_so3_exp_zero_is_identity():
    assert np.allclose(SO3.exp([0.0, 0.0, 0.0]).matrix(), np.eye(3))


def test_so3_matrix_is_orthonormal():
    r = SO3.exp([0.4, 1.1, -0.7]).matrix()
    assert np.allclose(r @ r.T, np.eye(3))
    assert math.isclose(np.linalg.det(r), 1.0)


def test_hat_matches_cross_product():
    a = np.array([1.0, 2.0, 3.0])
    b = np.array([-0.5, 4.0, 0.25])
    assert np.allclose(SO3.hat(a) @ b, np.cross(a, b))
    assert np.allclose(SO3.hat(a), -SO3.hat(a).T)


def test_half_turn_about_z():
    r = SO3.from_quaternion(0.0, 0.0, 0.0, 1.0).matrix()
    assert np.allclose(r, np.diag([-1.0, -1.0, 1.0]))


def test_quaternion_round_trip():
    q = np.array([0.3, -0.5, 0.7, 0.2])
    q = q / np.linalg.norm(q)
    back = SO3.from_quaternion(*q).quaternion()
    assert np.allclose(back, q) or np.allclose(back, -q)


def test_zero_quaternion_raises():
    with pytest.raises(ValueError):
        SO3.from_quaternion(0.0, 0.0, 0.0, 0.0)


def test_so3_inverse_composes_to_identity():
    r = SO3.exp([0.3, 0.2, -0.9])
    assert np.allclose((r * r.inverse()).matrix(), np.eye(3))


def test_so3_times_vector_matches_matrix():
    r = SO3.exp([0.2, -0.4, 0.6])
    v = np.array([1.0, 2.0, 3.0])
    assert np.allclose(r * v, r.matrix() @ v)


def test_log_near_pi_round_trip():
    omega = np.array([0.0, 0.0, math.pi - 1e-3])
    assert np.allclose(SO3.exp(omega).log(), omega, atol=1e-8)


def test_jr_inv_properties():
    omega = np.array([0.3, -0.1, 0.5])
    assert np.allclose(SO3.jr_inv(omega) @ omega, omega)
    assert np.allclose(SO3.jr_inv(np.zeros(3)), np.eye(3))


def test_se3_exp_log_round_trip():
    xi = np.array([1.0, -2.0, 0.5, 0.1, 0.2, -0.3])
    assert np.allclose(SE3.exp(xi).log(), xi)


def test_se3_inverse_composes_to_identity():
    t = SE3.exp([0.5, 1.0, -1.5, 0.2, -0.1, 0.4])
    ident = t * t.inverse()
    assert np.allclose(ident.matrix(), np.eye(4))


def test_se3_matrix_round_trip():
    t = SE3.exp([3.0, 1.0, -2.0, 0.7, 0.1, -0.2])
    back = SE3.from_matrix(t.matrix())
    assert np.allclose(back.matrix(), t.matrix())


def test_se3_act_matches_homogeneous_matrix():
    t = SE3.exp([1.0, 2.0, 3.0, -0.3, 0.2, 0.1])
    pts = np.array([[1.0, 0.0, 0.0], [0.0, -2.0, 5.0]])
    homo = np.hstack([pts, np.ones((2, 1))]) @ t.matrix().T
    assert np.allclose(t.act(pts), homo[:, :3])
    assert np.allclose(t * pts[1], homo[1, :3])


def test_se3_composition_matches_matrix_product():
    a = SE3.exp([1.0, 0.0, 0.5, 0.1, 0.2, 0.3])
    b = SE3.exp([-1.0, 2.0, 0.0, -0.4, 0.0, 0.2])
    assert np.allclose((a * b).matrix(), a.matrix() @ b.matrix())


def test_se3_from_quaternion_keeps_translation():
    t = SE3.from_quaternion(1.0, 0.0, 0.0, 0.0, [4.0, 5.0, 6.0])
    assert np.allclose(t.translation, [4.0, 5.0, 6.0])
    assert np.allclose(t.so3.matrix(), np.eye(3))


def test_mat4_to_se3_normalises_rotation():
    ref = SE3.exp([1.0, 2.0, 3.0, 0.2, -0.3, 0.4])
    m = ref.matrix()
    m[:3, :3] *= 1.001
    pose = mat4_to_se3(m)
    r = pose.so3.matrix()
    assert np.allclose(r @ r.T, np.eye(3))
    assert np.allclose(r, ref.so3.matrix(), atol=1e-6)
    assert np.allclose(pose.translation, ref.translation)


def test_hash_vec_values():
    assert hash_vec((0, 0)) == 0
    assert hash_vec((1, 0)) == 3856093
    assert hash_vec((0, 0, 0)) == 0


def test_hash_vec_negative_is_unsigned():
    h = hash_vec((-1, 0))
    assert 0 <= h < 2**64
    assert h > 10000000


def test_hash_vec_rejects_wrong_length():
    with pytest.raises(ValueError):
        hash_vec((1, 2, 3, 4))


def test_nav_state_pose_round_trip():
    pose = SE3.exp([1.0, -1.0, 2.0, 0.1, 0.0, -0.2])
    state = NavState.from_pose(12.5, pose, vel=[1.0, 0.0, 0.0])
    assert state.timestamp == 12.5
    assert np.allclose(state.get_se3().matrix(), pose.matrix())
    assert np.allclose(state.v, [1.0, 0.0, 0.0])
    assert np.allclose(state.bg, np.zeros(3))