from kalmanlie.lib.group import SE3
from kalmanlie.utils import jacobian
import numpy as np
import pytest

np.random.seed(0)


def _random_tangent(scale=1.0):
    return scale * np.random.uniform(-1, 1, 6)


def test_translation_comes_first():
    X = SE3.Exp([1, 2, 3, 0, 0, 0])
    assert np.allclose(X[0:3, 3], [1, 2, 3])
    assert np.allclose(X[0:3, 0:3], np.identity(3))


def test_rotation_comes_last():
    theta = 0.3
    X = SE3.Exp([0, 0, 0, 0, 0, theta])
    C_z = np.array(
        [
            [np.cos(theta), -np.sin(theta), 0],
            [np.sin(theta), np.cos(theta), 0],
            [0, 0, 1],
        ]
    )
    assert np.allclose(X[0:3, 0:3], C_z)
    assert np.allclose(X[0:3, 3], 0)


@pytest.mark.parametrize("trial", range(5))
def test_exp_log_inverse(trial):
    xi = _random_tangent(1.0)
    xi_test = SE3.Log(SE3.Exp(xi))
    assert xi_test.shape == (6,)
    assert np.allclose(xi_test, xi, atol=1e-10)


def test_inverse():
    X = SE3.random()
    assert np.allclose(SE3.compose(X, SE3.inverse(X)), np.identity(4))


def test_adjoint_identity():
    X = SE3.random()
    xi = _random_tangent(0.5)
    lhs = X @ SE3.Exp(xi) @ SE3.inverse(X)
    rhs = SE3.Exp(SE3.adjoint(X) @ xi)
    assert np.allclose(lhs, rhs, atol=1e-10)


def test_adjoint_of_translation():
    r = np.array([1.0, -2.0, 0.5])
    Ad = SE3.adjoint(SE3.from_components(np.identity(3), r))
    assert np.allclose(Ad[0:3, 0:3], np.identity(3))
    assert np.allclose(Ad[0:3, 3:6], SE3.cross(r))
    assert np.allclose(Ad[3:6, 0:3], 0)


def test_right_jacobian_fd():
    xi = _random_tangent(0.8)
    X = SE3.Exp(xi)

    def fun(d):
        return SE3.Log(SE3.inverse(X) @ SE3.Exp(xi + d))

    jac_fd = jacobian(fun, np.zeros(6))
    assert np.allclose(SE3.right_jacobian(xi), jac_fd, atol=1e-6)


def test_left_jacobian_fd():
    xi = _random_tangent(0.8)
    X = SE3.Exp(xi)

    def fun(d):
        return SE3.Log(SE3.Exp(xi + d) @ SE3.inverse(X))

    jac_fd = jacobian(fun, np.zeros(6))
    assert np.allclose(SE3.left_jacobian(xi), jac_fd, atol=1e-6)


def test_jacobian_inverses():
    xi = _random_tangent(0.8)
    I = np.identity(6)
    assert np.allclose(SE3.right_jacobian_inv(xi) @ SE3.right_jacobian(xi), I)
    assert np.allclose(SE3.left_jacobian_inv(xi) @ SE3.left_jacobian(xi), I)


def test_act_jacobian_fd():
    X = SE3.random()
    p = np.array([0.3, -1.0, 2.0])

    def fun(d):
        return SE3.act(X @ SE3.Exp(d), p)

    jac_fd = jacobian(fun, np.zeros(6))
    assert np.allclose(SE3.act_jacobian(X, p), jac_fd, atol=1e-6)


def test_components_round_trip():
    X = SE3.random()
    C, r = SE3.to_components(X)
    assert np.allclose(SE3.from_components(C, r), X)


def test_is_element():
    assert SE3.is_element(SE3.random())
    X = SE3.random()
    X[0, 0] += 1e-3
    assert not SE3.is_element(X)
    X = SE3.identity()
    X[0:3, 0:3] = -X[0:3, 0:3]
    assert not SE3.is_element(X)
    assert not SE3.is_element(np.identity(3))


def test_normalize():
    X = SE3.random()
    X_drift = X.copy()
    X_drift[0:3, 0:3] += 1e-6 * np.random.randn(3, 3)
    X_norm = SE3.normalize(X_drift)
    C = X_norm[0:3, 0:3]
    assert np.allclose(C.T @ C, np.identity(3), atol=1e-14)
    assert np.allclose(X_norm, X, atol=1e-5)
    assert np.allclose(X_norm[0:3, 3], X_drift[0:3, 3])
