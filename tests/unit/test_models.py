from kalmanlie.errors import (
    DimensionMismatchError,
    InvalidArgumentError,
    InvalidCovarianceError,
)
from kalmanlie.lib.group import SE3
from kalmanlie.lib.models import (
    BodyFrameTwist,
    FirstOrderMeasurement,
    GlobalPosition,
    LandmarkRelativePosition,
)
from kalmanlie.lib.states import SE3State
from kalmanlie.types import ErrorConvention, MeasurementModel
from kalmanlie.utils import jacobian
import numpy as np
import pytest

np.random.seed(0)

U_TEST = np.array([0.1, -0.2, 0.05, 0.3, -0.1, 0.2])


def _system_jacobian_test(x, model, u, convention, atol=1e-5):
    jac = model.jacobian(x, u, convention)
    jac_fd = model.jacobian_fd(x, u, convention)
    assert np.allclose(jac, jac_fd, atol=atol)


def _measurement_jacobian_test(x, model, atol=1e-5):
    jac = model.jacobian(x)
    jac_fd = model.jacobian_fd(x)
    assert np.allclose(jac, jac_fd, atol=atol)


@pytest.mark.parametrize("convention", [ErrorConvention.RIGHT, ErrorConvention.LEFT])
def test_body_frame_twist_jacobian(convention):
    x = SE3State(SE3.random())
    model = BodyFrameTwist(np.identity(6))
    _system_jacobian_test(x, model, U_TEST, convention)


@pytest.mark.parametrize("convention", [ErrorConvention.RIGHT, ErrorConvention.LEFT])
def test_body_frame_twist_input_jacobian(convention):
    x = SE3State(SE3.random())
    model = BodyFrameTwist(np.identity(6))
    jac = model.input_jacobian(x, U_TEST, convention)
    jac_fd = model.input_jacobian_fd(x, U_TEST, convention)
    assert np.allclose(jac, jac_fd, atol=1e-5)


def test_body_frame_twist_evaluate():
    T = SE3.random()
    x = SE3State(T, stamp=1.0)
    model = BodyFrameTwist(np.identity(6))
    x_new = model.evaluate(x, U_TEST)
    assert np.allclose(x_new.value, T @ SE3.Exp(U_TEST))
    # The input state is not modified.
    assert np.allclose(x.value, T)


def test_body_frame_twist_zero_input():
    model = BodyFrameTwist(np.identity(6))
    x = SE3State(SE3.random())
    assert np.allclose(model.jacobian(x, np.zeros(6)), np.identity(6))
    assert np.allclose(model.input_jacobian(x, np.zeros(6)), np.identity(6))


def test_body_frame_twist_from_continuous():
    Q_c = np.diag([1.0, 2.0, 3.0, 4.0, 5.0, 6.0])
    model = BodyFrameTwist.from_continuous(Q_c, 0.01)
    assert np.allclose(model.covariance(), Q_c * 0.01**2)
    assert np.allclose(model.covariance(0.02), Q_c * 0.02**2)


def test_body_frame_twist_discrete_ignores_dt():
    Q = 0.1 * np.identity(6)
    model = BodyFrameTwist(Q)
    assert np.allclose(model.covariance(0.5), Q)


def test_body_frame_twist_bad_covariance():
    with pytest.raises(InvalidCovarianceError):
        BodyFrameTwist(-np.identity(6))
    with pytest.raises(DimensionMismatchError):
        BodyFrameTwist(np.identity(3))
    with pytest.raises(InvalidArgumentError):
        BodyFrameTwist.from_continuous(np.identity(6), 0.0)


def test_landmark_evaluate():
    C = SE3.Exp([0, 0, 0, 0, 0, np.pi / 2])[0:3, 0:3]
    x = SE3State(SE3.from_components(C, [1.0, 0.0, 0.0]))
    model = LandmarkRelativePosition([1.0, 1.0, 0.0], np.identity(3))
    # The landmark is one unit ahead along the body x axis.
    assert np.allclose(model.evaluate(x), [1.0, 0.0, 0.0])


def test_landmark_jacobian():
    x = SE3State(SE3.random())
    model = LandmarkRelativePosition([1.0, 2.0, 3.0], np.identity(3))
    _measurement_jacobian_test(x, model)


def test_landmark_invariant_jacobian():
    # For a right-invariant observation, the innovation rotated into the world
    # frame depends linearly on a left-plus error through [-1, p^x] only.
    X = SE3.random()
    p = np.array([2.0, -1.0, 1.0])
    model = LandmarkRelativePosition(p, np.identity(3))
    x = SE3State(X)
    y_check = model.evaluate(x)

    def innovation(d):
        x_true = SE3State(SE3.Exp(d) @ X)
        return x.attitude @ (model.evaluate(x_true) - y_check)

    H = np.hstack([-np.identity(3), SE3.cross(p)])
    assert np.allclose(jacobian(innovation, np.zeros(6)), H, atol=1e-6)


def test_global_position_jacobian():
    x = SE3State(SE3.random())
    model = GlobalPosition(np.identity(3))
    _measurement_jacobian_test(x, model)
    assert np.allclose(model.evaluate(x), x.position)


def test_global_position_invariant_jacobian():
    X = SE3.random()
    model = GlobalPosition(np.identity(3))
    x = SE3State(X)
    y_check = model.evaluate(x)

    def innovation(d):
        x_true = SE3State(X @ SE3.Exp(d))
        return x.attitude.T @ (model.evaluate(x_true) - y_check)

    H = np.hstack([np.identity(3), np.zeros((3, 3))])
    assert np.allclose(jacobian(innovation, np.zeros(6)), H, atol=1e-6)


def test_landmark_bad_arguments():
    with pytest.raises(InvalidArgumentError):
        LandmarkRelativePosition([1.0, 2.0], np.identity(3))
    with pytest.raises(InvalidCovarianceError):
        LandmarkRelativePosition([1.0, 2.0, 3.0], np.diag([1.0, -1.0, 1.0]))


class _LeftPosition(MeasurementModel):
    convention = ErrorConvention.LEFT

    def evaluate(self, x):
        return x.position

    def covariance(self, x=None):
        return np.identity(3)


def test_first_order_measurement():
    inner = LandmarkRelativePosition([1.0, 2.0, 3.0], np.identity(3))
    model = FirstOrderMeasurement(inner)
    x = SE3State(SE3.random())
    assert np.allclose(model.evaluate(x), inner.evaluate(x))
    assert np.allclose(model.jacobian(x), inner.jacobian(x))
    assert np.allclose(model.covariance(x), inner.covariance(x))
    assert model.convention == ErrorConvention.RIGHT


def test_first_order_measurement_rejects_left_models():
    with pytest.raises(InvalidArgumentError):
        FirstOrderMeasurement(_LeftPosition())
