from typing import List

import numpy as np

from kalmanlie.errors import InvalidArgumentError
from kalmanlie.lib.group import SE3
from kalmanlie.lib.states import SE3State
from kalmanlie.types import (
    ErrorConvention,
    InvariantMeasurementModel,
    MeasurementModel,
    SystemModel,
)
from kalmanlie.utils.common import check_covariance


class BodyFrameTwist(SystemModel):
    """
    The body-frame twist system model assumes that the control contains both
    translational and angular velocity, resolved in the robot body frame and
    already integrated over the sampling period. That is,
    :math:`\\mathbf{u} = \\boldsymbol{\\xi} \\Delta t` and

    .. math::
        \\mathbf{T}_k = \\mathbf{T}_{k-1} \\exp(\\mathbf{u}_{k-1}^\\wedge).

    Noise is additive on :math:`\\mathbf{u}` with covariance :math:`\\mathbf{Q}`.
    """

    def __init__(self, Q: np.ndarray):
        """
        Parameters
        ----------
        Q : np.ndarray
            6x6 covariance of the additive noise on the integrated control.
        """
        self._Q = check_covariance(Q, SE3.dof, name="Q")
        self._Q_c = None
        self.dt = None

    @classmethod
    def from_continuous(cls, Q_c: np.ndarray, dt: float) -> "BodyFrameTwist":
        """
        Builds the model from the covariance of the twist *rate* noise. When
        the driver draws the rate noise with standard deviation
        :math:`\\sigma / \\sqrt{\\Delta t}`, this is
        :math:`\\mathbf{Q}_c = \\mathrm{diag}(\\sigma^2) / \\Delta t`, and the
        noise on the integrated control has covariance
        :math:`\\mathbf{Q}_c \\Delta t^2`.

        Parameters
        ----------
        Q_c : np.ndarray
            6x6 covariance of the noise on the twist rate.
        dt : float
            Nominal sampling period.
        """
        if dt <= 0:
            raise InvalidArgumentError("dt must be positive.")
        Q_c = check_covariance(Q_c, SE3.dof, name="Q_c")
        model = cls(Q_c * dt**2)
        model._Q_c = Q_c
        model.dt = dt
        return model

    def evaluate(self, x: SE3State, u: np.ndarray) -> SE3State:
        x = x.copy()
        x.value = x.value @ SE3.Exp(u)
        return x

    def jacobian(
        self,
        x: SE3State,
        u: np.ndarray,
        convention: ErrorConvention = ErrorConvention.RIGHT,
    ) -> np.ndarray:
        if convention == ErrorConvention.RIGHT:
            return SE3.adjoint(SE3.Exp(-np.asarray(u, dtype=np.float64)))
        return np.identity(SE3.dof)

    def input_jacobian(
        self,
        x: SE3State,
        u: np.ndarray,
        convention: ErrorConvention = ErrorConvention.RIGHT,
    ) -> np.ndarray:
        J = SE3.right_jacobian(u)
        if convention == ErrorConvention.RIGHT:
            return J
        return SE3.adjoint(x.value @ SE3.Exp(u)) @ J

    def covariance(self, dt: float = None) -> np.ndarray:
        """
        Covariance of the noise on the integrated control. If the model was
        created with ``from_continuous``, supplying ``dt`` re-discretizes the
        rate covariance for a step of that length.
        """
        if dt is not None and self._Q_c is not None:
            return self._Q_c * dt**2
        return self._Q


class LandmarkRelativePosition(InvariantMeasurementModel):
    """
    Position of a known landmark relative to the robot, resolved in the body
    frame,

    .. math::
        \\mathbf{y} = \\mathbf{T}^{-1} \\cdot \\mathbf{b}
        = \\mathbf{C}^T (\\mathbf{b} - \\mathbf{r}),

    where :math:`\\mathbf{b}` is the landmark position in the world frame. This
    is a right-invariant observation.
    """

    invariance = "right"

    def __init__(self, landmark_position: List[float], R: np.ndarray):
        """
        Parameters
        ----------
        landmark_position : np.ndarray or List[float]
            Position of the landmark in the world frame.
        R : np.ndarray
            3x3 measurement covariance.
        """
        self._landmark_position = np.array(landmark_position, dtype=np.float64).ravel()
        if self._landmark_position.size != 3:
            raise InvalidArgumentError("landmark position must have 3 elements.")
        self._R = check_covariance(R, 3, name="R")

    @property
    def invariant_point(self) -> np.ndarray:
        return self._landmark_position

    def evaluate(self, x: SE3State) -> np.ndarray:
        C, r = SE3.to_components(x.value)
        return C.T @ (self._landmark_position - r)

    def jacobian(self, x: SE3State) -> np.ndarray:
        y = self.evaluate(x)
        return np.hstack([-np.identity(3), SE3.cross(y)])

    def covariance(self, x: SE3State = None) -> np.ndarray:
        return self._R

    def __repr__(self):
        return f"LandmarkRelativePosition({self._landmark_position})"


class GlobalPosition(InvariantMeasurementModel):
    """
    Direct measurement of the robot position, as provided by GPS,

    .. math::
        \\mathbf{y} = \\mathbf{r} = \\mathbf{T} \\cdot \\mathbf{0}.

    This is a left-invariant observation.
    """

    invariance = "left"

    def __init__(self, R: np.ndarray):
        self._R = check_covariance(R, 3, name="R")

    @property
    def invariant_point(self) -> np.ndarray:
        return np.zeros(3)

    def evaluate(self, x: SE3State) -> np.ndarray:
        return x.position.copy()

    def jacobian(self, x: SE3State) -> np.ndarray:
        return np.hstack([x.attitude, np.zeros((3, 3))])

    def covariance(self, x: SE3State = None) -> np.ndarray:
        return self._R


class FirstOrderMeasurement(MeasurementModel):
    """
    Adapter that marks an arbitrary right-plus measurement model as acceptable
    to the invariant EKF. The invariant EKF will then use the model's own
    Jacobian in a standard first-order update, and loses its
    estimate-independent linearization for this measurement.
    """

    def __init__(self, model: MeasurementModel):
        if model.convention != ErrorConvention.RIGHT:
            raise InvalidArgumentError(
                "FirstOrderMeasurement only wraps right-plus models."
            )
        self.model = model

    def evaluate(self, x: SE3State) -> np.ndarray:
        return self.model.evaluate(x)

    def jacobian(self, x: SE3State) -> np.ndarray:
        return self.model.jacobian(x)

    def covariance(self, x: SE3State = None) -> np.ndarray:
        return self.model.covariance(x)

    def __repr__(self):
        return f"FirstOrderMeasurement({self.model})"
