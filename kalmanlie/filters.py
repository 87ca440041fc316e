import logging
from abc import ABC, abstractmethod
from typing import List, Tuple

import numpy as np
import scipy.linalg as la
from tqdm import tqdm

from kalmanlie.errors import (
    ConventionMismatchError,
    DimensionMismatchError,
    InvalidArgumentError,
    NumericalFailureError,
)
from kalmanlie.lib.group import SE3
from kalmanlie.lib.models import FirstOrderMeasurement
from kalmanlie.lib.states import SE3State
from kalmanlie.types import (
    ErrorConvention,
    InvariantMeasurementModel,
    Measurement,
    MeasurementModel,
    StateWithCovariance,
    SystemModel,
    VectorInput,
)
from kalmanlie.utils.common import check_covariance, symmetrize

logger = logging.getLogger(__name__)

# Rotation blocks drifting further than this from orthonormal are re-projected.
_ORTHONORMAL_TOL = 1e-12

# Default smallest admissible ratio between the pivots of an innovation
# covariance factorization.
PIVOT_TOL = 1e2 * np.finfo(np.float64).eps


def _cho_factor(S: np.ndarray, what: str, pivot_tol: float):
    try:
        c, lower = la.cho_factor(S, lower=True)
    except la.LinAlgError as e:
        raise NumericalFailureError(f"{what} is not positive definite.") from e

    pivots = np.diag(c) ** 2
    if np.min(pivots) <= pivot_tol * np.max(pivots):
        raise NumericalFailureError(f"{what} is numerically singular.")
    return c, lower


def _kalman_gain(
    PHt: np.ndarray,
    S: np.ndarray,
    pivot_tol: float = PIVOT_TOL,
    what="innovation covariance",
):
    """
    Computes :math:`\\mathbf{K} = \\mathbf{P}\\mathbf{H}^T \\mathbf{S}^{-1}`
    through a Cholesky factorization of :math:`\\mathbf{S}`. Also returns the
    factorization for reuse.
    """
    cho = _cho_factor(symmetrize(S), what, pivot_tol)
    K = la.cho_solve(cho, PHt.T).T
    return K, cho


def _triangularize(A: np.ndarray) -> np.ndarray:
    """
    Returns the upper-triangular ``R`` of a QR decomposition of ``A``, with
    non-negative diagonal. ``R^T R = A^T A``.
    """
    R = np.linalg.qr(A, mode="r")
    n = A.shape[1]
    R = R[:n, :n]
    d = np.sign(np.diag(R))
    d[d == 0] = 1.0
    return d[:, None] * R


def _upper_factor(M: np.ndarray) -> np.ndarray:
    """
    Upper-triangular ``U`` with ``U^T U = M`` for a symmetric positive
    semi-definite ``M``. Singular matrices go through an eigendecomposition.
    """
    try:
        return la.cholesky(M, lower=False)
    except la.LinAlgError:
        eigvals, eigvecs = np.linalg.eigh(symmetrize(M))
        A = np.diag(np.sqrt(np.clip(eigvals, 0, None))) @ eigvecs.T
        return _triangularize(A)


def unscented_weights(
    n: int, alpha: float = 1e-3, beta: float = 2.0, kappa: float = 0.0
) -> Tuple[np.ndarray, np.ndarray, float]:
    """
    Scaled unscented transform weights.

    .. math::

        \\lambda = \\alpha^2 (n + \\kappa) - n, \\quad
        w_m^0 = \\frac{\\lambda}{n + \\lambda}, \\quad
        w_c^0 = w_m^0 + 1 - \\alpha^2 + \\beta, \\quad
        w_m^i = w_c^i = \\frac{1}{2(n + \\lambda)}

    Parameters
    ----------
    n : int
        dimension of the distribution being sampled
    alpha, beta, kappa : float
        unscented transform tuning parameters

    Returns
    -------
    Tuple[np.ndarray, np.ndarray, float]
        mean weights, covariance weights (both of length ``2n + 1``, with the
        weight of the central point first), and :math:`\\lambda`.
    """
    lam = alpha**2 * (n + kappa) - n
    if n + lam <= 0:
        raise InvalidArgumentError("alpha and kappa must satisfy n + lambda > 0.")

    wm = np.full(2 * n + 1, 1.0 / (2.0 * (n + lam)))
    wc = wm.copy()
    wm[0] = lam / (n + lam)
    wc[0] = wm[0] + (1.0 - alpha**2 + beta)
    return wm, wc, lam


class LieKalmanFilter(ABC):
    """
    Common base of the Kalman filters on SE(3). The filter owns its state
    estimate and the covariance of the estimation error, expressed in the
    tangent space at the estimate. Both are changed only by ``propagate`` and
    ``update``, and only when those succeed.

    Instances are not thread-safe. Distinct instances share nothing.
    """

    #:ErrorConvention: convention in which the covariance is expressed
    convention = ErrorConvention.RIGHT

    __slots__ = ["_state", "_covariance", "cov_tol", "pivot_tol"]

    def __init__(
        self,
        x0: SE3State = None,
        P0: np.ndarray = None,
        cov_tol: float = 1e-9,
        pivot_tol: float = PIVOT_TOL,
    ):
        """
        Parameters
        ----------
        x0 : SE3State or np.ndarray, optional
            Initial state estimate, by default the identity.
        P0 : np.ndarray, optional
            Initial 6x6 covariance, by default zero.
        cov_tol : float, optional
            Relative tolerance used when validating covariances, by default 1e-9.
        pivot_tol : float, optional
            An innovation covariance whose smallest and largest squared
            Cholesky pivots have a ratio at or below this is rejected as
            singular, by default ``100 * eps``. Measurements whose noise
            levels differ by more than about seven orders of magnitude need a
            smaller value.
        """
        self.cov_tol = cov_tol
        self.pivot_tol = pivot_tol
        self._state = SE3State.identity(direction=self.convention.value)
        self._covariance = np.zeros((SE3.dof, SE3.dof))
        if x0 is not None:
            self.set_state(x0)
        if P0 is not None:
            self.set_covariance(P0)

    def set_state(self, x):
        """
        Sets the state estimate.

        Parameters
        ----------
        x : SE3State or np.ndarray
            A state, or a 4x4 element of SE(3).

        Raises
        ------
        InvalidArgumentError
            If ``x`` is not a valid element of SE(3).
        """
        if isinstance(x, SE3State):
            x = x.copy()
        else:
            x = np.asarray(x, dtype=np.float64)
            if x.shape != (4, 4):
                raise InvalidArgumentError("state must be a 4x4 element of SE(3).")
            x = SE3State(x)

        if not x.is_valid():
            raise InvalidArgumentError("state is not a valid element of SE(3).")

        x.direction = self.convention.value
        self._state = x

    def get_state(self) -> SE3State:
        """Returns a copy of the state estimate."""
        return self._state.copy()

    def set_covariance(self, P: np.ndarray):
        """
        Sets the covariance of the estimation error.

        Raises
        ------
        DimensionMismatchError
            If ``P`` is not 6x6.
        InvalidCovarianceError
            If ``P`` is not symmetric positive semi-definite.
        """
        self._covariance = check_covariance(P, SE3.dof, self.cov_tol)

    def get_covariance(self) -> np.ndarray:
        """Returns a copy of the covariance of the estimation error."""
        return self._covariance.copy()

    @property
    def state(self) -> SE3State:
        return self.get_state()

    @state.setter
    def state(self, x):
        self.set_state(x)

    @property
    def covariance(self) -> np.ndarray:
        return self.get_covariance()

    @covariance.setter
    def covariance(self, P):
        self.set_covariance(P)

    def propagate(
        self, system_model: SystemModel, u: np.ndarray, dt: float = None
    ):
        """
        Propagates the estimate with the first-order linearization of the
        system model,

        .. math::
            \\mathbf{P} \\leftarrow \\mathbf{F} \\mathbf{P} \\mathbf{F}^T
            + \\mathbf{W} \\mathbf{Q} \\mathbf{W}^T.

        Parameters
        ----------
        system_model : SystemModel
            system model to propagate with
        u : np.ndarray
            6-element integrated control
        dt : float, optional
            duration of the step. Forwarded to ``system_model.covariance`` and
            used to advance the state timestamp.

        Raises
        ------
        NumericalFailureError
            If the result is not finite. The filter is left unchanged.
        """
        u = self._check_input(u)
        x = self._state
        F, W, Q = self._linearize_system(system_model, x, u, dt)

        x_new = system_model.evaluate(x, u)
        P_new = F @ self._covariance @ F.T + W @ Q @ W.T
        self._commit(self._advance_stamp(x_new, dt), P_new)

    @abstractmethod
    def update(
        self,
        measurement_model: MeasurementModel,
        z: np.ndarray,
        output_details: bool = False,
    ):
        """
        Fuses a measurement. Returns a dict with the innovation ``z``, its
        covariance ``S``, the gain ``K`` and the ``nis`` when
        ``output_details`` is set.
        """
        pass

    def _first_order_update(
        self, measurement_model: MeasurementModel, z: np.ndarray
    ) -> dict:
        """
        Right-plus EKF correction with a Joseph-form covariance update.
        """
        x = self._state
        P = self._covariance
        y_check, z = self._predict_measurement(measurement_model, x, z)
        m = y_check.size
        H = self._check_shape(
            measurement_model.jacobian(x), (m, SE3.dof), "measurement jacobian"
        )
        R = self._check_shape(
            measurement_model.covariance(x), (m, m), "measurement covariance"
        )

        nu = z - y_check
        S = H @ P @ H.T + R
        K, cho = _kalman_gain(P @ H.T, S, self.pivot_tol)

        x_new = x.plus(K @ nu)
        I_KH = np.identity(SE3.dof) - K @ H
        P_new = I_KH @ P @ I_KH.T + K @ R @ K.T

        self._commit(x_new, P_new)
        return _details(nu, S, K, cho)

    def _linearize_system(self, system_model, x, u, dt):
        F = self._check_shape(
            system_model.jacobian(x, u, self.convention),
            (SE3.dof, SE3.dof),
            "system jacobian",
        )
        W = np.atleast_2d(system_model.input_jacobian(x, u, self.convention))
        if W.shape[0] != SE3.dof:
            raise DimensionMismatchError(
                f"system input jacobian has shape {W.shape}, expected (6, q)."
            )
        Q = self._check_shape(
            system_model.covariance(dt), (W.shape[1], W.shape[1]), "system covariance"
        )
        return F, W, Q

    def _predict_measurement(self, measurement_model, x, z):
        self._check_model(measurement_model)
        y_check = np.asarray(measurement_model.evaluate(x), dtype=np.float64).ravel()
        z = np.asarray(z, dtype=np.float64).ravel()
        if z.shape != y_check.shape:
            raise DimensionMismatchError(
                f"measurement has {z.size} elements, model predicts {y_check.size}."
            )
        return y_check, z

    def _check_model(self, measurement_model: MeasurementModel):
        convention = getattr(measurement_model, "convention", None)
        if convention != self.convention:
            raise ConventionMismatchError(
                f"{type(self).__name__} expects {self.convention.value}-plus "
                f"models, got {measurement_model!r} with convention {convention}."
            )

    def _commit(self, x_new: SE3State, P_new: np.ndarray):
        """
        Replaces the estimate, or raises without touching anything if the new
        values are not usable.
        """
        if not (np.all(np.isfinite(x_new.value)) and np.all(np.isfinite(P_new))):
            logger.debug("%s: non-finite result discarded", type(self).__name__)
            raise NumericalFailureError("filter step produced non-finite values.")

        C = x_new.value[0:3, 0:3]
        if np.max(np.abs(C.T @ C - np.identity(3))) > _ORTHONORMAL_TOL:
            x_new.value = SE3.normalize(x_new.value)

        self._state = x_new
        self._covariance = symmetrize(P_new)

    @staticmethod
    def _advance_stamp(x: SE3State, dt: float) -> SE3State:
        if dt is not None and x.stamp is not None:
            x.stamp = x.stamp + dt
        return x

    @staticmethod
    def _check_input(u) -> np.ndarray:
        u = np.asarray(u, dtype=np.float64).ravel()
        if u.size != SE3.dof:
            raise DimensionMismatchError(
                f"control must have {SE3.dof} elements, got {u.size}."
            )
        return u

    @staticmethod
    def _check_shape(A, shape, what: str) -> np.ndarray:
        A = np.atleast_2d(np.asarray(A, dtype=np.float64))
        if A.shape != shape:
            raise DimensionMismatchError(
                f"{what} has shape {A.shape}, expected {shape}."
            )
        return A

    def __repr__(self):
        return f"{type(self).__name__}(stamp={self._state.stamp})"


def _details(nu, S, K, cho) -> dict:
    return {
        "z": nu,
        "S": S,
        "K": K,
        "nis": float(nu @ la.cho_solve(cho, nu)),
    }


class ExtendedKalmanFilter(LieKalmanFilter):
    """
    On-manifold extended Kalman filter, with the error defined by
    :math:`\\mathcal{X}_{\\mathrm{true}} = \\mathcal{X} \\exp(\\delta \\mathbf{x}^\\wedge)`.
    """

    __slots__ = []

    def update(
        self,
        measurement_model: MeasurementModel,
        z: np.ndarray,
        output_details: bool = False,
    ):
        """
        Fuses a measurement into the estimate.

        Parameters
        ----------
        measurement_model : MeasurementModel
            right-plus measurement model
        z : np.ndarray
            measurement value
        output_details : bool, optional
            Whether to return intermediate computation results (innovation,
            innovation covariance, gain, NIS) in a dict.

        Raises
        ------
        NumericalFailureError
            If the innovation covariance is not positive definite. The filter
            is left unchanged.
        """
        try:
            details = self._first_order_update(measurement_model, z)
        except NumericalFailureError:
            logger.debug("EKF update with %r failed", measurement_model)
            raise

        if output_details:
            return details


class SquareRootExtendedKalmanFilter(LieKalmanFilter):
    """
    Square-root form of the on-manifold EKF. The filter maintains an
    upper-triangular :math:`\\mathbf{S}` with non-negative diagonal such that
    :math:`\\mathbf{P} = \\mathbf{S}^T \\mathbf{S}`, and never forms
    :math:`\\mathbf{P}` during propagation or update.
    """

    __slots__ = ["_sqrt"]

    def __init__(self, x0=None, P0=None, cov_tol=1e-9, pivot_tol=PIVOT_TOL):
        self._sqrt = np.zeros((SE3.dof, SE3.dof))
        super().__init__(x0, P0, cov_tol, pivot_tol)

    def set_covariance(self, P: np.ndarray):
        P = check_covariance(P, SE3.dof, self.cov_tol)
        self._sqrt = _upper_factor(P)

    def set_covariance_sqrt(self, S: np.ndarray):
        """
        Sets the covariance through any square factor ``S`` with
        :math:`\\mathbf{P} = \\mathbf{S}^T \\mathbf{S}`. The factor is brought
        to upper-triangular form.
        """
        S = self._check_shape(S, (SE3.dof, SE3.dof), "covariance factor")
        if not np.all(np.isfinite(S)):
            raise InvalidArgumentError("covariance factor contains non-finite entries.")
        self._sqrt = _triangularize(S)

    def get_covariance_sqrt(self) -> np.ndarray:
        return self._sqrt.copy()

    def get_covariance(self) -> np.ndarray:
        """
        Returns :math:`\\mathbf{S}^T \\mathbf{S}`, computed on every call.
        """
        return symmetrize(self._sqrt.T @ self._sqrt)

    def propagate(
        self, system_model: SystemModel, u: np.ndarray, dt: float = None
    ):
        """
        Propagates the factor with a QR decomposition of

        .. math::
            \\begin{bmatrix} \\mathbf{S} \\mathbf{F}^T \\\\
            \\mathbf{Q}^{1/2} \\mathbf{W}^T \\end{bmatrix}.
        """
        u = self._check_input(u)
        x = self._state
        F, W, Q = self._linearize_system(system_model, x, u, dt)

        A = np.vstack([self._sqrt @ F.T, _upper_factor(Q) @ W.T])
        S_new = _triangularize(A)
        x_new = system_model.evaluate(x, u)
        self._commit_sqrt(self._advance_stamp(x_new, dt), S_new)

    def update(
        self,
        measurement_model: MeasurementModel,
        z: np.ndarray,
        output_details: bool = False,
    ):
        """
        Fuses a measurement with a single QR decomposition of the pre-array

        .. math::
            \\begin{bmatrix} \\mathbf{R}^{1/2} & \\mathbf{0} \\\\
            \\mathbf{S} \\mathbf{H}^T & \\mathbf{S} \\end{bmatrix}
            = \\mathbf{Q} \\begin{bmatrix} \\mathbf{S}_\\nu & \\bar{\\mathbf{K}} \\\\
            \\mathbf{0} & \\mathbf{S}^+ \\end{bmatrix},

        from which :math:`\\mathbf{S}_\\nu^T \\mathbf{S}_\\nu` is the innovation
        covariance, :math:`\\mathbf{K} = \\bar{\\mathbf{K}}^T \\mathbf{S}_\\nu^{-T}`
        is the gain, and :math:`\\mathbf{S}^+` is the updated factor.
        """
        x = self._state
        y_check, z = self._predict_measurement(measurement_model, x, z)
        m = y_check.size
        n = SE3.dof
        H = self._check_shape(
            measurement_model.jacobian(x), (m, n), "measurement jacobian"
        )
        R = self._check_shape(
            measurement_model.covariance(x), (m, m), "measurement covariance"
        )

        S = self._sqrt
        A = np.block([[_upper_factor(R), np.zeros((m, n))], [S @ H.T, S]])
        B = _triangularize(A)
        S_nu = B[:m, :m]
        K_bar = B[:m, m:]
        S_new = B[m:, m:]

        pivots = np.diag(S_nu) ** 2
        if np.min(pivots) <= self.pivot_tol * np.max(pivots):
            logger.debug("SEKF update with %r failed", measurement_model)
            raise NumericalFailureError("innovation covariance is numerically singular.")

        K = la.solve_triangular(S_nu, K_bar, lower=False).T
        nu = z - y_check
        x_new = x.plus(K @ nu)
        self._commit_sqrt(x_new, S_new)

        if output_details:
            S_inn = S_nu.T @ S_nu
            return _details(nu, S_inn, K, (S_nu.T, True))

    def _commit_sqrt(self, x_new: SE3State, S_new: np.ndarray):
        self._commit(x_new, S_new.T @ S_new)
        self._sqrt = S_new


class InvariantExtendedKalmanFilter(LieKalmanFilter):
    """
    Invariant extended Kalman filter on SE(3).

    The covariance is that of the left-invariant error
    :math:`\\boldsymbol{\\eta} = \\mathcal{X}^{-1} \\mathcal{X}_{\\mathrm{true}}`.
    For the body-frame twist model its propagation Jacobian
    :math:`\\mathrm{Ad}(\\exp(-\\mathbf{u}^\\wedge))` depends on the control only.

    Measurements must be ``InvariantMeasurementModel`` instances:

    - left-invariant observations :math:`\\mathbf{y} = \\mathcal{X} \\cdot \\mathbf{p}`
      are fused in the left-invariant frame with
      :math:`\\mathbf{H} = [\\mathbf{1}, -\\mathbf{p}^\\times]` and the
      correction :math:`\\mathcal{X} \\exp(\\delta \\mathbf{x}^\\wedge)`;
    - right-invariant observations :math:`\\mathbf{y} = \\mathcal{X}^{-1} \\cdot \\mathbf{p}`
      are fused in the right-invariant frame, obtained by transporting the
      covariance with :math:`\\mathrm{Ad}(\\mathcal{X})`, with
      :math:`\\mathbf{H} = [-\\mathbf{1}, \\mathbf{p}^\\times]` and the
      correction :math:`\\exp(\\delta \\mathbf{x}^\\wedge) \\mathcal{X}`.

    In both cases :math:`\\mathbf{H}` depends on the fixed point only. Other
    right-plus models can be used after wrapping them in
    ``FirstOrderMeasurement``.
    """

    __slots__ = []

    def update(
        self,
        measurement_model: MeasurementModel,
        z: np.ndarray,
        output_details: bool = False,
    ):
        if isinstance(measurement_model, FirstOrderMeasurement):
            details = self._first_order_update(measurement_model, z)
        elif isinstance(measurement_model, InvariantMeasurementModel):
            details = self._invariant_update(measurement_model, z)
        else:
            raise ConventionMismatchError(
                f"{measurement_model!r} is not an invariant observation. "
                "Wrap it in FirstOrderMeasurement to use it with the IEKF."
            )

        if output_details:
            return details

    def _invariant_update(
        self, measurement_model: InvariantMeasurementModel, z: np.ndarray
    ) -> dict:
        x = self._state
        y_check, z = self._predict_measurement(measurement_model, x, z)
        if y_check.size != 3:
            raise DimensionMismatchError("invariant observations must be 3-vectors.")

        R = self._check_shape(
            measurement_model.covariance(x), (3, 3), "measurement covariance"
        )
        p = np.asarray(measurement_model.invariant_point, dtype=np.float64).ravel()
        C = x.attitude

        if measurement_model.invariance == "right":
            Ad = SE3.adjoint(x.value)
            P = Ad @ self._covariance @ Ad.T
            H = np.hstack([-np.identity(3), SE3.cross(p)])
            nu = C @ (z - y_check)
            R_eff = C @ R @ C.T
        elif measurement_model.invariance == "left":
            P = self._covariance
            H = np.hstack([np.identity(3), -SE3.cross(p)])
            nu = C.T @ (z - y_check)
            R_eff = C.T @ R @ C
        else:
            raise InvalidArgumentError(
                f"unknown invariance {measurement_model.invariance!r}."
            )

        S = H @ P @ H.T + R_eff
        try:
            K, cho = _kalman_gain(P @ H.T, S, self.pivot_tol)
        except NumericalFailureError:
            logger.debug("IEKF update with %r failed", measurement_model)
            raise

        dx = K @ nu
        I_KH = np.identity(SE3.dof) - K @ H
        P_new = I_KH @ P @ I_KH.T + K @ R_eff @ K.T

        x_new = x.copy()
        if measurement_model.invariance == "right":
            x_new.value = SE3.Exp(dx) @ x.value
            Ad_inv = SE3.adjoint(SE3.inverse(x_new.value))
            P_new = Ad_inv @ P_new @ Ad_inv.T
        else:
            x_new.value = x.value @ SE3.Exp(dx)

        self._commit(x_new, P_new)
        return _details(nu, S, K, cho)


class UnscentedKalmanFilterManifold(LieKalmanFilter):
    """
    Unscented Kalman filter on manifolds. Sigma points are drawn in the
    tangent space at the estimate and retracted with
    :math:`\\mathcal{X} \\exp(\\cdot)`. No model Jacobians are used.

    The propagated mean is the propagated central sigma point, which avoids
    an iterative mean on the group.
    """

    __slots__ = ["alpha", "beta", "kappa", "_wm", "_wc", "_lambda"]

    def __init__(
        self,
        x0: SE3State = None,
        P0: np.ndarray = None,
        alpha: float = 1e-3,
        beta: float = 2.0,
        kappa: float = 0.0,
        cov_tol: float = 1e-9,
        pivot_tol: float = PIVOT_TOL,
    ):
        """
        Parameters
        ----------
        x0 : SE3State, optional
            Initial state estimate, by default the identity.
        P0 : np.ndarray, optional
            Initial 6x6 covariance, by default zero.
        alpha, beta, kappa : float, optional
            Unscented transform parameters, by default 1e-3, 2 and 0.
        cov_tol, pivot_tol : float, optional
            As for ``LieKalmanFilter``.
        """
        self.alpha = alpha
        self.beta = beta
        self.kappa = kappa
        self._wm, self._wc, self._lambda = unscented_weights(
            SE3.dof, alpha, beta, kappa
        )
        super().__init__(x0, P0, cov_tol, pivot_tol)

    def sigma_offsets(self, P: np.ndarray) -> np.ndarray:
        """
        Tangent-space sigma point offsets
        :math:`\\pm\\sqrt{n + \\lambda}\\,\\mathbf{L}_i`, as the columns of a
        ``(n, 2n)`` array, where :math:`\\mathbf{P} = \\mathbf{L}\\mathbf{L}^T`.
        ``L`` is the lower Cholesky factor, or a square root from an
        eigendecomposition when ``P`` is singular, in which case some offsets
        are zero. Column ``i`` holds the positive offset along the ``i``-th
        column of ``L`` and column ``n + i`` the negative one.
        """
        n = P.shape[0]
        try:
            L = np.linalg.cholesky(P)
        except np.linalg.LinAlgError:
            L = _upper_factor(P).T
        c = np.sqrt(n + self._lambda)
        return np.hstack([c * L, -c * L])

    def propagate(
        self, system_model: SystemModel, u: np.ndarray, dt: float = None
    ):
        u = self._check_input(u)
        x = self._state
        n = SE3.dof
        wc = self._wc

        D = self.sigma_offsets(self._covariance)
        x_new = system_model.evaluate(x, u)

        P_new = np.zeros((n, n))
        for j in range(2 * n):
            chi = system_model.evaluate(x.plus(D[:, j]), u)
            d = chi.minus(x_new)
            P_new += wc[j + 1] * np.outer(d, d)

        Q = self._check_shape(system_model.covariance(dt), (n, n), "system covariance")
        if np.any(Q):
            eigvals, eigvecs = np.linalg.eigh(Q)
            L_q = eigvecs @ np.diag(np.sqrt(np.clip(eigvals, 0, None)))
            c = np.sqrt(n + self._lambda)
            for j in range(n):
                for sign in (1.0, -1.0):
                    chi = system_model.evaluate(x, u + sign * c * L_q[:, j])
                    d = chi.minus(x_new)
                    P_new += wc[j + 1] * np.outer(d, d)

        self._commit(self._advance_stamp(x_new, dt), P_new)

    def update(
        self,
        measurement_model: MeasurementModel,
        z: np.ndarray,
        output_details: bool = False,
    ):
        x = self._state
        P = self._covariance
        n = SE3.dof
        wm, wc = self._wm, self._wc

        y0, z = self._predict_measurement(measurement_model, x, z)
        m = y0.size
        R = self._check_shape(
            measurement_model.covariance(x), (m, m), "measurement covariance"
        )

        D = self.sigma_offsets(P)

        # Measurement deviations are taken from the central point.
        dY = np.zeros((m, 2 * n))
        for j in range(2 * n):
            y_j = np.asarray(measurement_model.evaluate(x.plus(D[:, j])), dtype=np.float64)
            dY[:, j] = y_j.ravel() - y0
        y_mean = y0 + dY @ wm[1:]

        e0 = y0 - y_mean
        E = y0[:, None] + dY - y_mean[:, None]
        P_zz = wc[0] * np.outer(e0, e0) + (wc[1:] * E) @ E.T + R
        P_xz = (wc[1:] * D) @ E.T

        try:
            K, cho = _kalman_gain(P_xz, P_zz, self.pivot_tol)
        except NumericalFailureError:
            logger.debug("UKFM update with %r failed", measurement_model)
            raise

        nu = z - y_mean
        x_new = x.plus(K @ nu)
        P_new = P - K @ P_zz @ K.T
        self._commit(x_new, P_new)

        if output_details:
            return _details(nu, P_zz, K, cho)


def run_filter(
    filter: LieKalmanFilter,
    system_model: SystemModel,
    x0: SE3State,
    P0: np.ndarray,
    input_data: List[VectorInput],
    meas_data: List[Measurement],
    disable_progress_bar: bool = False,
) -> List[StateWithCovariance]:
    """
    Executes a propagate-update loop over stamped inputs and measurements.
    After propagating to the stamp of each input, every measurement stamped at
    or before that time is fused, in stamp order. Measurements older than
    ``x0`` are discarded. Numerical failures are not caught.

    Parameters
    ----------
    filter : LieKalmanFilter
        Any of the filters in this module. It is reinitialized with ``x0`` and
        ``P0``.
    system_model : SystemModel
        System model used for propagation.
    x0 : SE3State
        Initial state estimate, with a valid timestamp.
    P0 : np.ndarray
        Initial covariance.
    input_data : List[VectorInput]
        Integrated controls. Input ``k`` moves the state from its stamp to the
        stamp of input ``k + 1``.
    meas_data : List[Measurement]
        Measurements, each carrying its model.

    Returns
    -------
    List[StateWithCovariance]
        One estimate at ``x0.stamp`` and one after each propagation.
    """
    if x0.stamp is None:
        raise ValueError("x0 must have a valid timestamp.")

    filter.set_state(x0)
    filter.set_covariance(P0)

    input_data = sorted(input_data, key=lambda u: u.stamp)
    meas_data = [y for y in sorted(meas_data, key=lambda y: y.stamp) if y.stamp >= x0.stamp]

    meas_idx = 0

    def fuse_until(t):
        nonlocal meas_idx
        while meas_idx < len(meas_data) and meas_data[meas_idx].stamp <= t + 1e-9:
            y = meas_data[meas_idx]
            filter.update(y.model, y.value)
            meas_idx += 1

    fuse_until(x0.stamp)
    results_list = [StateWithCovariance(filter.get_state(), filter.get_covariance())]
    for k in tqdm(range(len(input_data) - 1), disable=disable_progress_bar):
        u = input_data[k]
        dt = input_data[k + 1].stamp - u.stamp
        filter.propagate(system_model, u.value, dt)
        fuse_until(input_data[k + 1].stamp)
        results_list.append(
            StateWithCovariance(filter.get_state(), filter.get_covariance())
        )

    logger.debug("%s processed %d measurements", type(filter).__name__, meas_idx)
    return results_list
