"""
Abstract states and models shared by every filter, together with the small
containers passed between them.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable

import numpy as np


class ErrorConvention(str, Enum):
    """
    Tag identifying how a perturbation :math:`\\delta \\mathbf{x}` is applied
    to a group element.

    - ``RIGHT``: :math:`\\mathcal{X} \\exp(\\delta \\mathbf{x}^\\wedge)`, the
      "right-plus" convention. The error
      :math:`\\mathcal{X}^{-1} \\mathcal{X}_{\\mathrm{true}}` is left-invariant.
    - ``LEFT``: :math:`\\exp(\\delta \\mathbf{x}^\\wedge) \\mathcal{X}`. The
      error :math:`\\mathcal{X}_{\\mathrm{true}} \\mathcal{X}^{-1}` is
      right-invariant.

    Models carry one of these tags on their class, and filters refuse models
    whose tag does not match their own.
    """

    RIGHT = "right"
    LEFT = "left"


def _forward_difference(
    fun: Callable[[np.ndarray], np.ndarray], n: int, step_size: float
) -> np.ndarray:
    """
    Stacks ``(fun(h e_i) - fun(0)) / h`` column by column, where ``fun``
    returns a flat array.
    """
    f0 = fun(np.zeros(n))
    jac = np.zeros((f0.size, n))
    for i in range(n):
        dx = np.zeros(n)
        dx[i] = step_size
        jac[:, i] = (fun(dx) - f0) / step_size
    return jac


class State(ABC):
    """
    Base class of estimated quantities. A state holds a ``value``, its number
    of degrees of freedom ``dof``, and ``plus``/``minus`` operators which
    must invert one another:

    .. math::

        (\\mathcal{X} \\oplus \\delta \\mathbf{x}) \\ominus \\mathcal{X} = \\delta \\mathbf{x}.
    """

    __slots__ = ["value", "dof", "stamp", "state_id"]

    def __init__(self, value: Any, dof: int, stamp: float = None, state_id=None):
        self.value = value
        self.dof = dof
        #:float: time at which the state is valid
        self.stamp = stamp
        #:Any: optional user label
        self.state_id = state_id

    @abstractmethod
    def plus(self, dx: np.ndarray) -> "State":
        pass

    @abstractmethod
    def minus(self, x: "State") -> np.ndarray:
        pass

    @abstractmethod
    def copy(self) -> "State":
        pass

    def plus_jacobian_fd(self, dx, step_size=1e-8) -> np.ndarray:
        """
        Derivative of :math:`\\mathcal{X} \\oplus \\delta \\mathbf{x}` with
        respect to :math:`\\delta \\mathbf{x}`, by forward difference.
        """
        dx_bar = np.asarray(dx, dtype=np.float64).ravel()
        Y_bar = self.plus(dx_bar)
        return _forward_difference(
            lambda d: self.plus(dx_bar + d).minus(Y_bar).ravel(), self.dof, step_size
        )

    def __repr__(self):
        body = "\n".join("    " + line for line in str(self.value).split("\n"))
        header = (
            f"{self.__class__.__name__}(stamp={self.stamp}, dof={self.dof}, "
            f"state_id={self.state_id})"
        )
        return header + "\n" + body


class SystemModel(ABC):
    """
    Discrete-time motion model

    .. math::
        \\mathcal{X}_k = f(\\mathcal{X}_{k-1}, \\mathbf{u}_{k-1} + \\mathbf{w}_{k-1}),

    driven by an already-integrated control :math:`\\mathbf{u}` corrupted by
    :math:`\\mathbf{w} \\sim \\mathcal{N}(\\mathbf{0}, \\mathbf{Q})`.

    Only ``evaluate`` and ``covariance`` are mandatory. ``jacobian`` and
    ``input_jacobian`` fall back to finite difference, expressed in whichever
    error convention the caller asks for.
    """

    @abstractmethod
    def evaluate(self, x: State, u: np.ndarray) -> State:
        """
        Returns :math:`f(\\mathcal{X}, \\mathbf{u})` as a new state, leaving
        ``x`` untouched.
        """
        pass

    @abstractmethod
    def covariance(self, dt: float = None) -> np.ndarray:
        """Control noise covariance :math:`\\mathbf{Q}`."""
        pass

    def jacobian(
        self,
        x: State,
        u: np.ndarray,
        convention: ErrorConvention = ErrorConvention.RIGHT,
    ) -> np.ndarray:
        """
        :math:`\\mathbf{F} = D f / D \\mathcal{X}`, mapping a perturbation of
        the previous state to a perturbation of the next one.
        """
        return self.jacobian_fd(x, u, convention)

    def input_jacobian(
        self,
        x: State,
        u: np.ndarray,
        convention: ErrorConvention = ErrorConvention.RIGHT,
    ) -> np.ndarray:
        """
        :math:`\\mathbf{W} = D f / D \\mathbf{u}`, mapping control noise to a
        perturbation of the next state.
        """
        return self.input_jacobian_fd(x, u, convention)

    def jacobian_fd(
        self,
        x: State,
        u: np.ndarray,
        convention: ErrorConvention = ErrorConvention.RIGHT,
        step_size=1e-6,
    ) -> np.ndarray:
        x = _with_convention(x, convention)
        Y_bar = _with_convention(self.evaluate(x, u), convention)

        def perturbed(dx):
            Y = _with_convention(self.evaluate(x.plus(dx), u), convention)
            return Y.minus(Y_bar).ravel()

        return _forward_difference(perturbed, x.dof, step_size)

    def input_jacobian_fd(
        self,
        x: State,
        u: np.ndarray,
        convention: ErrorConvention = ErrorConvention.RIGHT,
        step_size=1e-6,
    ) -> np.ndarray:
        u = np.asarray(u, dtype=np.float64).ravel()
        Y_bar = _with_convention(self.evaluate(x, u), convention)

        def perturbed(du):
            Y = _with_convention(self.evaluate(x, u + du), convention)
            return Y.minus(Y_bar).ravel()

        return _forward_difference(perturbed, u.size, step_size)

    def __repr__(self):
        return f"{self.__class__.__name__} at {hex(id(self))}"


class MeasurementModel(ABC):
    """
    Observation :math:`\\mathbf{y} = \\mathbf{g}(\\mathcal{X}) + \\mathbf{v}`
    with :math:`\\mathbf{v} \\sim \\mathcal{N}(\\mathbf{0}, \\mathbf{R})`.

    Subclasses provide ``evaluate`` and ``covariance``; ``jacobian`` defaults
    to finite difference. The class attribute ``convention`` records the
    error convention ``jacobian`` is written in.
    """

    convention = ErrorConvention.RIGHT

    @abstractmethod
    def evaluate(self, x: State) -> np.ndarray:
        """Noise-free prediction :math:`\\mathbf{g}(\\mathcal{X})`."""
        pass

    @abstractmethod
    def covariance(self, x: State = None) -> np.ndarray:
        """Measurement noise covariance :math:`\\mathbf{R}`."""
        pass

    def jacobian(self, x: State) -> np.ndarray:
        """
        :math:`\\mathbf{H} = D \\mathbf{g} / D \\mathcal{X}`, in the model's
        ``convention``.
        """
        return self.jacobian_fd(x)

    def jacobian_fd(self, x: State, step_size=1e-6):
        x = _with_convention(x, self.convention)
        y = np.asarray(self.evaluate(x)).ravel()
        return _forward_difference(
            lambda dx: np.asarray(self.evaluate(x.plus(dx))).ravel() - y,
            x.dof,
            step_size,
        )

    def __repr__(self):
        return f"{self.__class__.__name__}"


class InvariantMeasurementModel(MeasurementModel):
    """
    A measurement model whose noise-free output is the action of the state on
    a fixed point :math:`\\mathbf{p}`, either

    .. math::

        \\mathbf{y} = \\mathcal{X} \\cdot \\mathbf{p} \\quad \\text{(left-invariant)}

        \\mathbf{y} = \\mathcal{X}^{-1} \\cdot \\mathbf{p} \\quad \\text{(right-invariant)}

    These are the observations for which the invariant EKF has a linearization
    that does not depend on the state estimate.
    """

    #:str: either "left" or "right"
    invariance: str = None

    @property
    @abstractmethod
    def invariant_point(self) -> np.ndarray:
        """The fixed point :math:`\\mathbf{p}` acted upon by the state."""
        pass


class StateWithCovariance:
    """
    A state estimate paired with the covariance of its error, expressed in
    the state's own ``plus`` convention.

    Raises
    ------
    ValueError
        If ``covariance`` is not ``state.dof`` x ``state.dof``.
    """

    __slots__ = ["state", "covariance"]

    def __init__(self, state: State, covariance: np.ndarray):
        n = state.dof
        if np.shape(covariance) != (n, n):
            raise ValueError(
                f"Expected a ({n}, {n}) covariance, got {np.shape(covariance)}."
            )
        self.state = state
        self.covariance = covariance

    @property
    def stamp(self):
        return self.state.stamp

    @stamp.setter
    def stamp(self, stamp):
        self.state.stamp = stamp

    def copy(self) -> "StateWithCovariance":
        return StateWithCovariance(self.state.copy(), self.covariance.copy())

    def __repr__(self):
        return f"StateWithCovariance(stamp={self.stamp})"


class VectorInput:
    """
    A stamped control value, such as an integrated body twist.
    """

    __slots__ = ["value", "stamp", "covariance"]

    def __init__(self, value: np.ndarray, stamp: float = None, covariance=None):
        self.value = np.array(value, dtype=np.float64).ravel()
        self.stamp = stamp
        #:numpy.ndarray: noise covariance of the value, when known
        self.covariance = covariance

    def copy(self) -> "VectorInput":
        return VectorInput(self.value.copy(), self.stamp, self.covariance)

    def __repr__(self):
        return f"VectorInput(stamp={self.stamp}, value={self.value})"


class Measurement:
    """
    A stamped observation together with the model that explains it.
    """

    __slots__ = ["value", "stamp", "model"]

    def __init__(
        self,
        value: np.ndarray,
        stamp: float = None,
        model: MeasurementModel = None,
    ):
        self.value = np.array(value, dtype=np.float64).ravel()
        self.stamp = stamp
        self.model = model

    def __repr__(self):
        return f"Measurement(stamp={self.stamp}, value={self.value}) of {self.model}"


def _with_convention(x: State, convention: ErrorConvention) -> State:
    # Finite-difference helpers perturb in the requested convention regardless
    # of the direction the caller's state was created with.
    if getattr(x, "direction", None) is None or x.direction == convention.value:
        return x
    x = x.copy()
    x.direction = convention.value
    return x
