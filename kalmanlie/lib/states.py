from typing import Any

import numpy as np

from kalmanlie.errors import InvalidArgumentError
from kalmanlie.lib.group import SE3
from kalmanlie.types import State


class SE3State(State):
    """
    Rigid body pose, stored as the homogeneous matrix

    .. math::

            \\mathbf{T} = \\begin{bmatrix}
                \\mathbf{C} & \\mathbf{r} \\\\
                \\mathbf{0} & 1
            \\end{bmatrix}.

    Perturbations are 6-vectors ordered as (translation, rotation), applied
    on the side named by ``direction``:

    .. math::
        \\mathbf{T} \\exp(\\delta \\mathbf{x}^\\wedge) \\text{ (right)}, \\qquad
        \\exp(\\delta \\mathbf{x}^\\wedge) \\mathbf{T} \\text{ (left)}.

    Parameters
    ----------
    value : np.ndarray
        A 4x4 pose, or 6 exponential coordinates which are mapped through
        ``SE3.Exp``.
    stamp : float, optional
        time of validity, by default None
    state_id : Any, optional
        user label, by default None
    direction : str, optional
        "left" or "right", by default "right"
    """

    __slots__ = ["direction"]

    def __init__(
        self,
        value: np.ndarray,
        stamp: float = None,
        state_id: Any = None,
        direction="right",
    ):
        T = np.array(value, dtype=np.float64)
        if T.size == SE3.dof:
            T = SE3.Exp(T)
        if T.shape != (4, 4):
            raise InvalidArgumentError(
                f"Cannot build a pose from an array of shape {np.shape(value)}."
            )
        if direction not in ("left", "right"):
            raise ValueError(f"Unknown perturbation direction '{direction}'.")

        self.direction = direction
        super().__init__(T, SE3.dof, stamp, state_id)

    @property
    def attitude(self) -> np.ndarray:
        return self.value[0:3, 0:3]

    @property
    def position(self) -> np.ndarray:
        return self.value[0:3, 3]

    @position.setter
    def position(self, r):
        self.value[0:3, 3] = np.asarray(r).ravel()

    def _compose(self, T: np.ndarray, dT: np.ndarray) -> np.ndarray:
        return T @ dT if self.direction == "right" else dT @ T

    def plus(self, dx: np.ndarray) -> "SE3State":
        out = self.copy()
        out.value = self._compose(self.value, SE3.Exp(dx))
        return out

    def minus(self, x: "SE3State") -> np.ndarray:
        T_inv = SE3.inverse(x.value)
        if self.direction == "right":
            return SE3.Log(T_inv @ self.value)
        return SE3.Log(self.value @ T_inv)

    def plus_jacobian(self, dx: np.ndarray) -> np.ndarray:
        """Derivative of ``self.plus(dx)`` with respect to ``dx``."""
        if self.direction == "right":
            return SE3.right_jacobian(dx)
        return SE3.left_jacobian(dx)

    def minus_jacobian(self, x: "SE3State") -> np.ndarray:
        """Derivative of ``self.minus(x)`` with respect to ``self``."""
        dx = self.minus(x)
        if self.direction == "right":
            return SE3.right_jacobian_inv(dx)
        return SE3.left_jacobian_inv(dx)

    def dot(self, other: "SE3State") -> "SE3State":
        """Group product, keeping this state's stamp and direction."""
        out = self.copy()
        out.value = SE3.compose(self.value, other.value)
        return out

    def inverse(self) -> "SE3State":
        out = self.copy()
        out.value = SE3.inverse(self.value)
        return out

    def is_valid(self, tol: float = 1e-6) -> bool:
        return SE3.is_element(self.value, tol)

    def copy(self) -> "SE3State":
        return SE3State(self.value.copy(), self.stamp, self.state_id, self.direction)

    @staticmethod
    def identity(stamp: float = None, state_id=None, direction="right"):
        return SE3State(np.identity(4), stamp, state_id, direction)

    @staticmethod
    def random(stamp: float = None, state_id=None, direction="right"):
        return SE3State(SE3.random(), stamp, state_id, direction)

    def __repr__(self):
        return (
            f"SE3State(stamp={self.stamp}, state_id={self.state_id}, "
            f"direction={self.direction})\n{self.value}"
        )
