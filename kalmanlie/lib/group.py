"""
SE(3) operations used by the filters.

The group arithmetic itself is provided by ``pymlg``. The only thing this
module adds is the tangent-space ordering: ``pymlg`` orders exponential
coordinates as :math:`(\\boldsymbol{\\phi}, \\boldsymbol{\\rho})` (rotation
first), while everything in kalmanlie uses

.. math::

    \\boldsymbol{\\xi} = \\begin{bmatrix} \\boldsymbol{\\rho} \\\\
    \\boldsymbol{\\phi} \\end{bmatrix}

with the translational part first. All vectors and 6x6 matrices crossing this
module are permuted accordingly.
"""

from pymlg import SE3 as _SE3
from pymlg import SO3
import numpy as np

# Maps kalmanlie tangent indices to pymlg tangent indices. It is its own inverse.
_PERM = np.array([3, 4, 5, 0, 1, 2])


def _to_pymlg(xi) -> np.ndarray:
    return np.asarray(xi, dtype=np.float64).ravel()[_PERM]


def _from_pymlg(xi) -> np.ndarray:
    return np.asarray(xi, dtype=np.float64).ravel()[_PERM]


def _permute_matrix(M: np.ndarray) -> np.ndarray:
    return M[np.ix_(_PERM, _PERM)]


class SE3:
    """
    Namespace of SE(3) operations in :math:`(\\rho, \\phi)` tangent ordering.
    Elements are 4x4 numpy arrays. This class is never instantiated.
    """

    dof = 6
    matrix_size = 4

    @staticmethod
    def identity() -> np.ndarray:
        return np.identity(4)

    @staticmethod
    def random() -> np.ndarray:
        return _SE3.random()

    @staticmethod
    def from_components(C: np.ndarray, r: np.ndarray) -> np.ndarray:
        return _SE3.from_components(C, np.asarray(r).ravel())

    @staticmethod
    def to_components(X: np.ndarray):
        return X[0:3, 0:3], X[0:3, 3]

    @staticmethod
    def Exp(xi) -> np.ndarray:
        """Exponential map from :math:`\\mathbb{R}^6` to SE(3)."""
        return _SE3.Exp(_to_pymlg(xi))

    @staticmethod
    def Log(X: np.ndarray) -> np.ndarray:
        """Logarithmic map from SE(3) to :math:`\\mathbb{R}^6`, as a 1D array."""
        return _from_pymlg(_SE3.Log(X))

    @staticmethod
    def inverse(X: np.ndarray) -> np.ndarray:
        return _SE3.inverse(X)

    @staticmethod
    def compose(X: np.ndarray, Y: np.ndarray) -> np.ndarray:
        return X @ Y

    @staticmethod
    def adjoint(X: np.ndarray) -> np.ndarray:
        """
        Adjoint matrix :math:`\\mathrm{Ad}(\\mathbf{X})` satisfying
        :math:`\\mathbf{X} \\exp(\\boldsymbol{\\xi}^\\wedge) \\mathbf{X}^{-1}
        = \\exp((\\mathrm{Ad}(\\mathbf{X}) \\boldsymbol{\\xi})^\\wedge)`.
        """
        return _permute_matrix(_SE3.adjoint(X))

    @staticmethod
    def left_jacobian(xi) -> np.ndarray:
        return _permute_matrix(_SE3.left_jacobian(_to_pymlg(xi)))

    @staticmethod
    def right_jacobian(xi) -> np.ndarray:
        return _permute_matrix(_SE3.right_jacobian(_to_pymlg(xi)))

    @staticmethod
    def left_jacobian_inv(xi) -> np.ndarray:
        return _permute_matrix(_SE3.left_jacobian_inv(_to_pymlg(xi)))

    @staticmethod
    def right_jacobian_inv(xi) -> np.ndarray:
        return _permute_matrix(_SE3.right_jacobian_inv(_to_pymlg(xi)))

    @staticmethod
    def act(X: np.ndarray, p) -> np.ndarray:
        """Rigid motion of a point, :math:`\\mathbf{C}\\mathbf{p} + \\mathbf{r}`."""
        p = np.asarray(p, dtype=np.float64).ravel()
        return X[0:3, 0:3] @ p + X[0:3, 3]

    @staticmethod
    def act_jacobian(X: np.ndarray, p) -> np.ndarray:
        """
        Jacobian of :math:`\\mathbf{X} \\exp(\\boldsymbol{\\xi}^\\wedge)
        \\cdot \\mathbf{p}` with respect to :math:`\\boldsymbol{\\xi}` at zero,
        which is :math:`\\mathbf{C} [\\mathbf{1}, -\\mathbf{p}^\\times]`.
        """
        p = np.asarray(p, dtype=np.float64).ravel()
        C = X[0:3, 0:3]
        return np.hstack([C, -C @ SO3.wedge(p)])

    @staticmethod
    def cross(v) -> np.ndarray:
        """Skew-symmetric cross-product matrix of a 3-vector."""
        return SO3.wedge(np.asarray(v, dtype=np.float64).ravel())

    @staticmethod
    def is_element(X: np.ndarray, tol: float = 1e-6) -> bool:
        X = np.asarray(X)
        if X.shape != (4, 4) or not np.all(np.isfinite(X)):
            return False
        C = X[0:3, 0:3]
        if not np.allclose(X[3, :], [0, 0, 0, 1], atol=tol):
            return False
        if not np.allclose(C.T @ C, np.identity(3), atol=tol):
            return False
        return np.linalg.det(C) > 0

    @staticmethod
    def normalize(X: np.ndarray) -> np.ndarray:
        """
        Projects the rotation block onto SO(3) using an SVD. The translation
        is kept as-is.
        """
        X = X.copy()
        U, _, Vt = np.linalg.svd(X[0:3, 0:3])
        D = np.diag([1.0, 1.0, np.linalg.det(U @ Vt)])
        X[0:3, 0:3] = U @ D @ Vt
        X[3, :] = [0, 0, 0, 1]
        return X
