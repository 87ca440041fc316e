"""
Exceptions raised by the filters and models in kalmanlie.
"""


class KalmanlieError(Exception):
    """Base class for all errors raised by kalmanlie."""


class InvalidArgumentError(KalmanlieError, ValueError):
    """
    The caller supplied an argument that is not admissible, such as a matrix
    that is not an element of SE(3).
    """


class InvalidCovarianceError(InvalidArgumentError):
    """A covariance matrix (or factor) is not symmetric positive semi-definite."""


class ConventionMismatchError(InvalidArgumentError):
    """
    A model linearized with one error convention was handed to a filter that
    expects another.
    """


class DimensionMismatchError(KalmanlieError, ValueError):
    """A model returned an array whose shape does not match the filter."""


class NumericalFailureError(KalmanlieError, RuntimeError):
    """
    A Cholesky or QR factorization broke down. The filter that raised this
    error has been left exactly as it was before the offending call.
    """
