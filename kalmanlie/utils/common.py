"""
Validation helpers, estimation error metrics, and Monte Carlo tooling.
"""

import logging
from typing import Callable, List, Sequence, Tuple

import numpy as np
from joblib import Parallel, delayed
from scipy.stats.distributions import chi2

from kalmanlie.errors import DimensionMismatchError, InvalidCovarianceError
from kalmanlie.types import State, StateWithCovariance

logger = logging.getLogger(__name__)


def symmetrize(P: np.ndarray) -> np.ndarray:
    """Returns :math:`(\\mathbf{P} + \\mathbf{P}^T)/2`."""
    return 0.5 * (P + P.T)


def check_covariance(
    P: np.ndarray, dim: int, tol: float = 1e-9, name: str = "covariance"
) -> np.ndarray:
    """
    Validates that ``P`` is a ``dim`` x ``dim`` symmetric positive
    semi-definite matrix, and returns a symmetrized float copy of it.

    Tolerances are relative to the largest entry of ``P``.

    Raises
    ------
    DimensionMismatchError
        If ``P`` does not have shape ``(dim, dim)``.
    InvalidCovarianceError
        If ``P`` is not finite, not symmetric, or has a negative eigenvalue.
    """
    P = np.array(P, dtype=np.float64)
    if P.ndim == 0 and dim == 1:
        P = P.reshape((1, 1))
    if P.shape != (dim, dim):
        raise DimensionMismatchError(
            f"{name} must have shape ({dim}, {dim}), got {P.shape}."
        )
    if not np.all(np.isfinite(P)):
        raise InvalidCovarianceError(f"{name} contains non-finite entries.")

    scale = max(1.0, np.max(np.abs(P)))
    if np.max(np.abs(P - P.T)) > tol * scale:
        raise InvalidCovarianceError(f"{name} is not symmetric.")

    P = symmetrize(P)
    min_eig = np.min(np.linalg.eigvalsh(P))
    if min_eig < -tol * scale:
        raise InvalidCovarianceError(
            f"{name} is not positive semi-definite (min eigenvalue {min_eig:.3e})."
        )
    return P


def check_outlier(error: np.ndarray, covariance: np.ndarray, confidence=0.99):
    """
    Chi-squared test on the normalized innovation squared. Returns True when
    ``error`` is unlikely under ``covariance`` at the given confidence. The
    filters never gate measurements themselves; this is for drivers that want
    to.
    """
    error = np.asarray(error, dtype=np.float64).ravel()
    nis = float(error @ np.linalg.solve(covariance, error))
    return nis > chi2.ppf(confidence, df=error.size)


def _chi2_interval(
    confidence_interval: float, dof, num_trials: int = 1, double_sided=True
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Bounds of the average of ``num_trials`` NEES samples, each chi-squared
    with ``dof`` degrees of freedom.
    """
    if not 0 < confidence_interval < 1:
        raise ValueError("Confidence interval must lie in (0, 1)")

    tail = (1 - confidence_interval) / 2
    upper_p = 1 - tail if double_sided else confidence_interval
    df = num_trials * np.asarray(dof)
    return chi2.ppf(tail, df=df) / num_trials, chi2.ppf(upper_p, df=df) / num_trials


class GaussianResult:
    """
    Error metrics of one Gaussian estimate against the true state. The error
    is ``state_true.minus(state)``, ordered as (translation, rotation) for
    SE(3) states.
    """

    __slots__ = [
        "stamp",
        "state",
        "state_true",
        "covariance",
        "error",
        "ees",
        "nees",
        "md",
        "three_sigma",
        "rmse",
    ]

    def __init__(self, estimate: StateWithCovariance, state_true: State):
        self.stamp = estimate.stamp
        self.state = estimate.state
        self.state_true = state_true
        self.covariance = estimate.covariance

        e = np.ravel(state_true.minus(self.state))
        self.error = e
        #:float: squared error norm
        self.ees = float(e @ e)
        #:float: error squared, normalized by the covariance
        self.nees = float(e @ np.linalg.solve(self.covariance, e))
        self.rmse = np.sqrt(self.ees / e.size)
        #:float: Mahalanobis distance of the error
        self.md = np.sqrt(self.nees)
        self.three_sigma = 3.0 * np.sqrt(np.diag(self.covariance))


def _index_list(key, length: int) -> List[int]:
    if isinstance(key, (int, np.integer)):
        return [int(key)]
    if isinstance(key, slice):
        return list(range(length))[key]
    if isinstance(key, list):
        return key
    raise TypeError("keys must be int, slice, or list of indices")


class GaussianResultList:
    """
    Time history of ``GaussianResult`` metrics, stacked into arrays with time
    along the first axis.

    Indexing selects time steps and, optionally, error components, and
    recomputes the NEES of the selection. For SE(3) errors,

    .. code-block:: python

        results[:, 0:3]   # position
        results[:, 3:6]   # attitude
        results[100:]     # everything after the 100th step
    """

    __slots__ = [
        "stamp",
        "state",
        "state_true",
        "covariance",
        "error",
        "ees",
        "nees",
        "md",
        "three_sigma",
        "value",
        "value_true",
        "dof",
        "rmse",
    ]

    _STACKED = ["stamp", "covariance", "error", "ees", "rmse", "nees", "md", "three_sigma"]

    def __init__(self, result_list: List[GaussianResult]):
        for name in self._STACKED:
            setattr(self, name, np.array([getattr(r, name) for r in result_list]))

        # Object arrays, so that they can be indexed like the metrics.
        self.state = np.empty(len(result_list), dtype=object)
        self.state_true = np.empty(len(result_list), dtype=object)
        for i, r in enumerate(result_list):
            self.state[i] = r.state
            self.state_true[i] = r.state_true

        #:numpy.ndarray with shape (N, 4, 4): estimated poses
        self.value = np.array([r.state.value for r in result_list])
        #:numpy.ndarray with shape (N, 4, 4): true poses
        self.value_true = np.array([r.state_true.value for r in result_list])
        #:numpy.ndarray with shape (N,): degrees of freedom of each error
        self.dof = np.array([r.error.size for r in result_list])

    def __len__(self):
        return len(self.stamp)

    def __getitem__(self, key):
        if not isinstance(key, tuple):
            key = (key, slice(None))
        if len(key) != 2:
            raise IndexError("Only two dimensional indexing is supported")

        steps = _index_list(key[0], len(self.stamp))
        dims = _index_list(key[1], self.error.shape[1])

        out = GaussianResultList([])
        out.stamp = self.stamp[steps]
        out.state = self.state[steps]
        out.state_true = self.state_true[steps]
        out.value = self.value[steps]
        out.value_true = self.value_true[steps]

        out.error = self.error[np.ix_(steps, dims)]
        out.covariance = self.covariance[np.ix_(steps, dims, dims)]
        weighted = np.linalg.solve(out.covariance, out.error[..., None])[..., 0]
        out.nees = np.sum(out.error * weighted, axis=1)
        out.ees = np.sum(out.error**2, axis=1)
        out.dof = np.full(len(steps), len(dims))
        out.rmse = np.sqrt(out.ees / out.dof)
        out.md = np.sqrt(out.nees)
        out.three_sigma = 3.0 * np.sqrt(np.diagonal(out.covariance, axis1=1, axis2=2))
        return out

    @property
    def position_rmse(self) -> float:
        """RMSE of the translational error over the whole trajectory."""
        return float(np.sqrt(np.mean(self.error[:, 0:3] ** 2)))

    @property
    def attitude_rmse(self) -> float:
        """RMSE of the rotational error over the whole trajectory."""
        return float(np.sqrt(np.mean(self.error[:, 3:6] ** 2)))

    def nees_lower_bound(self, confidence_interval: float) -> np.ndarray:
        """
        Lower end of the two-sided ``confidence_interval`` region of the NEES
        at every time step.
        """
        return _chi2_interval(confidence_interval, self.dof)[0]

    def nees_upper_bound(
        self, confidence_interval: float, double_sided=True
    ) -> np.ndarray:
        """
        Upper bound of the NEES at every time step. With
        ``double_sided=False`` the bound is the ``confidence_interval``
        quantile itself.
        """
        return _chi2_interval(confidence_interval, self.dof, 1, double_sided)[1]

    @staticmethod
    def from_estimates(
        estimate_list: Sequence[StateWithCovariance],
        state_true_list: Sequence[State],
    ) -> "GaussianResultList":
        """
        Pairs each estimate with the true state nearest to it in time.
        ``state_true_list`` must be sorted by stamp.
        """
        true_stamps = np.array([x.stamp for x in state_true_list])
        return GaussianResultList(
            [
                GaussianResult(
                    estimate,
                    state_true_list[find_nearest_stamp_idx(true_stamps, estimate.stamp)],
                )
                for estimate in estimate_list
            ]
        )


class MonteCarloResult:
    """
    Averages of the error metrics over independent trials of the same
    scenario. All trials must share the same timestamps.
    """

    def __init__(self, trial_results: List[GaussianResultList]):
        self.trial_results = trial_results
        self.num_trials = len(trial_results)
        self.stamp = trial_results[0].stamp
        self.dof: np.ndarray = trial_results[0].dof
        self.expected_nees: np.ndarray = np.array(self.dof)

        errors = np.array([t.error for t in trial_results])
        #:numpy.ndarray with shape (N,): NEES averaged over trials
        self.average_nees = np.mean([t.nees for t in trial_results], axis=0)
        #:numpy.ndarray with shape (N,): squared error norm averaged over trials
        self.average_ees = np.mean([t.ees for t in trial_results], axis=0)
        #:numpy.ndarray with shape (N, dof): RMSE of each error component
        self.rmse = np.sqrt(np.mean(errors**2, axis=0))
        self.total_rmse = np.sqrt(self.average_ees)

        # Aliases so that plotting helpers accept both result types.
        self.nees = self.average_nees
        self.ees = self.average_ees

    def nees_lower_bound(self, confidence_interval: float) -> np.ndarray:
        return _chi2_interval(confidence_interval, self.dof, self.num_trials)[0]

    def nees_upper_bound(
        self, confidence_interval: float, double_sided=True
    ) -> np.ndarray:
        return _chi2_interval(
            confidence_interval, self.dof, self.num_trials, double_sided
        )[1]


def monte_carlo(
    trial: Callable[[int], GaussianResultList],
    num_trials: int,
    num_jobs: int = -1,
    verbose: int = 10,
) -> MonteCarloResult:
    """
    Runs ``trial(0)``, ..., ``trial(num_trials - 1)`` and aggregates their
    results.

    Parameters
    ----------
    trial : Callable[[int], GaussianResultList]
        Runs one trial given its number. Trials should seed their own random
        draws, for instance with the trial number.
    num_trials : int
        Number of trials.
    num_jobs : int, optional
        Number of parallel joblib workers, by default -1 (all CPUs). With 1,
        trials run sequentially in this process.
    verbose : int, optional
        joblib verbosity level, by default 10.

    Returns
    -------
    MonteCarloResult
        Aggregated results.
    """
    logger.info("Starting Monte Carlo experiment with %d trials", num_trials)
    trial_results = Parallel(n_jobs=num_jobs, verbose=verbose)(
        delayed(trial)(i) for i in range(num_trials)
    )
    return MonteCarloResult(trial_results)


def randvec(cov: np.ndarray, num_samples: int = 1) -> np.ndarray:
    """
    Draws zero-mean Gaussian samples with covariance ``cov``, which may be
    singular.

    Parameters
    ----------
    cov : np.ndarray
        (n, n) positive semi-definite covariance
    num_samples : int, optional
        number of samples, by default 1

    Returns
    -------
    np.ndarray with shape (n, num_samples)
        One sample per column.
    """
    cov = np.atleast_2d(cov)
    eigvals, eigvecs = np.linalg.eigh(cov)
    L = eigvecs * np.sqrt(np.clip(eigvals, 0, None))
    return L @ np.random.normal(0, 1, (cov.shape[0], num_samples))


def find_nearest_stamp_idx(stamps_list, stamp: float) -> int:
    """
    Index of the entry of the sorted ``stamps_list`` closest to ``stamp``.
    """
    stamps_list = np.asarray(stamps_list)
    idx = int(np.searchsorted(stamps_list, stamp))
    if idx == 0:
        return 0
    if idx == len(stamps_list):
        return len(stamps_list) - 1
    if abs(stamp - stamps_list[idx - 1]) <= abs(stamps_list[idx] - stamp):
        return idx - 1
    return idx


def jacobian(
    fun: Callable,
    x,
    step_size: float = 1e-6,
    method: str = "central",
) -> np.ndarray:
    """
    Computes the Jacobian of a function by finite difference. ``x`` may be
    a numpy array or a ``State``, in which case the derivative is taken with
    respect to ``x.plus(dx)``. If ``fun`` returns a ``State``, its output is
    differenced with ``minus``.

    .. code-block:: python

        T = SE3State([0.1, 0.2, 0.3, 0.4, 0.5, 0.6], direction="right")
        jac_fd = jacobian(lambda T: T.attitude.T @ (b - T.position), T)

    Parameters
    ----------
    fun : Callable
        function to compute the Jacobian of
    x : np.ndarray or State
        point at which the Jacobian is computed
    step_size : float, optional
        finite difference step size, by default 1e-6
    method : str, optional
        either "forward" or "central", by default "central"

    Returns
    -------
    np.ndarray with shape (M, N)
        Jacobian, where ``M`` is the DOF of the output and ``N`` that of the
        input.
    """
    if method not in ("forward", "central"):
        raise ValueError("method must be either 'forward' or 'central'.")

    if isinstance(x, State):
        N = x.dof

        def perturb(dx):
            return x.plus(dx)

    else:
        x = np.asarray(x, dtype=np.float64).ravel()
        N = x.size

        def perturb(dx):
            return x + dx

    def diff(a, b) -> np.ndarray:
        if isinstance(a, State):
            return a.minus(b).ravel()
        return (np.asarray(a) - np.asarray(b)).ravel()

    y_bar = fun(perturb(np.zeros(N)))
    M = diff(y_bar, y_bar).size
    jac = np.zeros((M, N))
    for i in range(N):
        dx = np.zeros(N)
        dx[i] = step_size
        if method == "forward":
            jac[:, i] = diff(fun(perturb(dx)), y_bar) / step_size
        else:
            jac[:, i] = diff(fun(perturb(dx)), fun(perturb(-dx))) / (2 * step_size)
    return jac
