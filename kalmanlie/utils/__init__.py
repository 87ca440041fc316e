from .common import (
    GaussianResult,
    GaussianResultList,
    MonteCarloResult,
    monte_carlo,
    randvec,
    find_nearest_stamp_idx,
    check_covariance,
    check_outlier,
    jacobian,
    symmetrize,
)

from .plot import (
    plot_error,
    plot_nees,
    plot_poses,
    plot_trajectories,
    set_axes_equal,
)
