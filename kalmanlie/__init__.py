from .types import (
    ErrorConvention,
    State,
    SystemModel,
    MeasurementModel,
    InvariantMeasurementModel,
    StateWithCovariance,
    VectorInput,
    Measurement,
)
from .errors import (
    KalmanlieError,
    InvalidArgumentError,
    InvalidCovarianceError,
    ConventionMismatchError,
    DimensionMismatchError,
    NumericalFailureError,
)
from .filters import (
    LieKalmanFilter,
    ExtendedKalmanFilter,
    SquareRootExtendedKalmanFilter,
    InvariantExtendedKalmanFilter,
    UnscentedKalmanFilterManifold,
    unscented_weights,
    run_filter,
)
from . import lib
from . import utils

from .datagen import DataGenerator, generate_measurement

from .lib import (
    SE3,
    SE3State,
    BodyFrameTwist,
    LandmarkRelativePosition,
    GlobalPosition,
    FirstOrderMeasurement,
)

from .utils.common import (
    GaussianResult,
    GaussianResultList,
    MonteCarloResult,
    monte_carlo,
    randvec,
    find_nearest_stamp_idx,
    check_covariance,
    check_outlier,
    jacobian,
)

from .utils.plot import (
    plot_error,
    plot_nees,
    plot_poses,
    plot_trajectories,
    set_axes_equal,
)
