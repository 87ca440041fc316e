"""
Localization of a robot moving in 3D, using odometry, the relative position
of five known beacons, and GPS position fixes. The same data is fed to the
EKF, the square-root EKF, the invariant EKF and the UKF on manifolds, and
their errors are compared with dead-reckoning.

The robot state is a pose :math:`\\mathbf{T} \\in SE(3)`. The control is the
nominal body twist ``U_NOM`` integrated over the sampling period, corrupted by
noise on the twist rate.

GPS fixes are simulated with a variance of 6e-3 m^2, but the filters are given
the beacon variance for them.
"""

import logging
from typing import Dict, List

import numpy as np

import kalmanlie as kl

logger = logging.getLogger(__name__)

DT = 0.01  # s
VAR_ODOMETRY = 9e-6  # (m/s)^2
VAR_GYRO = 1e-4  # (rad/s)^2
U_NOM = np.array([0.1, 0.0, 0.05, 0.0, 0.0, 0.05])

LANDMARKS = np.array(
    [
        [2.0, 0.0, 0.0],
        [3.0, -1.0, -1.0],
        [2.0, -1.0, 1.0],
        [2.0, 1.0, 1.0],
        [2.0, 1.0, -1.0],
    ]
)
Y_SIGMAS = np.array([0.01, 0.01, 0.01])
GPS_SIGMAS = np.sqrt([6e-3, 6e-3, 6e-3])

LANDMARK_FREQ = 50  # Hz
GPS_FREQ = 10  # Hz

P0 = np.diag([1.0, 1.0, 1.0, np.pi / 4, np.pi / 4, np.pi / 4])


def make_filters() -> Dict[str, kl.LieKalmanFilter]:
    return {
        "EKF": kl.ExtendedKalmanFilter(),
        "SEKF": kl.SquareRootExtendedKalmanFilter(),
        "IEKF": kl.InvariantExtendedKalmanFilter(),
        "UKFM": kl.UnscentedKalmanFilterManifold(),
    }


def dead_reckoning(system_model, x0, input_list) -> List[kl.SE3State]:
    x = x0.copy()
    poses = [x.copy()]
    for u in input_list[:-1]:
        x = system_model.evaluate(x, u.value)
        poses.append(x.copy())
    return poses


def main(t_max: float = 20.0, plot: bool = False):
    U = np.diag(np.hstack([[VAR_ODOMETRY] * 3, [VAR_GYRO] * 3]) / DT)
    system_model = kl.BodyFrameTwist.from_continuous(U, DT)

    R = np.diag(Y_SIGMAS**2)
    landmark_models = [kl.LandmarkRelativePosition(b, R) for b in LANDMARKS]
    gps_filter_model = kl.GlobalPosition(R)
    gps_true_model = kl.GlobalPosition(np.diag(GPS_SIGMAS**2))

    # ##########################################################################
    # Data generation
    dg = kl.DataGenerator(
        system_model,
        lambda t, x: U_NOM,
        U,
        1 / DT,
        landmark_models + [gps_true_model],
        [LANDMARK_FREQ] * len(landmark_models) + [GPS_FREQ],
    )
    x_true = kl.SE3State.identity(stamp=0.0)
    states_true, input_list, meas_list = dg.generate(x_true, 0.0, t_max, noise=True)

    for meas in meas_list:
        if meas.model is gps_true_model:
            meas.model = gps_filter_model

    x0 = x_true.plus(np.sqrt(np.diag(P0)) * np.random.randn(6))

    # ##########################################################################
    # Filtering
    estimates = {}
    results = {}
    for name, kf in make_filters().items():
        estimates[name] = kl.run_filter(
            kf, system_model, x0, P0, input_list, meas_list, disable_progress_bar=True
        )
        results[name] = kl.GaussianResultList.from_estimates(
            estimates[name], states_true
        )

    unfiltered = dead_reckoning(system_model, x0, input_list)
    unfiltered_error = np.array(
        [x.minus(xh) for x, xh in zip(states_true, unfiltered)]
    )

    for name, result in results.items():
        logger.info(
            "%-5s RMSE: position %.4f m, attitude %.4f rad, ANEES %.2f",
            name,
            result.position_rmse,
            result.attitude_rmse,
            np.mean(result.nees),
        )
    logger.info(
        "UNFI  RMSE: position %.4f m, attitude %.4f rad",
        np.sqrt(np.mean(unfiltered_error[:, 0:3] ** 2)),
        np.sqrt(np.mean(unfiltered_error[:, 3:6] ** 2)),
    )

    if plot:
        import matplotlib.pyplot as plt
        import seaborn as sns

        sns.set_theme(style="whitegrid")
        for name, result in results.items():
            fig, axs = kl.plot_error(result)
            fig.suptitle(f"{name} error and three-sigma bounds")

        fig, ax = None, None
        for name, result in results.items():
            fig, ax = kl.plot_nees(result, ax=ax, label=name)
        ax.set_yscale("log")

        kl.plot_trajectories(estimates, states_true, LANDMARKS)
        plt.show()

    return results


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    main(t_max=350.0, plot=True)
