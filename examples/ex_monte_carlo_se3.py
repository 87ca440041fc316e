"""
Consistency check of the filters with a Monte Carlo experiment. Each trial
draws its own noise and initial error, and ``monte_carlo`` aggregates the
average NEES over all trials along with its chi-squared bounds. A consistent
filter keeps the average NEES between the bounds.
"""

import logging
from typing import Type

import numpy as np

import kalmanlie as kl

logger = logging.getLogger(__name__)


def main(
    filter_type: Type[kl.LieKalmanFilter] = kl.InvariantExtendedKalmanFilter,
    num_trials: int = 20,
    t_max: float = 10.0,
    num_jobs: int = -1,
) -> kl.MonteCarloResult:
    dt = 0.01
    x0_true = kl.SE3State.identity(stamp=0.0)
    P0 = np.diag([0.1**2, 0.1**2, 0.1**2, 0.1**2, 0.1**2, 0.1**2])
    Q_c = np.diag([0.01**2, 0.01**2, 0.01**2, 0.01**2, 0.01**2, 0.01**2]) / dt
    system_model = kl.BodyFrameTwist.from_continuous(Q_c, dt)

    def input_profile(t, x):
        return np.array([0.5, 0.1 * np.sin(0.5 * t), 0.05, 0.0, 0.05, 0.2])

    R = 0.05**2 * np.identity(3)
    models = [
        kl.LandmarkRelativePosition([3.0, 0.0, 0.0], R),
        kl.LandmarkRelativePosition([0.0, 3.0, 1.0], R),
        kl.LandmarkRelativePosition([-2.0, -1.0, 2.0], R),
        kl.GlobalPosition(0.1**2 * np.identity(3)),
    ]
    dg = kl.DataGenerator(
        system_model, input_profile, Q_c, 1 / dt, models, [10, 10, 10, 1]
    )

    def trial(trial_number: int) -> kl.GaussianResultList:
        # Each trial is seeded with its own number.
        np.random.seed(trial_number)
        states_true, input_data, meas_data = dg.generate(x0_true, 0, t_max, noise=True)
        x0_check = x0_true.plus(kl.randvec(P0).ravel())
        estimates = kl.run_filter(
            filter_type(),
            system_model,
            x0_check,
            P0,
            input_data,
            meas_data,
            disable_progress_bar=True,
        )
        return kl.GaussianResultList.from_estimates(estimates, states_true)

    results = kl.monte_carlo(trial, num_trials=num_trials, num_jobs=num_jobs, verbose=0)
    logger.info(
        "%s: average NEES %.2f, expected %d",
        filter_type.__name__,
        np.mean(results.average_nees),
        kl.lib.SE3.dof,
    )
    return results


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    results = main()

    import matplotlib.pyplot as plt

    fig, ax = kl.plot_nees(results)
    ax.set_title(f"Average NEES over {results.num_trials} trials")

    fig, axs = plt.subplots(3, 2, sharex=True)
    for result in results.trial_results[:5]:
        kl.plot_error(result, axs=axs)
    fig.suptitle("Estimation error")

    plt.tight_layout()
    plt.show()
