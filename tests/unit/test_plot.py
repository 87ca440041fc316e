import numpy as np
import kalmanlie as kl

import matplotlib.pyplot as plt
import seaborn as sns

sns.set_style("whitegrid")

np.random.seed(0)


def _trajectory(N=50):
    process_model = kl.BodyFrameTwist(np.zeros((6, 6)))
    u = np.array([0.1, 0.3, 0.0, 0.1, 0.0, 0.05])
    x = kl.SE3State([0.3, 3, 4, 0, 0, 0], stamp=0.0)
    x_traj = [x.copy()]
    for k in range(N - 1):
        x = process_model.evaluate(x, u)
        x.stamp = 0.1 * (k + 1)
        x_traj.append(x.copy())
    return x_traj


def _results(x_traj):
    estimates = [
        kl.StateWithCovariance(x.plus(0.01 * np.random.randn(6)), 1e-4 * np.eye(6))
        for x in x_traj
    ]
    return estimates, kl.GaussianResultList.from_estimates(estimates, x_traj)


def test_plot_error():
    _, results = _results(_trajectory())
    fig, axs = kl.plot_error(results, label="EKF")
    assert axs.shape == (3, 2)
    fig, axs2 = kl.plot_error(results, axs=axs, color="tab:red", bounds=False)
    assert axs2 is not None
    assert axs[2, 1].get_xlabel() == "Time [s]"
    plt.close("all")


def test_plot_nees():
    _, results = _results(_trajectory())
    fig, ax = kl.plot_nees(results, label="EKF")
    fig, ax = kl.plot_nees(results, ax=ax, label="UKFM", normalize=True)
    _, labels = ax.get_legend_handles_labels()
    assert labels.count("Expected NEES") == 1
    plt.close("all")


def test_plot_nees_monte_carlo():
    x_traj = _trajectory(10)
    results = kl.monte_carlo(
        lambda k: _results(x_traj)[1], num_trials=3, num_jobs=1, verbose=0
    )
    fig, ax = kl.plot_nees(results, confidence_interval=None)
    plt.close("all")


def test_plot_poses_3d():
    x_traj = _trajectory()
    fig, ax = kl.plot_poses(x_traj, step=10, label="truth")
    estimates, results = _results(x_traj)
    kl.plot_poses(estimates, ax=ax)
    kl.plot_poses(results, ax=ax, line_color="tab:blue")
    plt.close("all")


def test_plot_trajectories():
    x_traj = _trajectory()
    estimates, _ = _results(x_traj)
    landmarks = np.array([[2.0, 0.0, 0.0], [3.0, -1.0, -1.0]])
    fig, ax = kl.plot_trajectories({"EKF": estimates}, x_traj, landmarks)
    _, labels = ax.get_legend_handles_labels()
    assert "EKF" in labels
    assert "Ground truth" in labels
    assert "Landmarks" in labels
    plt.close("all")


def test_plot_trajectories_landmarks_only():
    landmarks = np.array([[2.0, 0.0, 0.0], [3.0, -1.0, -1.0]])
    fig, ax = kl.plot_trajectories({}, landmarks=landmarks)
    _, labels = ax.get_legend_handles_labels()
    assert labels == ["Landmarks"]
    assert ax.get_zlabel() == "z [m]"
    plt.close("all")
