"""
Plotting helpers for filter results on SE(3).
"""

from typing import Dict, List, Tuple

import matplotlib.pyplot as plt
import numpy as np

from kalmanlie.lib.states import SE3State
from kalmanlie.types import StateWithCovariance
from kalmanlie.utils.common import GaussianResultList

#:List[str]: axis labels of the (translation, rotation) error components
ERROR_LABELS = [
    "$\\rho_x$ [m]",
    "$\\rho_y$ [m]",
    "$\\rho_z$ [m]",
    "$\\phi_x$ [rad]",
    "$\\phi_y$ [rad]",
    "$\\phi_z$ [rad]",
]

TRIAD_COLORS = ["tab:red", "tab:green", "tab:blue"]


def _color_kwargs(color) -> dict:
    return {} if color is None else {"color": color}


def plot_error(
    results: GaussianResultList,
    axs: np.ndarray = None,
    label: str = None,
    color=None,
    bounds: bool = True,
) -> Tuple[plt.Figure, np.ndarray]:
    """
    Error components against time, with shaded three-sigma bands. Axes are
    filled column-major in groups of three, so a pose error puts translation
    on the left and rotation on the right.

    Parameters
    ----------
    results : GaussianResultList
        Errors and covariances to draw
    axs : np.ndarray of plt.Axes, optional
        Existing grid to draw on, for overlaying several filters. A new one
        is created by default.
    label : str, optional
        Legend entry of the error lines
    color : optional
        Shared color of the lines and bands
    bounds : bool, optional
        Draw the three-sigma bands, by default True

    Returns
    -------
    plt.Figure
    np.ndarray of plt.Axes
    """
    dim = results.error.shape[1]
    if axs is None:
        fig, axs = plt.subplots(
            min(dim, 3), -(-dim // 3), sharex=True, squeeze=False
        )
    else:
        axs = np.atleast_2d(axs)
        fig = axs.flat[0].get_figure()

    style = _color_kwargs(color)
    t = results.stamp
    for i, ax in zip(range(dim), axs.ravel("F")):
        if bounds:
            sigma3 = results.three_sigma[:, i]
            ax.fill_between(t, -sigma3, sigma3, alpha=0.3, **style)
        ax.plot(t, results.error[:, i], label=label, **style)
        if dim == len(ERROR_LABELS):
            ax.set_ylabel(ERROR_LABELS[i])

    for ax in axs[-1]:
        ax.set_xlabel("Time [s]")
    return fig, axs


def plot_nees(
    results: GaussianResultList,
    ax: plt.Axes = None,
    label: str = None,
    color=None,
    confidence_interval: float = 0.95,
    normalize: bool = False,
) -> Tuple[plt.Figure, plt.Axes]:
    """
    NEES against time. Unless ``confidence_interval`` is None, the expected
    value and the chi-squared bounds are drawn too, labelled only once per
    axes.

    Works with ``MonteCarloResult`` as well, in which case the average NEES
    and its tighter bounds are shown. With ``normalize``, everything is
    divided by the degrees of freedom.
    """
    if ax is None:
        fig, ax = plt.subplots(1, 1)
    else:
        fig = ax.get_figure()

    scale = results.dof if normalize else 1
    t = results.stamp
    first_on_axes = "Expected NEES" not in ax.get_legend_handles_labels()[1]

    ax.plot(t, results.nees / scale, label=label, **_color_kwargs(color))
    if confidence_interval:
        ax.plot(
            t,
            results.dof / scale,
            color="r",
            label="Expected NEES" if first_on_axes else None,
        )
        ci_label = f"{int(confidence_interval * 100)}% conf. bounds"
        for i, bound in enumerate(
            (results.nees_upper_bound(confidence_interval),
             results.nees_lower_bound(confidence_interval))
        ):
            ax.plot(
                t,
                bound / scale,
                "--",
                color="k",
                label=ci_label if first_on_axes and i == 0 else None,
            )

    ax.set_xlabel("Time [s]")
    ax.legend()
    return fig, ax


def _draw_triads(ax: plt.Axes, poses: List[SE3State], length: float):
    origins = np.array([p.position for p in poses])
    C = np.array([p.attitude for p in poses])
    for j, c in enumerate(TRIAD_COLORS):
        ax.quiver(
            *origins.T,
            *C[:, :, j].T,
            color=c,
            length=length,
            arrow_length_ratio=0.1,
        )


def plot_poses(
    poses,
    ax: plt.Axes = None,
    line_color: str = None,
    arrow_length: float = 0.2,
    step: int = None,
    label: str = None,
) -> Tuple[plt.Figure, plt.Axes]:
    """
    Draws the path of a sequence of poses in 3D. When ``step`` is given, a
    body-frame triad (x red, y green, z blue) is drawn at every ``step``-th
    pose.

    ``poses`` may be a list of ``SE3State``, a list of
    ``StateWithCovariance``, or a ``GaussianResultList`` whose estimates are
    drawn.
    """
    if isinstance(poses, GaussianResultList):
        poses = list(poses.state)
    poses = [p.state if isinstance(p, StateWithCovariance) else p for p in poses]

    if ax is None:
        fig = plt.figure()
        ax = fig.add_subplot(projection="3d")
    else:
        fig = ax.get_figure()

    path = np.array([p.position for p in poses])
    ax.plot3D(*path.T, color=line_color, label=label)
    if step is not None:
        _draw_triads(ax, poses[::step], arrow_length)

    set_axes_equal(ax)
    return fig, ax


def plot_trajectories(
    estimates: Dict[str, List[StateWithCovariance]],
    states_true: List[SE3State] = None,
    landmarks: np.ndarray = None,
) -> Tuple[plt.Figure, plt.Axes]:
    """
    One 3D figure comparing filters: each entry of ``estimates`` is drawn
    under its key, with the ground truth in black and ``landmarks``, an
    (N, 3) array, as red crosses.
    """
    fig = plt.figure()
    ax = fig.add_subplot(projection="3d")
    if states_true is not None:
        plot_poses(states_true, ax=ax, line_color="k", label="Ground truth")
    for name, estimate_list in estimates.items():
        plot_poses(estimate_list, ax=ax, label=name)

    if landmarks is not None:
        ax.scatter(
            *np.atleast_2d(landmarks).T, marker="x", color="tab:red", label="Landmarks"
        )
        set_axes_equal(ax)

    for axis in "xyz":
        getattr(ax, f"set_{axis}label")(f"{axis} [m]")
    ax.legend()
    return fig, ax


def set_axes_equal(ax: plt.Axes):
    """Rescales a 3D axes so that one unit has the same length on x, y and z."""
    lims = np.array([ax.get_xlim3d(), ax.get_ylim3d(), ax.get_zlim3d()])
    centre = lims.mean(axis=1)
    radius = 0.5 * np.ptp(lims, axis=1).max()
    ax.set_xlim3d(centre[0] - radius, centre[0] + radius)
    ax.set_ylim3d(centre[1] - radius, centre[1] + radius)
    ax.set_zlim3d(centre[2] - radius, centre[2] + radius)
