from kalmanlie import (
    ExtendedKalmanFilter,
    InvariantExtendedKalmanFilter,
    Measurement,
    StateWithCovariance,
    VectorInput,
    run_filter,
)
from kalmanlie.lib import BodyFrameTwist, GlobalPosition, SE3State
import numpy as np
import pytest

U = np.array([0.01, 0.0, 0.0, 0.0, 0.0, 0.01])


def _inputs(N=11, dt=0.1):
    return [VectorInput(U, dt * k) for k in range(N)]


def test_run_filter_output():
    model = BodyFrameTwist(1e-6 * np.identity(6))
    gps = GlobalPosition(1e-4 * np.identity(3))
    x0 = SE3State.identity(stamp=0.0)
    meas = [Measurement(np.zeros(3), 0.35, gps), Measurement(np.zeros(3), 0.0, gps)]

    estimates = run_filter(
        ExtendedKalmanFilter(),
        model,
        x0,
        1e-2 * np.identity(6),
        _inputs(),
        meas,
        disable_progress_bar=True,
    )
    assert len(estimates) == 11
    assert all(isinstance(e, StateWithCovariance) for e in estimates)
    assert np.allclose([e.stamp for e in estimates], 0.1 * np.arange(11))
    # The measurement at t=0 is fused before the first estimate.
    assert estimates[0].covariance[0, 0] < 1e-2
    # The measurement at t=0.35 is fused after propagating to t=0.4.
    assert estimates[4].covariance[0, 0] < estimates[3].covariance[0, 0]


def test_run_filter_discards_old_measurements():
    model = BodyFrameTwist(1e-6 * np.identity(6))
    gps = GlobalPosition(1e-4 * np.identity(3))
    x0 = SE3State.identity(stamp=1.0)
    inputs = [VectorInput(U, 1.0 + 0.1 * k) for k in range(3)]
    meas = [Measurement(np.ones(3), 0.5, gps)]
    P0 = 1e-2 * np.identity(6)

    estimates = run_filter(
        InvariantExtendedKalmanFilter(),
        model,
        x0,
        P0,
        inputs,
        meas,
        disable_progress_bar=True,
    )
    assert np.allclose(estimates[0].covariance, P0)
    assert np.allclose(estimates[0].state.value, np.identity(4))


def test_run_filter_requires_stamp():
    model = BodyFrameTwist(1e-6 * np.identity(6))
    with pytest.raises(ValueError):
        run_filter(
            ExtendedKalmanFilter(),
            model,
            SE3State.identity(),
            np.identity(6),
            _inputs(),
            [],
            disable_progress_bar=True,
        )
