from kalmanlie import DataGenerator, generate_measurement
from kalmanlie.lib.group import SE3
from kalmanlie.lib.models import (
    BodyFrameTwist,
    GlobalPosition,
    LandmarkRelativePosition,
)
from kalmanlie.lib.states import SE3State
from kalmanlie.types import Measurement
import numpy as np
import pytest

np.random.seed(0)

DT = 0.01
U_RATE = np.array([1.0, 0.0, 0.5, 0.1, 0.0, 0.5])
Q_C = 1e-4 * np.identity(6)


def _make_generator():
    system_model = BodyFrameTwist.from_continuous(Q_C, DT)
    landmark = LandmarkRelativePosition([2.0, 0.0, 0.0], 1e-4 * np.identity(3))
    gps = GlobalPosition(1e-2 * np.identity(3))
    dg = DataGenerator(
        system_model,
        lambda t, x: U_RATE,
        Q_C,
        1 / DT,
        [landmark, gps],
        [10, 5],
        [0.0, 0.05],
    )
    return dg, system_model, landmark, gps


def test_datagen_no_meas_default():
    system_model = BodyFrameTwist(np.identity(6))
    dg = DataGenerator(system_model, lambda t, x: U_RATE, np.identity(6), 100)
    dg = DataGenerator(
        system_model, lambda t, x: U_RATE, np.identity(6), 100, meas_model_list=[]
    )
    states, inputs, meas = dg.generate(SE3State.identity(), 0, 0.1)
    assert len(states) == len(inputs) == 10
    assert meas == []


def test_datagen_missing_frequency():
    system_model = BodyFrameTwist(np.identity(6))
    with pytest.raises(ValueError):
        DataGenerator(
            system_model,
            lambda t, x: U_RATE,
            np.identity(6),
            100,
            [GlobalPosition(np.identity(3))],
        )


def test_datagen_bad_covariance():
    system_model = BodyFrameTwist(np.identity(6))
    with pytest.raises(ValueError):
        DataGenerator(system_model, lambda t, x: U_RATE, [1, 2, 3], 100)


def test_datagen_lengths_and_stamps():
    dg, _, landmark, gps = _make_generator()
    states, inputs, meas = dg.generate(SE3State.identity(), 0.0, 1.0)

    assert len(states) == 100
    assert len(inputs) == 100
    assert np.allclose([x.stamp for x in states], DT * np.arange(100))
    assert np.allclose([u.stamp for u in inputs], DT * np.arange(100))
    assert np.allclose(inputs[-1].value, 0.0)

    landmark_stamps = [y.stamp for y in meas if y.model is landmark]
    gps_stamps = [y.stamp for y in meas if y.model is gps]
    assert np.allclose(landmark_stamps, 0.1 * np.arange(10))
    assert np.allclose(gps_stamps, [0.05, 0.25, 0.45, 0.65, 0.85])

    stamps = [y.stamp for y in meas]
    assert stamps == sorted(stamps)


def test_datagen_noiseless_consistency():
    dg, system_model, _, _ = _make_generator()
    x0 = SE3State(SE3.Exp([0.1, 0.2, 0.3, 0.0, 0.1, 0.0]))
    states, inputs, meas = dg.generate(x0, 0.0, 1.0, noise=False)

    for k in range(len(states) - 1):
        assert np.allclose(inputs[k].value, U_RATE * DT)
        assert np.allclose(inputs[k].covariance, Q_C * DT**2)
        x_next = system_model.evaluate(states[k], inputs[k].value)
        assert np.allclose(x_next.value, states[k + 1].value)

    state_stamps = np.array([x.stamp for x in states])
    for y in meas:
        assert isinstance(y, Measurement)
        idx = np.nonzero(state_stamps <= y.stamp + 1e-9)[0][-1]
        assert np.allclose(y.value, y.model.evaluate(states[idx]))


def test_datagen_noise_only_on_data():
    dg, _, _, _ = _make_generator()
    x0 = SE3State.identity()

    states, _, _ = dg.generate(x0, 0.0, 0.5, noise=False)
    np.random.seed(3)
    states_noisy, inputs_noisy, meas_noisy = dg.generate(x0, 0.0, 0.5, noise=True)

    for x, x_noisy in zip(states, states_noisy):
        assert np.allclose(x.value, x_noisy.value)

    input_errors = np.array([u.value - U_RATE * DT for u in inputs_noisy[:-1]])
    assert np.any(input_errors != 0.0)
    assert np.all(np.abs(input_errors) < 5 * np.sqrt(1e-4) * DT)

    y = meas_noisy[0]
    assert not np.allclose(y.value, y.model.evaluate(states[0]), atol=1e-8)


def test_datagen_callable_covariance():
    system_model = BodyFrameTwist(np.identity(6))
    dg = DataGenerator(
        system_model, lambda t, x: U_RATE, lambda t: (1 + t) * Q_C, 1 / DT
    )
    _, inputs, _ = dg.generate(SE3State.identity(), 0.0, 0.1)
    assert np.allclose(inputs[0].covariance, Q_C * DT**2)
    assert np.allclose(inputs[5].covariance, 1.05 * Q_C * DT**2)


def test_datagen_add_measurement_model():
    system_model = BodyFrameTwist(np.identity(6))
    dg = DataGenerator(system_model, lambda t, x: U_RATE, Q_C, 1 / DT)
    gps = GlobalPosition(np.identity(3))
    dg.add_measurement_model(gps, 20)
    _, _, meas = dg.generate(SE3State.identity(), 0.0, 0.5)
    assert len(meas) == 10
    assert all(y.model is gps for y in meas)


def test_generate_measurement():
    gps = GlobalPosition(0.01 * np.identity(3))
    x = SE3State(SE3.random(), stamp=2.0)

    y = generate_measurement(x, gps, noise=False)
    assert isinstance(y, Measurement)
    assert y.stamp == 2.0
    assert np.allclose(y.value, x.position)

    y_list = generate_measurement([x, x.copy()], gps, noise=True)
    assert len(y_list) == 2
    assert not np.allclose(y_list[0].value, y_list[1].value)
