import logging
from typing import Callable, List, Union

import numpy as np

from kalmanlie.types import (
    Measurement,
    MeasurementModel,
    State,
    SystemModel,
    VectorInput,
)
from kalmanlie.utils.common import randvec

logger = logging.getLogger(__name__)


def _per_model(value, num_models: int) -> list:
    if isinstance(value, list):
        return value
    return [value] * num_models


class DataGenerator:
    """
    Simulates a ground-truth trajectory by integrating a twist profile
    through a system model, along with noisy odometry and measurements from
    any number of measurement models at their own frequencies.

    The twist returned by ``input_func`` is a rate. Each generated input is
    that rate integrated over one sampling period, so that it can be given
    directly to ``SystemModel.evaluate``.

    Parameters
    ----------
    system_model : SystemModel
        Model integrating the ground truth.
    input_func : Callable[[float, State], np.ndarray]
        True twist rate as a function of time and current true state.
    input_covariance : np.ndarray or Callable[[float], np.ndarray]
        Noise covariance of the twist *rate*, constant or time-varying. The
        integrated control gets ``input_covariance * dt**2``.
    input_freq : float
        Odometry rate in Hz.
    meas_model_list : List[MeasurementModel], optional
        Sensors to simulate, by default none.
    meas_freq_list : float or List[float], optional
        Rate of each sensor, or one rate shared by all of them.
    meas_offset_list : float or List[float], optional
        Delay of each sensor's first sample, by default 0.
    """

    def __init__(
        self,
        system_model: SystemModel,
        input_func: Callable[[float, State], np.ndarray],
        input_covariance: Union[np.ndarray, Callable[[float], np.ndarray]],
        input_freq: float,
        meas_model_list: List[MeasurementModel] = None,
        meas_freq_list: Union[float, List[float]] = None,
        meas_offset_list: Union[float, List[float]] = 0.0,
    ):
        if isinstance(input_covariance, np.ndarray):
            Q = input_covariance
            input_covariance = lambda t: Q
        elif not callable(input_covariance):
            raise ValueError(
                "input_covariance must be a numpy array or a function of time."
            )

        models = list(meas_model_list or [])
        if models and meas_freq_list is None:
            raise ValueError("A frequency is needed for every measurement model.")
        freqs = _per_model(meas_freq_list, len(models))
        offsets = _per_model(meas_offset_list, len(models))
        if len(freqs) != len(models) or len(offsets) != len(models):
            raise ValueError(
                f"Got {len(models)} measurement models but {len(freqs)} "
                f"frequencies and {len(offsets)} offsets."
            )

        self.system_model = system_model
        self.input_func = input_func
        self.input_covariance = input_covariance
        self.input_freq = input_freq
        self._sensors = list(zip(models, freqs, offsets))

    def add_measurement_model(
        self, model: MeasurementModel, freq: float, offset: float = 0.0
    ):
        """Simulates one more sensor at rate ``freq``."""
        self._sensors.append((model, freq, offset))

    def _schedule(self, t0: float, t1: float) -> List[Measurement]:
        # Empty measurements, sorted by stamp, filled in during integration.
        schedule = []
        for model, freq, offset in self._sensors:
            for stamp in np.round(np.arange(t0 + offset, t1, 1.0 / freq), 12):
                schedule.append(Measurement(np.zeros(0), stamp, model))
        schedule.sort(key=lambda y: y.stamp)
        return schedule

    def generate(self, x0: State, start: float, stop: float, noise=False):
        """
        Integrates from ``start`` to ``stop``. A measurement stamped between
        two odometry stamps sees the true state at the earlier of the two.

        Parameters
        ----------
        x0 : State
            True state at ``start``
        start : float
            first odometry stamp
        stop : float
            end of the simulation, excluded
        noise : bool, optional
            Corrupt inputs and measurements with noise, by default False. The
            ground truth is noise-free either way.

        Returns
        -------
        List[State]
            True states at the odometry stamps.
        List[VectorInput]
            Integrated controls at the same stamps. The last one is zero.
        List[Measurement]
            Measurements sorted by stamp.
        """
        times = np.round(np.arange(start, stop, 1.0 / self.input_freq), 12)
        meas_list = self._schedule(times[0], times[-1])

        x = x0.copy()
        x.stamp = times[0]
        state_list = [x.copy()]
        input_list: List[VectorInput] = []
        pending = iter(meas_list)
        meas = next(pending, None)

        for k, t in enumerate(times):
            while meas is not None and meas.stamp <= t + 1e-9:
                meas.value = generate_measurement(x, meas.model, noise).value
                meas = next(pending, None)

            if k + 1 == len(times):
                break

            h = times[k + 1] - t
            Q_c = np.atleast_2d(self.input_covariance(t))
            rate = np.asarray(self.input_func(t, x), dtype=np.float64).ravel()

            x = self.system_model.evaluate(x, h * rate)
            x.stamp = times[k + 1]
            state_list.append(x.copy())

            if noise:
                rate = rate + randvec(Q_c).ravel()
            input_list.append(VectorInput(h * rate, t, h**2 * Q_c))

        input_list.append(VectorInput(np.zeros(x.dof), times[-1]))

        logger.debug(
            "Generated %d states and %d measurements", len(state_list), len(meas_list)
        )
        return state_list, input_list, meas_list


def generate_measurement(
    state: Union[State, List[State]],
    model: MeasurementModel,
    noise=True,
) -> Union[Measurement, List[Measurement]]:
    """
    Evaluates ``model`` at ``state``, or at each state of a list, adding noise
    drawn from ``model.covariance`` when ``noise`` is set.
    """
    if not isinstance(state, State):
        return [generate_measurement(x, model, noise) for x in state]

    y = np.asarray(model.evaluate(state), dtype=np.float64).ravel()
    if noise:
        y = y + randvec(np.atleast_2d(model.covariance(state))).ravel()
    return Measurement(y, state.stamp, model)
