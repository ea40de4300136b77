"""
Incremental preintegration of raw IMU samples.

Readings are averaged between consecutive samples (midpoint). The partial
interval between the last sample and a window boundary holds the last
reading. Orientation increments use the exact exponential of the constant
rate over each interval.
"""
import copy
import logging
import numpy as np
from typing import Optional, Tuple
from ..core.errors import NumericalError, OrderingError
from ..core.frames import right_jacobian_so3, skew_symmetric
from ..core.types import ImuSample, Quaternion
from ..sensors.imu_model import (
    ImuNoiseModel, NOISE_GYRO, NOISE_ACCEL, NOISE_GYRO_BIAS, NOISE_ACCEL_BIAS
)
from .delta import Delta, STATE_DIM, THETA, POS, VEL, BG, BA

logger = logging.getLogger(__name__)


class Integrator:
    """
    Accumulates a Delta from a start time, one sample at a time.

    The biases given at construction are subtracted from every reading and
    are the linearization point of the resulting Delta.
    """

    def __init__(self,
                 noise_model: ImuNoiseModel,
                 start_time: float,
                 gyro_bias: Optional[np.ndarray] = None,
                 accel_bias: Optional[np.ndarray] = None,
                 seed_sample: Optional[ImuSample] = None):
        """
        Initialize an empty integration window.

        Args:
            noise_model: IMU noise characteristics
            start_time: Start of the window
            gyro_bias: Gyroscope bias to integrate with (default zero)
            accel_bias: Accelerometer bias to integrate with (default zero)
            seed_sample: Last sample at or before start_time. Its reading is
                held up to the first sample of the window.
        """
        self.noise_model = noise_model
        self._delta = Delta(
            start_time=start_time,
            end_time=start_time,
            gyro_bias=np.zeros(3) if gyro_bias is None else gyro_bias,
            accel_bias=np.zeros(3) if accel_bias is None else accel_bias
        )
        # Copies, the caller's arrays may change
        self._delta.gyro_bias = self._delta.gyro_bias.copy()
        self._delta.accel_bias = self._delta.accel_bias.copy()

        self._last_reading: Optional[Tuple[np.ndarray, np.ndarray]] = None
        if seed_sample is not None:
            if seed_sample.timestamp > start_time:
                raise OrderingError(
                    "Seed sample is after the start of the window",
                    seed_sample.timestamp, start_time)
            self._last_reading = (seed_sample.angular_velocity.copy(),
                                  seed_sample.linear_acceleration.copy())

        self.num_samples = 0

    @property
    def start_time(self) -> float:
        return self._delta.start_time

    @property
    def time(self) -> float:
        """Time integrated up to."""
        return self._delta.end_time

    @property
    def gyro_bias(self) -> np.ndarray:
        return self._delta.gyro_bias

    @property
    def accel_bias(self) -> np.ndarray:
        return self._delta.accel_bias

    def integrate(self, sample: ImuSample):
        """
        Integrate up to a new sample.

        The interval since the previous sample uses the mean of both
        readings, or the new reading alone if there is no previous one.

        Raises:
            OrderingError: If the sample is older than the integrated time
            NumericalError: If the sample is not finite
        """
        if sample.timestamp < self.time:
            raise OrderingError(
                f"Sample at {sample.timestamp:.9f} is before integrated time {self.time:.9f}",
                sample.timestamp, self.time)
        if not sample.is_finite():
            raise NumericalError(f"Non-finite IMU sample at {sample.timestamp}")

        omega = sample.angular_velocity
        accel = sample.linear_acceleration
        if self._last_reading is None:
            omega_mid, accel_mid = omega, accel
        else:
            omega_mid = 0.5 * (self._last_reading[0] + omega)
            accel_mid = 0.5 * (self._last_reading[1] + accel)

        self._step(omega_mid, accel_mid, sample.timestamp)
        self._last_reading = (omega.copy(), accel.copy())
        self.num_samples += 1

    def advance_to(self, time: float):
        """
        Extend the window to a boundary after the last sample.

        The last reading is held over the remaining interval. Without any
        reading, only the bias random walk is accumulated.

        Raises:
            OrderingError: If time is before the integrated time
        """
        if time < self.time:
            raise OrderingError(
                f"Cannot advance to {time:.9f}, already integrated to {self.time:.9f}",
                time, self.time)

        if self._last_reading is None:
            self._bias_step(time)
        else:
            self._step(self._last_reading[0], self._last_reading[1], time)

    def delta(self) -> Delta:
        """Copy of the delta integrated so far."""
        return self._delta.copy()

    def snapshot(self) -> 'Integrator':
        """Independent copy that can be advanced without touching this one."""
        return copy.deepcopy(self)

    def _step(self, omega_raw: np.ndarray, accel_raw: np.ndarray, time: float):
        """
        One midpoint step from the integrated time to `time`.

        Args:
            omega_raw: Angular velocity over the step (bias not removed)
            accel_raw: Specific force over the step (bias not removed)
            time: End of the step
        """
        d = self._delta
        dt = time - d.end_time
        if dt <= 0:
            return

        omega = omega_raw - d.gyro_bias
        accel = accel_raw - d.accel_bias

        # Rotation at the start of the step
        R = d.rotation_matrix

        phi = omega * dt
        dq = Quaternion.from_rotation_vector(phi)
        dR = dq.to_rotation_matrix()
        Jr = right_jacobian_so3(phi)
        R_accel_skew = R @ skew_symmetric(accel)
        I3 = np.eye(3)
        dt2 = dt * dt

        # Error state transition
        F = np.eye(STATE_DIM)
        F[THETA, THETA] = dR.T
        F[THETA, BG] = -Jr * dt
        F[POS, THETA] = -0.5 * R_accel_skew * dt2
        F[POS, VEL] = I3 * dt
        F[POS, BA] = -0.5 * R * dt2
        F[VEL, THETA] = -R_accel_skew * dt
        F[VEL, BA] = -R * dt

        # Noise input
        G = np.zeros((STATE_DIM, 12))
        G[THETA, NOISE_GYRO] = Jr * dt
        G[POS, NOISE_ACCEL] = 0.5 * R * dt2
        G[VEL, NOISE_ACCEL] = R * dt
        G[BG, NOISE_GYRO_BIAS] = I3
        G[BA, NOISE_ACCEL_BIAS] = I3

        Q = self.noise_model.discrete_noise(dt)
        P = F @ d.covariance @ F.T + G @ Q @ G.T
        d.covariance = 0.5 * (P + P.T)

        # Bias Jacobians, position first as it uses the previous velocity terms
        d.J_p_ba = d.J_p_ba + d.J_v_ba * dt - 0.5 * R * dt2
        d.J_p_bg = d.J_p_bg + d.J_v_bg * dt - 0.5 * R_accel_skew @ d.J_R_bg * dt2
        d.J_v_ba = d.J_v_ba - R * dt
        d.J_v_bg = d.J_v_bg - R_accel_skew @ d.J_R_bg * dt
        d.J_R_bg = dR.T @ d.J_R_bg - Jr * dt

        # Mean, position uses the previous velocity
        accel_world = R @ accel
        d.position = d.position + d.velocity * dt + 0.5 * accel_world * dt2
        d.velocity = d.velocity + accel_world * dt
        d.orientation = d.orientation * dq
        d.end_time = time

    def _bias_step(self, time: float):
        """Step without any reading: no motion, only bias drift."""
        d = self._delta
        dt = time - d.end_time
        if dt <= 0:
            return

        F = np.eye(STATE_DIM)
        F[POS, VEL] = np.eye(3) * dt

        G = np.zeros((STATE_DIM, 12))
        G[BG, NOISE_GYRO_BIAS] = np.eye(3)
        G[BA, NOISE_ACCEL_BIAS] = np.eye(3)

        Q = self.noise_model.discrete_noise(dt, include_measurement_noise=False)
        P = F @ d.covariance @ F.T + G @ Q @ G.T
        d.covariance = 0.5 * (P + P.T)
        d.position = d.position + d.velocity * dt
        d.end_time = time
        logger.debug("No IMU reading to hold over %.6f s, bias drift only", dt)
