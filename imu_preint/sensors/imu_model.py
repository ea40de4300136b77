"""
IMU noise model for preintegration.

The IMU provides angular velocity and linear acceleration measurements
with additive white Gaussian noise and slowly varying (random walk) bias.
"""
import numpy as np
from scipy.linalg import block_diag
from ..config import PreintegrationParams

# Order of the noise inputs in the discrete noise covariance
NOISE_GYRO = slice(0, 3)
NOISE_ACCEL = slice(3, 6)
NOISE_GYRO_BIAS = slice(6, 9)
NOISE_ACCEL_BIAS = slice(9, 12)


class ImuNoiseModel:
    """
    IMU sensor noise characteristics.

    Noise inputs are ordered [gyro noise, accel noise, gyro bias random walk,
    accel bias random walk], each a 3D block.
    """

    def __init__(self,
                 gyro_noise_density: float = 1.6968e-04,  # rad/s/sqrt(Hz)
                 gyro_random_walk: float = 1.9393e-05,    # rad/s^2/sqrt(Hz)
                 accel_noise_density: float = 2.0000e-3,  # m/s^2/sqrt(Hz)
                 accel_random_walk: float = 3.0000e-3):   # m/s^3/sqrt(Hz)
        """
        Initialize IMU model with noise parameters.

        Args:
            gyro_noise_density: Gyroscope white noise density
            gyro_random_walk: Gyroscope bias random walk
            accel_noise_density: Accelerometer white noise density
            accel_random_walk: Accelerometer bias random walk
        """
        self.gyro_noise_density = gyro_noise_density
        self.gyro_random_walk = gyro_random_walk
        self.accel_noise_density = accel_noise_density
        self.accel_random_walk = accel_random_walk

        # Process noise covariance (continuous time)
        self.Q_imu = np.diag([
            gyro_noise_density**2, gyro_noise_density**2, gyro_noise_density**2,
            accel_noise_density**2, accel_noise_density**2, accel_noise_density**2,
            gyro_random_walk**2, gyro_random_walk**2, gyro_random_walk**2,
            accel_random_walk**2, accel_random_walk**2, accel_random_walk**2
        ])

    @classmethod
    def from_params(cls, params: PreintegrationParams) -> 'ImuNoiseModel':
        return cls(
            gyro_noise_density=params.gyro_noise_density,
            gyro_random_walk=params.gyro_bias_random_walk,
            accel_noise_density=params.accel_noise_density,
            accel_random_walk=params.accel_bias_random_walk
        )

    def discrete_noise(self, dt: float, include_measurement_noise: bool = True) -> np.ndarray:
        """
        Discrete-time noise covariance of one integration step.

        White measurement noise is averaged over the step (variance / dt),
        bias random walk accumulates over it (variance * dt).

        Args:
            dt: Time step
            include_measurement_noise: False when no measurement was used over
                the step, so only the biases drift

        Returns:
            Noise covariance Q_d (12x12)
        """
        I3 = np.eye(3)
        if include_measurement_noise and dt > 0:
            gyro = self.gyro_noise_density**2 / dt * I3
            accel = self.accel_noise_density**2 / dt * I3
        else:
            gyro = np.zeros((3, 3))
            accel = np.zeros((3, 3))

        return block_diag(
            gyro,
            accel,
            self.gyro_random_walk**2 * dt * I3,
            self.accel_random_walk**2 * dt * I3
        )
