"""
Rotation helpers and frame transforms for IMU preintegration.

Coordinate Frames:
- World (W): Gravity-aligned navigation frame
- IMU (I): IMU body frame, the frame of the raw samples
- Sensor (S): Any other sensor rigidly mounted on the body (lidar, camera)
"""
import numpy as np
from abc import ABC, abstractmethod
from typing import Dict, Optional


def skew_symmetric(v: np.ndarray) -> np.ndarray:
    """Create skew-symmetric matrix from vector."""
    return np.array([
        [0, -v[2], v[1]],
        [v[2], 0, -v[0]],
        [-v[1], v[0], 0]
    ])


def exp_so3(phi: np.ndarray) -> np.ndarray:
    """Exponential map from so(3) to SO(3) (Rodrigues formula)."""
    theta = np.linalg.norm(phi)
    if theta < 1e-10:
        return np.eye(3) + skew_symmetric(phi)

    K = skew_symmetric(phi / theta)
    return np.eye(3) + np.sin(theta) * K + (1 - np.cos(theta)) * (K @ K)


def right_jacobian_so3(phi: np.ndarray) -> np.ndarray:
    """
    Right Jacobian of SO(3).

    Jr(phi) = I - (1 - cos|phi|)/|phi|^2 [phi]x + (|phi| - sin|phi|)/|phi|^3 [phi]x^2
    """
    theta = np.linalg.norm(phi)
    K = skew_symmetric(phi)
    if theta < 1e-8:
        return np.eye(3) - 0.5 * K

    theta2 = theta * theta
    return (np.eye(3)
            - (1 - np.cos(theta)) / theta2 * K
            + (theta - np.sin(theta)) / (theta2 * theta) * (K @ K))


def gravity_vector(magnitude: float = 9.81,
                   direction: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Get gravity vector in world frame.

    Args:
        magnitude: Gravity magnitude in m/s^2
        direction: Direction of gravity (default: [0, 0, -1])

    Returns:
        Gravity vector, [0, 0, -g] by default
    """
    if direction is None:
        direction = np.array([0.0, 0.0, -1.0])
    direction = np.asarray(direction, dtype=np.float64)
    return magnitude * direction / np.linalg.norm(direction)


class ExtrinsicsLookup(ABC):
    """
    Time-indexed lookup of sensor extrinsics.

    Injected into the preintegration session so that poses can be expressed
    in the frame of another sensor.
    """

    @abstractmethod
    def get_T_imu_sensor(self, sensor_frame: str, time: float) -> Optional[np.ndarray]:
        """
        Get the transform from a sensor frame into the IMU frame.

        Args:
            sensor_frame: Sensor frame id
            time: Query time in seconds

        Returns:
            4x4 transform T_IMU_SENSOR, or None if unknown
        """


class StaticExtrinsics(ExtrinsicsLookup):
    """Extrinsics that do not change over time."""

    def __init__(self, transforms: Optional[Dict[str, np.ndarray]] = None):
        """
        Args:
            transforms: sensor frame id -> 4x4 T_IMU_SENSOR
        """
        self._transforms: Dict[str, np.ndarray] = {}
        for frame, T in (transforms or {}).items():
            self.set_transform(frame, T)

    def set_transform(self, sensor_frame: str, T_imu_sensor: np.ndarray):
        T = np.array(T_imu_sensor, dtype=np.float64)
        if T.shape != (4, 4):
            raise ValueError(f"Extrinsic for '{sensor_frame}' must be 4x4, got {T.shape}")
        T.flags.writeable = False
        self._transforms[sensor_frame] = T

    def get_T_imu_sensor(self, sensor_frame: str, time: float) -> Optional[np.ndarray]:
        return self._transforms.get(sensor_frame)
