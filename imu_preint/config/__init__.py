"""
Configuration for IMU preintegration.

Parameters can be built directly or loaded from a YAML file with the layout
of ``default.yaml``:

    gravity:
      magnitude: 9.81             # m/s^2, required
      direction: [0.0, 0.0, -1.0]
    noise:
      gyro_noise_density: 1.6968e-04      # rad/s/sqrt(Hz)
      accel_noise_density: 2.0e-03        # m/s^2/sqrt(Hz)
      gyro_bias_random_walk: 1.9393e-05   # rad/s^2/sqrt(Hz)
      accel_bias_random_walk: 3.0e-03     # m/s^3/sqrt(Hz)
    bias:
      initial_gyro_bias: [0.0, 0.0, 0.0]
      initial_accel_bias: [0.0, 0.0, 0.0]
      relinearization_threshold: 0.01
    prior:
      covariance_scale: 1.0e-09
    buffer:
      max_duration: 10.0          # s
    source: imu_preint
"""
import os
import logging
import yaml
import numpy as np
from dataclasses import dataclass, field
from typing import Any, Dict
from ..core.errors import ConfigurationError
from ..core.frames import gravity_vector
from ..core.state import DEFAULT_SOURCE

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(__file__), 'default.yaml')


@dataclass
class PreintegrationParams:
    """
    Noise model, gravity and bookkeeping options of a preintegration session.

    Noise densities are continuous-time values as found in IMU datasheets or
    Allan variance plots.
    """
    gravity_magnitude: float = 9.81  # m/s^2
    gravity_direction: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0, -1.0]))

    gyro_noise_density: float = 1.6968e-04  # rad/s/sqrt(Hz)
    accel_noise_density: float = 2.0000e-3  # m/s^2/sqrt(Hz)
    gyro_bias_random_walk: float = 1.9393e-05  # rad/s^2/sqrt(Hz)
    accel_bias_random_walk: float = 3.0000e-3  # m/s^3/sqrt(Hz)

    initial_gyro_bias: np.ndarray = field(default_factory=lambda: np.zeros(3))
    initial_accel_bias: np.ndarray = field(default_factory=lambda: np.zeros(3))

    # Covariance of the absolute prior placed on the first anchor
    prior_covariance_scale: float = 1e-9

    # Samples older than this (relative to the newest one) may be dropped
    max_buffer_duration: float = 10.0  # s

    # Bias changes above this norm are replayed instead of Taylor-corrected
    bias_relinearization_threshold: float = 0.01

    source: str = DEFAULT_SOURCE

    def __post_init__(self):
        self.gravity_direction = np.array(self.gravity_direction, dtype=np.float64).reshape(-1)
        self.initial_gyro_bias = np.array(self.initial_gyro_bias, dtype=np.float64).reshape(-1)
        self.initial_accel_bias = np.array(self.initial_accel_bias, dtype=np.float64).reshape(-1)

    @property
    def gravity(self) -> np.ndarray:
        """Gravity vector in world frame."""
        return gravity_vector(self.gravity_magnitude, self.gravity_direction)

    def validate(self):
        """
        Check the parameters.

        Raises:
            ConfigurationError: If any value is missing or out of range
        """
        if self.gravity_magnitude is None:
            raise ConfigurationError("Gravity magnitude is missing")
        if not np.isfinite(self.gravity_magnitude) or self.gravity_magnitude < 0:
            raise ConfigurationError(f"Invalid gravity magnitude: {self.gravity_magnitude}")
        if (self.gravity_direction.shape != (3,)
                or not np.all(np.isfinite(self.gravity_direction))
                or np.linalg.norm(self.gravity_direction) < 1e-12):
            raise ConfigurationError(f"Invalid gravity direction: {self.gravity_direction}")

        for name in ('gyro_noise_density', 'accel_noise_density',
                     'gyro_bias_random_walk', 'accel_bias_random_walk',
                     'prior_covariance_scale', 'max_buffer_duration',
                     'bias_relinearization_threshold'):
            value = getattr(self, name)
            if value is None or not np.isfinite(value) or value <= 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")

        for name in ('initial_gyro_bias', 'initial_accel_bias'):
            value = getattr(self, name)
            if value.shape != (3,) or not np.all(np.isfinite(value)):
                raise ConfigurationError(f"{name} must be a finite 3-vector, got {value}")

        if not self.source:
            raise ConfigurationError("source must be a non-empty string")


def params_from_dict(config: Dict[str, Any]) -> PreintegrationParams:
    """
    Build parameters from a nested dictionary (parsed YAML).

    Missing optional entries fall back to the defaults of
    PreintegrationParams. The gravity magnitude is required.

    Raises:
        ConfigurationError: If the gravity magnitude is missing or a value
            is invalid
    """
    if not isinstance(config, dict):
        raise ConfigurationError("Configuration must be a mapping")

    gravity = config.get('gravity') or {}
    if gravity.get('magnitude') is None:
        raise ConfigurationError("Missing required value 'gravity.magnitude'")

    noise = config.get('noise') or {}
    bias = config.get('bias') or {}
    prior = config.get('prior') or {}
    buffer = config.get('buffer') or {}

    defaults = PreintegrationParams()
    try:
        params = PreintegrationParams(
            gravity_magnitude=float(gravity['magnitude']),
            gravity_direction=gravity.get('direction', defaults.gravity_direction),
            gyro_noise_density=float(noise.get('gyro_noise_density', defaults.gyro_noise_density)),
            accel_noise_density=float(noise.get('accel_noise_density', defaults.accel_noise_density)),
            gyro_bias_random_walk=float(noise.get('gyro_bias_random_walk', defaults.gyro_bias_random_walk)),
            accel_bias_random_walk=float(noise.get('accel_bias_random_walk', defaults.accel_bias_random_walk)),
            initial_gyro_bias=bias.get('initial_gyro_bias', defaults.initial_gyro_bias),
            initial_accel_bias=bias.get('initial_accel_bias', defaults.initial_accel_bias),
            bias_relinearization_threshold=float(
                bias.get('relinearization_threshold', defaults.bias_relinearization_threshold)),
            prior_covariance_scale=float(prior.get('covariance_scale', defaults.prior_covariance_scale)),
            max_buffer_duration=float(buffer.get('max_duration', defaults.max_buffer_duration)),
            source=str(config.get('source', defaults.source))
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Malformed configuration: {e}") from e

    params.validate()
    return params


def load_params(config_path: str = DEFAULT_CONFIG_PATH) -> PreintegrationParams:
    """
    Load preintegration parameters from a YAML file.

    Args:
        config_path: Path to YAML configuration file

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If config file is malformed
        ConfigurationError: If values are missing or invalid
    """
    with open(config_path, 'r') as f:
        config = yaml.safe_load(f)

    logger.debug("Loaded preintegration config from %s", config_path)
    return params_from_dict(config or {})


__all__ = [
    'PreintegrationParams',
    'params_from_dict',
    'load_params',
    'DEFAULT_CONFIG_PATH',
]
