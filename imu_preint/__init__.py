"""
IMU_PREINT: On-manifold IMU preintegration

Turns raw IMU samples into relative state factors for an external
factor-graph optimizer.
"""

__version__ = "0.1.0"

from . import core
from . import config
from . import sensors
from . import preintegration

from .config import PreintegrationParams, load_params
from .core.types import ImuSample, Quaternion
from .core.state import ImuState
from .preintegration.session import ImuPreintegration, SessionStatus

__all__ = [
    'core', 'config', 'sensors', 'preintegration',
    'PreintegrationParams', 'load_params',
    'ImuSample', 'Quaternion', 'ImuState',
    'ImuPreintegration', 'SessionStatus',
]
