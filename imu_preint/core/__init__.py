"""
Core components for IMU preintegration.
"""
from .types import (
    ImuSample,
    Quaternion,
    Pose
)

from .errors import (
    PreintegrationError,
    OrderingError,
    NumericalError,
    ConfigurationError,
    NotStartedError,
    InsufficientDataError
)

from .frames import (
    skew_symmetric,
    exp_so3,
    right_jacobian_so3,
    gravity_vector,
    ExtrinsicsLookup,
    StaticExtrinsics
)

from .state import (
    ImuState,
    VariableKind,
    OptimizerResult,
    variable_uuid
)

__all__ = [
    # Types
    'ImuSample',
    'Quaternion',
    'Pose',
    # Errors
    'PreintegrationError',
    'OrderingError',
    'NumericalError',
    'ConfigurationError',
    'NotStartedError',
    'InsufficientDataError',
    # Frames
    'skew_symmetric',
    'exp_so3',
    'right_jacobian_so3',
    'gravity_vector',
    'ExtrinsicsLookup',
    'StaticExtrinsics',
    # State
    'ImuState',
    'VariableKind',
    'OptimizerResult',
    'variable_uuid',
]
