"""
Preintegration of IMU samples into relative state factors.
"""
from .delta import Delta
from .integrator import Integrator
from .propagator import Propagator, relative_motion, relative_state_delta
from .buffer import SampleBuffer
from .factors import (
    FactorKind,
    Variable,
    RelativeImuStateFactor,
    AbsoluteImuStateFactor,
    Transaction,
    FactorEmitter,
    dispatch
)
from .session import ImuPreintegration, SessionStatus

__all__ = [
    'Delta',
    'Integrator',
    'Propagator',
    'relative_motion',
    'relative_state_delta',
    'SampleBuffer',
    'FactorKind',
    'Variable',
    'RelativeImuStateFactor',
    'AbsoluteImuStateFactor',
    'Transaction',
    'FactorEmitter',
    'dispatch',
    'ImuPreintegration',
    'SessionStatus',
]
