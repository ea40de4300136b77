"""
Exception types for IMU preintegration.

Ordering problems are normally absorbed by the session (dropped and logged);
numerical and configuration problems are raised to the caller.
"""


class PreintegrationError(Exception):
    """Base class for all preintegration errors."""


class OrderingError(PreintegrationError):
    """A sample or boundary time precedes the anchor or the last consumed sample."""

    def __init__(self, message: str, timestamp: float = float('nan'),
                 reference: float = float('nan')):
        super().__init__(message)
        self.timestamp = timestamp
        self.reference = reference


class NumericalError(PreintegrationError):
    """Non-finite values in the input or produced during integration."""


class ConfigurationError(PreintegrationError):
    """Invalid preintegration parameters."""


class NotStartedError(PreintegrationError):
    """The session has no anchor state yet; call set_start first."""


class InsufficientDataError(PreintegrationError):
    """No inertial samples are available for the requested window."""
