"""
IMU state shared with the external optimizer.

Each state is made of five optimizer variables:
1. Orientation: unit quaternion (w, x, y, z), rotation from IMU to world
2. Position: 3D, world frame
3. Velocity: 3D, world frame
4. Gyroscope bias: 3D
5. Accelerometer bias: 3D

Variables are identified by UUIDs derived from the variable kind, the source
name and the timestamp, so the same state always maps to the same keys.
"""
from uuid import UUID, uuid5
import numpy as np
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Sequence, Union
from .errors import NumericalError
from .types import Quaternion, Pose

DEFAULT_SOURCE = 'imu_preint'

# Namespace for variable identifiers
_UUID_NAMESPACE = UUID('6f1d0a52-3c4e-5b8f-9a27-1e4c8d3b7a90')

# variable uuid -> values, as returned by the optimizer
OptimizerResult = Mapping[UUID, Sequence[float]]


class VariableKind(Enum):
    """Kinds of optimizer variables making up an IMU state."""
    ORIENTATION = 'orientation_3d_stamped'
    POSITION = 'position_3d_stamped'
    VELOCITY = 'velocity_linear_3d_stamped'
    GYRO_BIAS = 'imu_bias_gyro_3d_stamped'
    ACCEL_BIAS = 'imu_bias_accel_3d_stamped'

    @property
    def size(self) -> int:
        return 4 if self is VariableKind.ORIENTATION else 3


def variable_uuid(kind: VariableKind, source: str, timestamp: float) -> UUID:
    """Stable identifier of one variable of a state."""
    stamp_ns = int(round(timestamp * 1e9))
    return uuid5(_UUID_NAMESPACE, f"{kind.value}/{source}/{stamp_ns}")


def _as_vector3(args: tuple, name: str) -> np.ndarray:
    """Accept (x, y, z) scalars or a single array-like of length 3."""
    values = args[0] if len(args) == 1 else args
    vec = np.array(values, dtype=np.float64).reshape(-1)
    if vec.shape != (3,):
        raise ValueError(f"{name} needs 3 components, got {vec.size}")
    return vec


@dataclass(eq=False)
class ImuState:
    """
    Timestamped estimate of orientation, position, velocity and IMU biases.

    A state built from a timestamp only has identity orientation and zero
    position, velocity and biases.
    """
    timestamp: float
    orientation: Quaternion = field(default_factory=Quaternion.identity)
    position: np.ndarray = field(default_factory=lambda: np.zeros(3))
    velocity: np.ndarray = field(default_factory=lambda: np.zeros(3))
    gyro_bias: np.ndarray = field(default_factory=lambda: np.zeros(3))
    accel_bias: np.ndarray = field(default_factory=lambda: np.zeros(3))

    # Name used to derive variable identifiers
    source: str = DEFAULT_SOURCE

    # Number of optimizer results adopted by this state
    updates: int = 0

    def __post_init__(self):
        """Ensure arrays are numpy arrays and orientation is a unit quaternion."""
        self.timestamp = float(self.timestamp)
        self.set_orientation(self.orientation)
        self.position = _as_vector3((self.position,), 'position')
        self.velocity = _as_vector3((self.velocity,), 'velocity')
        self.gyro_bias = _as_vector3((self.gyro_bias,), 'gyro_bias')
        self.accel_bias = _as_vector3((self.accel_bias,), 'accel_bias')

    @property
    def rotation_matrix(self) -> np.ndarray:
        """Get rotation matrix from IMU to world."""
        return self.orientation.to_rotation_matrix()

    def pose(self) -> Pose:
        """Orientation and position as a Pose."""
        return Pose(position=self.position.copy(), orientation=self.orientation.copy())

    def transform(self) -> np.ndarray:
        """4x4 transform T_WORLD_IMU."""
        return self.pose().to_matrix()

    def orientation_array(self) -> np.ndarray:
        """Orientation as [w, x, y, z]."""
        return self.orientation.to_array()

    def to_vector(self) -> np.ndarray:
        """Stacked 16-vector [q (4), p (3), v (3), bg (3), ba (3)]."""
        return np.concatenate([
            self.orientation.to_array(),
            self.position,
            self.velocity,
            self.gyro_bias,
            self.accel_bias
        ])

    def value(self, kind: VariableKind) -> np.ndarray:
        """Current value of one variable."""
        if kind is VariableKind.ORIENTATION:
            return self.orientation.to_array()
        if kind is VariableKind.POSITION:
            return self.position.copy()
        if kind is VariableKind.VELOCITY:
            return self.velocity.copy()
        if kind is VariableKind.GYRO_BIAS:
            return self.gyro_bias.copy()
        return self.accel_bias.copy()

    def variables(self) -> Dict[VariableKind, np.ndarray]:
        """Values of all five variables."""
        return {kind: self.value(kind) for kind in VariableKind}

    def uuid(self, kind: VariableKind) -> UUID:
        return variable_uuid(kind, self.source, self.timestamp)

    def uuids(self) -> Dict[VariableKind, UUID]:
        """Identifiers of all five variables."""
        return {kind: self.uuid(kind) for kind in VariableKind}

    def set_orientation(self, *args: Union[float, Quaternion, Sequence[float]]):
        """
        Set orientation from (w, x, y, z) scalars, a Quaternion or a
        [w, x, y, z] array. The result is always normalized; a unit
        Quaternion is copied exactly.
        """
        if len(args) == 1 and isinstance(args[0], Quaternion):
            norm = args[0].norm
            if not 1e-12 < norm < np.inf:
                raise ValueError(f"Invalid orientation {args[0]}")
            if abs(norm - 1.0) > 1e-12:
                # Fields were changed after construction
                self.orientation = Quaternion.from_array(args[0].to_array())
            else:
                self.orientation = args[0].copy()
            return

        values = args[0] if len(args) == 1 else args
        q = np.array(values, dtype=np.float64).reshape(-1)
        if q.shape != (4,):
            raise ValueError(f"orientation needs 4 components, got {q.size}")
        if not np.all(np.isfinite(q)) or np.linalg.norm(q) < 1e-12:
            raise ValueError(f"Invalid orientation {q}")
        self.orientation = Quaternion.from_array(q)

    def set_position(self, *args):
        """Set position from (x, y, z) scalars or an array."""
        self.position = _as_vector3(args, 'position')

    def set_velocity(self, *args):
        """Set velocity from (x, y, z) scalars or an array."""
        self.velocity = _as_vector3(args, 'velocity')

    def set_gyro_bias(self, *args):
        """Set gyroscope bias from (x, y, z) scalars or an array."""
        self.gyro_bias = _as_vector3(args, 'gyro_bias')

    def set_accel_bias(self, *args):
        """Set accelerometer bias from (x, y, z) scalars or an array."""
        self.accel_bias = _as_vector3(args, 'accel_bias')

    def update(self, result: OptimizerResult) -> bool:
        """
        Adopt optimized values for this state.

        Args:
            result: Optimizer output keyed by variable uuid

        Returns:
            True if all five variables were found and written. False means
            this state was not part of that optimization and nothing changed.
        """
        values = {}
        for kind in VariableKind:
            value = result.get(self.uuid(kind))
            if value is None:
                return False
            value = np.asarray(value, dtype=np.float64).reshape(-1)
            if value.shape != (kind.size,):
                raise ValueError(
                    f"Optimizer value for {kind.name} has {value.size} entries, expected {kind.size}")
            if not np.all(np.isfinite(value)):
                raise NumericalError(f"Optimizer returned non-finite {kind.name}: {value}")
            values[kind] = value

        self.set_orientation(values[VariableKind.ORIENTATION])
        self.set_position(values[VariableKind.POSITION])
        self.set_velocity(values[VariableKind.VELOCITY])
        self.set_gyro_bias(values[VariableKind.GYRO_BIAS])
        self.set_accel_bias(values[VariableKind.ACCEL_BIAS])
        self.updates += 1
        return True

    def clone(self) -> 'ImuState':
        """Create a deep copy of the state."""
        return ImuState(
            timestamp=self.timestamp,
            orientation=self.orientation.copy(),
            position=self.position.copy(),
            velocity=self.velocity.copy(),
            gyro_bias=self.gyro_bias.copy(),
            accel_bias=self.accel_bias.copy(),
            source=self.source,
            updates=self.updates
        )

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"ImuState(\n"
            f"  stamp: {self.timestamp:.9f}\n"
            f"  updates: {self.updates}\n"
            f"  orientation: {self.orientation.to_array()}\n"
            f"  position: {self.position}\n"
            f"  velocity: {self.velocity}\n"
            f"  gyro bias: {self.gyro_bias}\n"
            f"  accel bias: {self.accel_bias}\n"
            f")"
        )
