"""
Data type definitions for IMU preintegration.
"""
import copy
import numpy as np
from dataclasses import dataclass
from typing import Sequence


@dataclass
class ImuSample:
    """Raw IMU reading."""
    timestamp: float  # seconds
    angular_velocity: np.ndarray  # rad/s (3,)
    linear_acceleration: np.ndarray  # m/s^2 (3,), specific force in body frame

    def __post_init__(self):
        self.timestamp = float(self.timestamp)
        self.angular_velocity = np.array(self.angular_velocity, dtype=np.float64).reshape(3)
        self.linear_acceleration = np.array(self.linear_acceleration, dtype=np.float64).reshape(3)

    def is_finite(self) -> bool:
        """True if timestamp and both readings are finite."""
        return bool(
            np.isfinite(self.timestamp)
            and np.all(np.isfinite(self.angular_velocity))
            and np.all(np.isfinite(self.linear_acceleration))
        )


@dataclass
class Quaternion:
    """Quaternion representation for rotation (w, x, y, z), Hamilton convention."""
    w: float
    x: float
    y: float
    z: float

    def __post_init__(self):
        # Normalize
        norm = np.sqrt(self.w**2 + self.x**2 + self.y**2 + self.z**2)
        if norm > 0:
            self.w = float(self.w / norm)
            self.x = float(self.x / norm)
            self.y = float(self.y / norm)
            self.z = float(self.z / norm)

    @property
    def norm(self) -> float:
        return float(np.sqrt(self.w**2 + self.x**2 + self.y**2 + self.z**2))

    @property
    def vec(self) -> np.ndarray:
        """Vector part [x, y, z]."""
        return np.array([self.x, self.y, self.z])

    def to_rotation_matrix(self) -> np.ndarray:
        """Convert quaternion to rotation matrix."""
        w, x, y, z = self.w, self.x, self.y, self.z

        return np.array([
            [1 - 2*(y*y + z*z), 2*(x*y - w*z), 2*(x*z + w*y)],
            [2*(x*y + w*z), 1 - 2*(x*x + z*z), 2*(y*z - w*x)],
            [2*(x*z - w*y), 2*(y*z + w*x), 1 - 2*(x*x + y*y)]
        ])

    def to_array(self) -> np.ndarray:
        """Convert to numpy array [w, x, y, z]."""
        return np.array([self.w, self.x, self.y, self.z])

    def conjugate(self) -> 'Quaternion':
        return Quaternion(self.w, -self.x, -self.y, -self.z)

    def copy(self) -> 'Quaternion':
        # No renormalization, the copy is bit-identical
        return copy.copy(self)

    def __mul__(self, other: 'Quaternion') -> 'Quaternion':
        """Hamilton product self ⊗ other."""
        w1, x1, y1, z1 = self.w, self.x, self.y, self.z
        w2, x2, y2, z2 = other.w, other.x, other.y, other.z

        return Quaternion(
            w=w1 * w2 - x1 * x2 - y1 * y2 - z1 * z2,
            x=w1 * x2 + x1 * w2 + y1 * z2 - z1 * y2,
            y=w1 * y2 - x1 * z2 + y1 * w2 + z1 * x2,
            z=w1 * z2 + x1 * y2 - y1 * x2 + z1 * w2
        )

    @staticmethod
    def from_array(q: Sequence[float]) -> 'Quaternion':
        """Create quaternion from [w, x, y, z]."""
        q = np.asarray(q, dtype=np.float64).reshape(4)
        return Quaternion(q[0], q[1], q[2], q[3])

    @staticmethod
    def from_rotation_vector(phi: np.ndarray) -> 'Quaternion':
        """
        Exponential map from a rotation vector (axis * angle).

        For a constant body rate omega over dt, Exp(omega * dt) is the exact
        solution of q_dot = 0.5 * Omega(omega) * q.
        """
        phi = np.asarray(phi, dtype=np.float64).reshape(3)
        angle = np.linalg.norm(phi)
        if angle < 1e-12:
            # First-order approximation
            return Quaternion(1.0, 0.5 * phi[0], 0.5 * phi[1], 0.5 * phi[2])

        half_angle = angle / 2
        s = np.sin(half_angle) / angle
        return Quaternion(
            w=np.cos(half_angle),
            x=phi[0] * s,
            y=phi[1] * s,
            z=phi[2] * s
        )

    def to_rotation_vector(self) -> np.ndarray:
        """Logarithm map to a rotation vector (shortest path)."""
        w, v = self.w, self.vec
        if w < 0:
            w, v = -w, -v
        s = np.linalg.norm(v)
        if s < 1e-12:
            return 2.0 * v
        angle = 2.0 * np.arctan2(s, w)
        return v * (angle / s)

    @staticmethod
    def from_rotation_matrix(R: np.ndarray) -> 'Quaternion':
        """Create quaternion from rotation matrix."""
        trace = np.trace(R)

        if trace > 0:
            s = 0.5 / np.sqrt(trace + 1.0)
            w = 0.25 / s
            x = (R[2, 1] - R[1, 2]) * s
            y = (R[0, 2] - R[2, 0]) * s
            z = (R[1, 0] - R[0, 1]) * s
        elif R[0, 0] > R[1, 1] and R[0, 0] > R[2, 2]:
            s = 2.0 * np.sqrt(1.0 + R[0, 0] - R[1, 1] - R[2, 2])
            w = (R[2, 1] - R[1, 2]) / s
            x = 0.25 * s
            y = (R[0, 1] + R[1, 0]) / s
            z = (R[0, 2] + R[2, 0]) / s
        elif R[1, 1] > R[2, 2]:
            s = 2.0 * np.sqrt(1.0 + R[1, 1] - R[0, 0] - R[2, 2])
            w = (R[0, 2] - R[2, 0]) / s
            x = (R[0, 1] + R[1, 0]) / s
            y = 0.25 * s
            z = (R[1, 2] + R[2, 1]) / s
        else:
            s = 2.0 * np.sqrt(1.0 + R[2, 2] - R[0, 0] - R[1, 1])
            w = (R[1, 0] - R[0, 1]) / s
            x = (R[0, 2] + R[2, 0]) / s
            y = (R[1, 2] + R[2, 1]) / s
            z = 0.25 * s

        return Quaternion(w, x, y, z)

    @staticmethod
    def identity() -> 'Quaternion':
        """Return identity quaternion."""
        return Quaternion(1.0, 0.0, 0.0, 0.0)


@dataclass
class Pose:
    """SE(3) pose representation."""
    position: np.ndarray  # (3,) translation
    orientation: Quaternion  # rotation as quaternion

    def __post_init__(self):
        self.position = np.array(self.position, dtype=np.float64)

    def to_matrix(self) -> np.ndarray:
        """Convert to 4x4 transformation matrix."""
        T = np.eye(4)
        T[:3, :3] = self.orientation.to_rotation_matrix()
        T[:3, 3] = self.position
        return T

    def inverse(self) -> 'Pose':
        """Compute inverse pose."""
        R = self.orientation.to_rotation_matrix()
        R_inv = R.T
        t_inv = -R_inv @ self.position

        return Pose(
            position=t_inv,
            orientation=Quaternion.from_rotation_matrix(R_inv)
        )
