"""
Preintegrated IMU delta between two timestamps.

A delta expresses the relative motion accumulated from raw IMU readings in
the body frame of its start time, independent of the start state and of
gravity:

    Delta R = prod Exp((omega_k - bg) * dt_k)
    Delta v = sum Delta R_k * (a_k - ba) * dt_k
    Delta p = sum Delta v_k * dt_k + 0.5 * Delta R_k * (a_k - ba) * dt_k^2

The error state (and the covariance) is ordered
[theta (3), position (3), velocity (3), gyro bias (3), accel bias (3)].
"""
import numpy as np
from dataclasses import dataclass, field
from ..core.frames import skew_symmetric
from ..core.types import Quaternion

STATE_DIM = 15

# Error state blocks
THETA = slice(0, 3)
POS = slice(3, 6)
VEL = slice(6, 9)
BG = slice(9, 12)
BA = slice(12, 15)


def _zeros3():
    return np.zeros(3)


def _zeros33():
    return np.zeros((3, 3))


@dataclass(eq=False)
class Delta:
    """
    Relative motion, covariance and bias Jacobians over [start_time, end_time].

    The biases stored here are the linearization point the delta was
    integrated with. Jacobians map a bias change to a first-order change of
    the delta (see corrected()).
    """
    start_time: float
    end_time: float
    orientation: Quaternion = field(default_factory=Quaternion.identity)
    position: np.ndarray = field(default_factory=_zeros3)
    velocity: np.ndarray = field(default_factory=_zeros3)
    covariance: np.ndarray = field(default_factory=lambda: np.zeros((STATE_DIM, STATE_DIM)))

    # Linearization point
    gyro_bias: np.ndarray = field(default_factory=_zeros3)
    accel_bias: np.ndarray = field(default_factory=_zeros3)

    # Bias Jacobians
    J_R_bg: np.ndarray = field(default_factory=_zeros33)
    J_v_bg: np.ndarray = field(default_factory=_zeros33)
    J_v_ba: np.ndarray = field(default_factory=_zeros33)
    J_p_bg: np.ndarray = field(default_factory=_zeros33)
    J_p_ba: np.ndarray = field(default_factory=_zeros33)

    def __post_init__(self):
        self.start_time = float(self.start_time)
        self.end_time = float(self.end_time)
        self.position = np.asarray(self.position, dtype=np.float64).reshape(3)
        self.velocity = np.asarray(self.velocity, dtype=np.float64).reshape(3)
        self.covariance = np.asarray(self.covariance, dtype=np.float64).reshape(STATE_DIM, STATE_DIM)
        self.gyro_bias = np.asarray(self.gyro_bias, dtype=np.float64).reshape(3)
        self.accel_bias = np.asarray(self.accel_bias, dtype=np.float64).reshape(3)
        if self.end_time < self.start_time:
            raise ValueError(
                f"Delta ends before it starts: {self.end_time} < {self.start_time}")

    @property
    def dt(self) -> float:
        """Integrated duration."""
        return self.end_time - self.start_time

    @property
    def rotation_matrix(self) -> np.ndarray:
        return self.orientation.to_rotation_matrix()

    @property
    def frozen(self) -> bool:
        return not self.covariance.flags.writeable

    def freeze(self) -> 'Delta':
        """Make the arrays read-only. Returns self."""
        for array in self._arrays():
            array.flags.writeable = False
        return self

    def _arrays(self):
        return (self.position, self.velocity, self.covariance,
                self.gyro_bias, self.accel_bias,
                self.J_R_bg, self.J_v_bg, self.J_v_ba, self.J_p_bg, self.J_p_ba)

    def copy(self) -> 'Delta':
        """Deep, writable copy."""
        return Delta(
            start_time=self.start_time,
            end_time=self.end_time,
            orientation=self.orientation.copy(),
            position=self.position.copy(),
            velocity=self.velocity.copy(),
            covariance=self.covariance.copy(),
            gyro_bias=self.gyro_bias.copy(),
            accel_bias=self.accel_bias.copy(),
            J_R_bg=self.J_R_bg.copy(),
            J_v_bg=self.J_v_bg.copy(),
            J_v_ba=self.J_v_ba.copy(),
            J_p_bg=self.J_p_bg.copy(),
            J_p_ba=self.J_p_ba.copy()
        )

    def is_finite(self) -> bool:
        if not np.isfinite(self.orientation.to_array()).all():
            return False
        return all(np.isfinite(array).all() for array in self._arrays())

    def mean_vector(self) -> np.ndarray:
        """[q (4), p (3), v (3)]."""
        return np.concatenate([self.orientation.to_array(), self.position, self.velocity])

    def corrected(self, gyro_bias: np.ndarray, accel_bias: np.ndarray) -> 'Delta':
        """
        First-order correction of the delta to new biases.

            Delta R' = Delta R * Exp(J_R_bg * dbg)
            Delta v' = Delta v + J_v_bg * dbg + J_v_ba * dba
            Delta p' = Delta p + J_p_bg * dbg + J_p_ba * dba

        Args:
            gyro_bias: New gyroscope bias
            accel_bias: New accelerometer bias

        Returns:
            Corrected copy, linearized at the new biases. An unchanged copy
            when both biases equal the linearization point.
        """
        gyro_bias = np.asarray(gyro_bias, dtype=np.float64).reshape(3)
        accel_bias = np.asarray(accel_bias, dtype=np.float64).reshape(3)
        dbg = gyro_bias - self.gyro_bias
        dba = accel_bias - self.accel_bias

        result = self.copy()
        if not np.any(dbg) and not np.any(dba):
            return result

        result.orientation = self.orientation * Quaternion.from_rotation_vector(self.J_R_bg @ dbg)
        result.velocity = self.velocity + self.J_v_bg @ dbg + self.J_v_ba @ dba
        result.position = self.position + self.J_p_bg @ dbg + self.J_p_ba @ dba
        result.gyro_bias = gyro_bias.copy()
        result.accel_bias = accel_bias.copy()
        return result

    def compose(self, other: 'Delta') -> 'Delta':
        """
        Concatenate a following delta onto this one.

        The following delta is first corrected to this delta's biases. The
        result covers [self.start_time, other.end_time] and equals the delta
        integrated over both windows at once, up to that correction.

        Args:
            other: Delta starting where this one ends

        Returns:
            Combined delta
        """
        if abs(other.start_time - self.end_time) > 1e-9:
            raise ValueError(
                f"Cannot compose deltas: gap between {self.end_time} and {other.start_time}")

        other = other.corrected(self.gyro_bias, self.accel_bias)
        R1 = self.rotation_matrix
        R2 = other.rotation_matrix
        dt2 = other.dt
        I3 = np.eye(3)

        # Error propagation of the first and second delta into the result
        A = np.eye(STATE_DIM)
        A[THETA, THETA] = R2.T
        A[THETA, BG] = other.J_R_bg
        A[POS, THETA] = -R1 @ skew_symmetric(other.position)
        A[POS, VEL] = dt2 * I3
        A[POS, BG] = R1 @ other.J_p_bg
        A[POS, BA] = R1 @ other.J_p_ba
        A[VEL, THETA] = -R1 @ skew_symmetric(other.velocity)
        A[VEL, BG] = R1 @ other.J_v_bg
        A[VEL, BA] = R1 @ other.J_v_ba

        B = np.eye(STATE_DIM)
        B[POS, POS] = R1
        B[VEL, VEL] = R1

        covariance = A @ self.covariance @ A.T + B @ other.covariance @ B.T
        covariance = 0.5 * (covariance + covariance.T)

        return Delta(
            start_time=self.start_time,
            end_time=other.end_time,
            orientation=self.orientation * other.orientation,
            position=self.position + self.velocity * dt2 + R1 @ other.position,
            velocity=self.velocity + R1 @ other.velocity,
            covariance=covariance,
            gyro_bias=self.gyro_bias.copy(),
            accel_bias=self.accel_bias.copy(),
            J_R_bg=R2.T @ self.J_R_bg + other.J_R_bg,
            J_v_bg=self.J_v_bg - R1 @ skew_symmetric(other.velocity) @ self.J_R_bg + R1 @ other.J_v_bg,
            J_v_ba=self.J_v_ba + R1 @ other.J_v_ba,
            J_p_bg=(self.J_p_bg + dt2 * self.J_v_bg
                    - R1 @ skew_symmetric(other.position) @ self.J_R_bg + R1 @ other.J_p_bg),
            J_p_ba=self.J_p_ba + dt2 * self.J_v_ba + R1 @ other.J_p_ba
        )

    def __repr__(self) -> str:
        return (
            f"Delta(\n"
            f"  window: [{self.start_time:.9f}, {self.end_time:.9f}]\n"
            f"  orientation: {self.orientation.to_array()}\n"
            f"  position: {self.position}\n"
            f"  velocity: {self.velocity}\n"
            f")"
        )
