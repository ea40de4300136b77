"""
Prediction of IMU states from preintegrated deltas.

    R_j = R_i * Delta R
    v_j = v_i + R_i * Delta v + g * dt
    p_j = p_i + v_i * dt + R_i * Delta p + 0.5 * g * dt^2

Biases are carried over unchanged.
"""
import numpy as np
from typing import Optional
from ..core.frames import gravity_vector
from ..core.state import ImuState
from .delta import Delta


class Propagator:
    """Applies deltas to states under a constant gravity vector."""

    def __init__(self, gravity: Optional[np.ndarray] = None):
        """
        Args:
            gravity: Gravity in world frame (default [0, 0, -9.81])
        """
        if gravity is None:
            gravity = gravity_vector()
        self.gravity = np.asarray(gravity, dtype=np.float64).reshape(3)

    def predict(self,
                delta: Delta,
                start_state: ImuState,
                timestamp: Optional[float] = None) -> ImuState:
        """
        Predict the state at the end of a delta.

        Args:
            delta: Delta integrated from the start state's time
            start_state: State at the start of the delta
            timestamp: Stamp of the result (default start stamp + delta dt)

        Returns:
            New state, the start state is not modified
        """
        dt = delta.dt
        R_i = start_state.rotation_matrix
        g = self.gravity

        if timestamp is None:
            timestamp = start_state.timestamp + dt

        return ImuState(
            timestamp=timestamp,
            orientation=start_state.orientation * delta.orientation,
            position=(start_state.position + start_state.velocity * dt
                      + R_i @ delta.position + 0.5 * g * dt * dt),
            velocity=start_state.velocity + R_i @ delta.velocity + g * dt,
            gyro_bias=start_state.gyro_bias.copy(),
            accel_bias=start_state.accel_bias.copy(),
            source=start_state.source
        )

    def repropagate(self,
                    delta: Delta,
                    start_state: ImuState,
                    gyro_bias: Optional[np.ndarray] = None,
                    accel_bias: Optional[np.ndarray] = None,
                    timestamp: Optional[float] = None) -> ImuState:
        """
        Predict with a delta corrected to new biases.

        Args:
            delta: Delta integrated with its own linearization biases
            start_state: State at the start of the delta
            gyro_bias: Bias to correct to (default: start state's)
            accel_bias: Bias to correct to (default: start state's)
            timestamp: Stamp of the result

        Returns:
            Predicted state. Identical to predict() when the biases equal the
            delta's linearization point.
        """
        if gyro_bias is None:
            gyro_bias = start_state.gyro_bias
        if accel_bias is None:
            accel_bias = start_state.accel_bias
        return self.predict(delta.corrected(gyro_bias, accel_bias), start_state, timestamp)

    def relative_motion(self, state1: ImuState, state2: ImuState) -> Delta:
        """
        Delta mean that takes state1 to state2 (inverse of predict()).

        Covariance and Jacobians of the result are zero.
        """
        return relative_motion(state1, state2, self.gravity)


def relative_motion(state1: ImuState,
                    state2: ImuState,
                    gravity: np.ndarray) -> Delta:
    """
    Delta mean between two states under gravity.

        Delta R = R_1^T * R_2
        Delta v = R_1^T * (v_2 - v_1 - g * dt)
        Delta p = R_1^T * (p_2 - p_1 - v_1 * dt - 0.5 * g * dt^2)

    The result is linearized at state1's biases.
    """
    dt = state2.timestamp - state1.timestamp
    R1_T = state1.rotation_matrix.T
    gravity = np.asarray(gravity, dtype=np.float64).reshape(3)

    return Delta(
        start_time=state1.timestamp,
        end_time=state2.timestamp,
        orientation=state1.orientation.conjugate() * state2.orientation,
        position=R1_T @ (state2.position - state1.position - state1.velocity * dt
                         - 0.5 * gravity * dt * dt),
        velocity=R1_T @ (state2.velocity - state1.velocity - gravity * dt),
        gyro_bias=state1.gyro_bias.copy(),
        accel_bias=state1.accel_bias.copy()
    )


def relative_state_delta(state1: ImuState, state2: ImuState) -> np.ndarray:
    """
    Difference of two states expressed in the frame of the first, ignoring
    time and gravity.

    Returns:
        16-vector [q_1^-1 * q_2 (4), R_1^T (p_2 - p_1) (3),
        R_1^T (v_2 - v_1) (3), bg_2 - bg_1 (3), ba_2 - ba_1 (3)]
    """
    R1_T = state1.rotation_matrix.T
    return np.concatenate([
        (state1.orientation.conjugate() * state2.orientation).to_array(),
        R1_T @ (state2.position - state1.position),
        R1_T @ (state2.velocity - state1.velocity),
        state2.gyro_bias - state1.gyro_bias,
        state2.accel_bias - state1.accel_bias
    ])
