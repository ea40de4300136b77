"""
IMU preintegration session.

Buffers raw samples of one IMU, keeps the current anchor state and an open
integration window from it, and turns each closed window into a transaction
for the external optimizer:

    set_start(t0)
    populate_buffer(sample) ...
    register_new_factor(t1) -> Transaction(state(t0), state(t1), factor)
    populate_buffer(sample) ...
    register_new_factor(t2) -> Transaction(state(t1), state(t2), factor)

Optimizer results are fed back with on_graph_update().
"""
import logging
import threading
import numpy as np
from enum import Enum
from typing import Callable, Optional, Sequence, Union
from ..config import PreintegrationParams
from ..core.errors import (
    InsufficientDataError, NotStartedError, NumericalError, OrderingError
)
from ..core.frames import ExtrinsicsLookup
from ..core.state import ImuState, OptimizerResult
from ..core.types import ImuSample, Quaternion
from ..sensors.imu_model import ImuNoiseModel
from .buffer import SampleBuffer
from .delta import Delta
from .factors import FactorEmitter, Transaction
from .integrator import Integrator
from .propagator import Propagator

logger = logging.getLogger(__name__)


class SessionStatus(Enum):
    UNINITIALIZED = 'uninitialized'
    STARTED = 'started'
    ACCUMULATING = 'accumulating'
    FACTOR_READY = 'factor_ready'


class ImuPreintegration:
    """
    Preintegration of one IMU stream into relative state factors.

    All public methods are serialized by one reentrant lock, so samples may
    be pushed from a different thread than the one registering factors.
    """

    def __init__(self,
                 params: Optional[PreintegrationParams] = None,
                 extrinsics: Optional[ExtrinsicsLookup] = None,
                 debug_sink: Optional[Callable[[Transaction], None]] = None):
        """
        Initialize a session.

        Args:
            params: Noise model, gravity and bookkeeping options
            extrinsics: Lookup of IMU to sensor transforms for get_pose()
            debug_sink: Called with every emitted transaction

        Raises:
            ConfigurationError: If the parameters are invalid
        """
        self.params = params if params is not None else PreintegrationParams()
        self.params.validate()

        self.noise_model = ImuNoiseModel.from_params(self.params)
        self.propagator = Propagator(self.params.gravity)
        self.emitter = FactorEmitter(self.params.source, self.params.prior_covariance_scale)
        self.extrinsics = extrinsics
        self.debug_sink = debug_sink

        self._lock = threading.RLock()
        self._buffer = SampleBuffer()
        self._status = SessionStatus.UNINITIALIZED

        # Start of the open window
        self._anchor: Optional[ImuState] = None
        # Start of the last registered window
        self._previous: Optional[ImuState] = None
        self._integrator: Optional[Integrator] = None
        self._last_delta: Optional[Delta] = None
        self._prior_pending = False
        # Samples before this time may have been dropped
        self._pruned_before = -np.inf

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def last_delta(self) -> Optional[Delta]:
        """Delta of the last registered window (read-only)."""
        return self._last_delta

    @property
    def num_buffered(self) -> int:
        return len(self._buffer)

    def set_start(self,
                  time: float,
                  orientation: Optional[Union[Quaternion, Sequence[float]]] = None,
                  position: Optional[Sequence[float]] = None,
                  velocity: Optional[Sequence[float]] = None) -> ImuState:
        """
        Set the anchor state the first window starts from.

        Unset values default to identity orientation and zero position and
        velocity. Biases start at the configured initial estimates. Buffered
        samples after `time` are integrated right away.

        Returns:
            Copy of the anchor state
        """
        state = ImuState(
            timestamp=time,
            gyro_bias=self.params.initial_gyro_bias.copy(),
            accel_bias=self.params.initial_accel_bias.copy(),
            source=self.params.source
        )
        if orientation is not None:
            if isinstance(orientation, Quaternion):
                state.set_orientation(orientation)
            else:
                state.set_orientation(np.asarray(orientation, dtype=np.float64))
        if position is not None:
            state.set_position(position)
        if velocity is not None:
            state.set_velocity(velocity)

        with self._lock:
            oldest = self._buffer.oldest_time
            if oldest is not None and oldest > time:
                logger.warning(
                    "No IMU sample at or before start %.9f, first reading at %.9f "
                    "is held back to the start", time, oldest)
            self._anchor = state
            self._previous = None
            self._last_delta = None
            self._prior_pending = True
            self._integrator = self._integrate_from(state)
            self._status = (SessionStatus.ACCUMULATING if self._integrator.num_samples
                            else SessionStatus.STARTED)
            self._prune()
            logger.info("Preintegration started at %.9f", state.timestamp)
            return state.clone()

    def populate_buffer(self, sample: ImuSample) -> Optional[OrderingError]:
        """
        Add a raw IMU sample.

        Samples older than the anchor or than the newest buffered sample are
        dropped. A sample that would make the open window non-finite is
        rejected and leaves the buffer and the window untouched.

        Returns:
            None if the sample was accepted, otherwise the OrderingError
            describing why it was dropped

        Raises:
            NumericalError: If the sample is not finite, or integrating it
                overflows the open window
        """
        if not sample.is_finite():
            raise NumericalError(f"Non-finite IMU sample at {sample.timestamp}")

        with self._lock:
            if self._anchor is not None and sample.timestamp < self._anchor.timestamp:
                error = OrderingError(
                    f"Dropping IMU sample at {sample.timestamp:.9f}, "
                    f"before anchor at {self._anchor.timestamp:.9f}",
                    sample.timestamp, self._anchor.timestamp)
                logger.warning("%s", error)
                return error

            integrator = None
            try:
                if self._integrator is not None:
                    integrator = self._integrator.snapshot()
                    integrator.integrate(sample)
                    if not integrator.delta().is_finite():
                        raise NumericalError(
                            f"IMU sample at {sample.timestamp:.9f} makes the window from "
                            f"{integrator.start_time:.9f} non-finite")
                self._buffer.append(sample)
            except OrderingError as error:
                logger.warning("Dropping IMU sample: %s", error)
                return error

            if integrator is not None:
                self._integrator = integrator
                self._status = SessionStatus.ACCUMULATING
            self._prune()
            return None

    def predict_state(self, delta: Delta, from_state: ImuState) -> ImuState:
        """State reached by applying a delta to from_state."""
        return self.propagator.predict(delta, from_state)

    def register_new_factor(self, upto_time: float) -> Union[Transaction, OrderingError]:
        """
        Close the open window at `upto_time` and emit its factor.

        The predicted end state becomes the new anchor. The first
        registration after set_start() also carries a prior on the anchor.
        A window without samples of its own holds the last reading before it.

        Returns:
            The transaction, or the OrderingError if `upto_time` is not after
            the anchor

        Raises:
            NotStartedError: Before set_start()
            InsufficientDataError: If no sample is buffered at or before
                `upto_time`
            NumericalError: If integration produced non-finite values. The
                session is left as it was before the call.
        """
        with self._lock:
            anchor = self._require_anchor()
            if upto_time <= anchor.timestamp:
                error = OrderingError(
                    f"Ignoring factor boundary {upto_time:.9f}, "
                    f"not after anchor {anchor.timestamp:.9f}",
                    upto_time, anchor.timestamp)
                logger.warning("%s", error)
                return error

            if self._buffer.latest_at_or_before(upto_time) is None:
                raise InsufficientDataError(
                    f"No IMU samples at or before {upto_time:.9f}")

            delta = self._window_delta(anchor, upto_time)
            if not delta.is_finite():
                raise NumericalError(
                    f"Non-finite preintegration over [{anchor.timestamp:.9f}, {upto_time:.9f}]")

            end_state = self.propagator.predict(delta, anchor, timestamp=upto_time)
            if not np.all(np.isfinite(end_state.to_vector())):
                raise NumericalError(f"Non-finite state predicted at {upto_time:.9f}")

            transaction = self.emitter.emit(delta, anchor, end_state,
                                            include_prior=self._prior_pending)
            self._status = SessionStatus.FACTOR_READY

            # The end state anchors the next window
            self._prior_pending = False
            self._previous = anchor
            self._anchor = end_state
            self._last_delta = delta.freeze()
            self._integrator = self._integrate_from(end_state)
            self._status = SessionStatus.ACCUMULATING
            self._prune()

            logger.info("Registered IMU factor [%.9f, %.9f] (dt %.6f s)",
                        delta.start_time, delta.end_time, delta.dt)
            logger.debug("%s", transaction)

        if self.debug_sink is not None:
            self.debug_sink(transaction)
        return transaction

    def get_pose(self, time: float, sensor_frame: Optional[str] = None) -> Optional[np.ndarray]:
        """
        Pose at `time` from the integrated samples.

        Args:
            time: Query time within [start of the last registered window,
                newest sample]
            sensor_frame: If given, return the pose of that sensor instead of
                the IMU, using the extrinsics lookup

        Returns:
            4x4 T_WORLD_IMU (or T_WORLD_SENSOR), None if the time is outside
            the retained window or the extrinsics are unknown

        Raises:
            NotStartedError: Before set_start()
            ValueError: If a sensor frame is given without extrinsics lookup
        """
        if sensor_frame is not None and self.extrinsics is None:
            raise ValueError("No extrinsics lookup configured for sensor poses")

        with self._lock:
            anchor = self._require_anchor()
            if time >= anchor.timestamp:
                start = anchor
            elif self._previous is not None and time >= self._previous.timestamp:
                start = self._previous
            else:
                logger.warning("Pose at %.9f is before the retained window", time)
                return None

            newest = self._buffer.newest_time
            if time > anchor.timestamp and (newest is None or time > newest):
                logger.warning("Pose at %.9f is after the newest IMU sample", time)
                return None

            if start is anchor and time >= self._integrator.time:
                integrator = self._integrator.snapshot()
            else:
                if not self._can_replay(start):
                    logger.warning("IMU samples for pose at %.9f were pruned", time)
                    return None
                integrator = self._integrate_from(start, time)
            integrator.advance_to(time)

            delta = integrator.delta().corrected(start.gyro_bias, start.accel_bias)
            T_world_imu = self.propagator.predict(delta, start, timestamp=time).transform()

        if sensor_frame is None:
            return T_world_imu

        T_imu_sensor = self.extrinsics.get_T_imu_sensor(sensor_frame, time)
        if T_imu_sensor is None:
            logger.warning("No transform from IMU to %s at %.9f", sensor_frame, time)
            return None
        return T_world_imu @ T_imu_sensor

    def get_state(self) -> ImuState:
        """Copy of the current anchor state."""
        with self._lock:
            return self._require_anchor().clone()

    def on_graph_update(self, result: OptimizerResult) -> bool:
        """
        Adopt optimized values for the anchor and the previous window start.

        The open window is kept when the anchor biases move by less than
        the relinearization threshold, the Jacobian correction absorbs the
        change. Larger changes replay the window from the buffered samples.

        Returns:
            True if any of the two states was updated
        """
        with self._lock:
            updated = False
            if self._previous is not None:
                updated = self._previous.update(result) or updated

            anchor = self._anchor
            if anchor is not None and anchor.update(result):
                updated = True
                change = max(
                    np.linalg.norm(anchor.gyro_bias - self._integrator.gyro_bias),
                    np.linalg.norm(anchor.accel_bias - self._integrator.accel_bias)
                )
                if change > self.params.bias_relinearization_threshold:
                    if self._can_replay(anchor):
                        logger.warning(
                            "Bias changed by %.6f at %.9f, replaying open window",
                            change, anchor.timestamp)
                        self._integrator = self._integrate_from(anchor)
                    else:
                        logger.warning(
                            "Bias changed by %.6f at %.9f but samples were pruned, "
                            "keeping first-order correction", change, anchor.timestamp)
            return updated

    def _require_anchor(self) -> ImuState:
        if self._anchor is None:
            raise NotStartedError("set_start() has not been called")
        return self._anchor

    def _can_replay(self, start: ImuState) -> bool:
        """True if every sample needed to integrate from start is still buffered."""
        return start.timestamp >= self._pruned_before

    def _integrate_from(self, start: ImuState, upto_time: float = np.inf) -> Integrator:
        """New integrator from a state, fed with buffered samples up to upto_time."""
        integrator = Integrator(
            self.noise_model,
            start.timestamp,
            gyro_bias=start.gyro_bias,
            accel_bias=start.accel_bias,
            seed_sample=self._buffer.latest_at_or_before(start.timestamp)
        )
        for sample in self._buffer.between(start.timestamp, upto_time):
            integrator.integrate(sample)
        if integrator.num_samples:
            logger.debug("Integrated %d buffered samples from %.9f",
                         integrator.num_samples, start.timestamp)
        return integrator

    def _window_delta(self, anchor: ImuState, upto_time: float) -> Delta:
        """Delta of the open window closed at upto_time, at the anchor biases."""
        if self._integrator.time <= upto_time:
            integrator = self._integrator.snapshot()
        elif not self._can_replay(anchor):
            raise InsufficientDataError(
                f"IMU samples after {anchor.timestamp:.9f} were pruned, cannot close window")
        else:
            # Samples after the boundary were already integrated
            integrator = self._integrate_from(anchor, upto_time)
        integrator.advance_to(upto_time)
        return integrator.delta().corrected(anchor.gyro_bias, anchor.accel_bias)

    def _prune(self):
        """Drop samples no retained window needs, and any older than the buffer duration."""
        if self._anchor is None:
            keep_from = -np.inf
        else:
            start = self._previous if self._previous is not None else self._anchor
            keep_from = start.timestamp
        newest = self._buffer.newest_time
        if newest is not None:
            keep_from = max(keep_from, newest - self.params.max_buffer_duration)
        removed = self._buffer.drop_before(keep_from)
        if removed:
            self._pruned_before = max(self._pruned_before, keep_from)
            logger.debug("Pruned %d IMU samples before %.9f", removed, keep_from)
