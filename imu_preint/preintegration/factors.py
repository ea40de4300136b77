"""
Factors and transactions handed to the external optimizer.

A transaction adds the variables of two consecutive states and a relative
factor between them. The first transaction of a session also carries an
absolute prior on the start state.
"""
import numpy as np
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Mapping, Tuple, Union
from uuid import UUID
from ..core.state import ImuState, VariableKind
from .delta import Delta, STATE_DIM


class FactorKind(Enum):
    """Kinds of constraints emitted by preintegration."""
    RELATIVE_IMU_STATE = 'relative_imu_state_3d_stamped'
    ABSOLUTE_IMU_STATE = 'absolute_imu_state_3d_stamped'


def _readonly(values, shape) -> np.ndarray:
    array = np.array(values, dtype=np.float64).reshape(shape)
    array.flags.writeable = False
    return array


@dataclass(frozen=True, eq=False)
class Variable:
    """One optimizer variable with its initial value."""
    kind: VariableKind
    uuid: UUID
    stamp: float
    value: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, 'value', _readonly(self.value, (self.kind.size,)))


@dataclass(frozen=True, eq=False)
class RelativeImuStateFactor:
    """
    Relative constraint between two states.

    Attributes:
        variables: Ten uuids, state 1 then state 2, each ordered
            orientation, position, velocity, gyro bias, accel bias
        delta: [q (4), p (3), v (3), dbg (3), dba (3)]
        covariance: 15x15 over [theta, p, v, bg, ba]
    """
    source: str
    variables: Tuple[UUID, ...]
    delta: np.ndarray
    covariance: np.ndarray
    kind: FactorKind = field(default=FactorKind.RELATIVE_IMU_STATE, init=False)

    def __post_init__(self):
        object.__setattr__(self, 'variables', tuple(self.variables))
        object.__setattr__(self, 'delta', _readonly(self.delta, (16,)))
        object.__setattr__(self, 'covariance', _readonly(self.covariance, (STATE_DIM, STATE_DIM)))


@dataclass(frozen=True, eq=False)
class AbsoluteImuStateFactor:
    """
    Prior pinning one state to a value.

    Attributes:
        variables: Five uuids ordered orientation, position, velocity,
            gyro bias, accel bias
        mean: [q (4), p (3), v (3), bg (3), ba (3)]
        covariance: 15x15 over [theta, p, v, bg, ba]
    """
    source: str
    variables: Tuple[UUID, ...]
    mean: np.ndarray
    covariance: np.ndarray
    kind: FactorKind = field(default=FactorKind.ABSOLUTE_IMU_STATE, init=False)

    def __post_init__(self):
        object.__setattr__(self, 'variables', tuple(self.variables))
        object.__setattr__(self, 'mean', _readonly(self.mean, (16,)))
        object.__setattr__(self, 'covariance', _readonly(self.covariance, (STATE_DIM, STATE_DIM)))


Factor = Union[RelativeImuStateFactor, AbsoluteImuStateFactor]


def dispatch(factor: Factor, handlers: Mapping[FactorKind, Callable[[Factor], Any]]) -> Any:
    """
    Call the handler registered for the factor's kind.

    Raises:
        KeyError: If no handler is registered for that kind
    """
    try:
        handler = handlers[factor.kind]
    except KeyError:
        raise KeyError(f"No handler for factor kind {factor.kind.name}") from None
    return handler(factor)


@dataclass
class Transaction:
    """Batch of variables and constraints to add to the optimizer."""
    stamp: float
    added_variables: List[Variable] = field(default_factory=list)
    added_constraints: List[Factor] = field(default_factory=list)

    def variable_uuids(self) -> List[UUID]:
        return [variable.uuid for variable in self.added_variables]

    def constraints_of_kind(self, kind: FactorKind) -> List[Factor]:
        return [constraint for constraint in self.added_constraints if constraint.kind is kind]

    def __repr__(self) -> str:
        kinds = [constraint.kind.name for constraint in self.added_constraints]
        return (f"Transaction(stamp={self.stamp:.9f}, "
                f"variables={len(self.added_variables)}, constraints={kinds})")


def state_variables(state: ImuState) -> List[Variable]:
    """The five variables of a state with their current values."""
    return [
        Variable(kind=kind, uuid=state.uuid(kind), stamp=state.timestamp, value=state.value(kind))
        for kind in VariableKind
    ]


def _state_uuids(state: ImuState) -> List[UUID]:
    return [state.uuid(kind) for kind in VariableKind]


class FactorEmitter:
    """Builds factors and transactions for a source."""

    def __init__(self, source: str, prior_covariance_scale: float = 1e-9):
        """
        Args:
            source: Name attached to every emitted factor
            prior_covariance_scale: Diagonal of the absolute prior covariance
        """
        self.source = source
        self.prior_covariance_scale = prior_covariance_scale

    def relative_factor(self,
                        delta: Delta,
                        state1: ImuState,
                        state2: ImuState) -> RelativeImuStateFactor:
        """Relative factor from the delta taking state1 to state2."""
        mean = np.concatenate([
            delta.mean_vector(),
            state2.gyro_bias - state1.gyro_bias,
            state2.accel_bias - state1.accel_bias
        ])
        return RelativeImuStateFactor(
            source=self.source,
            variables=_state_uuids(state1) + _state_uuids(state2),
            delta=mean,
            covariance=delta.covariance
        )

    def prior_factor(self, state: ImuState) -> AbsoluteImuStateFactor:
        """Absolute prior at the state's current values."""
        return AbsoluteImuStateFactor(
            source=self.source,
            variables=_state_uuids(state),
            mean=state.to_vector(),
            covariance=self.prior_covariance_scale * np.eye(STATE_DIM)
        )

    def emit(self,
             delta: Delta,
             state1: ImuState,
             state2: ImuState,
             include_prior: bool = False) -> Transaction:
        """
        Transaction adding both states and the factor between them.

        Args:
            delta: Delta from state1 to state2
            state1: Start state
            state2: End state
            include_prior: Also add an absolute prior on state1

        Returns:
            Transaction stamped at state2's time
        """
        transaction = Transaction(stamp=state2.timestamp)
        transaction.added_variables.extend(state_variables(state1))
        transaction.added_variables.extend(state_variables(state2))
        transaction.added_constraints.append(self.relative_factor(delta, state1, state2))
        if include_prior:
            transaction.added_constraints.append(self.prior_factor(state1))
        return transaction
