"""
Unit tests for preintegration (delta, integrator, propagator, buffer, factors).
"""
import pytest
import numpy as np
from scipy.spatial.transform import Rotation
from imu_preint.core.errors import OrderingError
from imu_preint.core.state import ImuState, VariableKind
from imu_preint.core.types import ImuSample, Quaternion
from imu_preint.sensors.imu_model import ImuNoiseModel
from imu_preint.preintegration.delta import Delta, BG, BA
from imu_preint.preintegration.integrator import Integrator
from imu_preint.preintegration.propagator import (
    Propagator, relative_motion, relative_state_delta
)
from imu_preint.preintegration.buffer import SampleBuffer
from imu_preint.preintegration.factors import (
    FactorEmitter, FactorKind, Transaction, dispatch
)

GRAVITY = np.array([0.0, 0.0, -9.81])
RATE = 100.0


def constant_samples(omega, accel, t0, t1, rate=RATE):
    """Samples on the global grid i / rate within [t0, t1]."""
    first = int(np.ceil(t0 * rate - 1e-9))
    last = int(np.floor(t1 * rate + 1e-9))
    return [ImuSample(i / rate, omega, accel) for i in range(first, last + 1)]


def varying_samples(t0, t1, rate=RATE):
    """Samples of a smooth, non-trivial motion."""
    first = int(np.ceil(t0 * rate - 1e-9))
    last = int(np.floor(t1 * rate + 1e-9))
    samples = []
    for i in range(first, last + 1):
        t = i / rate
        omega = [0.3 * np.sin(t), 0.2, -0.5 * np.cos(2.0 * t)]
        accel = [0.5, -0.2 * np.sin(t), 9.81 + 0.1 * t]
        samples.append(ImuSample(t, omega, accel))
    return samples


def integrate(samples, start_time, end_time=None, gyro_bias=None, accel_bias=None,
              noise_model=None):
    integrator = Integrator(noise_model or ImuNoiseModel(), start_time,
                            gyro_bias=gyro_bias, accel_bias=accel_bias)
    for sample in samples:
        integrator.integrate(sample)
    if end_time is not None:
        integrator.advance_to(end_time)
    return integrator.delta()


class TestImuNoiseModel:
    """Tests for ImuNoiseModel."""

    def test_continuous_noise(self):
        model = ImuNoiseModel()
        assert model.Q_imu.shape == (12, 12)
        assert np.isclose(model.Q_imu[0, 0], model.gyro_noise_density**2)

    def test_discrete_noise(self):
        model = ImuNoiseModel(0.1, 0.01, 0.2, 0.02)
        Q = model.discrete_noise(0.5)
        assert Q.shape == (12, 12)
        assert np.allclose(np.diag(Q), [0.02] * 3 + [0.08] * 3 + [5e-5] * 3 + [2e-4] * 3)

    def test_discrete_noise_bias_only(self):
        model = ImuNoiseModel(0.1, 0.01, 0.2, 0.02)
        Q = model.discrete_noise(0.5, include_measurement_noise=False)
        assert np.all(Q[:6, :6] == 0.0)
        assert np.allclose(np.diag(Q)[6:], [5e-5] * 3 + [2e-4] * 3)


class TestIntegrator:
    """Tests for Integrator."""

    def test_zero_samples_bias_random_walk_only(self):
        model = ImuNoiseModel()
        T = 0.75
        integrator = Integrator(model, 2.0)
        integrator.advance_to(2.0 + T)
        delta = integrator.delta()

        expected = np.zeros((15, 15))
        expected[BG, BG] = model.gyro_random_walk**2 * T * np.eye(3)
        expected[BA, BA] = model.accel_random_walk**2 * T * np.eye(3)

        assert np.isclose(delta.dt, T)
        assert np.array_equal(delta.orientation.to_array(), [1.0, 0.0, 0.0, 0.0])
        assert np.array_equal(delta.position, np.zeros(3))
        assert np.array_equal(delta.velocity, np.zeros(3))
        assert np.allclose(delta.covariance, expected, rtol=1e-12, atol=0.0)

    def test_constant_rotation_closed_form(self):
        omega = np.array([0.2, -0.4, 0.9])
        delta = integrate(constant_samples(omega, [0.0, 0.0, 0.0], 0.0, 1.0), 0.0)

        R_ref = Rotation.from_rotvec(omega * 1.0).as_matrix()
        assert np.isclose(delta.dt, 1.0)
        assert np.allclose(delta.rotation_matrix, R_ref, atol=1e-9)

    def test_constant_acceleration_closed_form(self):
        accel = np.array([0.3, -1.2, 2.0])
        T = 1.5
        delta = integrate(constant_samples([0.0, 0.0, 0.0], accel, 0.0, T), 0.0)

        assert np.allclose(delta.velocity, accel * T, atol=1e-9)
        assert np.allclose(delta.position, 0.5 * accel * T**2, atol=1e-9)
        assert np.allclose(delta.orientation.to_array(), [1.0, 0.0, 0.0, 0.0])

    def test_bias_is_removed(self):
        bias = np.array([0.01, -0.02, 0.03])
        delta = integrate(constant_samples(bias, bias, 0.0, 1.0), 0.0,
                          gyro_bias=bias, accel_bias=bias)
        assert np.allclose(delta.rotation_matrix, np.eye(3))
        assert np.allclose(delta.velocity, np.zeros(3))
        assert np.array_equal(delta.gyro_bias, bias)

    def test_midpoint_average(self):
        model = ImuNoiseModel()
        integrator = Integrator(model, 0.0)
        integrator.integrate(ImuSample(0.0, [0.0, 0.0, 0.0], [0.0, 0.0, 0.0]))
        integrator.integrate(ImuSample(1.0, [0.0, 0.0, 0.0], [2.0, 0.0, 0.0]))
        delta = integrator.delta()
        # Mean acceleration 1.0 over one second
        assert np.allclose(delta.velocity, [1.0, 0.0, 0.0])
        assert np.allclose(delta.position, [0.5, 0.0, 0.0])

    def test_first_sample_held_backwards(self):
        integrator = Integrator(ImuNoiseModel(), 0.0)
        integrator.integrate(ImuSample(0.5, [0.0, 0.0, 0.0], [2.0, 0.0, 0.0]))
        assert np.allclose(integrator.delta().velocity, [1.0, 0.0, 0.0])

    def test_advance_holds_last_reading(self):
        integrator = Integrator(ImuNoiseModel(), 0.0)
        for sample in constant_samples([0.0, 0.0, 0.0], [1.0, 0.0, 0.0], 0.0, 0.5):
            integrator.integrate(sample)
        integrator.advance_to(1.0)
        delta = integrator.delta()
        assert np.isclose(delta.end_time, 1.0)
        assert np.allclose(delta.velocity, [1.0, 0.0, 0.0])

    def test_seed_sample(self):
        seed = ImuSample(-0.1, [0.0, 0.0, 0.0], [2.0, 0.0, 0.0])
        integrator = Integrator(ImuNoiseModel(), 0.0, seed_sample=seed)
        integrator.integrate(ImuSample(1.0, [0.0, 0.0, 0.0], [0.0, 0.0, 0.0]))
        assert np.allclose(integrator.delta().velocity, [1.0, 0.0, 0.0])

    def test_out_of_order_sample(self):
        integrator = Integrator(ImuNoiseModel(), 0.0)
        integrator.integrate(ImuSample(0.2, [0.0, 0.0, 0.0], [0.0, 0.0, 0.0]))
        with pytest.raises(OrderingError):
            integrator.integrate(ImuSample(0.1, [0.0, 0.0, 0.0], [0.0, 0.0, 0.0]))
        with pytest.raises(OrderingError):
            integrator.advance_to(0.15)
        assert np.isclose(integrator.time, 0.2)

    def test_unit_norm(self):
        rng = np.random.default_rng(7)
        integrator = Integrator(ImuNoiseModel(), 0.0)
        for i in range(2000):
            integrator.integrate(ImuSample(i / 200.0, rng.normal(0.0, 2.0, 3), rng.normal(0.0, 5.0, 3)))
            assert abs(integrator.delta().orientation.norm - 1.0) < 1e-9

    def test_covariance_symmetric_psd(self):
        delta = integrate(varying_samples(0.0, 2.0), 0.0)
        P = delta.covariance
        assert np.array_equal(P, P.T)
        assert np.min(np.linalg.eigvalsh(P)) > -1e-15
        assert np.all(np.diag(P) > 0.0)

    def test_snapshot_is_independent(self):
        integrator = Integrator(ImuNoiseModel(), 0.0)
        for sample in varying_samples(0.0, 0.5):
            integrator.integrate(sample)
        before = integrator.delta()

        snapshot = integrator.snapshot()
        snapshot.advance_to(0.8)

        after = integrator.delta()
        assert np.isclose(integrator.time, 0.5)
        assert np.array_equal(before.position, after.position)
        assert np.array_equal(before.covariance, after.covariance)

    def test_bias_jacobian_correction_matches_reintegration(self):
        samples = varying_samples(0.0, 1.0)
        delta = integrate(samples, 0.0)

        dbg = np.array([2e-5, -1e-5, 3e-5])
        dba = np.array([-2e-4, 1e-4, 1.5e-4])
        corrected = delta.corrected(dbg, dba)
        reference = integrate(samples, 0.0, gyro_bias=dbg, accel_bias=dba)

        assert np.allclose(corrected.rotation_matrix, reference.rotation_matrix, atol=1e-8)
        assert np.allclose(corrected.velocity, reference.velocity, atol=1e-7)
        assert np.allclose(corrected.position, reference.position, atol=1e-7)
        assert np.array_equal(corrected.gyro_bias, dbg)


class TestDelta:
    """Tests for Delta."""

    def test_corrected_identity_is_exact(self):
        delta = integrate(varying_samples(0.0, 1.0), 0.0)
        corrected = delta.corrected(delta.gyro_bias.copy(), delta.accel_bias.copy())

        assert corrected is not delta
        assert np.array_equal(corrected.orientation.to_array(), delta.orientation.to_array())
        assert np.array_equal(corrected.position, delta.position)
        assert np.array_equal(corrected.velocity, delta.velocity)
        assert np.array_equal(corrected.covariance, delta.covariance)

    def test_freeze(self):
        delta = integrate(varying_samples(0.0, 0.2), 0.0).freeze()
        assert delta.frozen
        with pytest.raises(ValueError):
            delta.position[0] = 1.0
        assert not delta.copy().frozen

    def test_negative_duration(self):
        with pytest.raises(ValueError):
            Delta(start_time=1.0, end_time=0.5)

    def test_compose_matches_single_window(self):
        samples = varying_samples(0.0, 1.0)
        first = [s for s in samples if s.timestamp <= 0.5]
        second = [s for s in samples if s.timestamp >= 0.5]

        whole = integrate(samples, 0.0)
        composed = integrate(first, 0.0).compose(integrate(second, 0.5))

        assert np.isclose(composed.start_time, 0.0)
        assert np.isclose(composed.end_time, 1.0)
        assert np.allclose(composed.rotation_matrix, whole.rotation_matrix, atol=1e-12)
        assert np.allclose(composed.velocity, whole.velocity, atol=1e-12)
        assert np.allclose(composed.position, whole.position, atol=1e-12)

        scale = np.abs(whole.covariance).max()
        assert np.allclose(composed.covariance, whole.covariance, rtol=0.0, atol=1e-8 * scale)
        for name in ('J_R_bg', 'J_v_bg', 'J_v_ba', 'J_p_bg', 'J_p_ba'):
            assert np.allclose(getattr(composed, name), getattr(whole, name), atol=1e-10)

    def test_compose_requires_adjacent_windows(self):
        a = Delta(start_time=0.0, end_time=1.0)
        b = Delta(start_time=1.5, end_time=2.0)
        with pytest.raises(ValueError):
            a.compose(b)


class TestPropagator:
    """Tests for Propagator."""

    def test_stationary(self):
        # Specific force of a resting IMU cancels gravity
        delta = integrate(constant_samples([0.0, 0.0, 0.0], [0.0, 0.0, 9.81], 0.0, 1.0), 0.0)
        start = ImuState(timestamp=0.0, position=[1.0, 2.0, 3.0])
        end = Propagator(GRAVITY).predict(delta, start)

        assert np.isclose(end.timestamp, 1.0)
        assert np.allclose(end.position, [1.0, 2.0, 3.0], atol=1e-12)
        assert np.allclose(end.velocity, np.zeros(3), atol=1e-12)

    def test_predict_closed_form(self):
        delta = Delta(
            start_time=0.0,
            end_time=2.0,
            orientation=Quaternion.from_rotation_vector([0.0, 0.0, 0.5]),
            position=[1.0, 0.0, 0.0],
            velocity=[0.5, 0.0, 0.0]
        )
        start = ImuState(
            timestamp=0.0,
            orientation=Quaternion.from_rotation_vector([0.0, 0.0, np.pi / 2]),
            velocity=[0.0, 0.0, 1.0],
            gyro_bias=[0.01, 0.0, 0.0]
        )
        end = Propagator(GRAVITY).predict(delta, start)

        assert np.allclose(end.rotation_matrix, Rotation.from_rotvec([0.0, 0.0, np.pi / 2 + 0.5]).as_matrix())
        assert np.allclose(end.velocity, [0.0, 0.5, 1.0 - 9.81 * 2.0])
        assert np.allclose(end.position, [0.0, 1.0, 2.0 - 0.5 * 9.81 * 4.0])
        assert np.array_equal(end.gyro_bias, start.gyro_bias)
        assert end.updates == 0

    def test_predict_does_not_modify_start(self):
        delta = integrate(varying_samples(0.0, 0.5), 0.0)
        start = ImuState(timestamp=0.0, velocity=[1.0, 0.0, 0.0])
        before = start.to_vector()
        Propagator(GRAVITY).predict(delta, start)
        assert np.array_equal(start.to_vector(), before)

    def test_repropagate_identity_is_exact(self):
        delta = integrate(varying_samples(0.0, 1.0), 0.0)
        start = ImuState(timestamp=0.0, velocity=[1.0, -1.0, 0.5])
        propagator = Propagator(GRAVITY)

        predicted = propagator.predict(delta, start)
        repropagated = propagator.repropagate(delta, start)

        assert np.array_equal(repropagated.to_vector(), predicted.to_vector())

    def test_repropagate_with_new_bias(self):
        samples = varying_samples(0.0, 1.0)
        delta = integrate(samples, 0.0)
        bg = np.array([1e-4, 0.0, -1e-4])
        ba = np.array([1e-3, -1e-3, 0.0])
        start = ImuState(timestamp=0.0, gyro_bias=bg, accel_bias=ba)
        propagator = Propagator(GRAVITY)

        repropagated = propagator.repropagate(delta, start)
        reference = propagator.predict(integrate(samples, 0.0, gyro_bias=bg, accel_bias=ba), start)

        assert np.allclose(repropagated.position, reference.position, atol=1e-6)
        assert np.allclose(repropagated.velocity, reference.velocity, atol=1e-6)

    def test_composition_law(self):
        samples = varying_samples(0.0, 1.0)
        d1 = integrate([s for s in samples if s.timestamp <= 0.4], 0.0)
        d2 = integrate([s for s in samples if s.timestamp >= 0.4], 0.4)
        start = ImuState(
            timestamp=0.0,
            orientation=Quaternion.from_rotation_vector([0.1, 0.2, -0.3]),
            position=[1.0, 2.0, 3.0],
            velocity=[0.5, -0.5, 0.1]
        )
        propagator = Propagator(GRAVITY)

        stepwise = propagator.predict(d2, propagator.predict(d1, start))
        combined = propagator.predict(d1.compose(d2), start)

        assert np.isclose(stepwise.timestamp, combined.timestamp)
        assert np.allclose(stepwise.rotation_matrix, combined.rotation_matrix, atol=1e-12)
        assert np.allclose(stepwise.position, combined.position, atol=1e-9)
        assert np.allclose(stepwise.velocity, combined.velocity, atol=1e-9)

    def test_relative_motion_inverts_predict(self):
        delta = integrate(varying_samples(0.0, 1.0), 0.0)
        start = ImuState(
            timestamp=0.0,
            orientation=Quaternion.from_rotation_vector([0.3, 0.0, 0.1]),
            velocity=[1.0, 0.0, 0.0]
        )
        propagator = Propagator(GRAVITY)
        end = propagator.predict(delta, start)

        recovered = relative_motion(start, end, GRAVITY)
        assert np.allclose(recovered.rotation_matrix, delta.rotation_matrix, atol=1e-12)
        assert np.allclose(recovered.velocity, delta.velocity, atol=1e-9)
        assert np.allclose(recovered.position, delta.position, atol=1e-9)
        assert np.allclose(propagator.relative_motion(start, end).position, delta.position, atol=1e-9)

    def test_relative_state_delta(self):
        s1 = ImuState(timestamp=0.0, orientation=Quaternion.from_rotation_vector([0.0, 0.0, np.pi / 2]))
        s2 = ImuState(timestamp=1.0, position=[0.0, 1.0, 0.0], gyro_bias=[0.1, 0.0, 0.0])
        vec = relative_state_delta(s1, s2)
        assert vec.shape == (16,)
        assert np.allclose(vec[4:7], [1.0, 0.0, 0.0])
        assert np.allclose(vec[10:13], [0.1, 0.0, 0.0])


class TestSampleBuffer:
    """Tests for SampleBuffer."""

    def make_buffer(self):
        buffer = SampleBuffer()
        for sample in constant_samples([0.0, 0.0, 0.0], [0.0, 0.0, 9.81], 0.0, 0.1):
            buffer.append(sample)
        return buffer

    def test_append_and_bounds(self):
        buffer = self.make_buffer()
        assert len(buffer) == 11
        assert buffer.oldest_time == 0.0
        assert np.isclose(buffer.newest_time, 0.1)

    def test_rejects_older_sample(self):
        buffer = self.make_buffer()
        with pytest.raises(OrderingError):
            buffer.append(ImuSample(0.05, [0.0, 0.0, 0.0], [0.0, 0.0, 0.0]))
        assert len(buffer) == 11

    def test_between(self):
        buffer = self.make_buffer()
        stamps = [s.timestamp for s in buffer.between(0.02, 0.05)]
        assert np.allclose(stamps, [0.03, 0.04, 0.05])

    def test_latest_at_or_before(self):
        buffer = self.make_buffer()
        assert np.isclose(buffer.latest_at_or_before(0.055).timestamp, 0.05)
        assert buffer.latest_at_or_before(-0.1) is None

    def test_drop_before_keeps_seed(self):
        buffer = self.make_buffer()
        removed = buffer.drop_before(0.055)
        assert removed == 5
        assert np.isclose(buffer.oldest_time, 0.05)


class TestFactorEmitter:
    """Tests for FactorEmitter and Transaction."""

    def make_transaction(self, include_prior):
        delta = integrate(varying_samples(0.0, 0.5), 0.0)
        start = ImuState(timestamp=0.0, source='imu')
        end = Propagator(GRAVITY).predict(delta, start)
        emitter = FactorEmitter('imu', prior_covariance_scale=1e-6)
        return delta, start, end, emitter.emit(delta, start, end, include_prior=include_prior)

    def test_relative_factor(self):
        delta, start, end, transaction = self.make_transaction(include_prior=False)

        assert isinstance(transaction, Transaction)
        assert np.isclose(transaction.stamp, end.timestamp)
        assert len(transaction.added_variables) == 10
        assert len(transaction.added_constraints) == 1

        factor = transaction.added_constraints[0]
        assert factor.kind is FactorKind.RELATIVE_IMU_STATE
        assert factor.source == 'imu'
        assert list(factor.variables) == (
            [start.uuid(kind) for kind in VariableKind] + [end.uuid(kind) for kind in VariableKind])
        assert np.allclose(factor.delta[:4], delta.orientation.to_array())
        assert np.allclose(factor.delta[4:7], delta.position)
        assert np.allclose(factor.delta[7:10], delta.velocity)
        assert np.allclose(factor.delta[10:], np.zeros(6))
        assert np.array_equal(factor.covariance, delta.covariance)
        assert not factor.delta.flags.writeable

    def test_prior_factor(self):
        _, start, _, transaction = self.make_transaction(include_prior=True)

        priors = transaction.constraints_of_kind(FactorKind.ABSOLUTE_IMU_STATE)
        assert len(priors) == 1
        prior = priors[0]
        assert list(prior.variables) == [start.uuid(kind) for kind in VariableKind]
        assert np.allclose(prior.mean, start.to_vector())
        assert np.allclose(prior.covariance, 1e-6 * np.eye(15))

    def test_variables_carry_values(self):
        _, start, end, transaction = self.make_transaction(include_prior=False)
        by_uuid = {variable.uuid: variable for variable in transaction.added_variables}
        variable = by_uuid[end.uuid(VariableKind.POSITION)]
        assert variable.kind is VariableKind.POSITION
        assert np.isclose(variable.stamp, end.timestamp)
        assert np.allclose(variable.value, end.position)

    def test_dispatch_by_kind(self):
        _, _, _, transaction = self.make_transaction(include_prior=True)
        handled = []
        handlers = {
            FactorKind.RELATIVE_IMU_STATE: lambda f: handled.append('relative'),
            FactorKind.ABSOLUTE_IMU_STATE: lambda f: handled.append('absolute'),
        }
        for constraint in transaction.added_constraints:
            dispatch(constraint, handlers)
        assert handled == ['relative', 'absolute']

        with pytest.raises(KeyError):
            dispatch(transaction.added_constraints[0], {})


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
