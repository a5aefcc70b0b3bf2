"""Tests for the rolling update controller."""

import threading

import pytest

from stackflow.capacity.fleet import SimulatedFleet, UnitSignals, healthy_after
from stackflow.capacity.models import (
    CapacityGroup,
    HealthCheckType,
    InstanceUnit,
    LifecycleHealth,
    UnitState,
)
from stackflow.capacity.rolling import RollingUpdateController
from stackflow.config.models import ElbHealthCheck, RollingUpdatePolicy
from stackflow.utils.errors import ExitCode, PolicyError, RollingUpdateCancelled, RollingUpdateError


def make_policy(min_in_service=1, max_batch=1, **overrides):
    values = {
        'MinInstancesInService': min_in_service,
        'MaxBatchSize': max_batch,
        'PauseTime': 5,
        'PollInterval': 5,
        'MaxUnknownPolls': 10,
        'MaxBatchWait': 300,
    }
    values.update(overrides)
    return RollingUpdatePolicy.model_validate(values)


def make_group(desired=2, max_size=3, check_type=HealthCheckType.INSTANCE, grace=0.0, elb=None):
    return CapacityGroup(
        name="web",
        min_size=0,
        max_size=max_size,
        desired_capacity=desired,
        launch_version="v1",
        health_check_type=check_type,
        health_check_grace_period=grace,
        elb_health_check=elb,
        stack_id="web-stack",
    )


def failing_probes(unit, at):
    return UnitSignals(lifecycle=LifecycleHealth.RUNNING, probe_passed=False)


def never_ready(unit, at):
    return UnitSignals(lifecycle=LifecycleHealth.PENDING, probe_passed=False)


@pytest.fixture
def controller(fleet, clock):
    return RollingUpdateController(fleet, clock=clock)


class TestReplacement:
    def test_two_old_units_replaced_in_two_batches(self, fleet, controller):
        group = make_group(desired=2)
        old = fleet.seed(group, "v1", 2)

        result = controller.execute(group, make_policy(min_in_service=1, max_batch=1), "v2")

        assert result.completed
        assert len(result.batches) == 2
        assert [len(b.launched) for b in result.batches] == [1, 1]
        assert [len(b.replaced) for b in result.batches] == [1, 1]
        assert [u.version for u in group.units] == ["v2", "v2"]
        assert all(u.state == UnitState.IN_SERVICE for u in group.units)
        assert sorted(fleet.terminated) == sorted(u.unit_id for u in old)
        assert result.min_in_service_observed() >= 1
        assert group.launch_version == "v2"

    @pytest.mark.parametrize("desired,min_in_service,max_batch,max_size", [
        (2, 1, 1, 3),
        (4, 2, 2, 6),
        (5, 1, 3, 6),
        (6, 5, 4, 8),
        (3, 0, 3, 6),
        (2, 1, 1, 2),
        (4, 1, 2, 4),
    ])
    def test_in_service_never_below_minimum(self, fleet, controller, desired, min_in_service, max_batch, max_size):
        group = make_group(desired=desired, max_size=max_size)
        fleet.seed(group, "v1", desired)

        result = controller.execute(group, make_policy(min_in_service, max_batch), "v2")

        assert result.completed
        assert all(sample.in_service >= min_in_service for sample in result.samples)
        assert len(group.units) == desired
        assert {u.version for u in group.units} == {"v2"}

    def test_old_units_drained_only_after_replacement_in_service(self, fleet, controller):
        group = make_group(desired=2)
        fleet.seed(group, "v1", 2)

        result = controller.execute(group, make_policy(), "v2")

        events = [s.event for s in result.samples]
        for batch in result.batches:
            new_in_service = events.index(f"{batch.launched[0]} in service")
            drained = events.index(f"{batch.replaced[0]} draining")
            assert new_in_service < drained

    def test_initial_fill_of_empty_group(self, fleet, controller):
        group = make_group(desired=2)

        result = controller.execute(group, make_policy(max_batch=1), "v1")

        assert len(result.batches) == 2
        assert len(group.units) == 2
        assert result.replacement_batches() == []

    def test_load_balancer_health_after_grace(self, clock):
        check = ElbHealthCheck(Interval=10, Timeout=5, HealthyThreshold=2, UnhealthyThreshold=2)
        fleet = SimulatedFleet(clock=clock, behavior=healthy_after(25))
        controller = RollingUpdateController(fleet, clock=clock)
        group = make_group(desired=2, check_type=HealthCheckType.LOAD_BALANCER, grace=30, elb=check)
        fleet.seed(group, "v1", 2)

        result = controller.execute(group, make_policy(PauseTime=20, PollInterval=20), "v2")

        assert result.completed
        assert {u.version for u in group.units} == {"v2"}
        assert result.batches[0].duration >= 30


class TestBatchFailure:
    def test_unhealthy_replacement_preserves_old_capacity(self, clock):
        check = ElbHealthCheck(Interval=10, Timeout=5, HealthyThreshold=2, UnhealthyThreshold=2)
        fleet = SimulatedFleet(clock=clock, behavior=failing_probes)
        controller = RollingUpdateController(fleet, clock=clock)
        group = make_group(desired=2, check_type=HealthCheckType.LOAD_BALANCER, grace=30, elb=check)
        old = fleet.seed(group, "v1", 2)

        with pytest.raises(RollingUpdateError) as exc_info:
            controller.execute(group, make_policy(), "v2")

        error = exc_info.value
        assert error.context.batch == 1
        assert error.context.unit_ids == [fleet.launched[-1]]
        assert "Unhealthy" in error.message
        assert fleet.drained == []
        assert [u.unit_id for u in group.units] == [u.unit_id for u in old]
        assert all(u.state == UnitState.IN_SERVICE for u in group.units)
        assert fleet.terminated == [fleet.launched[-1]]
        assert error.result.completed is False

    def test_retry_budget_exhausted(self, clock):
        fleet = SimulatedFleet(clock=clock, behavior=never_ready)
        controller = RollingUpdateController(fleet, clock=clock)
        group = make_group(desired=2)
        fleet.seed(group, "v1", 2)

        with pytest.raises(RollingUpdateError) as exc_info:
            controller.execute(group, make_policy(MaxUnknownPolls=3), "v2")

        assert "retry budget of 3 polls" in exc_info.value.message
        assert exc_info.value.context.decision_point == "health verification"
        assert fleet.drained == []

    def test_grace_polls_do_not_spend_retry_budget(self, clock):
        fleet = SimulatedFleet(clock=clock, behavior=healthy_after(40))
        controller = RollingUpdateController(fleet, clock=clock)
        group = make_group(desired=2, grace=50)
        fleet.seed(group, "v1", 2)

        result = controller.execute(group, make_policy(MaxUnknownPolls=2), "v2")

        assert result.completed

    def test_batch_wait_ceiling(self, clock):
        fleet = SimulatedFleet(clock=clock, behavior=never_ready)
        controller = RollingUpdateController(fleet, clock=clock)
        group = make_group(desired=2)
        fleet.seed(group, "v1", 2)

        with pytest.raises(RollingUpdateError) as exc_info:
            controller.execute(group, make_policy(MaxUnknownPolls=1000, MaxBatchWait=30), "v2")

        assert "batch wait ceiling" in exc_info.value.message

    def test_missing_resource_signal(self, clock):
        fleet = SimulatedFleet(clock=clock, behavior=healthy_after(0, signal=False))
        controller = RollingUpdateController(fleet, clock=clock)
        group = make_group(desired=2)
        fleet.seed(group, "v1", 2)
        policy = make_policy(WaitOnResourceSignals=True, SignalTimeout=30, MaxUnknownPolls=100)

        with pytest.raises(RollingUpdateError) as exc_info:
            controller.execute(group, policy, "v2")

        assert exc_info.value.context.decision_point == "resource signals"
        assert fleet.drained == []

    def test_signaled_units_complete(self, fleet, controller):
        group = make_group(desired=2)
        fleet.seed(group, "v1", 2)
        policy = make_policy(WaitOnResourceSignals=True, SignalTimeout=30)

        assert controller.execute(group, policy, "v2").completed


class TestOscillation:
    @staticmethod
    def flapping_fleet(clock):
        def flaps(unit, at):
            lifecycle = LifecycleHealth.RUNNING if at < 5 else LifecycleHealth.IMPAIRED
            return UnitSignals(lifecycle=lifecycle, probe_passed=True, signaled=True)
        # Units 1-2 are seeded, unit 3 is the first replacement
        return SimulatedFleet(clock=clock, behaviors={'i-sim00003': flaps})

    def test_halts_when_verified_unit_turns_unhealthy(self, clock):
        fleet = self.flapping_fleet(clock)
        controller = RollingUpdateController(fleet, clock=clock)
        group = make_group(desired=2)
        fleet.seed(group, "v1", 2)

        with pytest.raises(RollingUpdateError) as exc_info:
            controller.execute(group, make_policy(), "v2")

        error = exc_info.value
        assert "oscillation" in error.message
        assert error.context.unit_ids == ['i-sim00003']
        assert error.context.decision_point == "pre-drain re-verification"
        # Only the first batch's old unit was drained
        assert fleet.drained == ['i-sim00001']
        assert group.get_unit('i-sim00002').state == UnitState.IN_SERVICE

    def test_flap_allowance(self, clock):
        fleet = self.flapping_fleet(clock)
        controller = RollingUpdateController(fleet, clock=clock)
        group = make_group(desired=2)
        fleet.seed(group, "v1", 2)

        assert controller.execute(group, make_policy(MaxHealthFlaps=1), "v2").completed


class TestPolicyValidation:
    def test_no_headroom_with_full_batch_rejected(self, fleet, controller):
        group = make_group(desired=2)
        fleet.seed(group, "v1", 2)

        with pytest.raises(PolicyError) as exc_info:
            controller.execute(group, make_policy(min_in_service=2, max_batch=2), "v2")

        assert "whole group at once" in exc_info.value.message
        assert fleet.launched == ['i-sim00001', 'i-sim00002']

    def test_group_at_max_size_surges_by_one_batch(self, fleet, controller):
        group = make_group(desired=2, max_size=2)
        fleet.seed(group, "v1", 2)

        result = controller.execute(group, make_policy(min_in_service=1, max_batch=1), "v2")

        assert result.completed
        assert [len(b.launched) for b in result.batches] == [1, 1]
        assert all(1 <= s.in_service <= 3 for s in result.samples)
        assert [u.version for u in group.units] == ["v2", "v2"]

    def test_batch_wait_must_exceed_grace(self, fleet, controller):
        group = make_group(desired=2, grace=300)

        with pytest.raises(PolicyError):
            controller.execute(group, make_policy(MaxBatchWait=300), "v2")


class TestCancellation:
    def test_cancel_before_start(self, fleet, controller):
        group = make_group(desired=2)
        fleet.seed(group, "v1", 2)
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(RollingUpdateCancelled):
            controller.execute(group, make_policy(), "v2", cancel)

        assert len(fleet.launched) == 2

    def test_cancel_during_pause_leaves_every_unit_tracked(self, clock):
        cancel = threading.Event()

        class CancellingFleet(SimulatedFleet):
            def drain(self, unit, group):
                super().drain(unit, group)
                cancel.set()

        fleet = CancellingFleet(clock=clock)
        controller = RollingUpdateController(fleet, clock=clock)
        group = make_group(desired=2)
        fleet.seed(group, "v1", 2)

        with pytest.raises(RollingUpdateCancelled) as exc_info:
            controller.execute(group, make_policy(), "v2", cancel)

        assert sorted(u.version for u in group.units) == ["v1", "v2"]
        assert all(u.state == UnitState.IN_SERVICE for u in group.units)
        assert set(fleet.launched) == {u.unit_id for u in group.units} | set(fleet.terminated)
        assert exc_info.value.result.completed is False


class TestFleetErrors:
    def test_observe_failure_discards_the_batch(self, clock):
        class UnreachableFleet(SimulatedFleet):
            def observe(self, unit, group):
                if unit.version == "v2":
                    raise RuntimeError("describe_instance_status: endpoint unreachable")
                super().observe(unit, group)

        fleet = UnreachableFleet(clock=clock)
        controller = RollingUpdateController(fleet, clock=clock)
        group = make_group(desired=2)
        old = fleet.seed(group, "v1", 2)

        with pytest.raises(RollingUpdateError) as exc_info:
            controller.execute(group, make_policy(), "v2")

        error = exc_info.value
        assert error.exit_code == ExitCode.ROLLING_UPDATE
        assert error.context.batch == 1
        assert error.context.unit_ids == ['i-sim00003']
        assert error.context.decision_point == "observe"
        assert "endpoint unreachable" in error.message
        assert [u.unit_id for u in group.units] == [u.unit_id for u in old]
        assert fleet.terminated == ['i-sim00003']
        assert error.result.completed is False

    def test_terminate_failure_leaves_unit_draining(self, clock):
        class StuckFleet(SimulatedFleet):
            def terminate(self, unit, group):
                if unit.version == "v1":
                    raise ConnectionError("reset by peer")
                super().terminate(unit, group)

        fleet = StuckFleet(clock=clock)
        controller = RollingUpdateController(fleet, clock=clock)
        group = make_group(desired=2)
        fleet.seed(group, "v1", 2)

        with pytest.raises(RollingUpdateError) as exc_info:
            controller.execute(group, make_policy(), "v2")

        assert exc_info.value.context.decision_point == "terminate"
        assert exc_info.value.context.unit_ids == ['i-sim00001']
        assert [(u.unit_id, u.state) for u in group.units] == [
            ('i-sim00001', UnitState.DRAINING),
            ('i-sim00002', UnitState.IN_SERVICE),
            ('i-sim00003', UnitState.IN_SERVICE),
        ]


class TestResume:
    def test_pending_unit_from_earlier_run_keeps_its_grace(self, clock):
        clock.advance(10_000)
        ready_at = clock.now() + 20

        def boots(unit, at):
            ready = at >= ready_at
            lifecycle = LifecycleHealth.RUNNING if ready else LifecycleHealth.PENDING
            return UnitSignals(lifecycle=lifecycle, probe_passed=ready, signaled=ready)

        check = ElbHealthCheck(Interval=10, Timeout=5, HealthyThreshold=2, UnhealthyThreshold=2)
        fleet = SimulatedFleet(clock=clock, behavior=boots)
        controller = RollingUpdateController(fleet, clock=clock)
        group = make_group(desired=2, check_type=HealthCheckType.LOAD_BALANCER, grace=60, elb=check)
        fleet.seed(group, "v1", 2)
        record = {'unit_id': 'i-prev', 'version': 'v2', 'state': 'Pending', 'launched_at': clock.now() - 10}
        group.units.append(InstanceUnit.from_record(record))

        result = controller.execute(group, make_policy(PauseTime=20, PollInterval=10), "v2")

        resumed = group.get_unit('i-prev')
        assert result.completed
        assert resumed.state == UnitState.IN_SERVICE
        assert resumed.in_service_at >= record['launched_at'] + 60
        assert 'i-prev' not in fleet.terminated
        assert len(group.units) == 2
        assert {u.version for u in group.units} == {"v2"}

    def test_draining_unit_from_earlier_run_is_retired_first(self, fleet, controller, clock):
        group = make_group(desired=2)
        fleet.seed(group, "v2", 2)
        record = {'unit_id': 'i-old', 'version': 'v1', 'state': 'Draining', 'launched_at': clock.now()}
        group.units.append(InstanceUnit.from_record(record))

        result = controller.execute(group, make_policy(), "v2")

        assert result.completed
        assert result.batches[0].replaced == ['i-old']
        assert fleet.terminated == ['i-old']
        assert [u.unit_id for u in group.units] == ['i-sim00001', 'i-sim00002']
