"""Tests for the per-stack lifecycle."""

import pytest

from stackflow.capacity.fleet import SimulatedFleet, UnitSignals
from stackflow.capacity.models import LifecycleHealth
from stackflow.orchestrator.approval import AutoApprovalGate, StateApprovalGate
from stackflow.orchestrator.changeset import ChangeSetReviewer
from stackflow.orchestrator.deployer import StackDeployer, StackLifecycle, StackMachine
from stackflow.orchestrator.exports import ExportRegistry
from stackflow.provisioners.simulated import SimulatedProvisioner
from stackflow.state.models import ApprovalRecord
from stackflow.utils.errors import (
    ApplyRejectedError,
    ExitCode,
    ExportInUseError,
    InvalidTransitionError,
    ReviewRejectedError,
    RollingUpdateError,
    UnknownExportError,
)

from conftest import capacity_spec, make_stack

S = StackLifecycle


def network(cidr="10.0.0.0/16", exports=None):
    return make_stack(
        "network",
        exports=exports or {'VpcId': {'Resource': 'Vpc'}, 'SubnetId': {'Resource': 'Subnet'}},
        resources={
            'Vpc': {'Type': 'AWS::EC2::VPC', 'Properties': {'CidrBlock': cidr}},
            'Subnet': {'Type': 'AWS::EC2::Subnet', 'Properties': {'CidrBlock': '10.0.1.0/24'}},
        },
    )


def app(**kwargs):
    return make_stack(
        "app",
        imports=["VpcId"],
        parameters={'VpcId': {'ImportValue': 'VpcId'}, 'Size': 'small'},
        exports={'AppUrl': None},
        **kwargs
    )


@pytest.fixture
def registry():
    return ExportRegistry()


@pytest.fixture
def provisioner():
    return SimulatedProvisioner()


@pytest.fixture
def make_deployer(registry, state_manager, provisioner, fleet, clock):
    def factory(approval_gate=None, fleet=fleet):
        return StackDeployer(
            registry=registry,
            state_manager=state_manager,
            provisioner=provisioner,
            approval_gate=approval_gate or AutoApprovalGate(),
            fleet=fleet,
            clock=clock,
            project_name="test",
        )
    return factory


def stored(state_manager, name):
    return state_manager.load().get_stack(name)


class TestLifecycle:
    def test_first_deploy_walks_every_state(self, make_deployer, registry, state_manager):
        result = make_deployer().deploy(network())

        assert result.is_success()
        assert result.history == [S.PENDING, S.PLANNING, S.AWAITING_REVIEW, S.APPLYING, S.SETTLING, S.DEPLOYED]
        assert result.exports == {'VpcId': 'sim-network-vpc', 'SubnetId': 'sim-network-subnet'}
        assert registry.resolve('VpcId') == 'sim-network-vpc'

        record = stored(state_manager, "network")
        assert record.status == "Deployed"
        assert record.last_deployed == network().snapshot()
        assert record.last_changeset_id == result.changeset.id
        assert set(state_manager.load().exports) == {'VpcId', 'SubnetId'}

    def test_unchanged_stack_skips_to_deployed(self, make_deployer, provisioner):
        deployer = make_deployer()
        deployer.deploy(network())

        result = deployer.deploy(network())

        assert result.is_success()
        assert result.changeset.is_empty
        assert result.history == [S.PENDING, S.PLANNING, S.DEPLOYED]
        assert len(provisioner.applied) == 1
        assert result.exports == {'VpcId': 'sim-network-vpc', 'SubnetId': 'sim-network-subnet'}

    def test_imports_resolved_into_parameters_and_locked(self, make_deployer, registry, provisioner, state_manager):
        deployer = make_deployer()
        deployer.deploy(network())

        result = deployer.deploy(app())

        assert result.is_success()
        assert provisioner.stacks['app']['parameters'] == {'VpcId': 'sim-network-vpc', 'Size': 'small'}
        assert registry.consumers('VpcId') == ['app']
        assert registry.can_retire('network') is False
        assert stored(state_manager, "app").imports == ['VpcId']

    def test_unpublished_import_fails_before_planning(self, make_deployer, provisioner):
        result = make_deployer().deploy(app())

        assert isinstance(result.error, UnknownExportError)
        assert result.history == [S.PENDING, S.FAILED]
        assert provisioner.applied == []

    def test_exports_published_only_on_success(self, make_deployer, registry, provisioner):
        provisioner.reject.add("network")

        result = make_deployer().deploy(network())

        assert isinstance(result.error, ApplyRejectedError)
        assert result.state == S.FAILED
        assert not result.rolled_back
        assert registry.names() == []

    def test_unexpected_error_still_records_failure(self, registry, state_manager, provisioner, clock):
        class BrokenReviewer(ChangeSetReviewer):
            def compute(self, current, desired):
                raise KeyError("Properties")

        deployer = StackDeployer(
            registry=registry,
            state_manager=state_manager,
            provisioner=provisioner,
            approval_gate=AutoApprovalGate(),
            reviewer=BrokenReviewer(registry),
            clock=clock,
            project_name="test",
        )

        result = deployer.deploy(network())

        assert isinstance(result.error, ApplyRejectedError)
        assert result.error.context.decision_point == "Planning"
        assert result.history == [S.PENDING, S.PLANNING, S.FAILED]
        assert stored(state_manager, "network").status == "Failed"


class TestReview:
    @pytest.fixture
    def imported_network(self, make_deployer):
        deployer = make_deployer()
        deployer.deploy(network())
        deployer.deploy(app())

    def test_risky_change_without_approval_is_rejected(self, imported_network, make_deployer, state_manager, provisioner):
        gate = StateApprovalGate(state_manager, timeout=0, poll_interval=1)

        result = make_deployer(gate).deploy(network(cidr="10.9.0.0/16"))

        assert isinstance(result.error, ReviewRejectedError)
        assert result.error.exit_code == ExitCode.REVIEW_REJECTED
        assert result.history == [S.PENDING, S.PLANNING, S.AWAITING_REVIEW, S.FAILED]
        assert len(provisioner.applied) == 2
        assert any(result.changeset.id in s for s in result.error.suggestions)

    def test_recorded_approval_lets_the_change_through(self, imported_network, make_deployer, state_manager):
        gate = StateApprovalGate(state_manager, timeout=0, poll_interval=1)
        deployer = make_deployer(gate)
        rejected = deployer.deploy(network(cidr="10.9.0.0/16"))

        with state_manager.transaction() as state:
            state.put_approval(ApprovalRecord(
                stack="network", changeset_id=rejected.changeset.id, decision="approved", actor="ops"
            ))
        result = deployer.deploy(network(cidr="10.9.0.0/16"))

        assert result.is_success()
        assert result.changeset.id == rejected.changeset.id

    def test_recorded_rejection(self, imported_network, make_deployer, state_manager):
        gate = StateApprovalGate(state_manager, timeout=60, poll_interval=1)
        deployer = make_deployer(gate)
        changeset = deployer.reviewer.compute(network().snapshot(), network(cidr="10.9.0.0/16"))
        with state_manager.transaction() as state:
            state.put_approval(ApprovalRecord(
                stack="network", changeset_id=changeset.id, decision="rejected", reason="not today"
            ))

        result = deployer.deploy(network(cidr="10.9.0.0/16"))

        assert isinstance(result.error, ReviewRejectedError)
        assert "not today" in result.error.message

    def test_safe_change_needs_no_approval(self, imported_network, make_deployer, state_manager):
        gate = StateApprovalGate(state_manager, timeout=0, poll_interval=1)

        result = make_deployer(gate).deploy(app(resources={'Queue': {'Type': 'AWS::SQS::Queue'}}))

        assert result.is_success()


class TestExportProtection:
    def test_dropping_imported_export_fails_at_planning(self, make_deployer, provisioner):
        deployer = make_deployer()
        deployer.deploy(network())
        deployer.deploy(make_stack("database", imports=["SubnetId"]))

        result = deployer.deploy(network(exports={'VpcId': {'Resource': 'Vpc'}}))

        assert isinstance(result.error, ExportInUseError)
        assert result.error.blocking == {'SubnetId': ['database']}
        assert result.error.exit_code == ExitCode.EXPORT_IN_USE
        assert result.history == [S.PENDING, S.PLANNING, S.FAILED]
        assert len(provisioner.applied) == 2

    def test_dropping_unused_export_removes_it(self, make_deployer, registry):
        deployer = make_deployer()
        deployer.deploy(network())

        result = deployer.deploy(network(exports={'VpcId': {'Resource': 'Vpc'}}))

        assert result.is_success()
        assert registry.names() == ['VpcId']


class TestRollback:
    def test_rejected_update_reverts_to_last_deployed(self, make_deployer, provisioner, registry, state_manager):
        deployer = make_deployer()
        deployer.deploy(network())
        provisioner.reject.add("network")

        result = deployer.deploy(network(cidr="10.9.0.0/16"))

        assert isinstance(result.error, ApplyRejectedError)
        assert result.error.exit_code == ExitCode.APPLY_REJECTED
        assert result.rolled_back
        assert result.history[-4:] == [S.APPLYING, S.FAILED, S.ROLLING_BACK, S.DEPLOYED]
        assert provisioner.reverted == ["network"]
        assert registry.get('VpcId').revision == 1

        record = stored(state_manager, "network")
        assert record.status == "Deployed"
        assert record.last_deployed == network().snapshot()
        assert record.last_error['type'] == 'ApplyRejectedError'

    def test_first_deploy_failure_does_not_roll_back(self, make_deployer, provisioner, state_manager):
        provisioner.reject.add("network")

        result = make_deployer().deploy(network())

        assert result.history == [S.PENDING, S.PLANNING, S.AWAITING_REVIEW, S.APPLYING, S.FAILED]
        assert provisioner.reverted == []
        assert stored(state_manager, "network").status == "Failed"


class TestCapacity:
    def test_launch_version_change_rolls_the_group(self, make_deployer, state_manager):
        deployer = make_deployer()
        first = deployer.deploy(make_stack("web", capacity=capacity_spec(version="v1")))
        assert first.is_success()
        assert [u['version'] for u in stored(state_manager, "web").units] == ["v1", "v1"]

        result = deployer.deploy(make_stack("web", capacity=capacity_spec(version="v2")))

        assert result.is_success()
        assert len(result.rolling_update.replacement_batches()) == 2
        assert result.rolling_update.min_in_service_observed() >= 1
        record = stored(state_manager, "web")
        assert [u['version'] for u in record.units] == ["v2", "v2"]
        assert record.launch_version == "v2"

    def test_failed_rolling_update_keeps_old_units(self, make_deployer, clock, state_manager, provisioner):
        def v2_is_broken(unit, at):
            lifecycle = LifecycleHealth.RUNNING if unit.version == "v1" else LifecycleHealth.IMPAIRED
            return UnitSignals(lifecycle=lifecycle, probe_passed=True, signaled=True)

        deployer = make_deployer(fleet=SimulatedFleet(clock=clock, behavior=v2_is_broken))
        deployer.deploy(make_stack("web", capacity=capacity_spec(version="v1")))

        result = deployer.deploy(make_stack("web", capacity=capacity_spec(version="v2")))

        assert isinstance(result.error, RollingUpdateError)
        assert result.error.exit_code == ExitCode.ROLLING_UPDATE
        assert result.error.context.batch == 1
        assert result.rolled_back
        assert provisioner.reverted == ["web"]
        record = stored(state_manager, "web")
        assert [u['version'] for u in record.units] == ["v1", "v1"]
        assert record.launch_version == "v1"

    def test_fleet_error_fails_the_update_and_rolls_back(self, make_deployer, clock, state_manager, provisioner):
        class UnreachableFleet(SimulatedFleet):
            def observe(self, unit, group):
                if unit.version == "v2":
                    raise RuntimeError("describe_instance_status: endpoint unreachable")
                super().observe(unit, group)

        deployer = make_deployer(fleet=UnreachableFleet(clock=clock))
        deployer.deploy(make_stack("web", capacity=capacity_spec(version="v1")))

        result = deployer.deploy(make_stack("web", capacity=capacity_spec(version="v2")))

        assert isinstance(result.error, RollingUpdateError)
        assert result.error.exit_code == ExitCode.ROLLING_UPDATE
        assert result.error.context.decision_point == "observe"
        assert result.rolled_back
        assert result.state == S.DEPLOYED
        record = stored(state_manager, "web")
        assert record.status == "Deployed"
        assert [(u['version'], u['state']) for u in record.units] == [("v1", "InService"), ("v1", "InService")]

    def test_unconverged_units_settle_without_a_change_set(self, make_deployer, state_manager, provisioner):
        deployer = make_deployer()
        web = make_stack("web", capacity=capacity_spec(version="v2"))
        deployer.deploy(web)
        with state_manager.transaction("test") as state:
            record = state.get_stack("web")
            # Left on the old version by a rollback that did not finish
            record.units[0]['version'] = "v1"
            state.put_stack(record)

        result = deployer.deploy(web)

        assert result.is_success()
        assert result.changeset.is_empty
        assert result.history == [S.PENDING, S.PLANNING, S.AWAITING_REVIEW, S.APPLYING, S.SETTLING, S.DEPLOYED]
        assert len(provisioner.applied) == 1
        assert len(result.rolling_update.replacement_batches()) == 1
        assert [u['version'] for u in stored(state_manager, "web").units] == ["v2", "v2"]

    def test_converged_units_skip_settling(self, make_deployer):
        deployer = make_deployer()
        web = make_stack("web", capacity=capacity_spec(version="v2"))
        deployer.deploy(web)

        result = deployer.deploy(web)

        assert result.history == [S.PENDING, S.PLANNING, S.DEPLOYED]
        assert result.rolling_update is None

    def test_capacity_without_fleet_is_rejected(self, make_deployer):
        result = make_deployer(fleet=None).deploy(make_stack("web", capacity=capacity_spec()))

        assert isinstance(result.error, ApplyRejectedError)


class TestStackMachine:
    def test_illegal_transition(self):
        machine = StackMachine("app")

        with pytest.raises(InvalidTransitionError):
            machine.transition(S.APPLYING)

    def test_rolling_back_requires_previous_deployment(self):
        fresh = StackMachine("app")
        fresh.transition(S.FAILED)
        assert not fresh.can_transition(S.ROLLING_BACK)

        updated = StackMachine("app", previously_deployed=True)
        updated.transition(S.FAILED)
        updated.transition(S.ROLLING_BACK)
        assert updated.history == [S.PENDING, S.FAILED, S.ROLLING_BACK]

    def test_deployed_is_terminal(self):
        machine = StackMachine("app")
        machine.transition(S.PLANNING)
        machine.transition(S.DEPLOYED)

        assert not machine.can_transition(S.FAILED)
