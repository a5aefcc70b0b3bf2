"""Tests for change set computation and risk classification."""

import pytest

from stackflow.orchestrator.changeset import (
    CAPACITY_RESOURCE_TYPE,
    STACK_RESOURCE_ID,
    ChangeAction,
    ChangeSetReviewer,
)
from stackflow.orchestrator.exports import ExportRegistry

from conftest import capacity_spec, make_stack


def network(**resources):
    base = {
        'Vpc': {'Type': 'AWS::EC2::VPC', 'Properties': {'CidrBlock': '10.0.0.0/16', 'EnableDnsSupport': True}},
        'Subnet': {'Type': 'AWS::EC2::Subnet', 'Properties': {'CidrBlock': '10.0.1.0/24'}},
    }
    base.update(resources)
    return make_stack(
        "network",
        exports={'VpcId': {'Resource': 'Vpc'}, 'SubnetId': {'Resource': 'Subnet'}},
        resources=base,
        template="network.yaml",
    )


@pytest.fixture
def registry():
    return ExportRegistry()


@pytest.fixture
def reviewer(registry):
    return ChangeSetReviewer(registry)


def actions(changeset):
    return {item.resource_id: item.action for item in changeset.items}


class TestClassification:
    def test_first_deploy_adds_everything(self, reviewer):
        changeset = reviewer.compute(None, network())

        assert actions(changeset) == {
            STACK_RESOURCE_ID: ChangeAction.ADD,
            'Subnet': ChangeAction.ADD,
            'Vpc': ChangeAction.ADD,
        }
        assert not changeset.is_risky

    def test_identical_specs_are_empty(self, reviewer):
        assert reviewer.compute(network(), network()).is_empty

    def test_mutable_change_is_modify(self, reviewer):
        desired = network(Vpc={'Type': 'AWS::EC2::VPC', 'Properties': {'CidrBlock': '10.0.0.0/16', 'EnableDnsSupport': False}})

        changeset = reviewer.compute(network(), desired)

        assert len(changeset.items) == 1
        item = changeset.items[0]
        assert item.action == ChangeAction.MODIFY
        assert item.changed_properties == ('EnableDnsSupport',)

    def test_immutable_change_is_replace(self, reviewer):
        desired = network(Vpc={'Type': 'AWS::EC2::VPC', 'Properties': {'CidrBlock': '10.1.0.0/16', 'EnableDnsSupport': True}})

        changeset = reviewer.compute(network(), desired)

        assert actions(changeset) == {'Vpc': ChangeAction.REPLACE}

    def test_per_resource_immutable_list(self, reviewer):
        current = make_stack("app", resources={'Role': {'Type': 'Custom::Role', 'Properties': {'Binding': 'a'}}})
        desired = make_stack("app", resources={
            'Role': {'Type': 'Custom::Role', 'Properties': {'Binding': 'b'}, 'Immutable': ['Binding']}
        })

        assert actions(reviewer.compute(current, desired)) == {'Role': ChangeAction.REPLACE}

    def test_replace_only_for_declared_immutable_attributes(self):
        reviewer = ChangeSetReviewer(immutable_properties={})
        desired = network(Vpc={'Type': 'AWS::EC2::VPC', 'Properties': {'CidrBlock': '10.1.0.0/16', 'EnableDnsSupport': True}})

        assert actions(reviewer.compute(network(), desired)) == {'Vpc': ChangeAction.MODIFY}

    def test_type_change_removes_then_adds(self, reviewer):
        current = make_stack("app", resources={'Queue': {'Type': 'AWS::SQS::Queue'}})
        desired = make_stack("app", resources={'Queue': {'Type': 'AWS::SNS::Topic'}})

        changeset = reviewer.compute(current, desired)
        assert [(i.resource_id, i.resource_type, i.action) for i in changeset.items] == [
            ('Queue', 'AWS::SQS::Queue', ChangeAction.REMOVE),
            ('Queue', 'AWS::SNS::Topic', ChangeAction.ADD),
        ]
        assert changeset.get_summary()['Replace'] == 0

    def test_removed_resource(self, reviewer):
        current = make_stack("app", resources={'Queue': {'Type': 'AWS::SQS::Queue'}})
        desired = make_stack("app")

        assert actions(reviewer.compute(current, desired)) == {'Queue': ChangeAction.REMOVE}

    def test_parameter_change_modifies_stack_settings(self, reviewer):
        current = make_stack("app", parameters={'Size': 'small'})
        desired = make_stack("app", parameters={'Size': 'large'})

        item = reviewer.compute(current, desired).items[0]
        assert item.resource_id == STACK_RESOURCE_ID
        assert item.action == ChangeAction.MODIFY
        assert item.changed_properties == ('Parameters.Size',)

    def test_launch_version_change_modifies_capacity_group(self, reviewer):
        current = make_stack("web", capacity=capacity_spec(version="v1"))
        desired = make_stack("web", capacity=capacity_spec(version="v2"))

        item = reviewer.compute(current, desired).items[0]
        assert item.resource_id == 'WebGroup'
        assert item.resource_type == CAPACITY_RESOURCE_TYPE
        assert item.action == ChangeAction.MODIFY
        assert item.changed_properties == ('LaunchTemplateVersion',)

    def test_accepts_persisted_snapshot(self, reviewer):
        assert reviewer.compute(network().snapshot(), network()).is_empty


class TestDeterminism:
    def test_identical_inputs_yield_identical_changesets(self, reviewer):
        desired = network(Vpc={'Type': 'AWS::EC2::VPC', 'Properties': {'CidrBlock': '10.1.0.0/16'}})

        first = reviewer.compute(network(), desired)
        second = reviewer.compute(network(), desired)

        assert first == second
        assert first.id == second.id
        assert first.id.startswith("cs-")

    def test_items_ordered_by_resource_id(self, reviewer):
        changeset = reviewer.compute(None, network(Alpha={'Type': 'AWS::SQS::Queue'}))

        ids = [item.resource_id for item in changeset.items]
        assert ids == sorted(ids)

    def test_different_targets_have_different_ids(self, reviewer):
        a = reviewer.compute(None, make_stack("app", parameters={'Size': 'small'}))
        b = reviewer.compute(None, make_stack("app", parameters={'Size': 'large'}))

        assert a.id != b.id

    def test_changeset_is_immutable(self, reviewer):
        changeset = reviewer.compute(None, network())

        with pytest.raises(AttributeError):
            changeset.items[0].action = ChangeAction.REMOVE


class TestRisk:
    def test_replacing_imported_resource_is_risky(self, registry, reviewer):
        registry.publish("network", "VpcId", "vpc-1")
        registry.lock("VpcId", "app")
        desired = network(Vpc={'Type': 'AWS::EC2::VPC', 'Properties': {'CidrBlock': '10.1.0.0/16', 'EnableDnsSupport': True}})

        changeset = reviewer.compute(network(), desired)

        item = changeset.items[0]
        assert item.risky
        assert "imported by app" in item.risk_reason
        assert changeset.is_risky

    def test_replacing_resource_without_consumers_is_safe(self, registry, reviewer):
        registry.publish("network", "VpcId", "vpc-1")
        registry.publish("network", "SubnetId", "subnet-1")
        registry.lock("SubnetId", "app")
        desired = network(Vpc={'Type': 'AWS::EC2::VPC', 'Properties': {'CidrBlock': '10.1.0.0/16', 'EnableDnsSupport': True}})

        assert not reviewer.compute(network(), desired).is_risky

    def test_changing_type_of_imported_resource_is_risky(self, registry, reviewer):
        registry.publish("network", "VpcId", "vpc-1")
        registry.lock("VpcId", "app")
        desired = network(Vpc={'Type': 'AWS::EC2::TransitGateway'})

        items = [i for i in reviewer.compute(network(), desired).items if i.resource_id == 'Vpc']

        assert [(i.action, i.risky) for i in items] == [(ChangeAction.REMOVE, True), (ChangeAction.ADD, False)]

    def test_modify_is_never_risky(self, registry, reviewer):
        registry.publish("network", "VpcId", "vpc-1")
        registry.lock("VpcId", "app")
        desired = network(Vpc={'Type': 'AWS::EC2::VPC', 'Properties': {'CidrBlock': '10.0.0.0/16'}})

        assert not reviewer.compute(network(), desired).is_risky

    def test_unattributed_exports_fall_back_to_stack_level(self, registry, reviewer):
        current = make_stack("app", exports={'AppUrl': None}, resources={'Queue': {'Type': 'AWS::SQS::Queue'}})
        desired = make_stack("app", exports={'AppUrl': None})
        registry.publish("app", "AppUrl", "https://app")
        registry.lock("AppUrl", "frontend")

        assert reviewer.compute(current, desired).items[0].risky
