"""Tests for stack ordering."""

import itertools

import pytest

from stackflow.orchestrator.dependency_graph import (
    DependencyGraph,
    build_order,
    build_teardown_order,
    build_waves,
)
from stackflow.utils.errors import CycleError, DuplicateExportError, ExitCode, UnresolvedImportError

from conftest import make_stack


@pytest.fixture
def network_app_stacks():
    return [
        make_stack("app", imports=["VpcId", "DbEndpoint"], exports={"AppUrl": None}),
        make_stack("network", exports={"VpcId": None, "SubnetIds": None}),
        make_stack("database", imports=["VpcId", "SubnetIds"], exports={"DbEndpoint": None}),
        make_stack("monitoring"),
    ]


def assert_topological(order, stacks):
    position = {name: i for i, name in enumerate(order)}
    producers = {name: s.name for s in stacks for name in s.exports}
    for stack in stacks:
        for name in stack.imports:
            assert position[producers[name]] < position[stack.name]


class TestBuildOrder:
    def test_every_stack_follows_its_producers(self, network_app_stacks):
        order = build_order(network_app_stacks)

        assert sorted(order) == sorted(s.name for s in network_app_stacks)
        assert_topological(order, network_app_stacks)

    def test_order_is_valid_for_any_declaration_order(self, network_app_stacks):
        for permutation in itertools.permutations(network_app_stacks):
            assert_topological(build_order(list(permutation)), network_app_stacks)

    def test_ties_keep_declaration_order(self, network_app_stacks):
        assert build_order(network_app_stacks) == ["network", "monitoring", "database", "app"]

    def test_teardown_is_exact_reverse(self, network_app_stacks):
        assert build_teardown_order(network_app_stacks) == list(reversed(build_order(network_app_stacks)))

    def test_waves_group_independent_stacks(self, network_app_stacks):
        assert build_waves(network_app_stacks) == [["network", "monitoring"], ["database"], ["app"]]

    def test_external_exports_satisfy_imports_without_edges(self):
        stacks = [make_stack("app", imports=["SharedVpc"])]

        assert build_order(stacks, external_exports=["SharedVpc"]) == ["app"]


class TestCycles:
    def test_two_stack_cycle(self):
        stacks = [
            make_stack("a", imports=["B"], exports={"A": None}),
            make_stack("b", imports=["A"], exports={"B": None}),
        ]

        with pytest.raises(CycleError) as exc_info:
            build_order(stacks)

        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b"}
        assert exc_info.value.exit_code == ExitCode.DEPENDENCY

    def test_cycle_chain_names_every_member(self):
        stacks = [
            make_stack("a", imports=["C"], exports={"A": None}),
            make_stack("b", imports=["A"], exports={"B": None}),
            make_stack("c", imports=["B"], exports={"C": None}),
            make_stack("d", imports=["C"]),
        ]

        with pytest.raises(CycleError) as exc_info:
            build_order(stacks)

        cycle = exc_info.value.cycle
        assert set(cycle) == {"a", "b", "c"}
        assert len(cycle) == 4
        for earlier, later in zip(cycle, cycle[1:]):
            # Each member exports what the next one imports
            producer = next(s for s in stacks if s.name == earlier)
            consumer = next(s for s in stacks if s.name == later)
            assert set(producer.exports) & set(consumer.imports)

    def test_acyclic_graph_has_no_cycle(self, network_app_stacks):
        graph = DependencyGraph()
        for stack in network_app_stacks:
            graph.add_stack(stack)

        assert graph.detect_circular_dependencies() is None
        graph.validate()


class TestLinkErrors:
    def test_unresolved_import(self):
        stacks = [make_stack("app", imports=["Missing"])]

        with pytest.raises(UnresolvedImportError) as exc_info:
            build_order(stacks)

        assert exc_info.value.context.stack_id == "app"
        assert "Missing" in exc_info.value.message

    def test_duplicate_export(self):
        stacks = [
            make_stack("a", exports={"VpcId": None}),
            make_stack("b", exports={"VpcId": None}),
        ]

        with pytest.raises(DuplicateExportError):
            build_order(stacks)


class TestQueries:
    def test_dependencies_and_dependents(self, network_app_stacks):
        graph = DependencyGraph()
        for stack in network_app_stacks:
            graph.add_stack(stack)

        assert graph.get_dependencies("app") == {"network", "database"}
        assert graph.get_dependents("network") == {"database", "app"}
        assert graph.get_all_dependents("network") == {"database", "app"}
        assert graph.get_all_dependents("app") == set()
        assert graph.producer_of("DbEndpoint") == "database"
        assert graph.size() == 4
