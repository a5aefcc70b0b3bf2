"""Dependency graph of stacks linked by imported exports."""

from typing import Dict, Iterable, List, Set, Optional
from dataclasses import dataclass, field
from collections import defaultdict, deque

from stackflow.config.models import StackSpec
from stackflow.utils.errors import CycleError, DuplicateExportError, UnresolvedImportError


@dataclass
class DependencyNode:
    """Node in the dependency graph."""

    stack_id: str
    stack: StackSpec
    order: int  # Declaration order, used to break ties deterministically
    dependencies: Set[str] = field(default_factory=set)  # Stacks this stack imports from
    dependents: Set[str] = field(default_factory=set)  # Stacks importing from this stack


class DependencyGraph:
    """Directed acyclic graph of stacks; an edge runs from exporter to importer.

    The graph is pure: it never touches the registry or the provisioning
    backend. Names already published by stacks outside the set can be passed
    as ``external_exports``; they satisfy imports without adding an edge.
    """

    def __init__(self, external_exports: Optional[Iterable[str]] = None):
        """Initialize empty dependency graph.

        Args:
            external_exports: Export names resolvable outside the declared set
        """
        self.nodes: Dict[str, DependencyNode] = {}
        self.external_exports = frozenset(external_exports or ())
        self._producers: Dict[str, str] = {}
        self._linked = False

    def add_stack(self, stack: StackSpec) -> None:
        """Add a stack to the graph.

        Args:
            stack: Declared stack
        """
        self.nodes[stack.name] = DependencyNode(
            stack_id=stack.name, stack=stack, order=len(self.nodes)
        )
        self._linked = False

    def _link(self) -> None:
        """Resolve imports to producing stacks and build edges."""
        if self._linked:
            return

        owners: Dict[str, List[str]] = defaultdict(list)
        for node in self._ordered(self.nodes):
            node.dependencies.clear()
            node.dependents.clear()
            for export_name in node.stack.exports:
                owners[export_name].append(node.stack_id)

        for export_name, stacks in owners.items():
            if len(stacks) > 1:
                raise DuplicateExportError(export_name, stacks)
        self._producers = {name: stacks[0] for name, stacks in owners.items()}

        for node in self._ordered(self.nodes):
            for import_name in node.stack.imports:
                producer = self._producers.get(import_name)
                if producer is None:
                    if import_name in self.external_exports:
                        continue
                    raise UnresolvedImportError(node.stack_id, import_name)
                node.dependencies.add(producer)
                self.nodes[producer].dependents.add(node.stack_id)

        self._linked = True

    def _ordered(self, stack_ids: Iterable[str]) -> List[DependencyNode]:
        return sorted((self.nodes[s] for s in stack_ids), key=lambda n: n.order)

    def producer_of(self, export_name: str) -> Optional[str]:
        """Stack in the graph declaring ``export_name``, if any."""
        self._link()
        return self._producers.get(export_name)

    def get_dependencies(self, stack_id: str) -> Set[str]:
        """Get stacks that ``stack_id`` imports from directly."""
        self._link()
        if stack_id not in self.nodes:
            return set()
        return self.nodes[stack_id].dependencies.copy()

    def get_dependents(self, stack_id: str) -> Set[str]:
        """Get stacks that import directly from ``stack_id``."""
        self._link()
        if stack_id not in self.nodes:
            return set()
        return self.nodes[stack_id].dependents.copy()

    def get_all_dependents(self, stack_id: str) -> Set[str]:
        """Get all transitive dependents of a stack.

        Args:
            stack_id: Name of stack

        Returns:
            Set of all stacks that directly or indirectly import from it
        """
        self._link()
        visited = set()
        queue = deque([stack_id])

        while queue:
            current_id = queue.popleft()
            if current_id in visited:
                continue

            visited.add(current_id)

            if current_id in self.nodes:
                for dependent_id in self.nodes[current_id].dependents:
                    if dependent_id not in visited:
                        queue.append(dependent_id)

        visited.discard(stack_id)
        return visited

    def detect_circular_dependencies(self) -> Optional[List[str]]:
        """Detect circular imports in the graph.

        Returns:
            Stack names forming a cycle (first name repeated at the end), or None
        """
        self._link()
        # White (0): unvisited, Gray (1): visiting, Black (2): visited
        color = {node_id: 0 for node_id in self.nodes}
        parent: Dict[str, str] = {}

        def dfs(node_id: str) -> Optional[List[str]]:
            color[node_id] = 1

            for dependent in self._ordered(self.nodes[node_id].dependents):
                dependent_id = dependent.stack_id
                if color[dependent_id] == 1:
                    # Back edge: walk parents back to the start of the cycle
                    cycle = [dependent_id]
                    current = node_id
                    while current != dependent_id:
                        cycle.append(current)
                        current = parent.get(current)
                        if current is None:
                            break
                    cycle.append(dependent_id)
                    return list(reversed(cycle))

                if color[dependent_id] == 0:
                    parent[dependent_id] = node_id
                    cycle = dfs(dependent_id)
                    if cycle:
                        return cycle

            color[node_id] = 2
            return None

        for node in self._ordered(self.nodes):
            if color[node.stack_id] == 0:
                cycle = dfs(node.stack_id)
                if cycle:
                    return cycle

        return None

    def validate(self) -> None:
        """Validate the dependency graph.

        Raises:
            DuplicateExportError: If two stacks declare the same export
            UnresolvedImportError: If an import has no producer
            CycleError: If imports form a cycle
        """
        self._link()
        cycle = self.detect_circular_dependencies()
        if cycle:
            raise CycleError(cycle)

    def topological_sort(self) -> List[str]:
        """Order stacks so every stack follows the stacks it imports from.

        Returns:
            Stack names in deployment order; ties keep declaration order
        """
        self.validate()

        # Kahn's algorithm
        in_degree = {node_id: len(node.dependencies) for node_id, node in self.nodes.items()}
        queue = deque(n.stack_id for n in self._ordered(self.nodes) if in_degree[n.stack_id] == 0)
        result = []

        while queue:
            node_id = queue.popleft()
            result.append(node_id)

            for dependent in self._ordered(self.nodes[node_id].dependents):
                in_degree[dependent.stack_id] -= 1
                if in_degree[dependent.stack_id] == 0:
                    queue.append(dependent.stack_id)

        if len(result) != len(self.nodes):
            # validate() already reported any cycle; unreachable unless the graph changed
            raise CycleError(sorted(set(self.nodes) - set(result)))

        return result

    def get_deployment_waves(self) -> List[List[str]]:
        """Group stacks into waves that can be processed in parallel.

        Stacks in the same wave never import from each other.

        Returns:
            List of waves in deployment order
        """
        self.validate()

        in_degree = {node_id: len(node.dependencies) for node_id, node in self.nodes.items()}
        current_wave = [n.stack_id for n in self._ordered(self.nodes) if in_degree[n.stack_id] == 0]
        waves = []

        while current_wave:
            waves.append(current_wave)
            ready = set()

            for node_id in current_wave:
                for dependent_id in self.nodes[node_id].dependents:
                    in_degree[dependent_id] -= 1
                    if in_degree[dependent_id] == 0:
                        ready.add(dependent_id)

            current_wave = [n.stack_id for n in self._ordered(ready)]

        return waves

    def get_destruction_order(self) -> List[str]:
        """Get teardown order: the exact reverse of deployment order."""
        return list(reversed(self.topological_sort()))

    def get_stack(self, stack_id: str) -> Optional[StackSpec]:
        """Get a stack from the graph."""
        node = self.nodes.get(stack_id)
        return node.stack if node else None

    def size(self) -> int:
        """Get the number of stacks in the graph."""
        return len(self.nodes)


def _graph(stacks: Iterable[StackSpec], external_exports: Optional[Iterable[str]] = None) -> DependencyGraph:
    graph = DependencyGraph(external_exports)
    for stack in stacks:
        graph.add_stack(stack)
    return graph


def build_order(stacks: Iterable[StackSpec], external_exports: Optional[Iterable[str]] = None) -> List[str]:
    """Deployment order for ``stacks``.

    Raises:
        CycleError: If imports form a cycle
        UnresolvedImportError: If a stack imports a name nothing exports
        DuplicateExportError: If two stacks declare the same export
    """
    return _graph(stacks, external_exports).topological_sort()


def build_teardown_order(stacks: Iterable[StackSpec], external_exports: Optional[Iterable[str]] = None) -> List[str]:
    """Teardown order for ``stacks``: the exact reverse of :func:`build_order`."""
    return _graph(stacks, external_exports).get_destruction_order()


def build_waves(stacks: Iterable[StackSpec], external_exports: Optional[Iterable[str]] = None) -> List[List[str]]:
    """Deployment waves for ``stacks``."""
    return _graph(stacks, external_exports).get_deployment_waves()
