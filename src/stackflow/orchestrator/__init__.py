"""Stack ordering, export tracking, change review and deployment."""

from stackflow.orchestrator.dependency_graph import (
    DependencyGraph,
    DependencyNode,
    build_order,
    build_teardown_order,
    build_waves,
)
from stackflow.orchestrator.exports import Export, ExportRegistry
from stackflow.orchestrator.changeset import (
    ChangeAction,
    ChangeItem,
    ChangeSet,
    ChangeSetReviewer,
)
from stackflow.orchestrator.approval import (
    ApprovalGate,
    AutoApprovalGate,
    InteractiveApprovalGate,
    StateApprovalGate,
)
from stackflow.orchestrator.deployer import (
    ALLOWED_TRANSITIONS,
    StackDeployer,
    StackLifecycle,
    StackMachine,
    StackResult,
)
from stackflow.orchestrator.orchestrator import (
    DeploymentOrchestrator,
    DeploymentRunResult,
    RunStatus,
    TeardownResult,
)

__all__ = [
    # Dependency graph
    'DependencyGraph',
    'DependencyNode',
    'build_order',
    'build_teardown_order',
    'build_waves',

    # Exports
    'Export',
    'ExportRegistry',

    # Change sets
    'ChangeAction',
    'ChangeItem',
    'ChangeSet',
    'ChangeSetReviewer',

    # Approval
    'ApprovalGate',
    'AutoApprovalGate',
    'InteractiveApprovalGate',
    'StateApprovalGate',

    # Deployer
    'ALLOWED_TRANSITIONS',
    'StackDeployer',
    'StackLifecycle',
    'StackMachine',
    'StackResult',

    # Orchestrator
    'DeploymentOrchestrator',
    'DeploymentRunResult',
    'RunStatus',
    'TeardownResult',
]
