"""Run-level coordination of deploy, teardown and plan."""

import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from stackflow.capacity.fleet import BaseFleet
from stackflow.capacity.models import CapacityGroup, InstanceUnit
from stackflow.config.models import StackSetConfig, StackSpec
from stackflow.orchestrator.approval import ApprovalGate
from stackflow.orchestrator.changeset import ChangeSet, ChangeSetReviewer
from stackflow.orchestrator.dependency_graph import DependencyGraph
from stackflow.orchestrator.deployer import StackDeployer, StackLifecycle, StackResult
from stackflow.orchestrator.exports import ExportRegistry
from stackflow.provisioners.base import BaseProvisioner
from stackflow.state.manager import StateManager
from stackflow.state.models import StackRecord
from stackflow.utils.clock import Clock
from stackflow.utils.errors import (
    ConfigurationError,
    DeploymentError,
    ErrorContext,
    ExitCode,
    ExportInUseError,
    RollingUpdateCancelled,
    error_handler,
)
from stackflow.utils.logging import get_logger

logger = get_logger(__name__)


class RunStatus(Enum):
    """Overall status of a run."""
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class DeploymentRunResult:
    """Result of a deploy run."""

    status: RunStatus
    waves: List[List[str]] = field(default_factory=list)
    stack_results: Dict[str, StackResult] = field(default_factory=dict)
    error: Optional[DeploymentError] = None
    duration: float = 0.0

    def is_success(self) -> bool:
        return self.status == RunStatus.SUCCESS

    def failed_stacks(self) -> List[str]:
        return [name for name, result in self.stack_results.items() if result.is_failed()]

    @property
    def exit_code(self) -> int:
        return self.error.exit_code if self.error else ExitCode.SUCCESS


@dataclass
class TeardownResult:
    """Result of a teardown run."""

    status: RunStatus
    order: List[str] = field(default_factory=list)
    destroyed: List[str] = field(default_factory=list)
    error: Optional[DeploymentError] = None

    def is_success(self) -> bool:
        return self.status == RunStatus.SUCCESS

    @property
    def exit_code(self) -> int:
        return self.error.exit_code if self.error else ExitCode.SUCCESS


class DeploymentOrchestrator:
    """Deploys a stack set in dependency order and tears it down in reverse.

    Stacks in the same wave never import from each other and are processed
    in parallel. A wave with a failure is allowed to finish, then the run
    stops before the next wave.
    """

    def __init__(
        self,
        config: StackSetConfig,
        state_manager: StateManager,
        provisioner: BaseProvisioner,
        approval_gate: ApprovalGate,
        fleet: Optional[BaseFleet] = None,
        clock: Optional[Clock] = None,
        max_workers: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None
    ):
        """Initialize deployment orchestrator.

        Args:
            config: Stack-set configuration
            state_manager: Persisted state
            provisioner: Backend that applies templates
            approval_gate: Decides on risky change sets
            fleet: Fleet driver for capacity groups
            clock: Time source for polling loops
            max_workers: Parallel stacks per wave (defaults to settings)
            cancel_event: Set externally to abort the run
        """
        self.config = config
        self.state_manager = state_manager
        self.provisioner = provisioner
        self.fleet = fleet
        self.clock = clock or Clock()
        self.max_workers = max_workers or config.settings.max_workers
        self.cancel_event = cancel_event or threading.Event()
        self.logger = get_logger(__name__)

        state = state_manager.load_or_initialize(config.project.name)
        self.registry = ExportRegistry.from_snapshot(state.exports)
        self.reviewer = ChangeSetReviewer(self.registry, config.settings.immutable_properties)
        self.deployer = StackDeployer(
            registry=self.registry,
            state_manager=state_manager,
            provisioner=provisioner,
            approval_gate=approval_gate,
            reviewer=self.reviewer,
            fleet=fleet,
            clock=self.clock,
            project_name=config.project.name,
            cancel_event=self.cancel_event
        )

    def build_graph(self) -> DependencyGraph:
        """Dependency graph of the declared stacks.

        Exports already published by stacks outside the set satisfy imports.
        """
        declared = {s.name for s in self.config.stacks}
        external = [
            name for name in self.registry.names()
            if self.registry.get(name).owner not in declared
        ]
        graph = DependencyGraph(external_exports=external)
        for stack in self.config.stacks:
            graph.add_stack(stack)
        return graph

    def deploy(self, stack_names: Optional[List[str]] = None) -> DeploymentRunResult:
        """Deploy the stack set (or the named stacks) wave by wave.

        Args:
            stack_names: Restrict the run to these stacks; their imports must
                already be published

        Returns:
            DeploymentRunResult; ``error`` is the first failure in deployment order
        """
        started = self.clock.now()
        result = DeploymentRunResult(status=RunStatus.SUCCESS)

        try:
            self._check_selection(stack_names)
            # Graph errors abort before any stack leaves Pending
            waves = self.build_graph().get_deployment_waves()
        except DeploymentError as e:
            error_handler.log_error(e)
            result.status = RunStatus.FAILED
            result.error = e
            return result

        if stack_names:
            selected = set(stack_names)
            waves = [[s for s in wave if s in selected] for wave in waves]
            waves = [wave for wave in waves if wave]
        result.waves = waves

        self.logger.info(
            f"Deploying {sum(len(w) for w in waves)} stack(s) in {len(waves)} wave(s)",
            extra={'operation': 'deploy'}
        )

        for number, wave in enumerate(waves, 1):
            if self.cancel_event.is_set():
                result.error = RollingUpdateCancelled(
                    f"Run cancelled before wave {number}",
                    context=ErrorContext(decision_point=f"wave {number}")
                )
                break

            self.logger.info(f"Wave {number}: {', '.join(wave)}", extra={'operation': 'deploy'})
            wave_results = self._execute_wave(wave)
            result.stack_results.update(wave_results)

            if self.cancel_event.is_set():
                interrupted = sorted(r.stack_id for r in wave_results.values() if r.is_failed())
                result.error = RollingUpdateCancelled(
                    f"Run cancelled during wave {number}",
                    context=ErrorContext(decision_point=f"wave {number}"),
                    suggestions=[
                        f"Stacks stopped mid-deployment: {', '.join(interrupted)}" if interrupted
                        else "Every stack of the wave finished before the cancellation took effect",
                        'Re-run deploy to resume; tracked units are verified or retired first',
                    ]
                )
                break

            failed =[wave_results[name] for name in wave if wave_results[name].is_failed()]
            if failed:
                result.error = failed[0].error
                self.logger.error(
                    f"Wave {number} failed ({', '.join(r.stack_id for r in failed)}); "
                    f"skipping {len(waves) - number} remaining wave(s)",
                    extra={'operation': 'deploy'}
                )
                break

        result.duration = self.clock.now() - started
        if result.error is not None:
            result.status = RunStatus.FAILED
            error_handler.log_error(result.error)
        else:
            self.logger.info(
                f"Deployed {len(result.stack_results)} stack(s) in {result.duration:.1f}s",
                extra={'operation': 'deploy', 'duration': result.duration}
            )
        return result

    def _execute_wave(self, wave: List[str]) -> Dict[str, StackResult]:
        """Deploy one wave in worker threads.

        The calling thread only waits, so an interrupt lands here and is
        turned into a cancellation the workers observe between polls.
        """
        stacks = [self.config.get_stack(name) for name in wave]
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="stackflow") as executor:
            futures = {stack.name: executor.submit(self._deploy_one, stack) for stack in stacks}
            pending = set(futures.values())
            while pending:
                try:
                    _, pending = wait(pending)
                except KeyboardInterrupt:
                    if not self.cancel_event.is_set():
                        self.logger.warning(
                            f"Interrupted; cancelling {', '.join(wave)} at the next safe point",
                            extra={'operation': 'deploy'}
                        )
                        self.cancel_event.set()
            return {name: future.result() for name, future in futures.items()}

    def _deploy_one(self, stack: StackSpec) -> StackResult:
        try:
            return self.deployer.deploy(stack)
        except Exception as e:
            # deploy() reports DeploymentErrors itself; anything else is a bug
            self.logger.exception(f"Unexpected error: {e}", extra={'stack_id': stack.name})
            return StackResult(
                stack_id=stack.name,
                state=StackLifecycle.FAILED,
                error=DeploymentError(
                    f"Unexpected error deploying '{stack.name}': {e}",
                    context=ErrorContext(stack_id=stack.name),
                    cause=e
                )
            )

    def teardown(self, stack_names: Optional[List[str]] = None) -> TeardownResult:
        """Destroy deployed stacks, dependents first.

        Fails before destroying anything if a stack outside the teardown set
        still imports an export of a stack inside it.
        """
        result = TeardownResult(status=RunStatus.SUCCESS)
        try:
            self._check_selection(stack_names, require_declared=False)
            records = self._deployed_records()
            targets = set(stack_names) if stack_names else set(records)
            targets &= set(records)

            blocking: Dict[str, List[str]] = {}
            for stack_id in sorted(targets):
                for name, consumers in self.registry.blocking_consumers(stack_id).items():
                    outside = [c for c in consumers if c not in targets]
                    if outside:
                        blocking[name] = outside
            if blocking:
                raise ExportInUseError(
                    f"Cannot tear down {', '.join(sorted(targets))}: exports are still imported by other stacks",
                    blocking=blocking,
                    context=ErrorContext(decision_point="teardown ordering")
                )

            # Declared stacks first so ties break the same way as in deploy
            declared = [s.name for s in self.config.stacks if s.name in records]
            names = declared + sorted(n for n in records if n not in declared)
            specs = {name: StackSpec.model_validate(records[name].last_deployed) for name in names}
            graph = DependencyGraph(external_exports=self.registry.names())
            for spec in specs.values():
                graph.add_stack(spec)
            result.order = [s for s in graph.get_destruction_order() if s in targets]

            for stack_id in result.order:
                self._destroy(specs[stack_id], records[stack_id])
                result.destroyed.append(stack_id)

        except DeploymentError as e:
            error_handler.log_error(e)
            result.status = RunStatus.FAILED
            result.error = e
        return result

    def _destroy(self, spec: StackSpec, record: StackRecord) -> None:
        self.logger.info("Destroying", extra={'stack_id': spec.name, 'operation': 'teardown'})
        try:
            if spec.capacity is not None and self.fleet is not None and record.units:
                group = CapacityGroup.from_spec(
                    spec.capacity, spec.name, units=[InstanceUnit.from_record(u) for u in record.units]
                )
                for unit in group.live_units():
                    self.fleet.terminate(unit, group)
            self.provisioner.destroy(spec.name)
        except DeploymentError:
            raise
        except Exception as e:
            raise error_handler.handle_exception(e, ErrorContext(stack_id=spec.name, decision_point="teardown"))

        for name in record.imports:
            self.registry.unlock(name, spec.name)
        self.registry.retire(spec.name)
        with self.state_manager.transaction(self.config.project.name) as state:
            state.remove_stack(spec.name)
            state.exports = self.registry.snapshot()

    def plan(self, stack_name: str) -> ChangeSet:
        """Change set the next deploy of ``stack_name`` would apply."""
        self._check_selection([stack_name])
        stack = self.config.get_stack(stack_name)
        record = self.state_manager.load_or_initialize(self.config.project.name).get_stack(stack_name)
        return self.reviewer.compute(record.last_deployed if record else None, stack)

    def status(self) -> List[StackRecord]:
        """Persisted records for declared stacks, then any orphaned ones."""
        state = self.state_manager.load_or_initialize(self.config.project.name)
        declared = [s.name for s in self.config.stacks]
        records = [state.get_stack(n) or StackRecord(name=n) for n in declared]
        records.extend(r for n, r in sorted(state.stacks.items()) if n not in declared)
        return records

    def _deployed_records(self) -> Dict[str, StackRecord]:
        state = self.state_manager.load_or_initialize(self.config.project.name)
        return {name: record for name, record in state.stacks.items() if record.is_deployed}

    def _check_selection(self, stack_names: Optional[List[str]], require_declared: bool = True) -> None:
        if not stack_names:
            return
        known = {s.name for s in self.config.stacks}
        if not require_declared:
            known |= set(self.state_manager.load_or_initialize(self.config.project.name).stacks)
        unknown = sorted(set(stack_names) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown stack(s): {', '.join(unknown)}",
                suggestions=[f"Declared stacks: {', '.join(sorted(known))}"]
            )
