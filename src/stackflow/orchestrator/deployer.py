"""Drives a single stack through plan, review, apply and settle."""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from stackflow.capacity.fleet import BaseFleet
from stackflow.capacity.health import HealthReconciler
from stackflow.capacity.models import CapacityGroup, InstanceUnit, UnitState
from stackflow.capacity.rolling import RollingUpdateController, RollingUpdateResult
from stackflow.config.models import IMPORT_VALUE_KEY, StackSpec
from stackflow.orchestrator.approval import ApprovalGate
from stackflow.orchestrator.changeset import ChangeSet, ChangeSetReviewer
from stackflow.orchestrator.exports import ExportRegistry
from stackflow.provisioners.base import BaseProvisioner
from stackflow.state.manager import StateManager
from stackflow.state.models import StackRecord
from stackflow.utils.clock import Clock
from stackflow.utils.errors import (
    ApplyRejectedError,
    DeploymentError,
    ErrorContext,
    ExportInUseError,
    InvalidTransitionError,
    RollingUpdateCancelled,
    RollingUpdateError,
    error_handler,
)
from stackflow.utils.logging import get_logger

logger = get_logger(__name__)


class StackLifecycle(str, Enum):
    """Lifecycle state of a stack within a run."""
    PENDING = "Pending"
    PLANNING = "Planning"
    AWAITING_REVIEW = "AwaitingReview"
    APPLYING = "Applying"
    SETTLING = "Settling"
    DEPLOYED = "Deployed"
    FAILED = "Failed"
    ROLLING_BACK = "RollingBack"


ALLOWED_TRANSITIONS = {
    StackLifecycle.PENDING: {StackLifecycle.PLANNING, StackLifecycle.FAILED},
    StackLifecycle.PLANNING: {StackLifecycle.AWAITING_REVIEW, StackLifecycle.DEPLOYED, StackLifecycle.FAILED},
    StackLifecycle.AWAITING_REVIEW: {StackLifecycle.APPLYING, StackLifecycle.FAILED},
    StackLifecycle.APPLYING: {StackLifecycle.SETTLING, StackLifecycle.FAILED},
    StackLifecycle.SETTLING: {StackLifecycle.DEPLOYED, StackLifecycle.FAILED},
    StackLifecycle.DEPLOYED: set(),
    StackLifecycle.FAILED: {StackLifecycle.ROLLING_BACK},
    StackLifecycle.ROLLING_BACK: {StackLifecycle.DEPLOYED, StackLifecycle.FAILED},
}


class StackMachine:
    """Per-stack finite state machine.

    ``RollingBack`` is only reachable when the stack was ``Deployed`` before
    this run started, since there is no last-known-good spec otherwise.
    """

    def __init__(
        self,
        stack_id: str,
        previously_deployed: bool = False
    ):
        self.stack_id = stack_id
        self.previously_deployed = previously_deployed
        self.state = StackLifecycle.PENDING
        self.history: List[StackLifecycle] = [StackLifecycle.PENDING]

    def can_transition(self, target: StackLifecycle) -> bool:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            return False
        if target == StackLifecycle.ROLLING_BACK:
            return self.previously_deployed
        return True

    def transition(self, target: StackLifecycle) -> None:
        """Move to ``target``.

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        if not self.can_transition(target):
            raise InvalidTransitionError(
                f"Stack '{self.stack_id}' cannot move from {self.state.value} to {target.value}",
                context=ErrorContext(stack_id=self.stack_id, decision_point=self.state.value)
            )
        previous, self.state = self.state, target
        self.history.append(target)
        logger.debug(f"{previous.value} -> {target.value}", extra={'stack_id': self.stack_id})


@dataclass
class StackResult:
    """Outcome of processing one stack."""

    stack_id: str
    state: StackLifecycle
    changeset: Optional[ChangeSet] = None
    outputs: Dict[str, Any] = field(default_factory=dict)
    exports: Dict[str, Any] = field(default_factory=dict)
    rolling_update: Optional[RollingUpdateResult] = None
    rolled_back: bool = False
    error: Optional[DeploymentError] = None
    history: List[StackLifecycle] = field(default_factory=list)
    duration: float = 0.0

    def is_success(self) -> bool:
        """Deployed with the desired spec."""
        return self.state == StackLifecycle.DEPLOYED and self.error is None

    def is_failed(self) -> bool:
        return self.error is not None


class StackDeployer:
    """Processes one stack at a time against a shared registry and state file."""

    def __init__(
        self,
        registry: ExportRegistry,
        state_manager: StateManager,
        provisioner: BaseProvisioner,
        approval_gate: ApprovalGate,
        reviewer: Optional[ChangeSetReviewer] = None,
        fleet: Optional[BaseFleet] = None,
        clock: Optional[Clock] = None,
        project_name: str = "stackflow",
        cancel_event: Optional[threading.Event] = None
    ):
        """Initialize stack deployer.

        Args:
            registry: Shared export registry
            state_manager: Persisted state
            provisioner: Backend that applies templates
            approval_gate: Decides on risky change sets
            reviewer: Change set reviewer (reads ``registry``)
            fleet: Fleet driver for stacks owning a capacity group
            clock: Time source for rolling updates
            project_name: Used when the state file does not exist yet
            cancel_event: Set externally to abort reviews and rolling updates
        """
        self.registry = registry
        self.state_manager = state_manager
        self.provisioner = provisioner
        self.approval_gate = approval_gate
        self.reviewer = reviewer or ChangeSetReviewer(registry)
        self.fleet = fleet
        self.clock = clock or Clock()
        self.project_name = project_name
        self.cancel_event = cancel_event
        self.logger = get_logger(__name__)

    def deploy(self, stack: StackSpec) -> StackResult:
        """Bring ``stack`` to its desired spec.

        Returns:
            StackResult; on failure ``error`` is set and the stack keeps its
            last successful state
        """
        record = self._load_record(stack.name)
        machine = StackMachine(stack.name, previously_deployed=record.is_deployed)
        result = StackResult(stack_id=stack.name, state=machine.state)
        started = self.clock.now()
        try:
            # Pending -> Planning only once every import resolves
            imported = self._resolve_imports(stack)
            parameters = self._render_parameters(stack, imported)
            machine.transition(StackLifecycle.PLANNING)

            changeset = self.reviewer.compute(record.last_deployed, stack)
            result.changeset = changeset
            self._check_removed_exports(stack, record)

            if changeset.is_empty and not self._needs_settling(stack, record):
                self.logger.info("No changes", extra={'stack_id': stack.name, 'operation': 'plan'})
                result.outputs = dict(record.outputs)
                result.exports = {e.name: e.value for e in self.registry.exports_of(stack.name)}
                self._lock_imports(stack, record)
                machine.transition(StackLifecycle.DEPLOYED)
                record.status = machine.state.value
                record.last_changeset_id = changeset.id
                record.last_error = None
                self._save_record(record)
                return self._finish(result, machine, started)

            machine.transition(StackLifecycle.AWAITING_REVIEW)
            record.status = machine.state.value
            record.last_changeset_id = changeset.id
            self._save_record(record)
            if changeset.is_risky:
                self.approval_gate.request(changeset, self.cancel_event)

            machine.transition(StackLifecycle.APPLYING)
            if changeset.is_empty:
                # Only the capacity group has to converge
                result.outputs = dict(record.outputs)
            else:
                result.outputs = self._apply(stack, changeset, parameters)

            machine.transition(StackLifecycle.SETTLING)
            result.rolling_update = self._settle(stack, record)
            result.exports = self._export_values(stack, result.outputs)

            # Nothing is visible to other stacks until here
            self.registry.publish_all(stack.name, result.exports)
            for name in sorted(self._declared_exports(record) - set(stack.exports)):
                self.registry.remove_export(stack.name, name)
            self._lock_imports(stack, record)

            machine.transition(StackLifecycle.DEPLOYED)
            record.status = machine.state.value
            record.last_deployed = stack.snapshot()
            record.outputs = dict(result.outputs)
            record.last_error = None
            self._save_record(record)
            return self._finish(result, machine, started)

        except DeploymentError as e:
            self._fail(stack, record, machine, result, e)
            return self._finish(result, machine, started)
        except Exception as e:
            error = error_handler.handle_exception(
                e, ErrorContext(stack_id=stack.name, decision_point=machine.state.value)
            )
            self._fail(stack, record, machine, result, error)
            return self._finish(result, machine, started)

    def _finish(self, result: StackResult, machine: StackMachine, started: float) -> StackResult:
        result.state = machine.state
        result.history = list(machine.history)
        result.duration = self.clock.now() - started
        if result.is_success():
            self.logger.info(
                f"Deployed in {result.duration:.1f}s",
                extra={'stack_id': result.stack_id, 'duration': result.duration}
            )
        return result

    def _fail(
        self,
        stack: StackSpec,
        record: StackRecord,
        machine: StackMachine,
        result: StackResult,
        error: DeploymentError
    ) -> None:
        """Enter Failed, roll back if there is a last-known-good spec, persist."""
        if error.context.stack_id is None:
            error.context.stack_id = stack.name
        if error.context.decision_point is None:
            error.context.decision_point = machine.state.value
        result.error = error
        if isinstance(error, RollingUpdateError) and getattr(error, 'result', None) is not None:
            result.rolling_update = error.result

        reached_backend = machine.state in (StackLifecycle.APPLYING, StackLifecycle.SETTLING)
        machine.transition(StackLifecycle.FAILED)
        self.logger.error(error.message, extra={'stack_id': stack.name})

        # A cancelled run stops where it is; the next run resumes from the tracked units
        cancelled = isinstance(error, RollingUpdateCancelled)
        if reached_backend and not cancelled and machine.can_transition(StackLifecycle.ROLLING_BACK):
            machine.transition(StackLifecycle.ROLLING_BACK)
            try:
                self._rollback(stack, record)
            except Exception as e:
                rollback_error = error_handler.handle_exception(
                    e, ErrorContext(stack_id=stack.name, decision_point="rollback")
                )
                self.logger.error(
                    f"Rollback to the last deployed spec failed: {rollback_error.message}",
                    extra={'stack_id': stack.name}
                )
                error.suggestions.append('Rollback also failed; the stack needs manual repair')
                machine.transition(StackLifecycle.FAILED)
            else:
                machine.transition(StackLifecycle.DEPLOYED)
                result.rolled_back = True
                self.logger.warning("Rolled back to the last deployed spec", extra={'stack_id': stack.name})

        record.status = machine.state.value
        record.last_error = error.to_dict()
        self._save_record(record)

    def _rollback(self, stack: StackSpec, record: StackRecord) -> None:
        previous = StackSpec.model_validate(record.last_deployed)
        imported = self._resolve_imports(previous)
        try:
            record.outputs = self.provisioner.revert(previous, self._render_parameters(previous, imported))
        except DeploymentError:
            raise
        except Exception as e:
            raise error_handler.handle_exception(
                e, ErrorContext(stack_id=stack.name, decision_point="rollback")
            )

        if previous.capacity is not None and self.fleet is not None:
            self._settle(previous, record)

    def _resolve_imports(self, stack: StackSpec) -> Dict[str, Any]:
        return {name: self.registry.resolve(name) for name in stack.imports}

    @staticmethod
    def _render_parameters(stack: StackSpec, imported: Dict[str, Any]) -> Dict[str, Any]:
        """Substitute ``{ImportValue: name}`` parameters with resolved values."""
        parameters = dict(stack.parameters)
        for key, value in parameters.items():
            if isinstance(value, dict) and set(value) == {IMPORT_VALUE_KEY}:
                parameters[key] = imported[value[IMPORT_VALUE_KEY]]
        return parameters

    def _check_removed_exports(self, stack: StackSpec, record: StackRecord) -> None:
        """An update may not drop or rename an export another stack imports."""
        removed = sorted(self._declared_exports(record) - set(stack.exports))
        if not removed:
            return
        blocking = self.registry.blocking_consumers(stack.name, removed)
        if blocking:
            raise ExportInUseError(
                f"Stack '{stack.name}' would remove export(s) still imported by other stacks: "
                f"{', '.join(sorted(blocking))}",
                blocking=blocking,
                context=ErrorContext(stack_id=stack.name, decision_point="Planning")
            )

    @staticmethod
    def _declared_exports(record: StackRecord) -> set:
        if not record.last_deployed:
            return set()
        return set(record.last_deployed.get('exports', {}))

    def _apply(self, stack: StackSpec, changeset: ChangeSet, parameters: Dict[str, Any]) -> Dict[str, Any]:
        self.logger.info(
            f"Applying change set {changeset.id}",
            extra={'stack_id': stack.name, 'operation': 'apply'}
        )
        try:
            return self.provisioner.apply(stack, changeset, parameters)
        except DeploymentError:
            raise
        except Exception as e:
            raise error_handler.handle_exception(
                e, ErrorContext(stack_id=stack.name, decision_point="Applying")
            )

    def _settle(self, stack: StackSpec, record: StackRecord) -> Optional[RollingUpdateResult]:
        """Run the rolling update for stacks owning a capacity group."""
        if stack.capacity is None:
            record.units = []
            record.launch_version = None
            return None
        if self.fleet is None:
            raise ApplyRejectedError(
                f"Stack '{stack.name}' owns capacity group '{stack.capacity.name}' but no fleet driver is configured",
                context=ErrorContext(stack_id=stack.name, decision_point="Settling")
            )

        group = CapacityGroup.from_spec(
            stack.capacity,
            stack.name,
            units=[InstanceUnit.from_record(u) for u in record.units]
        )
        controller = RollingUpdateController(self.fleet, HealthReconciler(self.clock), self.clock)
        try:
            result = controller.execute(
                group, stack.capacity.update_policy, stack.capacity.launch_version, self.cancel_event
            )
        finally:
            # Every launched unit stays tracked, whatever the outcome
            record.units = [u.to_record() for u in group.live_units()]
            record.launch_version = group.launch_version
            self._save_record(record)
        return result

    @staticmethod
    def _needs_settling(stack: StackSpec, record: StackRecord) -> bool:
        """Whether tracked units differ from the declared group (e.g. after a failed rollback)."""
        if stack.capacity is None:
            return False
        units = [InstanceUnit.from_record(u) for u in record.units]
        if len(units) != stack.capacity.desired_capacity:
            return True
        return any(
            u.version != stack.capacity.launch_version or u.state != UnitState.IN_SERVICE
            for u in units
        )

    @staticmethod
    def _export_values(stack: StackSpec, outputs: Dict[str, Any]) -> Dict[str, Any]:
        values = {}
        for name, export in stack.exports.items():
            if export.value is not None:
                values[name] = export.value
                continue
            key = export.output or export.resource or name
            if key not in outputs:
                raise ApplyRejectedError(
                    f"Export '{name}' expects output '{key}' which the stack did not produce",
                    context=ErrorContext(stack_id=stack.name, resource_id=export.resource, decision_point="Settling"),
                    suggestions=[f"Add an output named '{key}' to the template"]
                )
            values[name] = outputs[key]
        return values

    def _lock_imports(self, stack: StackSpec, record: StackRecord) -> None:
        for name in stack.imports:
            self.registry.lock(name, stack.name)
        for name in set(record.imports) - set(stack.imports):
            self.registry.unlock(name, stack.name)
        record.imports = list(stack.imports)

    def _load_record(self, stack_id: str) -> StackRecord:
        with self.state_manager.transaction(self.project_name) as state:
            record = state.get_stack(stack_id)
        return record.model_copy(deep=True) if record else StackRecord(name=stack_id)

    def _save_record(self, record: StackRecord) -> None:
        with self.state_manager.transaction(self.project_name) as state:
            state.put_stack(record.model_copy(deep=True))
            state.exports = self.registry.snapshot()

