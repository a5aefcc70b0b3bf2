"""In-process provisioner for dry runs and tests."""

import threading
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set, Tuple

from stackflow.config.models import StackSpec
from stackflow.provisioners.base import BaseProvisioner
from stackflow.utils.logging import get_logger

if TYPE_CHECKING:
    from stackflow.orchestrator.changeset import ChangeSet

logger = get_logger(__name__)


class SimulatedProvisioner(BaseProvisioner):
    """Records applies in memory and synthesizes outputs.

    Every resource gets a fake physical ID as an output named after the
    resource, and every ``Output`` referenced by an export gets a value.
    """

    def __init__(self, reject: Optional[Set[str]] = None, reject_reason: str = "Template rejected"):
        """Initialize simulated provisioner.

        Args:
            reject: Stack names whose applies are refused
            reject_reason: Error message used for refused applies
        """
        self.reject: Set[str] = set(reject or ())
        self.reject_reason = reject_reason
        self.stacks: Dict[str, Dict[str, Any]] = {}
        self.applied: List[Tuple[str, Optional[str]]] = []
        self.reverted: List[str] = []
        self.destroyed: List[str] = []
        self._lock = threading.Lock()

    def apply(self, stack: StackSpec, changeset: Optional["ChangeSet"], parameters: Dict[str, Any]) -> Dict[str, Any]:
        if stack.name in self.reject and changeset is not None:
            raise RuntimeError(f"{self.reject_reason}: {stack.name}")

        outputs: Dict[str, Any] = {
            resource_id: f"sim-{stack.name}-{resource_id}".lower()
            for resource_id in stack.resources
        }
        if stack.capacity is not None:
            outputs[stack.capacity.name] = f"sim-{stack.name}-{stack.capacity.name}".lower()
        for export in stack.exports.values():
            if export.output and export.output not in outputs:
                outputs[export.output] = f"{stack.name}.{export.output}"
        outputs.update({f"Parameter.{k}": v for k, v in parameters.items()})

        with self._lock:
            self.stacks[stack.name] = {'spec': stack.snapshot(), 'parameters': dict(parameters), 'outputs': outputs}
            self.applied.append((stack.name, changeset.id if changeset else None))
        logger.debug(f"Simulated apply with {len(outputs)} output(s)", extra={'stack_id': stack.name})
        return dict(outputs)

    def revert(self, previous: StackSpec, parameters: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self.reverted.append(previous.name)
        return super().revert(previous, parameters)

    def destroy(self, stack_id: str) -> None:
        with self._lock:
            self.stacks.pop(stack_id, None)
            self.destroyed.append(stack_id)

    def get_outputs(self, stack_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            stack = self.stacks.get(stack_id)
            return dict(stack['outputs']) if stack else None
