"""Base provisioner interface."""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, Optional

from stackflow.config.models import StackSpec

if TYPE_CHECKING:
    from stackflow.orchestrator.changeset import ChangeSet


class BaseProvisioner(ABC):
    """Applies stack templates through a provisioning backend.

    Templates are opaque: a provisioner hands them to the backend together
    with resolved parameters and reports the stack outputs it got back.
    """

    @abstractmethod
    def apply(self, stack: StackSpec, changeset: Optional["ChangeSet"], parameters: Dict[str, Any]) -> Dict[str, Any]:
        """Create or update the stack.

        Args:
            stack: Desired stack
            changeset: Reviewed change set (None when re-applying a known-good spec)
            parameters: Template parameters with imports already resolved

        Returns:
            Stack outputs keyed by output name

        Raises:
            Exception: Any backend refusal; callers convert it to ApplyRejectedError
        """
        pass

    def revert(self, previous: StackSpec, parameters: Dict[str, Any]) -> Dict[str, Any]:
        """Return the stack to its last-deployed spec.

        Args:
            previous: Last successfully applied spec
            parameters: Parameters that spec was applied with

        Returns:
            Stack outputs after the revert
        """
        return self.apply(previous, None, parameters)

    @abstractmethod
    def destroy(self, stack_id: str) -> None:
        """Delete the stack and everything it provisioned.

        Args:
            stack_id: Stack name
        """
        pass

    def get_outputs(self, stack_id: str) -> Optional[Dict[str, Any]]:
        """Fetch current outputs from the backend.

        Returns:
            Outputs, or None if the stack does not exist
        """
        # Default implementation - subclasses should override
        return None
