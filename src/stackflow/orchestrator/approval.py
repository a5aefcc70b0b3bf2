"""Approval gates that decide whether a risky change set may be applied."""

import threading
from abc import ABC, abstractmethod
from typing import Optional

import click

from stackflow.orchestrator.changeset import ChangeSet
from stackflow.state.manager import StateManager
from stackflow.utils.clock import Clock
from stackflow.utils.errors import ErrorContext, ReviewRejectedError
from stackflow.utils.logging import get_logger

logger = get_logger(__name__)


def _rejected(changeset: ChangeSet, message: str, **kwargs) -> ReviewRejectedError:
    return ReviewRejectedError(
        message,
        context=ErrorContext(
            stack_id=changeset.stack_id,
            resource_id=", ".join(i.resource_id for i in changeset.risky_items()) or None,
            decision_point="review",
            additional_info={'changeset_id': changeset.id}
        ),
        **kwargs
    )


class ApprovalGate(ABC):
    """Blocks until a risky change set is approved."""

    @abstractmethod
    def request(self, changeset: ChangeSet, cancel_event: Optional[threading.Event] = None) -> None:
        """Wait for a decision on ``changeset``.

        Raises:
            ReviewRejectedError: If the change set is rejected or not approved in time
        """
        pass


class AutoApprovalGate(ApprovalGate):
    """Approves everything (``--approve-risky``)."""

    def request(self, changeset: ChangeSet, cancel_event: Optional[threading.Event] = None) -> None:
        logger.warning(
            f"Auto-approving risky change set {changeset.id}: "
            f"{'; '.join(i.risk_reason or i.resource_id for i in changeset.risky_items())}",
            extra={'stack_id': changeset.stack_id}
        )


class StateApprovalGate(ApprovalGate):
    """Waits for an ``approve``/``reject`` decision recorded in the state file.

    With a zero timeout the state is checked once, so a run without an
    operator fails fast and tells them which change set to approve.
    """

    def __init__(
        self,
        state_manager: StateManager,
        timeout: float,
        poll_interval: float,
        clock: Optional[Clock] = None
    ):
        self.state_manager = state_manager
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.clock = clock or Clock()

    def request(self, changeset: ChangeSet, cancel_event: Optional[threading.Event] = None) -> None:
        deadline = self.clock.now() + self.timeout
        logger.info(
            f"Change set {changeset.id} needs approval: "
            f"stackflow approve <stackset> {changeset.stack_id} {changeset.id}",
            extra={'stack_id': changeset.stack_id}
        )

        while True:
            decision = None
            if self.state_manager.exists():
                decision = self.state_manager.load().get_approval(changeset.stack_id, changeset.id)

            if decision is not None and decision.decision == "approved":
                logger.info(
                    f"Change set {changeset.id} approved" + (f" by {decision.actor}" if decision.actor else ""),
                    extra={'stack_id': changeset.stack_id}
                )
                return
            if decision is not None:
                raise _rejected(
                    changeset,
                    f"Change set {changeset.id} for '{changeset.stack_id}' was rejected"
                    + (f": {decision.reason}" if decision.reason else "")
                )

            if self.clock.now() >= deadline:
                raise _rejected(
                    changeset,
                    f"Risky change set {changeset.id} for '{changeset.stack_id}' was not approved"
                    + (f" within {self.timeout:g}s" if self.timeout else ""),
                    suggestions=[
                        f"Review it with: stackflow plan <stackset> {changeset.stack_id}",
                        f"Approve it with: stackflow approve <stackset> {changeset.stack_id} {changeset.id}",
                        'Or re-run deploy with --approve-risky'
                    ]
                )

            if self.clock.sleep(min(self.poll_interval, max(deadline - self.clock.now(), 0)), cancel_event):
                raise _rejected(changeset, f"Review of change set {changeset.id} was cancelled")


class InteractiveApprovalGate(ApprovalGate):
    """Asks the operator on the terminal."""

    def __init__(self):
        self._prompt_lock = threading.Lock()

    def request(self, changeset: ChangeSet, cancel_event: Optional[threading.Event] = None) -> None:
        # Stacks in one wave may ask at the same time
        with self._prompt_lock:
            click.echo(f"\nRisky change set {changeset.id} for stack '{changeset.stack_id}':")
            for item in changeset.risky_items():
                click.echo(f"  {item.action.value} {item.resource_id} ({item.resource_type}): {item.risk_reason}")
            approved = click.confirm("Apply this change set?", default=False)

        if not approved:
            raise _rejected(changeset, f"Change set {changeset.id} for '{changeset.stack_id}' was declined")
