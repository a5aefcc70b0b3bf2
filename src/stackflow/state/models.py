"""Persisted state data models."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field


class ExportRecord(BaseModel):
    """A published export and the stacks currently importing it."""

    name: str = Field(..., description="Export name")
    owner: str = Field(..., description="Stack that publishes the export")
    value: Any = Field(None, description="Current exported value")
    revision: int = Field(1, ge=1, description="Incremented on every publish")
    consumers: List[str] = Field(default_factory=list, description="Stacks holding a lock")


class StackRecord(BaseModel):
    """Last known state of a stack."""

    name: str = Field(..., description="Stack name")
    status: str = Field("Pending", description="Lifecycle state")
    last_deployed: Optional[Dict[str, Any]] = Field(
        None, description="Spec snapshot of the last successful apply"
    )
    outputs: Dict[str, Any] = Field(default_factory=dict, description="Provisioner outputs")
    imports: List[str] = Field(default_factory=list, description="Exports this stack holds locks on")
    units: List[Dict[str, Any]] = Field(default_factory=list, description="Tracked capacity units")
    launch_version: Optional[str] = Field(None, description="Version the capacity group converged on")
    last_changeset_id: Optional[str] = None
    last_error: Optional[Dict[str, Any]] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_deployed(self) -> bool:
        return self.last_deployed is not None


class ApprovalRecord(BaseModel):
    """Operator decision on a specific change set."""

    stack: str
    changeset_id: str
    decision: Literal["approved", "rejected"]
    actor: Optional[str] = None
    reason: Optional[str] = None
    decided_at: datetime = Field(default_factory=datetime.utcnow)

    @staticmethod
    def key(stack: str, changeset_id: str) -> str:
        return f"{stack}:{changeset_id}"


class State(BaseModel):
    """Complete persisted state of a project."""

    version: str = Field("1.0", description="State file format version")
    project_name: str = Field(..., description="Project name")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Last update timestamp")
    stacks: Dict[str, StackRecord] = Field(default_factory=dict)
    exports: Dict[str, ExportRecord] = Field(default_factory=dict)
    approvals: Dict[str, ApprovalRecord] = Field(default_factory=dict)

    def get_stack(self, stack_name: str) -> Optional[StackRecord]:
        """Get a stack record by name."""
        return self.stacks.get(stack_name)

    def put_stack(self, record: StackRecord) -> None:
        """Add or replace a stack record."""
        record.updated_at = datetime.utcnow()
        self.stacks[record.name] = record
        self.timestamp = datetime.utcnow()

    def remove_stack(self, stack_name: str) -> Optional[StackRecord]:
        """Remove a stack record and return it."""
        self.timestamp = datetime.utcnow()
        return self.stacks.pop(stack_name, None)

    def get_approval(self, stack: str, changeset_id: str) -> Optional[ApprovalRecord]:
        return self.approvals.get(ApprovalRecord.key(stack, changeset_id))

    def put_approval(self, approval: ApprovalRecord) -> None:
        self.approvals[ApprovalRecord.key(approval.stack, approval.changeset_id)] = approval
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "State":
        """Create State from dictionary."""
        return cls.model_validate(data)
