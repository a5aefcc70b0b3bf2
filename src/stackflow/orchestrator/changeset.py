"""Change set computation and risk classification."""

import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from stackflow.config.models import DEFAULT_IMMUTABLE_PROPERTIES, StackSpec
from stackflow.orchestrator.exports import ExportRegistry
from stackflow.utils.logging import get_logger

logger = get_logger(__name__)

# Pseudo-resources for stack-level settings and the capacity group
STACK_RESOURCE_ID = "@stack"
STACK_RESOURCE_TYPE = "AWS::CloudFormation::Stack"
CAPACITY_RESOURCE_TYPE = "AWS::AutoScaling::AutoScalingGroup"


class ChangeAction(str, Enum):
    """What applying a change item does to a resource."""
    ADD = "Add"
    MODIFY = "Modify"
    REMOVE = "Remove"
    REPLACE = "Replace"


@dataclass(frozen=True)
class ChangeItem:
    """A single classified resource change."""

    resource_id: str
    resource_type: str
    action: ChangeAction
    risky: bool = False
    changed_properties: Tuple[str, ...] = ()
    risk_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'resource_id': self.resource_id,
            'resource_type': self.resource_type,
            'action': self.action.value,
            'risky': self.risky,
            'changed_properties': list(self.changed_properties),
            'risk_reason': self.risk_reason,
        }


@dataclass(frozen=True)
class ChangeSet:
    """Immutable, ordered diff between the last-applied and desired stack."""

    stack_id: str
    items: Tuple[ChangeItem, ...] = ()
    desired_digest: str = ""

    @property
    def id(self) -> str:
        """Content fingerprint; identical diffs of identical specs share an id."""
        payload = json.dumps(
            {
                'stack_id': self.stack_id,
                'items': [item.to_dict() for item in self.items],
                'desired': self.desired_digest,
            },
            sort_keys=True
        )
        return "cs-" + hashlib.sha256(payload.encode()).hexdigest()[:16]

    @property
    def is_empty(self) -> bool:
        return not self.items

    @property
    def is_risky(self) -> bool:
        return any(item.risky for item in self.items)

    def risky_items(self) -> List[ChangeItem]:
        return [item for item in self.items if item.risky]

    def get_summary(self) -> Dict[str, int]:
        """Count of items per action."""
        summary = {action.value: 0 for action in ChangeAction}
        for item in self.items:
            summary[item.action.value] += 1
        return summary

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'stack_id': self.stack_id,
            'risky': self.is_risky,
            'summary': self.get_summary(),
            'items': [item.to_dict() for item in self.items],
        }


def _digest(data: Any) -> str:
    return hashlib.sha256(json.dumps(data, sort_keys=True, default=str).encode()).hexdigest()


def _changed_keys(current: Mapping[str, Any], desired: Mapping[str, Any]) -> List[str]:
    keys = set(current) | set(desired)
    return sorted(k for k in keys if current.get(k) != desired.get(k))


class ChangeSetReviewer:
    """Computes and classifies change sets.

    The computation is pure: the registry is only read, to decide whether a
    destructive change touches something another stack imports.
    """

    def __init__(
        self,
        registry: Optional[ExportRegistry] = None,
        immutable_properties: Optional[Mapping[str, List[str]]] = None
    ):
        """Initialize change set reviewer.

        Args:
            registry: Export registry consulted for external consumers
            immutable_properties: Per resource type, properties that force replacement
        """
        self.registry = registry or ExportRegistry()
        self.immutable_properties = dict(
            DEFAULT_IMMUTABLE_PROPERTIES if immutable_properties is None else immutable_properties
        )
        self.logger = get_logger(__name__)

    def compute(
        self,
        current: Optional[Union[StackSpec, Mapping[str, Any]]],
        desired: StackSpec
    ) -> ChangeSet:
        """Diff the last-applied spec against the desired spec.

        Args:
            current: Last-applied spec or its persisted snapshot (None on first deploy)
            desired: Desired spec

        Returns:
            ChangeSet with items ordered by resource id
        """
        if current is not None and not isinstance(current, StackSpec):
            current = StackSpec.model_validate(current)

        current_resources = self._resources(current) if current is not None else {}
        desired_resources = self._resources(desired)
        items: List[ChangeItem] = []

        for resource_id in sorted(set(current_resources) | set(desired_resources)):
            before = current_resources.get(resource_id)
            after = desired_resources.get(resource_id)

            if before is None:
                items.append(ChangeItem(resource_id, after[0], ChangeAction.ADD))
                continue

            if after is None:
                items.append(self._classify(current, resource_id, before[0], ChangeAction.REMOVE, ()))
                continue

            before_type, before_props, _ = before
            after_type, after_props, immutable = after
            if before_type != after_type:
                # A different type is a different resource under the same id
                items.append(self._classify(current, resource_id, before_type, ChangeAction.REMOVE, ()))
                items.append(ChangeItem(resource_id, after_type, ChangeAction.ADD))
                continue

            changed = tuple(_changed_keys(before_props, after_props))
            if not changed:
                continue
            action = ChangeAction.REPLACE if set(changed) & set(immutable) else ChangeAction.MODIFY
            items.append(self._classify(current, resource_id, after_type, action, changed))

        changeset = ChangeSet(stack_id=desired.name, items=tuple(items), desired_digest=_digest(desired.snapshot()))

        summary = changeset.get_summary()
        self.logger.info(
            f"Change set {changeset.id}: {summary['Add']} add, {summary['Modify']} modify, "
            f"{summary['Replace']} replace, {summary['Remove']} remove"
            + (f", {len(changeset.risky_items())} risky" if changeset.is_risky else ""),
            extra={'stack_id': desired.name, 'operation': 'plan'}
        )
        return changeset

    def _resources(self, stack: StackSpec) -> Dict[str, Tuple[str, Dict[str, Any], List[str]]]:
        """resource id -> (type, properties, immutable property names)."""
        resources = {}
        for resource_id, resource in stack.resources.items():
            immutable = list(resource.immutable) + list(self.immutable_properties.get(resource.type, []))
            resources[resource_id] = (resource.type, dict(resource.properties), immutable)

        if stack.capacity is not None:
            props = stack.capacity.model_dump(mode="json", by_alias=True, exclude={"name"})
            resources[stack.capacity.name] = (
                CAPACITY_RESOURCE_TYPE,
                props,
                list(self.immutable_properties.get(CAPACITY_RESOURCE_TYPE, []))
            )

        settings = {
            'Template': stack.template,
            'Capabilities': sorted(stack.capabilities),
            'Imports': list(stack.imports),
        }
        settings.update({f"Parameters.{k}": v for k, v in stack.parameters.items()})
        settings.update({
            f"Exports.{k}": v.model_dump(mode="json", exclude_none=True) for k, v in stack.exports.items()
        })
        resources[STACK_RESOURCE_ID] = (STACK_RESOURCE_TYPE, settings, [])
        return resources

    def _classify(
        self,
        current: StackSpec,
        resource_id: str,
        resource_type: str,
        action: ChangeAction,
        changed: Tuple[str, ...]
    ) -> ChangeItem:
        """Attach the risk flag to destructive changes of imported resources."""
        risky, reason = False, None
        if action in (ChangeAction.REPLACE, ChangeAction.REMOVE):
            risky, reason = self.is_risky(current, resource_id)
        return ChangeItem(
            resource_id=resource_id,
            resource_type=resource_type,
            action=action,
            risky=risky,
            changed_properties=changed,
            risk_reason=reason
        )

    def is_risky(self, current: StackSpec, resource_id: str) -> Tuple[bool, Optional[str]]:
        """Whether replacing or removing ``resource_id`` affects another stack.

        Exports that name their backing resource are checked individually.
        When no export of the stack names a resource, any external consumer
        of the stack counts.
        """
        backed = sorted(name for name, export in current.exports.items() if export.resource == resource_id)
        if backed:
            blocking = self.registry.blocking_consumers(current.name, backed)
        elif not any(export.resource for export in current.exports.values()):
            blocking = self.registry.blocking_consumers(current.name)
        else:
            blocking = {}

        if not blocking:
            return False, None
        reason = "; ".join(
            f"export '{name}' imported by {', '.join(consumers)}" for name, consumers in sorted(blocking.items())
        )
        return True, reason
