"""Registry of cross-stack exports and the locks importers hold on them."""

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set

from stackflow.state.models import ExportRecord
from stackflow.utils.errors import ErrorContext, ExportInUseError, UnknownExportError
from stackflow.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Export:
    """A named value published by one stack."""

    owner: str
    name: str
    value: Any
    revision: int = 1
    consumers: Set[str] = field(default_factory=set)

    def external_consumers(self) -> Set[str]:
        """Consumers other than the owning stack."""
        return {c for c in self.consumers if c != self.owner}


class ExportRegistry:
    """Thread-safe store of published exports.

    Every read and mutation happens under a single re-entrant lock, so a
    stack publishing its exports and another stack locking one of them can
    never interleave.
    """

    def __init__(self):
        self._exports: Dict[str, Export] = {}
        self._lock = threading.RLock()

    def publish(self, stack_id: str, name: str, value: Any) -> Export:
        """Publish or update an export, bumping its revision.

        Raises:
            ExportInUseError: If ``name`` is already owned by another stack
        """
        with self._lock:
            current = self._exports.get(name)
            if current is None:
                export = Export(owner=stack_id, name=name, value=value)
                self._exports[name] = export
                return export

            if current.owner != stack_id:
                raise ExportInUseError(
                    f"Export '{name}' is already published by '{current.owner}'",
                    blocking={name: [current.owner]},
                    context=ErrorContext(stack_id=stack_id, decision_point="export publication")
                )
            current.value = value
            current.revision += 1
            return current

    def publish_all(self, stack_id: str, values: Mapping[str, Any]) -> List[Export]:
        """Publish every export of a stack at once.

        Ownership is checked for all names before any value changes, so
        either every export becomes visible or none does.
        """
        with self._lock:
            conflicts = {
                name: [self._exports[name].owner]
                for name in values
                if name in self._exports and self._exports[name].owner != stack_id
            }
            if conflicts:
                raise ExportInUseError(
                    f"Stack '{stack_id}' cannot publish exports owned by other stacks: "
                    f"{', '.join(sorted(conflicts))}",
                    blocking=conflicts,
                    context=ErrorContext(stack_id=stack_id, decision_point="export publication")
                )
            published = [self.publish(stack_id, name, values[name]) for name in sorted(values)]

        if published:
            logger.info(
                f"Published {len(published)} export(s): {', '.join(e.name for e in published)}",
                extra={'stack_id': stack_id}
            )
        return published

    def resolve(self, name: str) -> Any:
        """Current value of an export.

        Raises:
            UnknownExportError: If the export has not been published
        """
        with self._lock:
            export = self._exports.get(name)
            if export is None:
                raise UnknownExportError(name)
            return export.value

    def get(self, name: str) -> Optional[Export]:
        with self._lock:
            return self._exports.get(name)

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._exports

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._exports)

    def exports_of(self, stack_id: str) -> List[Export]:
        """Exports owned by ``stack_id``, sorted by name."""
        with self._lock:
            return [e for _, e in sorted(self._exports.items()) if e.owner == stack_id]

    def lock(self, name: str, consumer: str) -> None:
        """Record that ``consumer`` imports ``name``.

        Raises:
            UnknownExportError: If the export has not been published
        """
        with self._lock:
            export = self._exports.get(name)
            if export is None:
                raise UnknownExportError(
                    name, context=ErrorContext(stack_id=consumer, decision_point="import lock")
                )
            export.consumers.add(consumer)

    def unlock(self, name: str, consumer: str) -> None:
        """Release ``consumer``'s lock on ``name``; unknown names are ignored."""
        with self._lock:
            export = self._exports.get(name)
            if export is not None:
                export.consumers.discard(consumer)

    def consumers(self, name: str) -> List[str]:
        with self._lock:
            export = self._exports.get(name)
            return sorted(export.consumers) if export else []

    def imports_of(self, consumer: str) -> List[str]:
        """Export names ``consumer`` currently holds locks on."""
        with self._lock:
            return sorted(n for n, e in self._exports.items() if consumer in e.consumers)

    def blocking_consumers(self, stack_id: str, names: Optional[List[str]] = None) -> Dict[str, List[str]]:
        """External consumers of ``stack_id``'s exports, keyed by export name.

        Args:
            stack_id: Owning stack
            names: Restrict the check to these export names
        """
        with self._lock:
            blocking = {}
            for export in self.exports_of(stack_id):
                if names is not None and export.name not in names:
                    continue
                external = export.external_consumers()
                if external:
                    blocking[export.name] = sorted(external)
            return blocking

    def can_retire(self, stack_id: str) -> bool:
        """True when no stack other than ``stack_id`` holds a lock on its exports."""
        return not self.blocking_consumers(stack_id)

    def remove_export(self, stack_id: str, name: str) -> None:
        """Remove one export.

        Raises:
            ExportInUseError: If another stack still imports it
        """
        with self._lock:
            export = self._exports.get(name)
            if export is None or export.owner != stack_id:
                return
            external = export.external_consumers()
            if external:
                raise ExportInUseError(
                    f"Export '{name}' of '{stack_id}' is still imported",
                    blocking={name: sorted(external)},
                    context=ErrorContext(stack_id=stack_id, decision_point="export removal")
                )
            del self._exports[name]

    def retire(self, stack_id: str) -> List[str]:
        """Remove every export of ``stack_id`` and release its own import locks.

        Raises:
            ExportInUseError: If any export still has external consumers
        """
        with self._lock:
            blocking = self.blocking_consumers(stack_id)
            if blocking:
                raise ExportInUseError(
                    f"Stack '{stack_id}' cannot be retired while its exports are imported",
                    blocking=blocking,
                    context=ErrorContext(stack_id=stack_id, decision_point="teardown")
                )
            removed = [e.name for e in self.exports_of(stack_id)]
            for name in removed:
                del self._exports[name]
            for export in self._exports.values():
                export.consumers.discard(stack_id)

        logger.info(f"Retired {len(removed)} export(s)", extra={'stack_id': stack_id})
        return removed

    def snapshot(self) -> Dict[str, ExportRecord]:
        """Persistable copy of every export."""
        with self._lock:
            return {
                name: ExportRecord(
                    name=name,
                    owner=export.owner,
                    value=export.value,
                    revision=export.revision,
                    consumers=sorted(export.consumers)
                )
                for name, export in self._exports.items()
            }

    @classmethod
    def from_snapshot(cls, records: Mapping[str, ExportRecord]) -> "ExportRegistry":
        """Rebuild a registry from persisted records."""
        registry = cls()
        for name, record in records.items():
            registry._exports[name] = Export(
                owner=record.owner,
                name=name,
                value=record.value,
                revision=record.revision,
                consumers=set(record.consumers)
            )
        return registry
