"""Fleet drivers: the side-effecting half of capacity management."""

import itertools
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from stackflow.capacity.models import (
    CapacityGroup,
    InstanceUnit,
    LifecycleHealth,
    Probe,
    UnitState,
)
from stackflow.utils.clock import Clock
from stackflow.utils.logging import get_logger

logger = get_logger(__name__)


class BaseFleet(ABC):
    """Launches, observes, drains and terminates instance units.

    Drivers perform I/O only; unit state transitions belong to the
    rolling update controller.
    """

    @abstractmethod
    def launch(self, group: CapacityGroup, version: str, count: int) -> List[InstanceUnit]:
        """Launch ``count`` units at ``version``.

        Returns:
            New units in ``Pending`` state with ``launched_at`` set
        """
        pass

    @abstractmethod
    def observe(self, unit: InstanceUnit, group: CapacityGroup) -> None:
        """Refresh lifecycle health, load balancer probes and signal state on ``unit``."""
        pass

    @abstractmethod
    def drain(self, unit: InstanceUnit, group: CapacityGroup) -> None:
        """Stop routing new traffic to ``unit``."""
        pass

    @abstractmethod
    def terminate(self, unit: InstanceUnit, group: CapacityGroup) -> None:
        """Terminate the instance behind ``unit``."""
        pass


@dataclass(frozen=True)
class UnitSignals:
    """What a simulated unit reports at a point in time."""

    lifecycle: LifecycleHealth
    probe_passed: bool
    signaled: bool = False
    probe_latency: float = 0.0


UnitBehavior = Callable[[InstanceUnit, float], UnitSignals]


def healthy_after(boot_seconds: float, signal: bool = True) -> UnitBehavior:
    """Behavior of a unit that boots in ``boot_seconds`` and stays healthy."""
    def behavior(unit: InstanceUnit, at: float) -> UnitSignals:
        ready = at - unit.launched_at >= boot_seconds
        return UnitSignals(
            lifecycle=LifecycleHealth.RUNNING if ready else LifecycleHealth.PENDING,
            probe_passed=ready,
            signaled=signal and ready,
        )
    return behavior


class SimulatedFleet(BaseFleet):
    """In-process fleet driven by a clock and per-unit behaviors.

    Load balancer probes are synthesized at every ``Interval`` since launch,
    so the probe history looks the same however often the controller polls.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        behavior: Optional[UnitBehavior] = None,
        behaviors: Optional[Dict[str, UnitBehavior]] = None,
        id_prefix: str = "i-sim"
    ):
        """Initialize simulated fleet.

        Args:
            clock: Time source shared with the controller
            behavior: Default behavior for every unit
            behaviors: Per-unit overrides keyed by unit ID
            id_prefix: Prefix for generated unit IDs
        """
        self.clock = clock or Clock()
        self.behavior = behavior or healthy_after(0.0)
        self.behaviors: Dict[str, UnitBehavior] = dict(behaviors or {})
        self.id_prefix = id_prefix
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self.launched: List[str] = []
        self.drained: List[str] = []
        self.terminated: List[str] = []

    def behavior_for(self, unit: InstanceUnit) -> UnitBehavior:
        return self.behaviors.get(unit.unit_id, self.behavior)

    def launch(self, group: CapacityGroup, version: str, count: int) -> List[InstanceUnit]:
        now = self.clock.now()
        units = []
        with self._lock:
            for _ in range(count):
                unit = InstanceUnit(
                    unit_id=f"{self.id_prefix}{next(self._ids):05d}",
                    version=version,
                    state=UnitState.PENDING,
                    launched_at=now,
                )
                self.launched.append(unit.unit_id)
                units.append(unit)
        logger.debug(
            f"Launched {count} unit(s) at {version}: {', '.join(u.unit_id for u in units)}",
            extra={'stack_id': group.stack_id}
        )
        return units

    def observe(self, unit: InstanceUnit, group: CapacityGroup) -> None:
        if unit.lifecycle == LifecycleHealth.TERMINATED:
            return
        now = self.clock.now()
        behavior = self.behavior_for(unit)
        current = behavior(unit, now)
        unit.lifecycle = current.lifecycle
        unit.signaled = unit.signaled or current.signaled

        check = group.elb_health_check
        if check is None:
            return
        last = unit.elb.last_probe_at
        next_at = (last if last is not None else unit.launched_at) + check.interval
        # Only the most recent probes matter to the thresholds
        floor = now - check.interval * unit.elb.max_history
        while next_at < floor:
            next_at += check.interval
        while next_at <= now:
            sample = behavior(unit, next_at)
            unit.elb.record(Probe(at=next_at, passed=sample.probe_passed, latency=sample.probe_latency))
            next_at += check.interval

    def drain(self, unit: InstanceUnit, group: CapacityGroup) -> None:
        with self._lock:
            self.drained.append(unit.unit_id)

    def terminate(self, unit: InstanceUnit, group: CapacityGroup) -> None:
        with self._lock:
            self.terminated.append(unit.unit_id)
        unit.lifecycle = LifecycleHealth.TERMINATED

    def seed(self, group: CapacityGroup, version: str, count: int) -> List[InstanceUnit]:
        """Add ``count`` already-serving units to ``group`` (test and first-run setup)."""
        units = self.launch(group, version, count)
        for unit in units:
            unit.state = UnitState.IN_SERVICE
            unit.lifecycle = LifecycleHealth.RUNNING
            unit.in_service_at = unit.launched_at
            unit.signaled = True
        group.units.extend(units)
        return units
