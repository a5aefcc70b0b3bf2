"""Runtime model of capacity groups and the instance units they contain."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class HealthCheckType(str, Enum):
    """Which signal decides whether a unit is healthy."""
    INSTANCE = "Instance"
    LOAD_BALANCER = "LoadBalancer"


class UnitState(str, Enum):
    """Lifecycle state of an instance unit within its group."""
    PENDING = "Pending"
    IN_SERVICE = "InService"
    DRAINING = "Draining"
    TERMINATED = "Terminated"


class LifecycleHealth(str, Enum):
    """Compute-level status of the instance backing a unit."""
    PENDING = "pending"
    RUNNING = "running"
    IMPAIRED = "impaired"
    STOPPED = "stopped"
    TERMINATED = "terminated"

    @property
    def is_failed(self) -> bool:
        return self in (LifecycleHealth.IMPAIRED, LifecycleHealth.STOPPED, LifecycleHealth.TERMINATED)


class HealthVerdict(str, Enum):
    """Reconciled health of a unit."""
    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class Probe:
    """One load balancer health check result."""

    at: float
    passed: bool
    latency: float = 0.0


@dataclass
class ElbHealth:
    """Probe history reported by the load balancer for one target."""

    probes: List[Probe] = field(default_factory=list)
    max_history: int = 32

    def record(self, probe: Probe) -> None:
        """Append a probe, keeping a bounded history."""
        self.probes.append(probe)
        if len(self.probes) > self.max_history:
            del self.probes[:-self.max_history]

    @property
    def last_probe_at(self) -> Optional[float]:
        return self.probes[-1].at if self.probes else None


@dataclass
class InstanceUnit:
    """A single compute instance managed by a capacity group."""

    unit_id: str
    version: str
    state: UnitState = UnitState.PENDING
    launched_at: float = 0.0
    in_service_at: Optional[float] = None
    lifecycle: LifecycleHealth = LifecycleHealth.PENDING
    elb: ElbHealth = field(default_factory=ElbHealth)
    signaled: bool = False

    @property
    def is_live(self) -> bool:
        """Counts toward group size (launched and not yet terminated)."""
        return self.state != UnitState.TERMINATED

    def to_record(self) -> Dict[str, Any]:
        """Persisted form; health is always re-observed.

        Timestamps are wall-clock seconds so a later run can tell how long
        ago a unit booted.
        """
        return {
            "unit_id": self.unit_id,
            "version": self.version,
            "state": self.state.value,
            "launched_at": self.launched_at,
            "in_service_at": self.in_service_at,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "InstanceUnit":
        return cls(
            unit_id=data["unit_id"],
            version=data["version"],
            state=UnitState(data.get("state", UnitState.IN_SERVICE.value)),
            launched_at=float(data.get("launched_at") or 0.0),
            in_service_at=data.get("in_service_at"),
        )


@dataclass
class CapacityGroup:
    """Capacity group as seen by the rolling update controller."""

    name: str
    min_size: int
    max_size: int
    desired_capacity: int
    launch_version: str
    health_check_type: HealthCheckType
    health_check_grace_period: float
    elb_health_check: Optional[Any] = None  # config.models.ElbHealthCheck
    units: List[InstanceUnit] = field(default_factory=list)
    stack_id: Optional[str] = None
    launch_template_id: Optional[str] = None
    target_group_arn: Optional[str] = None
    subnet_ids: List[str] = field(default_factory=list)

    @classmethod
    def from_spec(cls, spec, stack_id: str, units: Optional[List[InstanceUnit]] = None) -> "CapacityGroup":
        """Build a group from a ``CapacityGroupSpec`` and previously tracked units."""
        units = list(units or [])
        versions = {u.version for u in units if u.is_live}
        # Until the update finishes, the group's version is whatever it last converged on
        current_version = versions.pop() if len(versions) == 1 else spec.launch_version
        return cls(
            name=spec.name,
            min_size=spec.min_size,
            max_size=spec.max_size,
            desired_capacity=spec.desired_capacity,
            launch_version=current_version,
            health_check_type=spec.health_check_type,
            health_check_grace_period=spec.health_check_grace_period,
            elb_health_check=spec.elb_health_check,
            units=units,
            stack_id=stack_id,
            launch_template_id=spec.launch_template_id,
            target_group_arn=spec.target_group_arn,
            subnet_ids=list(spec.subnet_ids),
        )

    def live_units(self) -> List[InstanceUnit]:
        return [u for u in self.units if u.is_live]

    def in_service_count(self) -> int:
        return sum(1 for u in self.units if u.state == UnitState.IN_SERVICE)

    def units_not_at(self, version: str) -> List[InstanceUnit]:
        """In-service units still running another launch version, oldest first."""
        return [
            u for u in self.units
            if u.state == UnitState.IN_SERVICE and u.version != version
        ]

    def get_unit(self, unit_id: str) -> Optional[InstanceUnit]:
        for unit in self.units:
            if unit.unit_id == unit_id:
                return unit
        return None

    def remove_terminated(self) -> None:
        self.units = [u for u in self.units if u.is_live]
