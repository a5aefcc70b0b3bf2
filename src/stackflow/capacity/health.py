"""Reconciles load balancer and lifecycle health into one verdict per unit."""

from dataclasses import dataclass
from typing import List, Optional, Tuple

from stackflow.capacity.models import (
    CapacityGroup,
    HealthCheckType,
    HealthVerdict,
    InstanceUnit,
    LifecycleHealth,
    Probe,
)
from stackflow.utils.clock import Clock
from stackflow.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class HealthReport:
    """Verdict plus the evidence behind it."""

    unit_id: str
    verdict: HealthVerdict
    reason: str
    in_grace: bool = False
    probe_age: Optional[float] = None  # seconds since the last load balancer probe
    stale: bool = False  # a Healthy verdict older than the ELB could detect a failure

    @property
    def is_healthy(self) -> bool:
        return self.verdict == HealthVerdict.HEALTHY

    @property
    def is_unhealthy(self) -> bool:
        return self.verdict == HealthVerdict.UNHEALTHY


class HealthReconciler:
    """Merges ELB target health and instance lifecycle health.

    The verdict depends on the group's ``HealthCheckType``:

    - ``Instance``: only the lifecycle signal counts.
    - ``LoadBalancer``: Healthy requires a running instance and
      ``HealthyThreshold`` consecutive passing probes; Unhealthy follows
      ``UnhealthyThreshold`` consecutive failures (or a failed instance);
      anything else is Unknown.

    Before ``HealthCheckGracePeriod`` has elapsed since launch every verdict
    is Unknown, whatever the underlying signals say.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or Clock()

    def verdict(self, unit: InstanceUnit, group: CapacityGroup, now: Optional[float] = None) -> HealthVerdict:
        """Reconciled verdict for ``unit``."""
        return self.assess(unit, group, now).verdict

    def assess(self, unit: InstanceUnit, group: CapacityGroup, now: Optional[float] = None) -> HealthReport:
        """Reconciled verdict with grace and staleness information."""
        now = self.clock.now() if now is None else now
        last_probe_at = unit.elb.last_probe_at
        probe_age = now - last_probe_at if last_probe_at is not None else None

        grace_ends = unit.launched_at + group.health_check_grace_period
        if now < grace_ends:
            return HealthReport(
                unit_id=unit.unit_id,
                verdict=HealthVerdict.UNKNOWN,
                reason=f"in grace period for another {grace_ends - now:.1f}s",
                in_grace=True,
                probe_age=probe_age,
            )

        if group.health_check_type == HealthCheckType.INSTANCE:
            return self._assess_instance(unit, probe_age)
        return self._assess_load_balancer(unit, group, probe_age)

    def _assess_instance(self, unit: InstanceUnit, probe_age: Optional[float]) -> HealthReport:
        if unit.lifecycle == LifecycleHealth.RUNNING:
            verdict, reason = HealthVerdict.HEALTHY, "instance running"
        elif unit.lifecycle.is_failed:
            verdict, reason = HealthVerdict.UNHEALTHY, f"instance {unit.lifecycle.value}"
        else:
            verdict, reason = HealthVerdict.UNKNOWN, f"instance {unit.lifecycle.value}"
        return HealthReport(unit.unit_id, verdict, reason, probe_age=probe_age)

    def _assess_load_balancer(
        self,
        unit: InstanceUnit,
        group: CapacityGroup,
        probe_age: Optional[float]
    ) -> HealthReport:
        check = group.elb_health_check
        if unit.lifecycle.is_failed:
            return HealthReport(
                unit.unit_id,
                HealthVerdict.UNHEALTHY,
                f"instance {unit.lifecycle.value}",
                probe_age=probe_age,
            )

        passing, failing = consecutive_streaks(unit.elb.probes, check.interval, check.timeout)

        if failing >= check.unhealthy_threshold:
            return HealthReport(
                unit.unit_id,
                HealthVerdict.UNHEALTHY,
                f"{failing} consecutive failed probes (threshold {check.unhealthy_threshold})",
                probe_age=probe_age,
            )

        if passing >= check.healthy_threshold and unit.lifecycle == LifecycleHealth.RUNNING:
            stale = probe_age is not None and probe_age > check.staleness_limit
            return HealthReport(
                unit.unit_id,
                HealthVerdict.HEALTHY,
                f"{passing} consecutive passing probes (threshold {check.healthy_threshold})",
                probe_age=probe_age,
                stale=stale,
            )

        return HealthReport(
            unit.unit_id,
            HealthVerdict.UNKNOWN,
            f"instance {unit.lifecycle.value}, {passing} passing / {failing} failing probes",
            probe_age=probe_age,
        )


def consecutive_streaks(probes: List[Probe], interval: float, timeout: float) -> Tuple[int, int]:
    """Length of the trailing run of passing or failing probes.

    A probe slower than ``timeout`` counts as failed. A gap between probes
    wider than ``interval + timeout`` breaks the run.

    Returns:
        (passing, failing); at most one of them is non-zero
    """
    if not probes:
        return 0, 0

    def outcome(probe: Probe) -> bool:
        return probe.passed and probe.latency <= timeout

    latest = outcome(probes[-1])
    count = 1
    for previous, current in zip(reversed(probes[:-1]), reversed(probes[1:])):
        if current.at - previous.at > interval + timeout:
            break
        if outcome(previous) != latest:
            break
        count += 1

    return (count, 0) if latest else (0, count)
