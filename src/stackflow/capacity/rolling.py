"""Batched, capacity-preserving replacement of instance units."""

import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from stackflow.capacity.fleet import BaseFleet
from stackflow.capacity.health import HealthReconciler, HealthReport
from stackflow.capacity.models import (
    CapacityGroup,
    HealthCheckType,
    InstanceUnit,
    UnitState,
)
from stackflow.config.models import RollingUpdatePolicy
from stackflow.utils.clock import Clock
from stackflow.utils.errors import (
    ErrorContext,
    PolicyError,
    RollingUpdateCancelled,
    RollingUpdateError,
    error_handler,
)
from stackflow.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class InServiceSample:
    """In-service count observed right after a unit state change."""

    at: float
    in_service: int
    event: str


@dataclass
class BatchResult:
    """Outcome of a single batch."""

    number: int
    launched: List[str] = field(default_factory=list)
    replaced: List[str] = field(default_factory=list)
    polls: int = 0
    duration: float = 0.0


@dataclass
class RollingUpdateResult:
    """Complete rolling update result."""

    group_name: str
    target_version: str
    batches: List[BatchResult] = field(default_factory=list)
    samples: List[InServiceSample] = field(default_factory=list)
    completed: bool = False

    def min_in_service_observed(self) -> Optional[int]:
        """Lowest in-service count across all samples."""
        return min((s.in_service for s in self.samples), default=None)

    def replacement_batches(self) -> List[BatchResult]:
        """Batches that drained old units."""
        return [b for b in self.batches if b.replaced]


def validate_policy(group: CapacityGroup, policy: RollingUpdatePolicy) -> None:
    """Reject policies that could never finish or would drop serving capacity.

    Raises:
        PolicyError: If the policy is unsafe for ``group``
    """
    context = ErrorContext(stack_id=group.stack_id, decision_point="policy validation")
    desired = group.desired_capacity

    if policy.min_in_service >= desired:
        headroom = desired - policy.min_in_service
        detail = ""
        if policy.max_batch_size >= desired:
            detail = f" and MaxBatchSize {policy.max_batch_size} would replace the whole group at once"
        raise PolicyError(
            f"Group '{group.name}' has no replacement headroom: MinInstancesInService "
            f"{policy.min_in_service} leaves {max(headroom, 0)} of {desired} instances replaceable{detail}",
            context=context,
            suggestions=[f"Set MinInstancesInService below {desired}"]
        )

    if group.health_check_type == HealthCheckType.LOAD_BALANCER and group.elb_health_check is None:
        raise PolicyError(
            f"Group '{group.name}' uses LoadBalancer health checks without a probe configuration",
            context=context
        )

    if policy.max_batch_wait <= group.health_check_grace_period:
        raise PolicyError(
            f"Group '{group.name}': MaxBatchWait {policy.max_batch_wait}s must exceed "
            f"HealthCheckGracePeriod {group.health_check_grace_period}s",
            context=context
        )

    if group.elb_health_check is not None:
        limit = group.elb_health_check.staleness_limit
        if policy.pause_time < limit or policy.poll_interval < limit:
            logger.warning(
                f"Group '{group.name}': PauseTime {policy.pause_time}s / poll interval "
                f"{policy.poll_interval}s is shorter than Interval x UnhealthyThreshold ({limit}s); "
                f"stale Healthy verdicts will be re-checked before draining",
                extra={'stack_id': group.stack_id}
            )


class RollingUpdateController:
    """Drives a capacity group from its current launch version to a target version.

    New units are launched first and must be verified Healthy before any old
    unit is drained, so the in-service count never drops below
    ``MinInstancesInService`` once the group has reached it.
    """

    def __init__(
        self,
        fleet: BaseFleet,
        reconciler: Optional[HealthReconciler] = None,
        clock: Optional[Clock] = None
    ):
        """Initialize rolling update controller.

        Args:
            fleet: Driver that launches and terminates units
            reconciler: Health reconciler (shares ``clock`` by default)
            clock: Time source for polling and pauses
        """
        self.fleet = fleet
        self.clock = clock or Clock()
        self.reconciler = reconciler or HealthReconciler(self.clock)
        self.logger = get_logger(__name__)

    def execute(
        self,
        group: CapacityGroup,
        policy: RollingUpdatePolicy,
        target_version: str,
        cancel_event: Optional[threading.Event] = None
    ) -> RollingUpdateResult:
        """Replace every unit not at ``target_version``.

        Args:
            group: Group to update; its unit list is updated in place
            policy: Batch sizing, pauses and wait budgets
            target_version: Launch configuration version to converge on
            cancel_event: Set externally to stop before the next launch

        Returns:
            RollingUpdateResult with per-batch details and in-service samples

        Raises:
            PolicyError: If the policy is unsafe for the group
            RollingUpdateError: If a batch cannot be verified healthy
            RollingUpdateCancelled: If ``cancel_event`` was set
        """
        validate_policy(group, policy)

        result = RollingUpdateResult(group_name=group.name, target_version=target_version)
        floor = policy.min_in_service if group.in_service_count() >= policy.min_in_service else None
        verified: Dict[str, InstanceUnit] = {}
        flaps: Dict[str, int] = {}

        self.logger.info(
            f"Rolling update of '{group.name}' to {target_version}: "
            f"{len(group.units_not_at(target_version))} unit(s) to replace",
            extra={'stack_id': group.stack_id}
        )
        self._sample(group, result, "start", floor)

        try:
            # Units left draining by an interrupted run are already out of service
            draining = [u for u in group.units if u.state == UnitState.DRAINING]
            if draining:
                batch = BatchResult(number=len(result.batches) + 1)
                result.batches.append(batch)
                self._retire(group, policy, draining, batch, cancel_event, result, floor)

            # Units left pending by an interrupted run are verified before anything else
            pending = [u for u in group.units if u.state == UnitState.PENDING]
            if pending:
                batch = BatchResult(number=len(result.batches) + 1, launched=[u.unit_id for u in pending])
                result.batches.append(batch)
                self._await_batch(group, policy, pending, batch, cancel_event, result, floor)
                verified.update({u.unit_id: u for u in pending})

            # Fill missing capacity (first deployment or after manual scale-in)
            while self._serving_or_pending(group) < group.desired_capacity:
                self._check_cancelled(cancel_event, group, len(result.batches) + 1)
                count = min(policy.max_batch_size, group.desired_capacity - self._serving_or_pending(group))
                batch = self._launch_batch(group, target_version, count, result, floor)
                self._await_batch(group, policy, self._units(group, batch.launched), batch, cancel_event, result, floor)
                verified.update({uid: group.get_unit(uid) for uid in batch.launched})

            # Replace old-version units
            while group.units_not_at(target_version):
                self._check_cancelled(cancel_event, group, len(result.batches) + 1)
                old_units = group.units_not_at(target_version)

                # Replacements verified above already stand in for this many old units
                surplus = group.in_service_count() - group.desired_capacity
                if surplus > 0:
                    count = min(surplus, len(old_units), group.in_service_count() - policy.min_in_service)
                    batch = BatchResult(number=len(result.batches) + 1)
                    result.batches.append(batch)
                    self._retire(group, policy, old_units[:count], batch, cancel_event, result, floor)
                    continue

                size = self._batch_size(group, policy, len(old_units))
                batch = self._launch_batch(group, target_version, size, result, floor)
                new_units = self._units(group, batch.launched)
                self._await_batch(group, policy, new_units, batch, cancel_event, result, floor)
                self._reverify(group, policy, verified, flaps, batch)
                verified.update({u.unit_id: u for u in new_units})
                self._retire(group, policy, old_units[:size], batch, cancel_event, result, floor)

            # Scale in surplus units of the target version
            surplus = group.in_service_count() - group.desired_capacity
            if surplus > 0:
                extras = [u for u in group.units if u.state == UnitState.IN_SERVICE][:surplus]
                batch = BatchResult(number=len(result.batches) + 1)
                result.batches.append(batch)
                self._retire(group, policy, extras, batch, cancel_event, result, floor)

        except RollingUpdateError as e:
            e.result = result
            raise

        group.launch_version = target_version
        result.completed = True
        self._sample(group, result, "complete", floor)
        self.logger.info(
            f"Rolling update of '{group.name}' complete: {len(result.batches)} batch(es), "
            f"lowest in-service count {result.min_in_service_observed()}",
            extra={'stack_id': group.stack_id}
        )
        return result

    def _batch_size(self, group: CapacityGroup, policy: RollingUpdatePolicy, remaining_old: int) -> int:
        """min(MaxBatchSize, in-service - MinInstancesInService, remaining old).

        Replacements launch before old units drain, so a group without room
        above ``DesiredCapacity`` exceeds ``MaxSize`` by at most one batch.
        """
        total = group.in_service_count()
        size = min(policy.max_batch_size, total - policy.min_in_service, remaining_old)
        if size < 1:
            raise RollingUpdateError(
                f"Group '{group.name}' cannot make progress: {total} in service, "
                f"MinInstancesInService {policy.min_in_service}",
                context=ErrorContext(stack_id=group.stack_id, decision_point="batch sizing")
            )
        overshoot = len(group.live_units()) + size - group.max_size
        if overshoot > 0:
            self.logger.warning(
                f"Group '{group.name}' will exceed MaxSize {group.max_size} by {overshoot} "
                f"until the next batch of old units is retired",
                extra={'stack_id': group.stack_id}
            )
        return size

    def _launch_batch(
        self,
        group: CapacityGroup,
        version: str,
        count: int,
        result: RollingUpdateResult,
        floor: Optional[int]
    ) -> BatchResult:
        batch = BatchResult(number=len(result.batches) + 1)
        result.batches.append(batch)
        self.logger.info(
            f"Batch {batch.number}: launching {count} unit(s) at {version}",
            extra={'stack_id': group.stack_id, 'batch': batch.number}
        )
        try:
            units = self.fleet.launch(group, version, count)
        except Exception as e:
            raise self._fleet_error(e, group, batch.number, "launch", [])
        # Tracked before anything else can fail
        group.units.extend(units)
        batch.launched = [u.unit_id for u in units]
        self._sample(group, result, f"batch {batch.number} launched", floor)
        return batch

    def _await_batch(
        self,
        group: CapacityGroup,
        policy: RollingUpdatePolicy,
        units: List[InstanceUnit],
        batch: BatchResult,
        cancel_event: Optional[threading.Event],
        result: RollingUpdateResult,
        floor: Optional[int]
    ) -> None:
        """Poll until every unit is Healthy (and signaled, if required)."""
        started = self.clock.now()
        pending = {u.unit_id: u for u in units}
        unknown_polls = 0
        last_reports: Dict[str, HealthReport] = {}

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise self._cancelled(group, batch.number, list(pending))

            now = self.clock.now()
            batch.polls += 1
            for unit in list(pending.values()):
                try:
                    self.fleet.observe(unit, group)
                except Exception as e:
                    error = self._fleet_error(e, group, batch.number, "observe", [unit.unit_id])
                    self._discard_batch(group, batch, result, floor)
                    self.logger.error(error.message, extra={'stack_id': group.stack_id, 'batch': batch.number})
                    raise error
                report = self.reconciler.assess(unit, group, now)
                last_reports[unit.unit_id] = report

                if report.is_unhealthy:
                    self._fail_batch(
                        group, batch, result, floor,
                        f"unit {unit.unit_id} is Unhealthy after grace period ({report.reason})",
                        [unit.unit_id], "health verification"
                    )

                if report.is_healthy and report.stale:
                    self.logger.debug(
                        f"Ignoring stale Healthy verdict (last probe {report.probe_age:.1f}s ago)",
                        extra={'stack_id': group.stack_id, 'unit_id': unit.unit_id}
                    )
                    continue

                if report.is_healthy and (unit.signaled or not policy.wait_on_signals):
                    unit.state = UnitState.IN_SERVICE
                    unit.in_service_at = now
                    del pending[unit.unit_id]
                    self._sample(group, result, f"{unit.unit_id} in service", floor)

            if not pending:
                batch.duration = self.clock.now() - started
                self.logger.info(
                    f"Batch {batch.number}: all {len(units)} unit(s) verified after {batch.polls} poll(s)",
                    extra={'stack_id': group.stack_id, 'batch': batch.number}
                )
                return

            # Polls while every unit is still in grace do not spend the retry budget
            if not all(last_reports[uid].in_grace for uid in pending):
                unknown_polls += 1

            elapsed = now - started
            waiting = sorted(pending)
            if unknown_polls >= policy.max_unknown_polls:
                self._fail_batch(
                    group, batch, result, floor,
                    f"retry budget of {policy.max_unknown_polls} polls exhausted without a Healthy verdict "
                    f"for {', '.join(waiting)}",
                    waiting, "health verification"
                )
            if elapsed >= policy.max_batch_wait:
                self._fail_batch(
                    group, batch, result, floor,
                    f"batch wait ceiling of {policy.max_batch_wait}s exceeded waiting for {', '.join(waiting)}",
                    waiting, "health verification"
                )
            if policy.wait_on_signals and elapsed >= policy.signal_timeout:
                unsignaled = sorted(uid for uid, u in pending.items() if not u.signaled)
                if unsignaled:
                    self._fail_batch(
                        group, batch, result, floor,
                        f"no completion signal within {policy.signal_timeout}s from {', '.join(unsignaled)}",
                        unsignaled, "resource signals"
                    )

            if self.clock.sleep(policy.poll_interval, cancel_event):
                raise self._cancelled(group, batch.number, list(pending))

    def _reverify(
        self,
        group: CapacityGroup,
        policy: RollingUpdatePolicy,
        verified: Dict[str, InstanceUnit],
        flaps: Dict[str, int],
        batch: BatchResult
    ) -> None:
        """Re-check replacements from earlier batches before draining more old units.

        A replacement that was Healthy and has since turned Unhealthy means the
        verdicts are oscillating; continuing would replace capacity in a loop.
        """
        now = self.clock.now()
        flapping = []
        for unit_id, unit in verified.items():
            if not unit.is_live:
                continue
            try:
                self.fleet.observe(unit, group)
            except Exception as e:
                raise self._fleet_error(e, group, batch.number, "observe", [unit_id])
            if self.reconciler.assess(unit, group, now).is_unhealthy:
                flaps[unit_id] = flaps.get(unit_id, 0) + 1
                flapping.append(unit_id)

        if not flapping:
            return

        total_flaps = sum(flaps.values())
        if total_flaps > policy.max_health_flaps:
            raise RollingUpdateError(
                f"Health oscillation in '{group.name}': previously verified unit(s) "
                f"{', '.join(sorted(flapping))} turned Unhealthy ({total_flaps} flap(s), "
                f"allowed {policy.max_health_flaps}); halting before batch {batch.number} drains old units",
                context=ErrorContext(
                    stack_id=group.stack_id,
                    batch=batch.number,
                    unit_ids=sorted(flapping),
                    decision_point="pre-drain re-verification"
                ),
                suggestions=[
                    'Raise PauseTime above Interval x UnhealthyThreshold',
                    'Lengthen HealthCheckGracePeriod to cover application warm-up'
                ]
            )
        self.logger.warning(
            f"Unit(s) {', '.join(sorted(flapping))} flapped to Unhealthy "
            f"({total_flaps}/{policy.max_health_flaps} allowed)",
            extra={'stack_id': group.stack_id, 'batch': batch.number}
        )

    def _retire(
        self,
        group: CapacityGroup,
        policy: RollingUpdatePolicy,
        old_units: List[InstanceUnit],
        batch: BatchResult,
        cancel_event: Optional[threading.Event],
        result: RollingUpdateResult,
        floor: Optional[int]
    ) -> None:
        """Drain, pause, then terminate ``old_units``."""
        for unit in old_units:
            try:
                self.fleet.drain(unit, group)
            except Exception as e:
                raise self._fleet_error(e, group, batch.number, "drain", [unit.unit_id])
            unit.state = UnitState.DRAINING
            self._sample(group, result, f"{unit.unit_id} draining", floor)

        interrupted = self.clock.sleep(policy.pause_time, cancel_event)

        # Draining units are already out of service; finish them even when cancelled
        try:
            for unit in old_units:
                try:
                    self.fleet.terminate(unit, group)
                except Exception as e:
                    raise self._fleet_error(e, group, batch.number, "terminate", [unit.unit_id])
                unit.state = UnitState.TERMINATED
                batch.replaced.append(unit.unit_id)
        finally:
            # Units that could not be terminated stay Draining for the next run
            group.remove_terminated()
        self._sample(group, result, f"batch {batch.number} retired", floor)

        if interrupted:
            raise self._cancelled(group, batch.number + 1, [])

    def _fail_batch(
        self,
        group: CapacityGroup,
        batch: BatchResult,
        result: RollingUpdateResult,
        floor: Optional[int],
        reason: str,
        offending: List[str],
        decision_point: str
    ) -> None:
        """Terminate the batch's new units and raise; old units are left untouched."""
        self._discard_batch(group, batch, result, floor)

        message = f"Rolling update of '{group.name}' stuck at batch {batch.number}: {reason}"
        self.logger.error(message, extra={'stack_id': group.stack_id, 'batch': batch.number})
        raise RollingUpdateError(
            message,
            context=ErrorContext(
                stack_id=group.stack_id,
                batch=batch.number,
                unit_ids=offending,
                decision_point=decision_point
            ),
            suggestions=['Old capacity was preserved; inspect the listed units before retrying']
        )

    def _discard_batch(
        self,
        group: CapacityGroup,
        batch: BatchResult,
        result: RollingUpdateResult,
        floor: Optional[int]
    ) -> None:
        for unit_id in batch.launched:
            unit = group.get_unit(unit_id)
            if unit is None or not unit.is_live:
                continue
            try:
                self.fleet.terminate(unit, group)
            except Exception as e:
                self.logger.error(
                    f"Failed to terminate unit from failed batch: {e}",
                    extra={'stack_id': group.stack_id, 'unit_id': unit_id}
                )
                continue
            unit.state = UnitState.TERMINATED
        group.remove_terminated()
        self._sample(group, result, f"batch {batch.number} failed", floor)

    def _fleet_error(
        self,
        error: Exception,
        group: CapacityGroup,
        batch_number: int,
        operation: str,
        unit_ids: List[str]
    ) -> RollingUpdateError:
        """Map a fleet driver failure to a rolling update error naming the batch and units."""
        if isinstance(error, RollingUpdateError):
            return error
        mapped = error_handler.handle_exception(
            error,
            ErrorContext(
                stack_id=group.stack_id,
                batch=batch_number,
                unit_ids=unit_ids or None,
                decision_point=operation
            )
        )
        target = f" {', '.join(unit_ids)}" if unit_ids else ""
        return RollingUpdateError(
            f"Batch {batch_number} of '{group.name}' failed to {operation}{target}: {mapped.message}",
            context=mapped.context,
            suggestions=list(mapped.suggestions),
            cause=error
        )

    def _sample(self, group: CapacityGroup, result: RollingUpdateResult, event: str, floor: Optional[int]) -> None:
        count = group.in_service_count()
        result.samples.append(InServiceSample(at=self.clock.now(), in_service=count, event=event))
        if floor is not None and count < floor:
            raise RollingUpdateError(
                f"In-service count of '{group.name}' fell to {count}, below MinInstancesInService {floor}",
                context=ErrorContext(stack_id=group.stack_id, decision_point=event)
            )

    def _check_cancelled(self, cancel_event: Optional[threading.Event], group: CapacityGroup, batch_number: int) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise self._cancelled(group, batch_number, [])

    def _cancelled(self, group: CapacityGroup, batch_number: int, pending: List[str]) -> RollingUpdateCancelled:
        self.logger.warning(
            f"Rolling update of '{group.name}' cancelled at batch {batch_number}",
            extra={'stack_id': group.stack_id, 'batch': batch_number}
        )
        return RollingUpdateCancelled(
            f"Rolling update of '{group.name}' cancelled at batch {batch_number}; "
            f"{len(group.live_units())} unit(s) tracked, {len(pending)} awaiting verification",
            context=ErrorContext(
                stack_id=group.stack_id,
                batch=batch_number,
                unit_ids=sorted(pending) or None,
                decision_point="cancellation"
            )
        )

    @staticmethod
    def _serving_or_pending(group: CapacityGroup) -> int:
        return sum(1 for u in group.units if u.state in (UnitState.PENDING, UnitState.IN_SERVICE))

    @staticmethod
    def _units(group: CapacityGroup, unit_ids: List[str]) -> List[InstanceUnit]:
        return [group.get_unit(uid) for uid in unit_ids]
