"""Shared fixtures."""

import logging
import threading
from typing import Any, Dict, List, Optional

import pytest

from stackflow.capacity.fleet import SimulatedFleet
from stackflow.config.models import StackSpec
from stackflow.state.manager import StateManager
from stackflow.utils.clock import Clock


class FakeClock(Clock):
    """Virtual time; sleeping advances the clock instead of blocking."""

    def __init__(self, start: float = 0.0):
        self.t = start
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            return self.t

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.t += seconds

    def sleep(self, seconds: float, cancel_event: Optional[threading.Event] = None) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return True
        if seconds > 0:
            self.advance(seconds)
        return bool(cancel_event and cancel_event.is_set())


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fleet(clock):
    return SimulatedFleet(clock=clock)


@pytest.fixture
def state_manager(tmp_path):
    return StateManager(str(tmp_path / "state" / "test.state.json"), lock_timeout=5)


@pytest.fixture(autouse=True)
def reset_logging():
    """CLI commands install handlers bound to CliRunner streams."""
    yield
    logging.getLogger().handlers.clear()


def make_stack(
    name: str,
    imports: Optional[List[str]] = None,
    exports: Optional[Dict[str, Any]] = None,
    resources: Optional[Dict[str, Any]] = None,
    **kwargs
) -> StackSpec:
    """Build a stack spec; exports default to an output of the same name."""
    return StackSpec.model_validate({
        'name': name,
        'imports': imports or [],
        'exports': {k: (v if v is not None else k) for k, v in (exports or {}).items()},
        'resources': resources or {},
        **kwargs
    })


def capacity_spec(
    version: str = "v1",
    desired: int = 2,
    min_in_service: int = 1,
    max_batch: int = 1,
    max_size: int = 3,
    **overrides
) -> Dict[str, Any]:
    """Capacity group declaration with Instance health checks and no grace period."""
    spec = {
        'Name': 'WebGroup',
        'MinSize': 0,
        'MaxSize': max_size,
        'DesiredCapacity': desired,
        'LaunchTemplateVersion': version,
        'HealthCheckType': 'Instance',
        'HealthCheckGracePeriod': 0,
        'UpdatePolicy': {
            'MinInstancesInService': min_in_service,
            'MaxBatchSize': max_batch,
            'PauseTime': 5,
            'PollInterval': 5,
            'MaxUnknownPolls': 10,
            'MaxBatchWait': 300,
        },
    }
    spec.update(overrides)
    return spec
