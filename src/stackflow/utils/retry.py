"""Throttle-aware retries for CloudFormation, EC2 and ELBv2 calls.

Only failures that say "try again later" are retried: API throttling, the
service being briefly unavailable, and dropped connections. Anything else
(validation errors, missing resources, bad credentials) propagates on the
first attempt so the caller can map it to a deployment error.
"""

import functools
import random
import time
from typing import Any, Callable, Dict, FrozenSet, Optional, Sequence, TypeVar

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from stackflow.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

_UNAVAILABLE = frozenset({'RequestTimeout', 'ServiceUnavailable', 'InternalFailure', 'InternalError'})

# Error codes each service uses to ask for a back-off
THROTTLING_CODES: Dict[str, FrozenSet[str]] = {
    'cloudformation': _UNAVAILABLE | {'Throttling', 'ThrottlingException'},
    'ec2': _UNAVAILABLE | {'RequestLimitExceeded', 'Unavailable', 'InsufficientInstanceCapacity'},
    'elbv2': _UNAVAILABLE | {'Throttling', 'TooManyRequestsException'},
}

_DROPPED_CONNECTIONS = (
    ConnectionError,
    TimeoutError,
    EndpointConnectionError,
    ConnectionClosedError,
    ReadTimeoutError,
)


class ThrottleRetry:
    """Calls a function again while the service it talks to is throttling.

    Args:
        services: Keys of :data:`THROTTLING_CODES` the call talks to; empty accepts every service's codes
        retries: Attempts after the first one
        base_delay: Back-off before the first retry, doubled for each later one
        max_delay: Upper bound for a single back-off
        jitter: Spread back-offs so parallel stacks do not retry in lockstep
        sleep: Replaces ``time.sleep`` in tests
    """

    def __init__(
        self,
        services: Sequence[str] = (),
        retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: bool = True,
        sleep: Callable[[float], Any] = time.sleep
    ):
        unknown = [s for s in services if s not in THROTTLING_CODES]
        if unknown:
            raise ValueError(f"No throttling codes known for {', '.join(unknown)}")
        self.services = tuple(services)
        self.codes = frozenset().union(*(THROTTLING_CODES[s] for s in self.services or THROTTLING_CODES))
        self.retries = retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.sleep = sleep

    def is_transient(self, error: Exception) -> bool:
        """Whether ``error`` is worth another attempt."""
        if isinstance(error, ClientError):
            return error.response.get('Error', {}).get('Code') in self.codes
        return isinstance(error, _DROPPED_CONNECTIONS)

    def delay_for(self, retry: int) -> float:
        """Back-off before retry number ``retry`` (1-based)."""
        delay = min(self.base_delay * 2 ** (retry - 1), self.max_delay)
        if self.jitter:
            # Equal jitter: at least half the back-off, at most all of it
            delay = delay / 2 + random.uniform(0, delay / 2)
        return delay

    def call(self, func: Callable[..., T], *args, log_extra: Optional[Dict[str, Any]] = None, **kwargs) -> T:
        operation = f"{'+'.join(self.services) or 'aws'}:{getattr(func, '__name__', 'call')}"
        extra = {**(log_extra or {}), 'operation': operation}
        retry = 0
        while True:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if retry >= self.retries or not self.is_transient(e):
                    raise
                retry += 1
                delay = self.delay_for(retry)
                logger.warning(
                    f"{operation} throttled ({_describe(e)}); retry {retry}/{self.retries} in {delay:.1f}s",
                    extra=extra
                )
                self.sleep(delay)


def _describe(error: Exception) -> str:
    if isinstance(error, ClientError):
        return error.response.get('Error', {}).get('Code', 'ClientError')
    return type(error).__name__


def retried(*services: str, **options) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorate an AWS call so throttling from any of ``services`` is retried.

    ``options`` are passed to :class:`ThrottleRetry`.
    """
    policy = ThrottleRetry(services, **options)

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            # Fleet calls take the unit and its capacity group
            log_extra = {}
            for arg in args:
                for field in ('stack_id', 'unit_id'):
                    if getattr(arg, field, None):
                        log_extra.setdefault(field, getattr(arg, field))
            return policy.call(func, *args, log_extra=log_extra, **kwargs)
        return wrapper

    return decorator
