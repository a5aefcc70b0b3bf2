"""Time source used by polling loops."""

import threading
import time
from typing import Optional


class Clock:
    """Wall clock with a cancellable sleep."""

    def now(self) -> float:
        """Seconds since the epoch.

        Unit launch times are persisted and compared against this value by
        later runs, so it must not be a per-process scale.
        """
        return time.time()

    def sleep(self, seconds: float, cancel_event: Optional[threading.Event] = None) -> bool:
        """Sleep for ``seconds``.

        Returns:
            True if the sleep was interrupted by ``cancel_event``
        """
        if seconds <= 0:
            return bool(cancel_event and cancel_event.is_set())
        if cancel_event is None:
            time.sleep(seconds)
            return False
        return cancel_event.wait(seconds)
