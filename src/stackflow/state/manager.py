"""The project's state file and its lock.

One JSON file per project holds every stack record, the export registry
and recorded approval decisions. A ``deploy`` run and an ``approve``
command issued from another terminal write the same file, so every
read-modify-write happens under an exclusive ``flock`` on a sibling
``.lock`` file. Threads of one process deploying a wave in parallel
additionally share an in-process lock, since ``flock`` is per process.
"""

import fcntl
import json
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from pydantic import ValidationError

from stackflow.state.models import State
from stackflow.utils.errors import StateError
from stackflow.utils.logging import get_logger

logger = get_logger(__name__)

LOCK_POLL_INTERVAL = 0.1


class StateLockError(StateError):
    """Another process held the state lock for longer than the timeout."""


class StateNotFoundError(StateError):
    """The state file has not been created yet."""


class StateManager:
    """Loads, saves and locks the state file at ``state_path``.

    Mutations go through :meth:`transaction`, which re-reads the file after
    taking the lock so that a change made by another process in the
    meantime is never overwritten.
    """

    def __init__(self, state_path: str, lock_timeout: float = 30):
        self.state_path = Path(state_path)
        self.lock_path = self.state_path.with_suffix(".lock")
        self.lock_timeout = lock_timeout
        self._lock_fd: Optional[int] = None
        self._guard = threading.RLock()

    def exists(self) -> bool:
        return self.state_path.exists()

    def load(self) -> State:
        """Read and validate the state file.

        Raises:
            StateNotFoundError: No state file yet
            StateError: Unreadable, not JSON, or not a valid state document
        """
        data = self._read()
        try:
            return State.from_dict(data)
        except ValidationError as e:
            raise StateError(f"State file {self.state_path} does not hold a valid state: {e}", cause=e)

    def _read(self) -> Dict[str, Any]:
        try:
            text = self.state_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise StateNotFoundError(f"No state file at {self.state_path}; nothing has been deployed yet")
        except OSError as e:
            raise StateError(f"Cannot read state file {self.state_path}: {e}", cause=e)
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise StateError(f"State file {self.state_path} is not valid JSON: {e}", cause=e)

    def save(self, state: State) -> None:
        """Replace the state file atomically."""
        directory = self.state_path.parent
        directory.mkdir(parents=True, exist_ok=True)
        # Readers see either the previous document or the new one
        fd, scratch = tempfile.mkstemp(prefix=f".{self.state_path.name}.", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as out:
                json.dump(state.to_dict(), out, indent=2)
            os.replace(scratch, self.state_path)
        except OSError as e:
            Path(scratch).unlink(missing_ok=True)
            raise StateError(f"Cannot write state file {self.state_path}: {e}", cause=e)

    def initialize(self, project_name: str) -> State:
        state = State(project_name=project_name)
        self.save(state)
        return state

    def load_or_initialize(self, project_name: str) -> State:
        """Load the state, writing an empty one for ``project_name`` on first use."""
        with self._guard:
            if self.exists():
                return self.load()
            logger.info(f"Creating state file {self.state_path}")
            return self.initialize(project_name)

    def lock(self, timeout: Optional[float] = None) -> None:
        """Take the cross-process lock, polling until ``timeout`` seconds pass.

        Raises:
            StateLockError: The lock is still held by someone else
        """
        timeout = self.lock_timeout if timeout is None else timeout
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_CREAT | os.O_RDWR)
        deadline = time.monotonic() + timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    raise StateLockError(
                        f"State file {self.state_path} is locked by another stackflow process",
                        suggestions=[f"Wait for the other run to finish, or remove {self.lock_path} if none is running"]
                    )
                time.sleep(LOCK_POLL_INTERVAL)
        self._lock_fd = fd

    def unlock(self) -> None:
        fd, self._lock_fd = self._lock_fd, None
        if fd is None:
            return
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    @contextmanager
    def transaction(self, project_name: Optional[str] = None) -> Iterator[State]:
        """Yield the current state under both locks and save it if the block succeeds.

        A missing file starts from an empty state for ``project_name``;
        without a project name it raises :class:`StateNotFoundError`.
        """
        with self._guard:
            self.lock()
            try:
                if self.exists():
                    state = self.load()
                elif project_name:
                    state = State(project_name=project_name)
                else:
                    raise StateNotFoundError(f"No state file at {self.state_path}")
                yield state
                self.save(state)
            finally:
                self.unlock()
