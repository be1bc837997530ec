"""Guard against evaluating the same message twice at once."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class InFlightGuard:
    """Track message ids that are currently being evaluated.

    State lives only for the lifetime of the process; it does not protect
    against duplicates after a restart or across several bot instances.
    """

    def __init__(self) -> None:
        self._active: dict[str, bool] = {}
        self._lock = threading.Lock()

    def acquire(self, message_id: str) -> bool:
        """Mark ``message_id`` as in flight; return False if it already is."""

        with self._lock:
            if self._active.get(message_id):
                return False
            self._active[message_id] = True
            return True

    def release(self, message_id: str) -> None:
        with self._lock:
            self._active.pop(message_id, None)

    @contextmanager
    def hold(self, message_id: str) -> Iterator[bool]:
        """Acquire for the duration of the block, yielding whether it succeeded."""

        acquired = self.acquire(message_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(message_id)

    def __contains__(self, message_id: object) -> bool:
        with self._lock:
            return bool(self._active.get(str(message_id)))

    def __len__(self) -> int:
        with self._lock:
            return len(self._active)
