"""Per-record exclusive locks.

Every mutation of one container's record (state, attached networks,
volume bindings) happens while holding that container's lock. Locks are
re-entrant so a remove can release networks and volumes without giving
up the lock it already holds.

Lock Ordering:
    container lock -> resource store lock. The store never calls back
    into code that takes a container lock.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class KeyedLocks:
    """Registry of re-entrant locks keyed by record ID."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def get(self, key: str) -> threading.RLock:
        """Get (or create) the lock for a key."""
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Hold the lock for a key for the duration of the block."""
        lock = self.get(key)
        with lock:
            yield

    def discard(self, key: str) -> None:
        """Forget the lock for a record that no longer exists."""
        with self._guard:
            self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
