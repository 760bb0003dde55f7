"""Per-key mutation locks.

Mutations on the same case are serialized in-process by a lock keyed on the
case ID; different cases never contend. The database row lock taken by the
store covers multi-process deployments.
"""

import threading
from contextlib import contextmanager
from typing import Iterator


class LockTimeout(Exception):
    """Lock could not be acquired within the timeout."""

    def __init__(self, key: str, timeout: float):
        super().__init__(f"Timed out after {timeout:.1f}s waiting for lock '{key}'")
        self.key = key
        self.timeout = timeout


class KeyedLockRegistry:
    """Reference-counted registry of re-entrant locks keyed by string."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}
        self._refs: dict[str, int] = {}

    def _checkout(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
                self._refs[key] = 0
            self._refs[key] += 1
            return lock

    def _checkin(self, key: str) -> None:
        with self._guard:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    @contextmanager
    def hold(self, key: str, timeout: float) -> Iterator[None]:
        """Hold the lock for ``key``; raise LockTimeout after ``timeout`` seconds."""
        lock = self._checkout(key)
        try:
            if not lock.acquire(timeout=timeout):
                raise LockTimeout(key, timeout)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)


case_locks = KeyedLockRegistry()
