"""Per-key mutual exclusion for in-process billing writers."""
from __future__ import annotations

from contextlib import contextmanager
from threading import Lock, RLock
from typing import Dict, Iterator, List


class KeyedLock:
    """Hands out one re-entrant lock per key, released when unused."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: Dict[str, RLock] = {}
        self._holders: Dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = RLock()
                self._locks[key] = lock
            self._holders[key] = self._holders.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                remaining = self._holders[key] - 1
                if remaining:
                    self._holders[key] = remaining
                else:
                    del self._holders[key]
                    del self._locks[key]

    def active_keys(self) -> List[str]:
        with self._guard:
            return sorted(self._locks)


__all__ = ["KeyedLock"]
