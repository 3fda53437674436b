"""Per-key lock table shared by the health tracker and the result cache.

A single guard lock protects only the table itself; callers then hold
the per-key lock, so writers for unrelated keys never serialise.
"""

from __future__ import annotations

import threading


class KeyedLocks:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def __call__(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock
