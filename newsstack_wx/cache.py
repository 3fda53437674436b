"""Result cache keyed by query fingerprint, with stale-while-revalidate metadata.

Entries are immutable and replaced wholesale on every refresh.  Readers
never block: a dict lookup returns whichever entry is current.  Writers
hold the per-key lock so two refreshes of the same key cannot interleave
their replace-and-log.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Iterable

from ._locks import KeyedLocks
from .common_types import AggregationResult, CacheEntry

logger = logging.getLogger(__name__)


class ResultCache:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._locks = KeyedLocks()

    def get(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)

    def set(self, key: str, result: AggregationResult, ttl_s: float) -> CacheEntry:
        entry = CacheEntry(key=key, result=result, stored_at=self._clock(), ttl_s=float(ttl_s))
        with self._locks(key):
            self._entries[key] = entry
        logger.debug("cache set %s (%d items, ttl %.0fs)", key, len(result.items), ttl_s)
        return entry

    def is_stale(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.stored_at > entry.ttl_s

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> dict[str, Any]:
        keys = list(self._entries)
        return {"size": len(keys), "keys": keys}

    # ── Persistence helpers ─────────────────────────────────────

    def entries(self) -> list[CacheEntry]:
        return list(self._entries.values())

    def load(self, entries: Iterable[CacheEntry]) -> None:
        """Seed entries (e.g. from persisted state), keeping their stored_at."""
        for entry in entries:
            with self._locks(entry.key):
                self._entries[entry.key] = entry
