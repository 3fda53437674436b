"""Per-source health tracking with a simple circuit breaker.

Each source gets a :class:`SourceHealth` record on its first fetch
attempt.  After ``failure_threshold`` consecutive failures the circuit
opens and :meth:`HealthTracker.is_healthy` returns False until
``cooldown_s`` has passed since the last failure; the next scheduled
cycle then gets one half-open attempt.  A success closes the circuit.

Records live for the process lifetime (optionally persisted through
``AggregationEngine.save_state``).
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable

from ._locks import KeyedLocks
from .errors import sanitize

logger = logging.getLogger(__name__)

# Weight of the newest sample in the response-time moving average.
_EMA_ALPHA = 0.3


@dataclass
class SourceHealth:
    """Mutable health record for one source."""

    source: str
    consecutive_failures: int = 0
    total_successes: int = 0
    total_failures: int = 0
    last_success_at: float | None = None
    last_error_at: float | None = None
    last_error_message: str | None = None
    average_response_time_s: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> SourceHealth:
        return cls(**d)


class HealthTracker:
    """Thread-safe store of :class:`SourceHealth`, one lock per source."""

    def __init__(
        self,
        failure_threshold: int = 3,
        cooldown_s: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.failure_threshold = max(1, failure_threshold)
        self.cooldown_s = cooldown_s
        self._clock = clock
        self._records: dict[str, SourceHealth] = {}
        self._locks = KeyedLocks()

    def _record(self, source_id: str) -> SourceHealth:
        # Caller holds the per-source lock.
        rec = self._records.get(source_id)
        if rec is None:
            rec = self._records[source_id] = SourceHealth(source=source_id)
        return rec

    # ── Updates ─────────────────────────────────────────────────

    def record_success(self, source_id: str, response_time_s: float) -> None:
        with self._locks(source_id):
            rec = self._record(source_id)
            was_open = rec.consecutive_failures >= self.failure_threshold
            rec.consecutive_failures = 0
            rec.total_successes += 1
            rec.last_success_at = self._clock()
            if rec.average_response_time_s is None:
                rec.average_response_time_s = response_time_s
            else:
                rec.average_response_time_s = (
                    _EMA_ALPHA * response_time_s
                    + (1 - _EMA_ALPHA) * rec.average_response_time_s
                )
        if was_open:
            logger.info("Source %s recovered – circuit closed.", source_id)

    def record_failure(self, source_id: str, error: BaseException | str) -> None:
        """Count one failed attempt.  Response-time average is left untouched."""
        msg = sanitize(str(error))
        with self._locks(source_id):
            rec = self._record(source_id)
            rec.consecutive_failures += 1
            rec.total_failures += 1
            rec.last_error_at = self._clock()
            rec.last_error_message = msg
            opened = rec.consecutive_failures == self.failure_threshold
        if opened:
            logger.warning(
                "Source %s failed %d times in a row – circuit open for %.0fs: %s",
                source_id, self.failure_threshold, self.cooldown_s, msg,
            )

    # ── Queries ─────────────────────────────────────────────────

    def is_healthy(self, source_id: str) -> bool:
        with self._locks(source_id):
            rec = self._records.get(source_id)
            if rec is None or rec.consecutive_failures < self.failure_threshold:
                return True
            last_error = rec.last_error_at or 0.0
            return self._clock() - last_error > self.cooldown_s

    def get_health(self, source_id: str) -> SourceHealth:
        """Snapshot copy of the record (a fresh record for unseen sources)."""
        with self._locks(source_id):
            rec = self._records.get(source_id)
            return replace(rec) if rec is not None else SourceHealth(source=source_id)

    def snapshot(self) -> dict[str, SourceHealth]:
        return {sid: self.get_health(sid) for sid in list(self._records)}

    def load(self, records: dict[str, SourceHealth]) -> None:
        """Seed records (e.g. from persisted state) without counting attempts."""
        for sid, rec in records.items():
            with self._locks(sid):
                self._records[sid] = replace(rec, source=sid)
