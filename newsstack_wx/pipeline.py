"""Aggregation engine: Cache → Fan-out fetch → Normalise → Rank → Cache.

``AggregationEngine`` is constructed once at application start and owns
the process-wide state (health tracker, result cache, worker pool).  The
route layer calls :meth:`AggregationEngine.aggregate_news` and
:meth:`AggregationEngine.get_featured_story`.

Per call::

    CheckCache ─┬─ fresh  → return cached result
                ├─ stale  → return cached result (stale=True) + background refresh
                │           (only within ``stale_while_revalidate_s``; older entries
                │           are refreshed in the foreground)
                └─ miss   → FetchAll → Normalise → Rank → StoreCache → return

FetchAll runs every enabled, healthy source on the worker pool and waits
for all of them up to ``Config.deadline_s``.  Merge, rank and the cache
write happen only after that barrier.  Sources still running at the
deadline are abandoned and recorded as timeout failures; their retry
loops stop through a shared cancel event.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from ._http import log_fetch_warning
from ._locks import KeyedLocks
from .cache import ResultCache
from .common_types import (
    AggregationQuery,
    AggregationResult,
    CacheEntry,
    NewsItem,
    SourceStats,
)
from .config import Config
from .errors import AggregationFailure, FetchError
from .export import result_from_dict, result_to_dict
from .fetcher import SourceFetcher, default_adapters
from .health import HealthTracker, SourceHealth
from .normalize import normalize
from .registry import FeedSourceConfig, SourceRegistry
from .scoring import pick_featured, rank
from .store_sqlite import SqliteStore

logger = logging.getLogger(__name__)

# kv keys used by save_state / load_state
_HEALTH_KEY = "health"
_CACHE_KEY = "cache"

BREAKING_SOURCES: frozenset[str] = frozenset({"nws-alerts", "fox-latest", "fox-extreme", "nasa-earth"})


class _Claim:
    """Single-use token: whoever takes it first reports the source outcome.

    Shared between a fetch worker and the orchestrator so a source that
    finishes right at the deadline is recorded in the health tracker
    exactly once.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._taken = False

    def take(self) -> bool:
        with self._lock:
            if self._taken:
                return False
            self._taken = True
            return True


@dataclass
class _Outcome:
    items: list[NewsItem] = field(default_factory=list)
    error: str | None = None


class AggregationEngine:
    """Explicitly constructed aggregation core.

    Parameters
    ----------
    config : Config, optional
    registry : SourceRegistry, optional
        Defaults to ``Config.sources_path`` when set, else the built-in catalog.
    fetcher : SourceFetcher, optional
        Injected in tests; otherwise built from the config.
    clock : callable
        Epoch-seconds clock shared by health, cache and normalisation.
    store : SqliteStore, optional
        Persistence for health + cache; defaults to ``Config.state_path``.
    """

    def __init__(
        self,
        config: Config | None = None,
        registry: SourceRegistry | None = None,
        fetcher: SourceFetcher | None = None,
        *,
        clock: Callable[[], float] = time.time,
        store: SqliteStore | None = None,
    ) -> None:
        cfg = config or Config()
        self.config = cfg
        if registry is None:
            registry = SourceRegistry.from_json(cfg.sources_path) if cfg.sources_path else SourceRegistry.default()
        self.registry = registry
        self._clock = clock

        self._owns_fetcher = fetcher is None
        self.fetcher = fetcher or SourceFetcher(
            adapters=default_adapters(clock),
            credentials=cfg.credentials,
            default_timeout_s=cfg.default_timeout_s,
            user_agent=cfg.user_agent,
        )
        self.health = HealthTracker(cfg.health_failure_threshold, cfg.health_cooldown_s, clock)
        self.cache = ResultCache(clock)
        self._pool = ThreadPoolExecutor(max_workers=max(1, cfg.max_workers), thread_name_prefix="wx-fetch")
        self._refresh_locks = KeyedLocks()
        self._refreshing: dict[str, threading.Thread] = {}
        self._refreshing_lock = threading.Lock()
        self._closed = False

        self._owns_store = store is None and bool(cfg.state_path)
        if self._owns_store:
            os.makedirs(os.path.dirname(cfg.state_path) or ".", exist_ok=True)
            store = SqliteStore(cfg.state_path)
        self._store = store
        if self._store is not None:
            self.load_state()

    # ── Public API ──────────────────────────────────────────────

    def default_query(self) -> AggregationQuery:
        return AggregationQuery(
            max_items=self.config.default_max_items,
            max_age_hours=self.config.default_max_age_hours,
        )

    def aggregate_news(self, query: AggregationQuery | None = None) -> AggregationResult:
        """Ranked, deduplicated result for *query*, served from cache when possible.

        Raises :class:`AggregationFailure` only when no source produced a
        result and nothing is cached for this query.
        """
        query = query or self.default_query()
        entry = self.cache.get(query.fingerprint)
        if entry is not None:
            if not self.cache.is_stale(entry):
                return self._from_cache(entry, stale=False)
            # Past the revalidation window the caller waits for a refresh
            # (which still falls back to this entry if every source fails).
            if entry.age_s(self._clock()) <= entry.ttl_s + self.config.stale_while_revalidate_s:
                self._schedule_refresh(query)
                return self._from_cache(entry, stale=True)
        return self.refresh(query, force=False)

    def refresh(self, query: AggregationQuery | None = None, *, force: bool = True) -> AggregationResult:
        """Run the fetch pipeline for *query* and store the result.

        Concurrent refreshes of the same query are serialised; without
        *force* a refresh that finds a fresh entry after waiting returns it.
        On total failure the last cached result is served regardless of
        staleness.
        """
        query = query or self.default_query()
        key = query.fingerprint
        with self._refresh_locks(key):
            if not force:
                entry = self.cache.get(key)
                if entry is not None and not self.cache.is_stale(entry):
                    return self._from_cache(entry, stale=False)

            result, ttl_s, errors = self._run_pipeline(query)
            if result is None:
                entry = self.cache.get(key)
                if entry is not None:
                    logger.warning(
                        "All sources failed (%d errors) – serving cached result from %.0fs ago.",
                        len(errors), entry.age_s(self._clock()),
                    )
                    return self._from_cache(entry, stale=self.cache.is_stale(entry))
                raise AggregationFailure(key, errors)

            entry = self.cache.set(key, result, ttl_s)
            return replace(result, cached_at=entry.stored_at, ttl_s=entry.ttl_s)

    def get_featured_story(self) -> NewsItem | None:
        """Single most prominent recent story, or None when nothing is available."""
        query = AggregationQuery(max_items=50, max_age_hours=self.config.featured_max_age_hours)
        try:
            result = self.aggregate_news(query)
        except AggregationFailure as exc:
            logger.warning("Featured story unavailable: %s", exc)
            return None
        return pick_featured(result.items)

    def fetch_breaking_weather(self, max_items: int = 10) -> AggregationResult:
        """High-priority items from the official and broadcast sources, last 24h."""
        return self.aggregate_news(AggregationQuery(
            priority="high",
            sources=BREAKING_SOURCES,
            max_items=max_items,
            max_age_hours=24.0,
        ))

    def fetch_news_by_category(self, category: str, max_items: int = 20) -> AggregationResult:
        return self.aggregate_news(AggregationQuery(
            categories={category},
            max_items=max_items,
            max_age_hours=self.config.default_max_age_hours,
        ))

    def clear_cache(self) -> None:
        self.cache.clear()
        if self._store is not None:
            self._store.delete_kv(_CACHE_KEY)
        logger.info("Result cache cleared.")

    def cache_stats(self) -> dict[str, Any]:
        stats = self.cache.stats()
        with self._refreshing_lock:
            stats["refreshing"] = sum(1 for t in self._refreshing.values() if t.is_alive())
        return stats

    def health_snapshot(self) -> dict[str, dict[str, Any]]:
        out: dict[str, dict[str, Any]] = {}
        for sid, rec in self.health.snapshot().items():
            d = rec.to_dict()
            d["healthy"] = self.health.is_healthy(sid)
            out[sid] = d
        return out

    # ── Pipeline ────────────────────────────────────────────────

    def _from_cache(self, entry: CacheEntry, *, stale: bool) -> AggregationResult:
        return replace(
            entry.result,
            cache_hit=True,
            stale=stale,
            cached_at=entry.stored_at,
            ttl_s=entry.ttl_s,
        )

    def _run_pipeline(
        self, query: AggregationQuery,
    ) -> tuple[AggregationResult | None, float, dict[str, str]]:
        """One fan-out.  Returns ``(result or None, ttl_s, errors by source)``."""
        sources = self.registry.enabled(query.sources)
        stats: dict[str, SourceStats] = {s.id: SourceStats(source=s.id) for s in sources}
        errors: dict[str, str] = {}

        runnable: list[FeedSourceConfig] = []
        for src in sources:
            st = stats[src.id]
            if src.requires_auth and not self.fetcher.has_credential(src):
                st.skipped, st.error = True, "missing credentials"
                errors[src.id] = st.error
                logger.debug("%s skipped: missing credentials", src.id)
            elif not self.health.is_healthy(src.id):
                last = self.health.get_health(src.id).last_error_message
                st.skipped, st.errors, st.error = True, 1, f"circuit open: {last}"
                errors[src.id] = st.error
                logger.debug("%s skipped: circuit open", src.id)
            else:
                runnable.append(src)

        outcomes = self._fetch_all(runnable)
        now = self._clock()

        merged: list[NewsItem] = []
        ok: list[FeedSourceConfig] = []
        for src in runnable:
            out = outcomes[src.id]
            st = stats[src.id]
            if out.error is not None:
                st.errors, st.error = 1, out.error
                errors[src.id] = out.error
                continue
            ok.append(src)
            st.fetched = len(out.items)
            merged.extend(out.items)

        if not ok:
            logger.warning(
                "No source succeeded for %s (%d skipped, %d failed).",
                query.fingerprint, len(sources) - len(runnable), len(runnable),
            )
            return None, 0.0, errors

        ranked = rank(merged, query, registry=self.registry, now=now, fuzzy=self.config.fuzzy_dedup)
        included = Counter(it.source for it in ranked)
        for sid, st in stats.items():
            st.included = included.get(sid, 0)

        ttl_s = min([self.config.cache_ttl_s] + [s.cache_duration_s for s in ok])
        logger.info(
            "Aggregated %d/%d items from %d/%d sources (%d failed, %d skipped).",
            len(ranked), len(merged), len(ok), len(sources),
            len(runnable) - len(ok), len(sources) - len(runnable),
        )
        result = AggregationResult(
            items=ranked,
            total_fetched=len(merged),
            total_included=len(ranked),
            cache_hit=False,
            source_stats=stats,
            timestamp=now,
        )
        return result, ttl_s, errors

    def _fetch_all(self, sources: list[FeedSourceConfig]) -> dict[str, _Outcome]:
        """Fan out, join with the overall deadline, record abandoned sources."""
        if not sources:
            return {}
        cancel = threading.Event()
        claims = {s.id: _Claim() for s in sources}
        futures = {
            self._pool.submit(self._fetch_one, s, cancel, claims[s.id]): s
            for s in sources
        }
        deadline_s = self.config.deadline_s
        done, _ = wait(futures, timeout=deadline_s)
        cancel.set()

        outcomes: dict[str, _Outcome] = {}
        for fut, src in futures.items():
            if fut in done:
                outcomes[src.id] = fut.result()
                continue
            if claims[src.id].take():
                fut.cancel()
                msg = f"abandoned after {deadline_s:.1f}s aggregation deadline"
                self.health.record_failure(src.id, msg)
                logger.warning("%s timed out: %s", src.id, msg)
                outcomes[src.id] = _Outcome(error=msg)
            else:
                # Worker claimed just after the deadline and is returning.
                outcomes[src.id] = fut.result()
        return outcomes

    def _fetch_one(
        self,
        src: FeedSourceConfig,
        cancel: threading.Event,
        claim: _Claim,
    ) -> _Outcome:
        try:
            raw, elapsed = self.fetcher.fetch_timed(src, cancel)
            items = normalize(raw, src, now=self._clock(), clock_skew_s=self.config.clock_skew_s)
        except FetchError as exc:
            if claim.take():
                self.health.record_failure(src.id, exc.message)
                log_fetch_warning(src.id, exc)
            return _Outcome(error=exc.message)
        except Exception as exc:
            logger.warning("%s fetch failed unexpectedly: %s", src.id, exc, exc_info=True)
            if claim.take():
                self.health.record_failure(src.id, f"{type(exc).__name__}: {exc}")
            return _Outcome(error=f"{type(exc).__name__}: {exc}")

        if not claim.take():
            logger.debug("%s finished after the deadline – result discarded", src.id)
            return _Outcome(error="abandoned")
        self.health.record_success(src.id, elapsed)
        return _Outcome(items=items)

    # ── Background refresh ──────────────────────────────────────

    def _schedule_refresh(self, query: AggregationQuery) -> None:
        key = query.fingerprint
        with self._refreshing_lock:
            if self._closed:
                return
            running = self._refreshing.get(key)
            if running is not None and running.is_alive():
                return
            t = threading.Thread(
                target=self._background_refresh,
                args=(query,),
                name="wx-refresh",
                daemon=True,
            )
            self._refreshing[key] = t
            t.start()

    def _background_refresh(self, query: AggregationQuery) -> None:
        try:
            self.refresh(query, force=False)
        except AggregationFailure as exc:
            logger.warning("Background refresh failed: %s", exc)
        except Exception:
            logger.exception("Background refresh crashed")
        finally:
            with self._refreshing_lock:
                if self._refreshing.get(query.fingerprint) is threading.current_thread():
                    del self._refreshing[query.fingerprint]

    def join_refreshes(self, timeout: float | None = None) -> None:
        """Wait for in-flight background refreshes (used by tests and close)."""
        with self._refreshing_lock:
            threads = list(self._refreshing.values())
        for t in threads:
            t.join(timeout)

    # ── Persistence ─────────────────────────────────────────────

    def save_state(self) -> None:
        if self._store is None:
            return
        health = {sid: rec.to_dict() for sid, rec in self.health.snapshot().items()}
        cache = [
            {
                "key": e.key,
                "stored_at": e.stored_at,
                "ttl_s": e.ttl_s,
                "result": result_to_dict(e.result),
            }
            for e in self.cache.entries()
        ]
        self._store.set_kv(_HEALTH_KEY, json.dumps(health))
        self._store.set_kv(_CACHE_KEY, json.dumps(cache))
        logger.debug("Saved state: %d health records, %d cache entries", len(health), len(cache))

    def load_state(self) -> None:
        if self._store is None:
            return
        raw_health = self._store.get_kv(_HEALTH_KEY)
        raw_cache = self._store.get_kv(_CACHE_KEY)
        try:
            if raw_health:
                self.health.load({
                    sid: SourceHealth.from_dict(d) for sid, d in json.loads(raw_health).items()
                })
            if raw_cache:
                self.cache.load(
                    CacheEntry(
                        key=row["key"],
                        result=result_from_dict(row["result"]),
                        stored_at=float(row["stored_at"]),
                        ttl_s=float(row["ttl_s"]),
                    )
                    for row in json.loads(raw_cache)
                )
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable persisted state: %s", exc)

    # ── Lifecycle ───────────────────────────────────────────────

    def close(self) -> None:
        with self._refreshing_lock:
            if self._closed:
                return
            self._closed = True
        self.join_refreshes(self.config.deadline_s)
        self.save_state()
        self._pool.shutdown(wait=False, cancel_futures=True)
        if self._owns_fetcher:
            self.fetcher.close()
        if self._owns_store and self._store is not None:
            self._store.close()

    def __enter__(self) -> AggregationEngine:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
