"""JSON export and HTTP cache metadata for aggregation results.

``result_to_dict`` / ``result_from_dict`` are also the persistence
format for cached results (see ``AggregationEngine.save_state``), so
they round-trip every field.  ``export_result`` writes with a
tempfile → rename pattern so readers never see a partial file.
"""

from __future__ import annotations

import json
import os
import tempfile
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from dateutil import parser as dtparser

from .common_types import AggregationResult, NewsItem, SourceStats
from .config import Config


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _epoch(s: Optional[str]) -> Optional[float]:
    if not s:
        return None
    dt = dtparser.isoparse(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


# ── Items ───────────────────────────────────────────────────────

def item_to_dict(item: NewsItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "title": item.title,
        "url": item.url,
        "source": item.source,
        "category": item.category,
        "priority": item.priority,
        "timestamp": _iso(item.timestamp),
        "description": item.description,
        "imageUrl": item.image_url,
        "tags": list(item.tags),
    }


def item_from_dict(d: Dict[str, Any]) -> NewsItem:
    return NewsItem(
        id=d["id"],
        title=d["title"],
        url=d["url"],
        source=d["source"],
        category=d["category"],
        priority=d["priority"],
        timestamp=_epoch(d["timestamp"]) or 0.0,
        description=d.get("description"),
        image_url=d.get("imageUrl"),
        tags=tuple(d.get("tags") or ()),
    )


# ── Results ─────────────────────────────────────────────────────

def result_to_dict(result: AggregationResult) -> Dict[str, Any]:
    return {
        "items": [item_to_dict(it) for it in result.items],
        "totalFetched": result.total_fetched,
        "totalIncluded": result.total_included,
        "cacheHit": result.cache_hit,
        "stale": result.stale,
        "timestamp": _iso(result.timestamp),
        "cachedAt": _iso(result.cached_at),
        "ttlSeconds": result.ttl_s,
        "sourceStats": {
            sid: {
                "fetched": st.fetched,
                "included": st.included,
                "errors": st.errors,
                "skipped": st.skipped,
                "error": st.error,
            }
            for sid, st in result.source_stats.items()
        },
    }


def result_from_dict(d: Dict[str, Any]) -> AggregationResult:
    stats = {
        sid: SourceStats(
            source=sid,
            fetched=int(s.get("fetched", 0)),
            included=int(s.get("included", 0)),
            errors=int(s.get("errors", 0)),
            skipped=bool(s.get("skipped", False)),
            error=s.get("error"),
        )
        for sid, s in (d.get("sourceStats") or {}).items()
    }
    return AggregationResult(
        items=[item_from_dict(x) for x in d.get("items") or []],
        total_fetched=int(d.get("totalFetched", 0)),
        total_included=int(d.get("totalIncluded", 0)),
        cache_hit=bool(d.get("cacheHit", False)),
        source_stats=stats,
        timestamp=_epoch(d.get("timestamp")) or 0.0,
        stale=bool(d.get("stale", False)),
        cached_at=_epoch(d.get("cachedAt")),
        ttl_s=d.get("ttlSeconds"),
    )


# ── HTTP metadata ───────────────────────────────────────────────

def cache_headers(
    result: AggregationResult,
    config: Config | None = None,
    now: float | None = None,
) -> Dict[str, str]:
    """Response headers for a route serving *result*.

    ``s-maxage`` is the freshness left on the cache entry (0 once stale);
    ``stale-while-revalidate`` comes from the config.
    """
    cfg = config or Config()
    now = time.time() if now is None else now
    ttl = result.ttl_s if result.ttl_s is not None else cfg.cache_ttl_s
    stored = result.cached_at if result.cached_at is not None else result.timestamp
    remaining = 0 if result.stale else max(0, int(ttl - max(0.0, now - stored)))
    return {
        "Cache-Control": (
            f"public, s-maxage={remaining}, "
            f"stale-while-revalidate={int(cfg.stale_while_revalidate_s)}"
        ),
        "X-Cache-Hit": "true" if result.cache_hit else "false",
        "X-Cache-Stale": "true" if result.stale else "false",
        "X-Total-Fetched": str(result.total_fetched),
        "X-Total-Included": str(result.total_included),
    }


# ── File export ─────────────────────────────────────────────────

def export_result(path: str, result: AggregationResult, meta: Optional[Dict[str, Any]] = None) -> None:
    """Atomically write *result* (+ optional *meta*) as JSON to *path*."""
    dest_dir = os.path.dirname(path) or "."
    os.makedirs(dest_dir, exist_ok=True)
    payload = {"meta": meta or {}, "result": result_to_dict(result)}
    fd, tmp = tempfile.mkstemp(dir=dest_dir, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2, allow_nan=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise
