"""Unified internal schema shared across all weather news sources.

Every adapter (NWS alerts, RSS, Reddit, NewsAPI, model graphics) hands
raw dicts to the normaliser, which turns them into ``NewsItem`` records
before they enter the dedupe/rank stage.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

# ── Closed vocabularies ─────────────────────────────────────────

CATEGORIES: tuple[str, ...] = (
    "breaking",
    "weather",
    "local",
    "general",
    "severe",
    "climate",
    "tropical",
    "community",
    "model",
)

PRIORITIES: tuple[str, ...] = ("high", "medium", "low")

# high=3, medium=2, low=1 (used by the ranking score and priority filter)
PRIORITY_RANK: dict[str, int] = {"high": 3, "medium": 2, "low": 1}

# Raw payload handed from an adapter to the normaliser.
RawItem = dict[str, Any]


# ── News item ───────────────────────────────────────────────────

@dataclass
class NewsItem:
    """Source-agnostic news record."""

    id: str  # stable dedup key (see scoring.dedup_key)
    title: str
    url: str
    source: str  # FeedSourceConfig.id
    category: str  # one of CATEGORIES
    priority: str  # one of PRIORITIES
    timestamp: float  # epoch seconds
    description: str | None = None
    image_url: str | None = None
    tags: tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        """Minimal sanity check before the ranker accepts the item."""
        return bool(self.id and self.title and self.url)

    def age_hours(self, now: float) -> float:
        return max(0.0, (now - self.timestamp) / 3600.0)


# ── Query / fingerprint ─────────────────────────────────────────

@dataclass(frozen=True)
class AggregationQuery:
    """Filter combination for one aggregation call.

    Doubles as the cache key: two queries selecting the same subsets
    produce the same :attr:`fingerprint` regardless of ordering.
    """

    categories: frozenset[str] | None = None
    priority: str | None = None
    sources: frozenset[str] | None = None
    max_items: int = 30
    max_age_hours: float = 72.0

    def __post_init__(self) -> None:
        # Accept any iterable for the subset fields.
        if self.categories is not None and not isinstance(self.categories, frozenset):
            object.__setattr__(self, "categories", frozenset(self.categories))
        if self.sources is not None and not isinstance(self.sources, frozenset):
            object.__setattr__(self, "sources", frozenset(self.sources))
        object.__setattr__(self, "max_age_hours", float(self.max_age_hours))
        if self.priority == "all":
            object.__setattr__(self, "priority", None)
        if self.categories is not None:
            unknown = self.categories - set(CATEGORIES)
            if unknown:
                raise ValueError(f"unknown categories: {sorted(unknown)}")
        if self.priority is not None and self.priority not in PRIORITY_RANK:
            raise ValueError(f"unknown priority: {self.priority!r}")
        if self.max_items < 1:
            raise ValueError("max_items must be >= 1")
        if self.max_age_hours <= 0:
            raise ValueError("max_age_hours must be > 0")

    @property
    def fingerprint(self) -> str:
        return json.dumps(
            {
                "categories": sorted(self.categories) if self.categories is not None else None,
                "priority": self.priority,
                "sources": sorted(self.sources) if self.sources is not None else None,
                "max_items": self.max_items,
                "max_age_hours": self.max_age_hours,
            },
            sort_keys=True,
        )


# ── Results ─────────────────────────────────────────────────────

@dataclass
class SourceStats:
    """Per-source outcome of one aggregation run."""

    source: str
    fetched: int = 0
    included: int = 0
    errors: int = 0
    skipped: bool = False
    error: str | None = None


@dataclass
class AggregationResult:
    items: list[NewsItem]
    total_fetched: int
    total_included: int
    cache_hit: bool
    source_stats: dict[str, SourceStats]
    timestamp: float
    stale: bool = False
    cached_at: float | None = None
    ttl_s: float | None = None


@dataclass(frozen=True)
class CacheEntry:
    """Last-good result for one query fingerprint.

    Never mutated in place; the cache replaces entries wholesale.
    """

    key: str
    result: AggregationResult
    stored_at: float
    ttl_s: float

    def age_s(self, now: float) -> float:
        return max(0.0, now - self.stored_at)

    def max_age_s(self, now: float) -> float:
        """Seconds of freshness left (0 when already stale)."""
        return max(0.0, self.ttl_s - self.age_s(now))
