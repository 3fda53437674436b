"""Source registry: the static list of upstream feed definitions.

Built once at process start, either from the built-in catalog below or
from a JSON file (``SOURCES_PATH``).  Registry order is significant: it
is the final tie-breaker in ranking, so results stay reproducible.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields
from typing import Any, Iterable, Iterator

from .common_types import CATEGORIES, PRIORITIES
from .errors import ConfigError

logger = logging.getLogger(__name__)

# Adapter type tags understood by fetcher.default_adapters().
SOURCE_KINDS: frozenset[str] = frozenset({
    "rss", "nws_alerts", "newsapi", "reddit", "model_graphics",
})


@dataclass(frozen=True)
class FeedSourceConfig:
    """Identity and fetch/ranking policy for one upstream source."""

    id: str
    kind: str
    url: str
    category_tags: tuple[str, ...]
    name: str = ""
    priority_weight: int = 0  # higher = trusted more in ranking
    default_priority: str = "low"
    enabled: bool = True
    cache_duration_s: float = 300.0
    max_age_hours: float = 168.0
    retry_attempts: int = 2
    retry_delay_s: float = 1.0
    timeout_s: float | None = None  # None → Config.default_timeout_s
    requires_auth: bool = False
    # Adapter-specific options (subreddit thresholds, NewsAPI query, …).
    params: dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        if not self.id:
            raise ConfigError("source id must be non-empty")
        if self.kind not in SOURCE_KINDS:
            raise ConfigError(f"{self.id}: unknown source kind {self.kind!r}")
        if not isinstance(self.category_tags, tuple):
            object.__setattr__(self, "category_tags", tuple(self.category_tags))
        if not self.category_tags:
            raise ConfigError(f"{self.id}: at least one category tag is required")
        unknown = [t for t in self.category_tags if t not in CATEGORIES]
        if unknown:
            raise ConfigError(f"{self.id}: unknown category tags {unknown}")
        if self.default_priority not in PRIORITIES:
            raise ConfigError(f"{self.id}: unknown default priority {self.default_priority!r}")
        if self.retry_attempts < 0:
            raise ConfigError(f"{self.id}: retry_attempts must be >= 0")
        if self.retry_delay_s < 0:
            raise ConfigError(f"{self.id}: retry_delay_s must be >= 0")
        if self.max_age_hours <= 0:
            raise ConfigError(f"{self.id}: max_age_hours must be > 0")

    @property
    def label(self) -> str:
        return self.name or self.id

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> FeedSourceConfig:
        known = {f.name for f in fields(cls)}
        extra = sorted(set(d) - known)
        if extra:
            raise ConfigError(f"{d.get('id', '?')}: unknown source fields {extra}")
        try:
            return cls(**d)
        except TypeError as exc:
            raise ConfigError(f"invalid source definition {d.get('id', '?')!r}: {exc}") from None


# ── Built-in catalog ────────────────────────────────────────────

_NEWSAPI_QUERY = (
    "extreme weather OR severe storm OR hurricane OR tornado OR flooding OR "
    "drought OR wildfire OR blizzard OR heatwave OR typhoon OR cyclone"
)

DEFAULT_SOURCES: tuple[FeedSourceConfig, ...] = (
    FeedSourceConfig(
        id="nws-alerts",
        name="National Weather Service",
        kind="nws_alerts",
        url="https://api.weather.gov/alerts/active?status=actual",
        category_tags=("severe", "weather", "breaking"),
        priority_weight=50,
        default_priority="low",
        cache_duration_s=300,
        max_age_hours=72,
        params={"limit": 10},
    ),
    FeedSourceConfig(
        id="spc-outlooks",
        name="SPC Convective Outlooks",
        kind="rss",
        url="https://www.spc.noaa.gov/products/spcacrss.xml",
        category_tags=("severe",),
        priority_weight=40,
        default_priority="high",
        cache_duration_s=900,
        max_age_hours=48,
    ),
    FeedSourceConfig(
        id="nhc-atlantic",
        name="NHC Atlantic Outlook",
        kind="rss",
        url="https://www.nhc.noaa.gov/index-at.xml",
        category_tags=("tropical",),
        priority_weight=40,
        default_priority="high",
        cache_duration_s=900,
        max_age_hours=48,
    ),
    FeedSourceConfig(
        id="nasa-earth",
        name="NASA Earth Observatory",
        kind="rss",
        url="https://earthobservatory.nasa.gov/feeds/earth-observatory.rss",
        category_tags=("climate", "weather"),
        priority_weight=30,
        default_priority="low",
        cache_duration_s=3600,
    ),
    FeedSourceConfig(
        id="fox-latest",
        name="FOX Weather",
        kind="rss",
        url="https://www.foxweather.com/feeds/public/latest.rss",
        category_tags=("weather", "local", "breaking"),
        priority_weight=25,
        default_priority="low",
        cache_duration_s=900,
    ),
    FeedSourceConfig(
        id="fox-extreme",
        name="FOX Weather Extreme",
        kind="rss",
        url="https://www.foxweather.com/feeds/public/extreme-weather.rss",
        category_tags=("severe", "weather"),
        priority_weight=25,
        default_priority="medium",
        cache_duration_s=900,
    ),
    FeedSourceConfig(
        id="newsapi",
        name="NewsAPI",
        kind="newsapi",
        url="https://newsapi.org/v2/everything",
        category_tags=("weather", "breaking", "general"),
        priority_weight=15,
        default_priority="medium",
        cache_duration_s=900,
        requires_auth=True,
        params={"q": _NEWSAPI_QUERY, "pageSize": 10, "sortBy": "publishedAt", "language": "en"},
    ),
    FeedSourceConfig(
        id="gfs-models",
        name="NOAA GFS / NHC Model Graphics",
        kind="model_graphics",
        url="https://mag.ncep.noaa.gov/data/gfs",
        category_tags=("model", "tropical"),
        priority_weight=10,
        default_priority="medium",
        cache_duration_s=6 * 3600,
        max_age_hours=24,
    ),
    FeedSourceConfig(
        id="reddit-weather",
        name="r/weather",
        kind="reddit",
        url="https://www.reddit.com/r/weather/.json",
        category_tags=("community",),
        priority_weight=5,
        default_priority="low",
        cache_duration_s=600,
        params={"limit": 15, "min_upvotes": 50},
    ),
    FeedSourceConfig(
        id="reddit-tropical",
        name="r/TropicalWeather",
        kind="reddit",
        url="https://www.reddit.com/r/TropicalWeather/.json",
        category_tags=("community", "tropical"),
        priority_weight=5,
        default_priority="low",
        cache_duration_s=600,
        params={"limit": 15, "min_upvotes": 30},
    ),
    FeedSourceConfig(
        id="reddit-severe",
        name="r/SevereWeather",
        kind="reddit",
        url="https://www.reddit.com/r/SevereWeather/.json",
        category_tags=("community", "severe"),
        priority_weight=5,
        default_priority="low",
        cache_duration_s=600,
        params={"limit": 10, "min_upvotes": 30},
    ),
)


# ── Registry ────────────────────────────────────────────────────

class SourceRegistry:
    """Ordered, id-unique collection of :class:`FeedSourceConfig`."""

    def __init__(self, sources: Iterable[FeedSourceConfig]) -> None:
        self._sources: tuple[FeedSourceConfig, ...] = tuple(sources)
        self._index: dict[str, int] = {}
        for i, src in enumerate(self._sources):
            if src.id in self._index:
                raise ConfigError(f"duplicate source id {src.id!r}")
            self._index[src.id] = i

    # ── Constructors ────────────────────────────────────────────

    @classmethod
    def default(cls) -> SourceRegistry:
        return cls(DEFAULT_SOURCES)

    @classmethod
    def from_dicts(cls, rows: Iterable[dict[str, Any]]) -> SourceRegistry:
        sources = []
        for i, r in enumerate(rows):
            if not isinstance(r, dict):
                raise ConfigError(f"source #{i} must be an object, got {type(r).__name__}")
            sources.append(FeedSourceConfig.from_dict(r))
        return cls(sources)

    @classmethod
    def from_json(cls, path: str) -> SourceRegistry:
        """Load ``[{"id": …, "kind": …, …}, …]`` (or ``{"sources": […]}``)."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"cannot load source registry {path}: {exc}") from None
        rows = data.get("sources") if isinstance(data, dict) else data
        if not isinstance(rows, list):
            raise ConfigError(f"source registry {path} must contain a list of sources")
        registry = cls.from_dicts(rows)
        logger.info("Loaded %d sources from %s", len(registry), path)
        return registry

    # ── Lookup ──────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._sources)

    def __iter__(self) -> Iterator[FeedSourceConfig]:
        return iter(self._sources)

    def __contains__(self, source_id: object) -> bool:
        return source_id in self._index

    def get(self, source_id: str) -> FeedSourceConfig | None:
        i = self._index.get(source_id)
        return self._sources[i] if i is not None else None

    @property
    def ids(self) -> list[str]:
        return [s.id for s in self._sources]

    def enabled(self, only: Iterable[str] | None = None) -> list[FeedSourceConfig]:
        """Enabled sources in registry order, optionally restricted to *only*."""
        wanted = set(only) if only is not None else None
        return [
            s for s in self._sources
            if s.enabled and (wanted is None or s.id in wanted)
        ]

    def order_of(self, source_id: str) -> int:
        """Registry position of *source_id*; unknown ids sort last."""
        return self._index.get(source_id, len(self._sources))
