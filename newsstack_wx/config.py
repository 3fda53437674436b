"""Global configuration for the weather news aggregation engine.

All tunables can be overridden via environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_float(key: str, default: float) -> float:
    """Read an env var as float, returning *default* on parse failure."""
    try:
        return float(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


def _env_int(key: str, default: int) -> int:
    """Read an env var as int, returning *default* on parse failure."""
    try:
        return int(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


def _env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Config:
    """Central configuration – one instance per process.

    Environment variables are read at **instantiation** time (not module
    import time) so callers can set them programmatically before
    creating a ``Config``.
    """

    # ── Credentials (repr=False to prevent accidental logging) ──
    newsapi_key: str = field(default_factory=lambda: os.getenv("NEWSAPI_KEY", ""), repr=False)

    # ── Source registry ─────────────────────────────────────────
    # Optional JSON file replacing the built-in source catalog.
    sources_path: str = field(default_factory=lambda: os.getenv("SOURCES_PATH", ""))

    # ── Health tracker / circuit breaker ────────────────────────
    health_failure_threshold: int = field(default_factory=lambda: _env_int("HEALTH_FAILURE_THRESHOLD", 3))
    health_cooldown_s: float = field(default_factory=lambda: _env_float("HEALTH_COOLDOWN_S", 300.0))

    # ── Fetching ────────────────────────────────────────────────
    default_timeout_s: float = field(default_factory=lambda: _env_float("FETCH_TIMEOUT_S", 8.0))
    # Overall deadline for one fan-out; sources still running are abandoned.
    deadline_s: float = field(default_factory=lambda: _env_float("AGGREGATION_DEADLINE_S", 20.0))
    max_workers: int = field(default_factory=lambda: _env_int("FETCH_MAX_WORKERS", 8))
    user_agent: str = field(default_factory=lambda: os.getenv(
        "USER_AGENT", "newsstack-wx/1.0 (weather news aggregator)",
    ))

    # ── Cache ───────────────────────────────────────────────────
    cache_ttl_s: float = field(default_factory=lambda: _env_float("CACHE_TTL_S", 300.0))
    stale_while_revalidate_s: float = field(default_factory=lambda: _env_float("STALE_WHILE_REVALIDATE_S", 3600.0))

    # ── Normalisation / ranking ─────────────────────────────────
    clock_skew_s: float = field(default_factory=lambda: _env_float("CLOCK_SKEW_S", 300.0))
    default_max_items: int = field(default_factory=lambda: _env_int("DEFAULT_MAX_ITEMS", 30))
    default_max_age_hours: float = field(default_factory=lambda: _env_float("DEFAULT_MAX_AGE_HOURS", 72.0))
    featured_max_age_hours: float = field(default_factory=lambda: _env_float("FEATURED_MAX_AGE_HOURS", 12.0))
    # Collapse near-identical headlines across sources (word-overlap match).
    fuzzy_dedup: bool = field(default_factory=lambda: _env_bool("FUZZY_DEDUP", False))

    # ── State / export ──────────────────────────────────────────
    # SQLite file for health + cache persistence across restarts ("" disables).
    state_path: str = field(default_factory=lambda: os.getenv("STATE_PATH", ""))
    export_path: str = field(default_factory=lambda: os.getenv("EXPORT_PATH", "artifacts/newsstack_wx/latest.json"))
    poll_interval_s: float = field(default_factory=lambda: _env_float("POLL_INTERVAL_S", 300.0))

    # ── Derived helpers ─────────────────────────────────────────

    @property
    def credentials(self) -> dict[str, str]:
        """Secrets keyed by source id, for sources with ``requires_auth``."""
        creds: dict[str, str] = {}
        if self.newsapi_key:
            creds["newsapi"] = self.newsapi_key
        return creds
