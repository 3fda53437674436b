"""Normalisation: raw adapter dicts → NewsItem.

The normaliser is **schema-tolerant**: every unified field is looked up
under several candidate names so that a renamed upstream field degrades
to "missing" instead of silently dropping the item.  The primary names
are those produced by the adapters in ``ingest_*``:

RSS / Atom:   title, link, published, summary, author, tags, image
NWS alerts:   title, url, description, severity, effective, tags
NewsAPI:      title, url, description, urlToImage, publishedAt
Reddit:       title, url, description, created_utc, image, tags
Model graphs: title, url, image, timestamp, priority, category, tags

Category and priority assignment are pure functions so they can be
tested without a source.
"""

from __future__ import annotations

import html
import logging
import math
import re
import time
from datetime import timezone
from typing import Any, Iterable

from dateutil import parser as dtparser

from .common_types import CATEGORIES, PRIORITY_RANK, NewsItem, RawItem
from .registry import FeedSourceConfig
from .scoring import dedup_key

logger = logging.getLogger(__name__)


# ── Candidate field names ───────────────────────────────────────

_TITLE_KEYS = ("title", "headline", "name")
_URL_KEYS = ("url", "link", "web", "permalink")
_DESC_KEYS = ("description", "summary", "selftext", "teaser", "content")
_IMAGE_KEYS = ("image", "image_url", "urlToImage", "thumbnail")
_TS_KEYS = (
    "published", "pubDate", "publishedAt", "effective", "onset", "sent",
    "created_utc", "created", "updated", "timestamp", "date",
)

_DESC_MAX = 500

# Shortest valid date string: "YYYYMMDD".  dateutil happily parses "5"
# as the 5th of the current month.
_MIN_DATE_LEN = 8


# ── Shared helpers ──────────────────────────────────────────────

def _first(raw: RawItem, keys: Iterable[str]) -> Any:
    for k in keys:
        v = raw.get(k)
        if v not in (None, "", [], {}):
            return v
    return None


def _epoch_number(v: float) -> float:
    if not math.isfinite(v):
        logger.warning("Non-finite timestamp %r – dropping item.", v)
        return 0.0
    return v / 1000.0 if v > 1e12 else v


def _to_epoch(value: Any) -> float | None:
    """Parse a timestamp to epoch seconds.

    Returns ``None`` when no value is present (caller falls back to the
    fetch time) and ``0.0`` when a value is present but unparseable, so
    the caller can drop it.  Numbers are epoch seconds (values that look
    like milliseconds are scaled).  Naive datetimes are assumed UTC.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return _epoch_number(float(value))
    s = str(value).strip()
    if not s:
        return None
    try:
        return _epoch_number(float(s))
    except ValueError:
        pass
    if len(s) < _MIN_DATE_LEN:
        logger.warning("Date string too short (%d chars): %r – dropping item.", len(s), s)
        return 0.0
    try:
        dt = dtparser.parse(s)
    except (ValueError, OverflowError):
        logger.warning("Unparseable date %r – dropping item.", s[:80])
        return 0.0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")


def _clean_text(value: Any) -> str:
    """Strip HTML tags, unescape entities, collapse whitespace."""
    if value is None:
        return ""
    s = _TAG_RE.sub(" ", str(value))
    s = html.unescape(s)
    return _WS_RE.sub(" ", s).strip()


def _http_url(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    s = value.strip()
    return s if s.startswith(("http://", "https://")) else None


def _tags(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple, set, frozenset)):
        return ()
    cleaned = (str(t).strip() for t in value if t is not None)
    return tuple(dict.fromkeys(t for t in cleaned if t))


# ── Category assignment ─────────────────────────────────────────

# Checked in this order; a category only applies if the source declares it.
_CATEGORY_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("breaking",  re.compile(r"\b(breaking|urgent|emergency|just\s+in|developing)\b", re.I)),
    ("severe",    re.compile(r"\b(tornado|severe|thunderstorm|hail|derecho|flash\s+flood|flood|blizzard|ice\s+storm|warning|watch)\b", re.I)),
    ("tropical",  re.compile(r"\b(hurricane|tropical|typhoon|cyclone|storm\s+surge|invest\s+\d+)\b", re.I)),
    ("model",     re.compile(r"\b(gfs|ecmwf|euro\s+model|model\s+run|ensemble|\d{2}z)\b", re.I)),
    ("climate",   re.compile(r"\b(climate|drought|warming|wildfire|el\s+ni[nñ]o|la\s+ni[nñ]a|sea\s+ice|carbon|heat\s+wave|heatwave)\b", re.I)),
    ("local",     re.compile(r"\b(county|city|town|metro|local|neighborhood|residents)\b", re.I)),
    ("weather",   re.compile(r"\b(weather|forecast|rain|snow|wind|temperature|storm|cold|heat|fog|frost)\b", re.I)),
]


def assign_category(text: str, tags: Iterable[str], hint: str | None = None) -> str:
    """Pick a category for *text* among the source's declared *tags*.

    An explicit *hint* wins when the source declares it.  Otherwise the
    first keyword table entry that matches and is declared wins; with no
    match the source's first declared tag is used.
    """
    declared = [t for t in tags if t in CATEGORIES]
    if not declared:
        return "general"
    if hint and hint in declared:
        return hint
    for cat, rx in _CATEGORY_PATTERNS:
        if cat in declared and rx.search(text or ""):
            return cat
    return declared[0]


# ── Priority assignment ─────────────────────────────────────────

_HIGH_RE = re.compile(
    r"\b(breaking|urgent|emergency|extreme|critical|immediate|catastrophic|"
    r"life[\s-]threatening|warning|watch)\b",
    re.I,
)
_MEDIUM_RE = re.compile(
    r"\b(advisory|alert|moderate|expected|severe|tropical\s+storm|winter\s+storm|heat\s+wave)\b",
    re.I,
)

# NWS CAP severity → priority
_SEVERITY_PRIORITY: dict[str, str] = {
    "extreme": "high",
    "severe": "high",
    "moderate": "medium",
    "minor": "low",
    "unknown": "low",
}


def _max_priority(a: str, b: str) -> str:
    return a if PRIORITY_RANK.get(a, 0) >= PRIORITY_RANK.get(b, 0) else b


def assign_priority(
    text: str,
    default: str,
    severity: str | None = None,
    hint: str | None = None,
) -> str:
    """Source default, escalated by severity, hint and keywords.

    Escalation only raises the priority; nothing here lowers it below the
    source default.
    """
    prio = default if default in PRIORITY_RANK else "low"
    if severity:
        prio = _max_priority(prio, _SEVERITY_PRIORITY.get(str(severity).strip().lower(), "low"))
    if hint in PRIORITY_RANK:
        prio = _max_priority(prio, hint)
    if prio == "high":
        return prio
    if _HIGH_RE.search(text or ""):
        return "high"
    if _MEDIUM_RE.search(text or ""):
        return _max_priority(prio, "medium")
    return prio


# ── Normalisation ───────────────────────────────────────────────

def normalize_item(raw: RawItem, source: FeedSourceConfig, fetched_at: float) -> NewsItem | None:
    """Map one raw dict to a NewsItem, or ``None`` if it lacks title/url/timestamp."""
    title = _clean_text(_first(raw, _TITLE_KEYS))
    url = None
    for k in _URL_KEYS:
        url = _http_url(raw.get(k))
        if url:
            break
    if not title or not url:
        return None

    ts = _to_epoch(_first(raw, _TS_KEYS))
    if ts is None:
        ts = fetched_at
    if ts <= 0:
        return None

    description = _clean_text(_first(raw, _DESC_KEYS))[:_DESC_MAX] or None
    image = None
    for k in _IMAGE_KEYS:
        image = _http_url(raw.get(k))
        if image:
            break

    text = f"{title} {description or ''}"
    hint_cat = raw.get("category") if isinstance(raw.get("category"), str) else None
    hint_prio = raw.get("priority") if isinstance(raw.get("priority"), str) else None

    return NewsItem(
        id=dedup_key(url, title, source.id),
        title=title,
        url=url,
        source=source.id,
        category=assign_category(text, source.category_tags, hint_cat),
        priority=assign_priority(text, source.default_priority, raw.get("severity"), hint_prio),
        timestamp=ts,
        description=description,
        image_url=image,
        tags=_tags(raw.get("tags")),
    )


def normalize(
    raw_items: Iterable[RawItem],
    source: FeedSourceConfig,
    *,
    now: float | None = None,
    clock_skew_s: float = 300.0,
) -> list[NewsItem]:
    """Normalise a source's raw items, dropping invalid, too-old and future items."""
    now = time.time() if now is None else now
    oldest = now - source.max_age_hours * 3600.0
    newest = now + clock_skew_s

    out: list[NewsItem] = []
    dropped = 0
    for raw in raw_items:
        if not isinstance(raw, dict):
            dropped += 1
            continue
        item = normalize_item(raw, source, now)
        if item is None or item.timestamp < oldest or item.timestamp > newest:
            dropped += 1
            continue
        out.append(item)
    if dropped:
        logger.debug("%s: dropped %d of %d raw items during normalisation", source.id, dropped, dropped + len(out))
    return out
