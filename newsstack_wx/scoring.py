"""Cross-source dedup keys, ranking score and featured-story selection.

Score of an item::

    priority_rank * 100 + source.priority_weight - age_hours

with ties broken by source registry order, then newest first, then
title and id, so ``rank`` is a strict, reproducible ordering.
"""

from __future__ import annotations

import hashlib
import re
import time
from typing import Iterable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .common_types import PRIORITY_RANK, AggregationQuery, NewsItem
from .registry import SourceRegistry

# ── Dedup keys ──────────────────────────────────────────────────

_TRACKING_PARAMS: frozenset[str] = frozenset({
    "fbclid", "gclid", "dclid", "msclkid", "mc_cid", "mc_eid", "igshid",
    "ref", "ref_src", "ref_url", "cmpid", "ocid", "src", "_ga",
})


def normalize_url(url: str | None) -> str:
    """Canonical form of *url* for duplicate detection.

    Lowercases scheme and host, drops the fragment, tracking params and
    trailing slashes, and sorts the remaining query params.
    """
    s = (url or "").strip()
    if not s:
        return ""
    parts = urlsplit(s)
    query = sorted(
        (k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if not k.lower().startswith("utm_") and k.lower() not in _TRACKING_PARAMS
    )
    return urlunsplit((
        parts.scheme.lower(),
        parts.netloc.lower(),
        parts.path.rstrip("/"),
        urlencode(query),
        "",
    ))


def dedup_key(url: str | None, title: str, source: str) -> str:
    """Stable item id: normalised URL, or lower-cased title + source when no URL."""
    nu = normalize_url(url)
    key = f"u|{nu}" if nu else f"t|{(title or '').strip().lower()}|{source}"
    return hashlib.sha1(key.encode("utf-8")).hexdigest()


def normalize_title(title: str) -> str:
    s = (title or "").lower()
    s = re.sub(r"[^a-z0-9\s]", "", s)
    s = re.sub(r"\s+", " ", s).strip()
    return s[:60]


def is_similar_title(a: str, b: str) -> bool:
    """Word-overlap match on normalised titles (words longer than 3 chars, >= 70%)."""
    if a == b:
        return True
    w1 = {w for w in a.split(" ") if len(w) > 3}
    w2 = {w for w in b.split(" ") if len(w) > 3}
    if not w1 or not w2:
        return False
    return len(w1 & w2) / max(len(w1), len(w2)) >= 0.7


def deduplicate(items: Iterable[NewsItem], fuzzy: bool = False) -> list[NewsItem]:
    """Drop later duplicates; the first-seen item wins.

    Keys are recomputed from url/title/source so items built outside the
    normaliser dedupe the same way.  With *fuzzy*, near-identical titles
    from different sources are also collapsed.
    """
    seen: set[str] = set()
    titles: list[str] = []
    out: list[NewsItem] = []
    for it in items:
        key = dedup_key(it.url, it.title, it.source)
        if key in seen:
            continue
        if fuzzy:
            nt = normalize_title(it.title)
            if any(is_similar_title(nt, t) for t in titles):
                continue
            titles.append(nt)
        seen.add(key)
        out.append(it)
    return out


# ── Score / rank ────────────────────────────────────────────────

def score_item(item: NewsItem, weight: int, now: float) -> float:
    return PRIORITY_RANK.get(item.priority, 1) * 100 + weight - item.age_hours(now)


def _priority_matches(priority: str, wanted: str | None) -> bool:
    # "high" and "medium" are floors; "low" selects low items only.
    if wanted is None:
        return True
    if wanted == "low":
        return priority == "low"
    return PRIORITY_RANK.get(priority, 0) >= PRIORITY_RANK[wanted]


def apply_filters(items: Iterable[NewsItem], query: AggregationQuery, now: float) -> list[NewsItem]:
    """Category, priority, source and age filters of *query*."""
    max_age_s = query.max_age_hours * 3600.0
    return [
        it for it in items
        if (query.categories is None or it.category in query.categories)
        and _priority_matches(it.priority, query.priority)
        and (query.sources is None or it.source in query.sources)
        and now - it.timestamp <= max_age_s
    ]


def rank(
    items: Iterable[NewsItem],
    query: AggregationQuery,
    *,
    registry: SourceRegistry | None = None,
    now: float | None = None,
    fuzzy: bool = False,
) -> list[NewsItem]:
    """Dedupe, sort by score, then filter by *query* and truncate.

    Filtering runs after the sort so the best items of the whole corpus
    are considered before ``max_items`` is applied.
    """
    now = time.time() if now is None else now
    reg = registry or SourceRegistry.default()

    def _weight(source_id: str) -> int:
        src = reg.get(source_id)
        return src.priority_weight if src is not None else 0

    unique = deduplicate(items, fuzzy=fuzzy)
    ordered = sorted(
        unique,
        key=lambda it: (
            -score_item(it, _weight(it.source), now),
            reg.order_of(it.source),
            -it.timestamp,
            it.title.lower(),
            it.id,
        ),
    )
    return apply_filters(ordered, query, now)[: query.max_items]


# ── Featured story ──────────────────────────────────────────────

_FEATURED_CATEGORIES = frozenset({"breaking", "severe"})


def pick_featured(items: list[NewsItem]) -> NewsItem | None:
    """Best featured candidate from an already-ranked list.

    Prefers high priority in breaking/severe with an image, then without
    an image, then any high priority item (image first), then the top item.
    """
    if not items:
        return None
    high = [it for it in items if it.priority == "high"]
    tiers = (
        [it for it in high if it.category in _FEATURED_CATEGORIES and it.image_url],
        [it for it in high if it.category in _FEATURED_CATEGORIES],
        [it for it in high if it.image_url],
        high,
    )
    for tier in tiers:
        if tier:
            return tier[0]
    return items[0]
