"""RSS 2.0 / Atom adapter (NASA, FOX Weather, SPC, NHC, …).

Download goes through the shared httpx client so timeouts and retries
are uniform across sources; ``feedparser`` only parses the bytes.
"""

from __future__ import annotations

import logging
import re
from typing import Any

import feedparser
import httpx

from .adapters import FeedAdapter
from .common_types import RawItem
from .errors import ParseError
from .registry import FeedSourceConfig

logger = logging.getLogger(__name__)

_IMG_SRC_RE = re.compile(r"<img[^>]+src=[\"']([^\"']+)[\"']", re.IGNORECASE)


def _entry_image(entry: Any) -> str | None:
    """Best-effort image URL from media/enclosure/inline-HTML fields."""
    for media in entry.get("media_content") or []:
        if media.get("medium") == "image" or str(media.get("type", "")).startswith("image"):
            if media.get("url"):
                return media["url"]
    thumbs = entry.get("media_thumbnail") or []
    if thumbs and thumbs[0].get("url"):
        return thumbs[0]["url"]
    for enc in entry.get("enclosures") or []:
        if str(enc.get("type", "")).startswith("image"):
            return enc.get("href") or enc.get("url")
    content = entry.get("content") or []
    html = content[0].get("value", "") if content else entry.get("summary", "")
    m = _IMG_SRC_RE.search(html or "")
    return m.group(1) if m else None


def _entry_tags(entry: Any) -> list[str]:
    out: list[str] = []
    for tag in entry.get("tags") or []:
        term = tag.get("term") or tag.get("label")
        if term:
            out.append(str(term))
    return out


class RssAdapter(FeedAdapter):
    kind = "rss"
    accept = "application/rss+xml, application/atom+xml, application/xml;q=0.9, */*;q=0.8"

    def parse(self, response: httpx.Response, source: FeedSourceConfig) -> list[RawItem]:
        feed = feedparser.parse(response.content)
        entries = feed.get("entries") or []
        if feed.get("bozo") and not entries:
            exc = feed.get("bozo_exception")
            raise ParseError(source.id, f"malformed feed: {exc}")
        if feed.get("bozo"):
            logger.debug("%s: feed parsed with recoverable errors: %s", source.id, feed.get("bozo_exception"))

        limit = int(source.params.get("limit", 0) or 0)
        if limit > 0:
            entries = entries[:limit]

        items: list[RawItem] = []
        for entry in entries:
            items.append({
                "id": entry.get("id"),
                "title": entry.get("title"),
                "link": entry.get("link"),
                "published": entry.get("published") or entry.get("updated"),
                "summary": entry.get("summary"),
                "author": entry.get("author"),
                "tags": _entry_tags(entry),
                "image": _entry_image(entry),
            })
        return items
