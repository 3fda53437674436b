"""Reddit community adapter using the public listing JSON.

``https://www.reddit.com/r/<sub>/.json?limit=N`` →
``data.children[].data.{id, title, selftext, permalink, created_utc,
ups, thumbnail, preview, link_flair_text, author}``.

Low-score and removed posts are dropped here, not in the normaliser,
because the thresholds are per subreddit (``params.min_upvotes``).
"""

from __future__ import annotations

import httpx

from .adapters import FeedAdapter, as_dict_list, safe_json
from .common_types import RawItem
from .errors import ParseError
from .registry import FeedSourceConfig

REDDIT_BASE = "https://www.reddit.com"

_REMOVED = frozenset({"[removed]", "[deleted]"})


def _post_image(post: dict) -> str | None:
    preview = post.get("preview")
    if isinstance(preview, dict):
        images = as_dict_list(preview.get("images"))
        if images:
            src = images[0].get("source") or {}
            url = src.get("url") if isinstance(src, dict) else None
            if url:
                # Listing JSON HTML-escapes query separators.
                return str(url).replace("&amp;", "&")
    thumb = post.get("thumbnail")
    if isinstance(thumb, str) and thumb.startswith("http"):
        return thumb
    return None


class RedditAdapter(FeedAdapter):
    kind = "reddit"
    accept = "application/json"

    def request(
        self,
        client: httpx.Client,
        source: FeedSourceConfig,
        *,
        timeout_s: float,
        credential: str | None = None,
    ) -> httpx.Response:
        params = {"limit": int(source.params.get("limit", 20))}
        return client.get(source.url, params=params, headers={"Accept": self.accept}, timeout=timeout_s)

    def parse(self, response: httpx.Response, source: FeedSourceConfig) -> list[RawItem]:
        data = safe_json(response, source)
        listing = data.get("data") if isinstance(data, dict) else None
        if not isinstance(listing, dict) or not isinstance(listing.get("children"), list):
            raise ParseError(source.id, "listing payload has no data.children")

        min_upvotes = int(source.params.get("min_upvotes", 0))
        items: list[RawItem] = []
        for child in as_dict_list(listing["children"]):
            post = child.get("data")
            if not isinstance(post, dict):
                continue
            if int(post.get("ups") or 0) < min_upvotes:
                continue
            if post.get("selftext") in _REMOVED:
                continue
            permalink = str(post.get("permalink") or "")
            flair = post.get("link_flair_text")
            items.append({
                "id": post.get("id"),
                "title": post.get("title"),
                "url": f"{REDDIT_BASE}{permalink}" if permalink.startswith("/") else permalink,
                "description": (post.get("selftext") or "")[:200],
                "created_utc": post.get("created_utc"),
                "image": _post_image(post),
                "author": post.get("author"),
                "ups": post.get("ups"),
                "tags": [flair] if flair else [],
            })
        return items
