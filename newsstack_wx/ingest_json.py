"""JSON API adapters: NWS active alerts and NewsAPI.

NWS (api.weather.gov/alerts/active), GeoJSON ``features[].properties``:
    id, headline, description, severity, urgency, event, effective, web

NewsAPI (/v2/everything or /v2/top-headlines):
    status, articles[].{source.name, author, title, description, url,
    urlToImage, publishedAt}
"""

from __future__ import annotations

import httpx

from .adapters import FeedAdapter, as_dict_list, safe_json
from .common_types import RawItem
from .errors import FetchError, ParseError
from .registry import FeedSourceConfig


# ── NWS active alerts ───────────────────────────────────────────

class NwsAlertsAdapter(FeedAdapter):
    kind = "nws_alerts"
    accept = "application/geo+json"

    def parse(self, response: httpx.Response, source: FeedSourceConfig) -> list[RawItem]:
        data = safe_json(response, source)
        if not isinstance(data, dict) or not isinstance(data.get("features"), list):
            raise ParseError(source.id, "alert payload has no 'features' list")

        features = as_dict_list(data["features"])
        limit = int(source.params.get("limit", 0) or 0)
        if limit > 0:
            features = features[:limit]

        items: list[RawItem] = []
        for feat in features:
            props = feat.get("properties")
            if not isinstance(props, dict):
                continue
            # ``web`` is frequently the generic weather.gov homepage; the
            # feature id is the per-alert URL, so prefer it for dedup.
            url = feat.get("id") or props.get("@id") or props.get("web")
            items.append({
                "id": props.get("id"),
                "title": props.get("headline") or props.get("event"),
                "url": url,
                "description": props.get("description"),
                "severity": props.get("severity"),
                "urgency": props.get("urgency"),
                "event": props.get("event"),
                "effective": props.get("effective") or props.get("onset") or props.get("sent"),
                "tags": [t for t in (props.get("event"), props.get("urgency")) if t],
            })
        return items


# ── NewsAPI ─────────────────────────────────────────────────────

_NEWSAPI_PARAMS = ("q", "pageSize", "sortBy", "language", "country", "category", "domains")


class NewsApiAdapter(FeedAdapter):
    kind = "newsapi"
    accept = "application/json"

    def request(
        self,
        client: httpx.Client,
        source: FeedSourceConfig,
        *,
        timeout_s: float,
        credential: str | None = None,
    ) -> httpx.Response:
        if not credential:
            raise FetchError(source.id, "NewsAPI key not configured")
        params = {k: source.params[k] for k in _NEWSAPI_PARAMS if k in source.params}
        return client.get(
            source.url,
            params=params,
            headers={"Accept": self.accept, "X-Api-Key": credential},
            timeout=timeout_s,
        )

    def parse(self, response: httpx.Response, source: FeedSourceConfig) -> list[RawItem]:
        data = safe_json(response, source)
        if not isinstance(data, dict):
            raise ParseError(source.id, f"expected object, got {type(data).__name__}")
        if data.get("status") != "ok":
            raise FetchError(
                source.id,
                f"NewsAPI error {data.get('code', '?')}: {data.get('message', '')}",
                http_status=response.status_code,
            )

        items: list[RawItem] = []
        for art in as_dict_list(data.get("articles")):
            title = str(art.get("title") or "").strip()
            # NewsAPI blanks out articles pulled by the publisher.
            if not title or title == "[Removed]":
                continue
            publisher = art.get("source") if isinstance(art.get("source"), dict) else {}
            items.append({
                "title": title,
                "url": art.get("url"),
                "description": art.get("description"),
                "urlToImage": art.get("urlToImage"),
                "publishedAt": art.get("publishedAt"),
                "author": art.get("author"),
                "publisher": publisher.get("name"),
            })
        return items
