"""Source adapter contract.

One adapter per wire format, selected by ``FeedSourceConfig.kind``.  An
adapter has two capabilities:

``request``
    Issue the HTTP call for a source and return the response.  Transport
    errors propagate as ``httpx`` exceptions; the fetcher turns them and
    non-2xx statuses into :class:`~newsstack_wx.errors.FetchError`.

``parse``
    Turn a 2xx response into a list of raw dicts for the normaliser, or
    raise :class:`~newsstack_wx.errors.ParseError` for malformed payloads.

Raw dicts keep source-specific field names; the normaliser is
schema-tolerant and tries several names per unified field.
"""

from __future__ import annotations

import json
from typing import Any

import httpx

from .common_types import RawItem
from .errors import ParseError
from .registry import FeedSourceConfig


class FeedAdapter:
    """Base adapter: plain GET of ``source.url``."""

    kind: str = ""
    accept: str = "*/*"

    def request(
        self,
        client: httpx.Client,
        source: FeedSourceConfig,
        *,
        timeout_s: float,
        credential: str | None = None,
    ) -> httpx.Response:
        return client.get(source.url, headers={"Accept": self.accept}, timeout=timeout_s)

    def parse(self, response: httpx.Response, source: FeedSourceConfig) -> list[RawItem]:
        raise NotImplementedError


def safe_json(response: httpx.Response, source: FeedSourceConfig) -> Any:
    """Decode a JSON body; raise ParseError with content-type on failure."""
    ct = response.headers.get("content-type", "")
    try:
        return response.json()
    except (json.JSONDecodeError, ValueError):
        raise ParseError(
            source.id,
            f"non-JSON payload (content-type={ct!r}, status={response.status_code})",
        ) from None


def as_dict_list(x: Any) -> list[dict[str, Any]]:
    """Keep only dict entries of *x* (an empty list for non-lists)."""
    if not isinstance(x, list):
        return []
    return [item for item in x if isinstance(item, dict)]
