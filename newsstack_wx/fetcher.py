"""Source fetcher: adapter dispatch, per-attempt timeout, fixed-delay retry.

``SourceFetcher.fetch`` is the only place network failures are turned
into :class:`FetchError`; it never touches the health tracker.  The
orchestrator records the outcome exactly once per fetch, after retries
are exhausted.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Mapping

import httpx

from ._http import build_client
from .adapters import FeedAdapter
from .common_types import RawItem
from .errors import ConfigError, FetchError, ParseError
from .ingest_json import NewsApiAdapter, NwsAlertsAdapter
from .ingest_models import ModelGraphicsAdapter
from .ingest_reddit import RedditAdapter
from .ingest_rss import RssAdapter
from .registry import FeedSourceConfig

logger = logging.getLogger(__name__)


def default_adapters(clock: Callable[[], float] = time.time) -> dict[str, FeedAdapter]:
    adapters: list[FeedAdapter] = [
        RssAdapter(),
        NwsAlertsAdapter(),
        NewsApiAdapter(),
        RedditAdapter(),
        ModelGraphicsAdapter(clock=clock),
    ]
    return {a.kind: a for a in adapters}


class SourceFetcher:
    """Fetch raw items for one source with retry.

    Parameters
    ----------
    adapters : mapping, optional
        ``kind`` → adapter.  Defaults to :func:`default_adapters`.
    client : httpx.Client, optional
        Shared client.  When omitted one is built (and owned) here.
    credentials : mapping, optional
        Secrets keyed by source id for ``requires_auth`` sources.
    """

    def __init__(
        self,
        adapters: Mapping[str, FeedAdapter] | None = None,
        client: httpx.Client | None = None,
        credentials: Mapping[str, str] | None = None,
        default_timeout_s: float = 8.0,
        user_agent: str = "newsstack-wx/1.0",
    ) -> None:
        self.adapters: dict[str, FeedAdapter] = dict(adapters or default_adapters())
        self._owns_client = client is None
        self.client = client or build_client(user_agent, default_timeout_s)
        self._credentials = dict(credentials or {})
        self.default_timeout_s = default_timeout_s

    def has_credential(self, source: FeedSourceConfig) -> bool:
        return bool(self._credentials.get(source.id))

    def adapter_for(self, source: FeedSourceConfig) -> FeedAdapter:
        adapter = self.adapters.get(source.kind)
        if adapter is None:
            raise ConfigError(f"{source.id}: no adapter registered for kind {source.kind!r}")
        return adapter

    # ── Fetch ───────────────────────────────────────────────────

    def fetch(self, source: FeedSourceConfig, cancel: threading.Event | None = None) -> list[RawItem]:
        return self.fetch_timed(source, cancel)[0]

    def fetch_timed(
        self,
        source: FeedSourceConfig,
        cancel: threading.Event | None = None,
    ) -> tuple[list[RawItem], float]:
        """Fetch with retry; return ``(items, seconds of the successful attempt)``.

        Makes ``1 + source.retry_attempts`` attempts with a fixed
        ``retry_delay_s`` between them.  Setting *cancel* stops further
        attempts (the retry sleep wakes up immediately).
        """
        adapter = self.adapter_for(source)
        credential = self._credentials.get(source.id)
        if source.requires_auth and not credential:
            raise FetchError(source.id, "missing credentials")

        timeout_s = source.timeout_s or self.default_timeout_s
        attempts = 1 + source.retry_attempts
        last_exc: FetchError | None = None
        for attempt in range(1, attempts + 1):
            if cancel is not None and cancel.is_set():
                break
            t0 = time.monotonic()
            try:
                items = self._attempt(adapter, source, credential, timeout_s)
                return items, time.monotonic() - t0
            except FetchError as exc:
                last_exc = exc
                if attempt >= attempts:
                    break
                logger.debug(
                    "%s attempt %d/%d failed (%s) – retrying in %.1fs",
                    source.id, attempt, attempts, exc.message, source.retry_delay_s,
                )
                if cancel is not None:
                    if cancel.wait(source.retry_delay_s):
                        break
                elif source.retry_delay_s > 0:
                    time.sleep(source.retry_delay_s)
        if last_exc is None:
            raise FetchError(source.id, "cancelled before first attempt")
        raise last_exc

    def _attempt(
        self,
        adapter: FeedAdapter,
        source: FeedSourceConfig,
        credential: str | None,
        timeout_s: float,
    ) -> list[RawItem]:
        try:
            r = adapter.request(self.client, source, timeout_s=timeout_s, credential=credential)
        except httpx.TimeoutException:
            raise FetchError(source.id, f"timeout after {timeout_s:.1f}s") from None
        except httpx.HTTPError as exc:
            raise FetchError(source.id, f"{type(exc).__name__}: {exc}") from None

        if not 200 <= r.status_code < 300:
            raise FetchError(source.id, f"HTTP {r.status_code}", http_status=r.status_code)

        try:
            return adapter.parse(r, source)
        except FetchError:
            raise
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise ParseError(source.id, f"{type(exc).__name__}: {exc}") from None

    def close(self) -> None:
        if self._owns_client:
            self.client.close()
