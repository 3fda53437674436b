"""Tests for the source adapters and the retrying fetcher.

All HTTP goes through ``httpx.MockTransport``; nothing touches the network.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import unittest
from datetime import datetime, timezone

import httpx

from newsstack_wx import _http
from newsstack_wx.errors import ConfigError, FetchError, ParseError
from newsstack_wx.fetcher import SourceFetcher, default_adapters
from newsstack_wx.ingest_models import ModelGraphicsAdapter, latest_model_run
from newsstack_wx.registry import FeedSourceConfig

RSS_FEED = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:media="http://search.yahoo.com/mrss/">
<channel>
  <title>FOX Weather</title>
  <item>
    <title>Tornado Warning issued for Dallas County</title>
    <link>https://www.foxweather.com/weather-news/tornado-dallas?utm_source=rss</link>
    <guid>fox-1</guid>
    <pubDate>Tue, 14 Nov 2023 22:00:00 GMT</pubDate>
    <description>&lt;p&gt;Take &lt;b&gt;cover&lt;/b&gt; now&lt;/p&gt;</description>
    <category>Severe</category>
    <media:content url="https://img.example/tornado.jpg" medium="image" />
  </item>
  <item>
    <title>Sunny weekend ahead</title>
    <link>https://www.foxweather.com/weather-news/sunny</link>
    <pubDate>Tue, 14 Nov 2023 20:00:00 GMT</pubDate>
  </item>
</channel>
</rss>
"""


def _src(**kw) -> FeedSourceConfig:
    base = dict(
        id="src", kind="rss", url="https://feeds.example/rss",
        category_tags=("weather",), retry_attempts=0, retry_delay_s=0.0,
    )
    base.update(kw)
    return FeedSourceConfig(**base)


def _fetcher(handler, **kw) -> SourceFetcher:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return SourceFetcher(client=client, **kw)


# ── Adapters ────────────────────────────────────────────────────


class TestRssAdapter(unittest.TestCase):

    def test_parses_entries(self):
        f = _fetcher(lambda req: httpx.Response(200, content=RSS_FEED))
        items = f.fetch(_src())
        self.assertEqual(len(items), 2)
        first = items[0]
        self.assertEqual(first["title"], "Tornado Warning issued for Dallas County")
        self.assertTrue(first["link"].startswith("https://www.foxweather.com/weather-news/tornado-dallas"))
        self.assertEqual(first["image"], "https://img.example/tornado.jpg")
        self.assertIn("Severe", first["tags"])
        self.assertIn("2023", first["published"])

    def test_limit_param(self):
        f = _fetcher(lambda req: httpx.Response(200, content=RSS_FEED))
        self.assertEqual(len(f.fetch(_src(params={"limit": 1}))), 1)

    def test_garbage_is_parse_error(self):
        f = _fetcher(lambda req: httpx.Response(200, content=b"definitely <<< not a feed"))
        with self.assertRaises(ParseError):
            f.fetch(_src())


class TestNwsAlertsAdapter(unittest.TestCase):

    PAYLOAD = {
        "features": [
            {
                "id": "https://api.weather.gov/alerts/urn:oid:1",
                "properties": {
                    "id": "urn:oid:1",
                    "headline": "Tornado Warning issued November 14 by NWS Fort Worth",
                    "event": "Tornado Warning",
                    "severity": "Extreme",
                    "urgency": "Immediate",
                    "effective": "2023-11-14T21:55:00-06:00",
                    "description": "At 355 PM CST a severe thunderstorm...",
                    "web": "http://www.weather.gov",
                },
            },
            {
                "id": "https://api.weather.gov/alerts/urn:oid:2",
                "properties": {"event": "Frost Advisory", "severity": "Minor", "web": "http://www.weather.gov"},
            },
            "not-a-feature",
        ]
    }

    def test_uses_feature_id_as_url(self):
        seen = {}

        def handler(req):
            seen["accept"] = req.headers.get("accept")
            return httpx.Response(200, json=self.PAYLOAD)

        f = _fetcher(handler)
        items = f.fetch(_src(kind="nws_alerts", category_tags=("severe", "weather")))
        self.assertEqual(seen["accept"], "application/geo+json")
        self.assertEqual(len(items), 2)
        self.assertEqual(items[0]["url"], "https://api.weather.gov/alerts/urn:oid:1")
        self.assertEqual(items[0]["severity"], "Extreme")
        self.assertEqual(items[1]["title"], "Frost Advisory")
        self.assertNotEqual(items[0]["url"], items[1]["url"])

    def test_missing_features_is_parse_error(self):
        f = _fetcher(lambda req: httpx.Response(200, json={"type": "FeatureCollection"}))
        with self.assertRaises(ParseError):
            f.fetch(_src(kind="nws_alerts"))

    def test_non_json_is_parse_error(self):
        f = _fetcher(lambda req: httpx.Response(200, content=b"<html>maintenance</html>"))
        with self.assertRaises(ParseError):
            f.fetch(_src(kind="nws_alerts"))


class TestNewsApiAdapter(unittest.TestCase):

    def _source(self):
        return _src(
            id="newsapi", kind="newsapi", url="https://newsapi.org/v2/everything",
            requires_auth=True, params={"q": "hurricane", "pageSize": 5},
        )

    def test_missing_credentials_makes_no_request(self):
        calls = []
        f = _fetcher(lambda req: calls.append(req) or httpx.Response(200, json={}))
        with self.assertRaises(FetchError) as ctx:
            f.fetch(self._source())
        self.assertIn("missing credentials", str(ctx.exception))
        self.assertEqual(calls, [])

    def test_key_sent_as_header_and_removed_skipped(self):
        seen = {}

        def handler(req):
            seen["key"] = req.headers.get("x-api-key")
            seen["q"] = req.url.params.get("q")
            return httpx.Response(200, json={
                "status": "ok",
                "articles": [
                    {"title": "[Removed]", "url": "https://removed.com"},
                    {"title": "Hurricane Lee strengthens", "url": "https://news.example/lee",
                     "publishedAt": "2023-11-14T10:00:00Z", "urlToImage": "https://img.example/lee.jpg",
                     "source": {"name": "Example"}},
                ],
            })

        f = _fetcher(handler, credentials={"newsapi": "abc123"})
        items = f.fetch(self._source())
        self.assertEqual(seen, {"key": "abc123", "q": "hurricane"})
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0]["publisher"], "Example")

    def test_error_status_is_fetch_error(self):
        f = _fetcher(
            lambda req: httpx.Response(200, json={"status": "error", "code": "rateLimited", "message": "slow down"}),
            credentials={"newsapi": "abc123"},
        )
        with self.assertRaises(FetchError) as ctx:
            f.fetch(self._source())
        self.assertIn("rateLimited", ctx.exception.message)


class TestRedditAdapter(unittest.TestCase):

    def test_filters_and_maps_posts(self):
        listing = {"data": {"children": [
            {"data": {"id": "p1", "title": "Supercell over Kansas", "ups": 120,
                      "permalink": "/r/weather/comments/p1/supercell/", "created_utc": 1700000000,
                      "selftext": "", "link_flair_text": "Photo",
                      "preview": {"images": [{"source": {"url": "https://i.redd.it/a.jpg?w=1&amp;s=2"}}]}}},
            {"data": {"id": "p2", "title": "low score", "ups": 3, "permalink": "/r/weather/p2/"}},
            {"data": {"id": "p3", "title": "gone", "ups": 500, "selftext": "[removed]", "permalink": "/r/weather/p3/"}},
        ]}}
        f = _fetcher(lambda req: httpx.Response(200, json=listing))
        items = f.fetch(_src(kind="reddit", category_tags=("community",), params={"min_upvotes": 50}))
        self.assertEqual([i["id"] for i in items], ["p1"])
        self.assertEqual(items[0]["url"], "https://www.reddit.com/r/weather/comments/p1/supercell/")
        self.assertEqual(items[0]["image"], "https://i.redd.it/a.jpg?w=1&s=2")
        self.assertEqual(items[0]["tags"], ["Photo"])


class TestModelGraphicsAdapter(unittest.TestCase):

    NOW = datetime(2023, 11, 14, 13, 30, tzinfo=timezone.utc).timestamp()

    def test_latest_model_run(self):
        self.assertEqual(latest_model_run(self.NOW), 12)
        self.assertEqual(latest_model_run(datetime(2023, 11, 14, 5, 59, tzinfo=timezone.utc).timestamp()), 0)

    def test_probe_and_items_pinned_to_run(self):
        seen = {}

        def handler(req):
            seen["method"] = req.method
            seen["url"] = str(req.url)
            return httpx.Response(200)

        f = _fetcher(handler, adapters={"model_graphics": ModelGraphicsAdapter(clock=lambda: self.NOW)})
        items = f.fetch(_src(
            kind="model_graphics", url="https://mag.ncep.noaa.gov/data/gfs", category_tags=("model", "tropical"),
        ))
        self.assertEqual(seen["method"], "HEAD")
        self.assertIn("/12z/", seen["url"])
        ids = [i["id"] for i in items]
        self.assertIn("gfs-tropatl-12z", ids)
        self.assertIn("nhc-2day-12z", ids)
        run_start = datetime(2023, 11, 14, 12, 0, tzinfo=timezone.utc).timestamp()
        self.assertTrue(all(i["timestamp"] == run_start for i in items))
        self.assertEqual(len({i["url"] for i in items}), len(items))

    def test_unpublished_run_is_fetch_error(self):
        f = _fetcher(lambda req: httpx.Response(404),
                     adapters={"model_graphics": ModelGraphicsAdapter(clock=lambda: self.NOW)})
        with self.assertRaises(FetchError) as ctx:
            f.fetch(_src(kind="model_graphics", category_tags=("model",)))
        self.assertEqual(ctx.exception.http_status, 404)


# ── Fetcher retry / timeout ─────────────────────────────────────


class TestFetcherRetry(unittest.TestCase):

    def test_retries_then_succeeds(self):
        calls = []

        def handler(req):
            calls.append(1)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, content=RSS_FEED)

        f = _fetcher(handler)
        items = f.fetch(_src(retry_attempts=2))
        self.assertEqual(len(calls), 3)
        self.assertEqual(len(items), 2)

    def test_exhausted_retries_raise_last_error(self):
        calls = []
        f = _fetcher(lambda req: calls.append(1) or httpx.Response(503))
        with self.assertRaises(FetchError) as ctx:
            f.fetch(_src(retry_attempts=2))
        self.assertEqual(len(calls), 3)
        self.assertEqual(ctx.exception.http_status, 503)

    def test_timeout_maps_to_fetch_error(self):
        def handler(req):
            raise httpx.ReadTimeout("read timed out", request=req)

        f = _fetcher(handler)
        with self.assertRaises(FetchError) as ctx:
            f.fetch(_src(timeout_s=2.0))
        self.assertIn("timeout after 2.0s", ctx.exception.message)

    def test_connect_error_maps_to_fetch_error(self):
        def handler(req):
            raise httpx.ConnectError("refused", request=req)

        with self.assertRaises(FetchError):
            _fetcher(handler).fetch(_src())

    def test_cancel_interrupts_retry_wait(self):
        f = _fetcher(lambda req: httpx.Response(500))
        cancel = threading.Event()
        threading.Timer(0.05, cancel.set).start()
        t0 = time.monotonic()
        with self.assertRaises(FetchError):
            f.fetch(_src(retry_attempts=3, retry_delay_s=5.0), cancel)
        self.assertLess(time.monotonic() - t0, 2.0)

    def test_cancelled_before_first_attempt(self):
        calls = []
        f = _fetcher(lambda req: calls.append(1) or httpx.Response(200, content=RSS_FEED))
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(FetchError):
            f.fetch(_src(), cancel)
        self.assertEqual(calls, [])

    def test_fetch_timed_reports_elapsed(self):
        f = _fetcher(lambda req: httpx.Response(200, content=RSS_FEED))
        items, elapsed = f.fetch_timed(_src())
        self.assertEqual(len(items), 2)
        self.assertGreaterEqual(elapsed, 0.0)

    def test_unknown_kind_is_config_error(self):
        f = _fetcher(lambda req: httpx.Response(200), adapters={"rss": default_adapters()["rss"]})
        with self.assertRaises(ConfigError):
            f.fetch(_src(kind="reddit"))


class TestTierLimitedWarningSuppression(unittest.TestCase):

    def setUp(self):
        _http._WARNED_SOURCES.clear()

    def test_second_403_is_debug(self):
        exc = FetchError("newsapi", "HTTP 403", http_status=403)
        with self.assertLogs("newsstack_wx._http", level="DEBUG") as cm:
            _http.log_fetch_warning("newsapi", exc)
            _http.log_fetch_warning("newsapi", exc)
        levels = [r.levelno for r in cm.records]
        self.assertEqual(levels, [logging.WARNING, logging.DEBUG])

    def test_other_errors_always_warn(self):
        exc = FetchError("nws", "HTTP 503", http_status=503)
        with self.assertLogs("newsstack_wx._http", level="DEBUG") as cm:
            _http.log_fetch_warning("nws", exc)
            _http.log_fetch_warning("nws", exc)
        self.assertEqual([r.levelno for r in cm.records], [logging.WARNING, logging.WARNING])


class TestErrorSanitizing(unittest.TestCase):

    def test_api_key_stripped_from_message(self):
        exc = FetchError("newsapi", "GET https://newsapi.org/v2/everything?apiKey=abc123&q=x failed")
        self.assertNotIn("abc123", str(exc))
        self.assertNotIn("abc123", json.dumps({"m": exc.message}))


if __name__ == "__main__":
    unittest.main()
