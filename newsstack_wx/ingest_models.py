"""Model-graphic adapter (NOAA GFS charts + NHC outlook graphics).

There is no feed for these: the products are fixed image URLs that roll
over with each model run (00z/06z/12z/18z).  ``request`` probes the
first product of the latest run with a HEAD request so an unpublished
run shows up as a normal source failure; ``parse`` then emits one item
per product with ids and timestamps pinned to that run.
"""

from __future__ import annotations

import re
import time
from datetime import datetime, timezone
from typing import Callable

import httpx

from .adapters import FeedAdapter
from .common_types import RawItem
from .errors import ParseError
from .registry import FeedSourceConfig

NHC_BASE = "https://www.nhc.noaa.gov"

# (slug, region label, priority hint)
DEFAULT_GFS_PRODUCTS: tuple[tuple[str, str, str], ...] = (
    ("tropatl", "Tropical Atlantic", "high"),
    ("us", "Americas", "high"),
    ("wus", "West Coast", "high"),
    ("eus", "East Coast", "high"),
    ("epac", "Eastern Pacific", "medium"),
)

# (id, title, image, priority hint)
NHC_OUTLOOKS: tuple[tuple[str, str, str, str], ...] = (
    ("nhc-2day", "NHC 2-Day Tropical Weather Outlook",
     f"{NHC_BASE}/xgtwo/two_atl_2d0.png", "high"),
    ("nhc-7day", "NHC 7-Day Tropical Weather Outlook",
     f"{NHC_BASE}/xgtwo/two_atl_5d0.png", "medium"),
)

_RUN_RE = re.compile(r"/(\d{2})z/")


def latest_model_run(now: float) -> int:
    """Hour (0, 6, 12, 18) of the most recent GFS cycle at *now* (UTC)."""
    hour = datetime.fromtimestamp(now, tz=timezone.utc).hour
    return (hour // 6) * 6


def _run_start(now: float, run_hour: int) -> float:
    dt = datetime.fromtimestamp(now, tz=timezone.utc)
    return dt.replace(hour=run_hour, minute=0, second=0, microsecond=0).timestamp()


def gfs_image_url(base: str, run_hour: int, slug: str) -> str:
    return f"{base.rstrip('/')}/{run_hour:02d}z/gfs_mslp_precip_{slug}_1.gif"


class ModelGraphicsAdapter(FeedAdapter):
    kind = "model_graphics"

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def _products(self, source: FeedSourceConfig) -> list[tuple[str, str, str]]:
        custom = source.params.get("products")
        if not custom:
            return list(DEFAULT_GFS_PRODUCTS)
        return [(p["slug"], p.get("title", p["slug"]), p.get("priority", "medium")) for p in custom]

    def request(
        self,
        client: httpx.Client,
        source: FeedSourceConfig,
        *,
        timeout_s: float,
        credential: str | None = None,
    ) -> httpx.Response:
        run = latest_model_run(self._clock())
        slug = self._products(source)[0][0]
        return client.head(gfs_image_url(source.url, run, slug), timeout=timeout_s)

    def parse(self, response: httpx.Response, source: FeedSourceConfig) -> list[RawItem]:
        m = _RUN_RE.search(str(response.request.url))
        if not m:
            raise ParseError(source.id, f"cannot determine model run from {response.request.url}")
        run = int(m.group(1))
        run_label = f"{run:02d}:00 UTC"
        published = _run_start(self._clock(), run)

        items: list[RawItem] = []
        for slug, region, priority in self._products(source):
            url = gfs_image_url(source.url, run, slug)
            items.append({
                "id": f"gfs-{slug}-{run:02d}z",
                "title": f"GFS Model - {region} ({run_label})",
                "url": url,
                "image": url,
                "description": (
                    f"Latest GFS {run_label} model run showing mean sea level pressure "
                    f"and precipitation for {region}. Updated 4 times daily."
                ),
                "timestamp": published,
                "priority": priority,
                "category": "model",
                "tags": ["gfs", f"{run:02d}z"],
            })
        if source.params.get("include_nhc", True):
            for oid, title, image, priority in NHC_OUTLOOKS:
                items.append({
                    "id": f"{oid}-{run:02d}z",
                    "title": title,
                    # Image URL keeps the two outlooks distinct after URL dedup.
                    "url": image,
                    "image": image,
                    "timestamp": published,
                    "priority": priority,
                    "category": "tropical",
                    "tags": ["nhc"],
                })
        return items
