"""Shared HTTP helpers for the source adapters.

Builds the one ``httpx.Client`` every adapter shares and centralises the
once-per-source suppression of plan/credential errors so a feed that is
simply not available to us does not spam the log every cycle.
"""

from __future__ import annotations

import logging
import ssl
import threading

import certifi
import httpx

from .errors import FetchError, sanitize

logger = logging.getLogger(__name__)

# ── Once-per-source error suppression ───────────────────────────
# 400/401/403/404/426 usually mean the endpoint is not available with
# our credentials or plan.  Warn once, then log at DEBUG.
_WARNED_SOURCES: set[str] = set()
_warned_lock = threading.Lock()

_TIER_LIMITED_CODES: frozenset[int] = frozenset({400, 401, 403, 404, 426})


def build_client(user_agent: str, timeout_s: float) -> httpx.Client:
    """Shared client: certifi trust store, redirects followed, fixed UA."""
    ssl_ctx = ssl.create_default_context(cafile=certifi.where())
    return httpx.Client(
        timeout=timeout_s,
        follow_redirects=True,
        verify=ssl_ctx,
        headers={"User-Agent": user_agent},
    )


def log_fetch_warning(source_id: str, exc: Exception) -> None:
    """Log a source failure, suppressing repeated tier-limited errors."""
    msg = sanitize(str(exc))
    status = exc.http_status if isinstance(exc, FetchError) else None
    if status in _TIER_LIMITED_CODES:
        with _warned_lock:
            already_warned = source_id in _WARNED_SOURCES
            _WARNED_SOURCES.add(source_id)
        if not already_warned:
            logger.warning(
                "%s fetch failed (HTTP %d) – endpoint not available with current "
                "credentials; suppressing further warnings: %s",
                source_id, status, msg,
            )
        else:
            logger.debug("%s fetch failed (tier-limited, suppressed): %s", source_id, msg)
    else:
        logger.warning("%s fetch failed: %s", source_id, msg)
