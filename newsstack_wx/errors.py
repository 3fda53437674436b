"""Structured error taxonomy for newsstack_wx.

Provides a small exception hierarchy so callers can tell a per-source
failure (recovered locally) from the one hard error surfaced to the
route layer, :class:`AggregationFailure`.
"""
from __future__ import annotations

from .log_redaction import redact_secrets


def sanitize(text: str) -> str:
    """Strip credentials from *text* before it is stored in an error or health record."""
    return redact_secrets(text)


class NewsstackError(Exception):
    """Base error for all newsstack_wx subsystems."""
    pass


class ConfigError(NewsstackError):
    """Invalid configuration value or source registry entry."""
    pass


class FetchError(NewsstackError):
    """Network, timeout or non-2xx failure for a single source."""

    def __init__(self, source_id: str, message: str, *, http_status: int | None = None):
        self.source_id = source_id
        self.http_status = http_status
        self.message = sanitize(message)
        super().__init__(f"{source_id}: {self.message}")


class ParseError(FetchError):
    """Malformed payload from a source.

    Treated exactly like :class:`FetchError` for health tracking.
    """
    pass


class AggregationFailure(NewsstackError):
    """Every source failed or was skipped and no cached result exists."""

    def __init__(self, query_key: str, errors: dict[str, str] | None = None):
        self.query_key = query_key
        self.errors = dict(errors or {})
        super().__init__(
            f"no source produced items and no cached result is available "
            f"({len(self.errors)} source errors)"
        )
