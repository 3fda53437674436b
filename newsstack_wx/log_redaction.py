"""Secret redaction shared by error messages and log output.

Feed URLs and request headers carry credentials (NewsAPI ``apiKey``,
``X-Api-Key``, bearer tokens).  One pattern table serves both
:func:`newsstack_wx.errors.sanitize`, which cleans messages before they
reach :class:`~newsstack_wx.health.HealthTracker`, and
:class:`LogRedactionFilter`, which the CLI installs on the root handlers.
"""
from __future__ import annotations

import logging
import re

REDACTED = "***"

# (pattern, replacement); key names stay visible, values do not.
_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    # apiKey=…, api_key: …, X-Api-Key: …, token=…, &key=…
    (
        re.compile(
            r"\b(?P<name>api[_-]?key|access[_-]?token|token|secret|password|key)"
            r"(?P<sep>\s*[:=]\s*)[\"']?[^\s'\"&]+[\"']?",
            re.IGNORECASE,
        ),
        rf"\g<name>\g<sep>{REDACTED}",
    ),
    (re.compile(r"\b(?P<name>Authorization\s*[:=]\s*)(?:Bearer\s+)?\S+", re.IGNORECASE), rf"\g<name>{REDACTED}"),
    (re.compile(r"\bBearer\s+[^\s*]+", re.IGNORECASE), f"Bearer {REDACTED}"),
    # bare NewsAPI keys
    (re.compile(r"\b[a-fA-F0-9]{32}\b"), REDACTED),
]


def redact_secrets(text: str) -> str:
    """Return *text* with credential values replaced by ``***``."""
    if not text:
        return text
    for pattern, repl in _PATTERNS:
        text = pattern.sub(repl, text)
    return text


class LogRedactionFilter(logging.Filter):
    """Render the record's message once and redact the result.

    Formatting before redaction also covers non-string arguments such as
    ``httpx.URL`` objects whose query string holds a key.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        record.msg = redact_secrets(message)
        record.args = None
        return True


def apply_global_log_redaction() -> None:
    """Install :class:`LogRedactionFilter` on every root-logger handler once."""
    root = logging.getLogger()
    for handler in root.handlers:
        if not any(isinstance(f, LogRedactionFilter) for f in handler.filters):
            handler.addFilter(LogRedactionFilter())
