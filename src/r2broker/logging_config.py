"""Structured logging configuration for r2broker.

Log calls attach structured data with ``extra={"context": {...}}``. Every
formatter runs that context through :func:`redact` so that credentials never
reach a log sink, however deeply they are nested.
"""

import json
import logging
import sys
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

REDACTED = "[REDACTED]"

SENSITIVE_TERMS = (
    "password",
    "secret",
    "key",
    "token",
    "access_key",
    "api_key",
    "credential",
)


def _is_sensitive(name: str) -> bool:
    lowered = name.lower()
    return any(term in lowered for term in SENSITIVE_TERMS)


def redact(value: Any) -> Any:
    """Return a copy of ``value`` with sensitive entries replaced.

    Mapping entries whose key contains any of :data:`SENSITIVE_TERMS`
    (case-insensitive) become ``"[REDACTED]"``. Nested mappings, lists and
    tuples are walked recursively; other values are returned unchanged.
    """
    if isinstance(value, Mapping):
        cleaned: dict[Any, Any] = {}
        for k, v in value.items():
            if isinstance(k, str) and _is_sensitive(k):
                cleaned[k] = REDACTED
            else:
                cleaned[k] = redact(v)
        return cleaned
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    return value


def _record_context(record: logging.LogRecord) -> dict[str, Any] | None:
    context = getattr(record, "context", None)
    if not context:
        return None
    if not isinstance(context, Mapping):
        return {"context": context}
    return redact(context)


class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects.

    Fields: timestamp, level, logger, message, plus the redacted context.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        context = _record_context(record)
        if context is not None:
            entry["context"] = context
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter that appends `` | Context: {...}``."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _record_context(record)
        if context is not None:
            line += " | Context: " + json.dumps(context, default=str)
        return line


def configure_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Configure root logging with the specified level and format.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        fmt: Format type: 'text' for human-readable, 'json' for structured.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(numeric_level)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(numeric_level)
    handler.setFormatter(JSONFormatter() if fmt == "json" else TextFormatter())
    root.addHandler(handler)
