"""Logging configuration for the analytics service.

TWO OUTPUT FORMATS
--------------------
  _ContainerFormatter: one human-readable line per record, for local
    dev.  Context fields are appended as ``key=value`` so a retry line
    still says which lesson it was about:

      2026-03-10T12:00:00.123+0000 WARNING  app.services.aggregate_updater
        Aggregate view retrying in 0.025s: ...  content_id=lesson-42
        operation=view attempt=1  [aggregate_updater.py:314]

  _JsonFormatter: JSON Lines for production (LOG_JSON=true).  The same
    context fields become top-level keys, filterable in the log store:

      {"level": "WARNING", "operation": "completion",
       "content_id": "lesson-42", "attempt": 2}

WHAT GETS LOGGED WHERE
------------------------
  - One summary line per HTTP request (RequestContextMiddleware).
  - Aggregate write retries at WARNING, exhausted retries at ERROR.
  - Swallowed telemetry failures at ERROR (the log line is the only
    trace the user action ever leaves), unexpected ones with a stack trace.
  - Dashboard sources that were unavailable at WARNING.

Metrics for the same events live in app/core/metrics.py.
"""

from __future__ import annotations

import json
import logging
import sys

# Attached by RequestContextMiddleware and its filter.
REQUEST_FIELDS = ("request_id", "method", "path", "status_code", "duration_ms")
# Attached by the analytics code via ``extra=``.
ANALYTICS_FIELDS = ("user_id", "content_id", "operation", "attempt")

_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"

# Loud at DEBUG; capped at WARNING whatever LOG_LEVEL says.
_NOISY_LOGGERS = (
    "uvicorn",
    "uvicorn.access",
    "uvicorn.error",
    "httpcore",
    "httpx",
    "asyncio",
    "sqlalchemy.engine",
    "alembic",
)


def _context(record: logging.LogRecord, fields: tuple[str, ...]) -> dict[str, object]:
    return {
        key: value
        for key in fields
        if (value := getattr(record, key, None)) is not None
    }


class _ContainerFormatter(logging.Formatter):
    """Single-line formatter for container stdout.

    WARNING and above get ``[filename:lineno]`` appended.
    """

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)-8s %(name)s  %(message)s", datefmt=_DATEFMT
        )

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        base = super().formatTime(record, datefmt)
        # Milliseconds go before the +0000 offset.
        return f"{base[:-5]}.{int(record.msecs):03d}{base[-5:]}"

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        head, sep, trace = line.partition("\n")
        context = _context(record, ANALYTICS_FIELDS)
        if context:
            head += "  " + " ".join(f"{k}={v}" for k, v in context.items())
        if record.levelno >= logging.WARNING:
            head += f"  [{record.filename}:{record.lineno}]"
        return head + sep + trace


class _JsonFormatter(logging.Formatter):
    """One JSON object per line; absent context fields are omitted."""

    def __init__(self) -> None:
        super().__init__(datefmt=_DATEFMT)

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_context(record, REQUEST_FIELDS))
        entry.update(_context(record, ANALYTICS_FIELDS))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level_name: str, *, json_format: bool = False) -> None:
    """Replace the root handlers with one stdout handler.

    ``level_name`` is one of debug/info/warning/error; anything else
    falls back to INFO.
    """
    level = getattr(logging, level_name.upper(), logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JsonFormatter() if json_format else _ContainerFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
