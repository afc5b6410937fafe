"""Logging configuration for ACMETLS.

Provides JSON and text formatters, a connection-context filter that
tags every record with the TLS connection being handled on the
current thread, and a one-call ``configure_logging`` function driven
by config settings.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

    from acmetls.config.settings import LoggingSettings

# Context attributes injected by ConnectionContextFilter
_CONTEXT_ATTRS = ("connection_id", "peer")

# Attributes that are part of the standard LogRecord; everything else
# is "extra" and ends up in structured output.
_STANDARD_ATTRS = frozenset(
    {
        "args",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "message",
        "module",
        "msecs",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "taskName",
        "thread",
        "threadName",
        *_CONTEXT_ATTRS,
    }
)

_local = threading.local()


# ---------------------------------------------------------------------------
# Connection context
# ---------------------------------------------------------------------------


@contextmanager
def connection_context(connection_id: str, peer: str | None) -> Iterator[None]:
    """Tag log records emitted on this thread with a connection id and peer.

    Used by the listener around each accepted connection; nesting
    restores the outer context on exit.
    """
    previous = (getattr(_local, "connection_id", None), getattr(_local, "peer", None))
    _local.connection_id = connection_id
    _local.peer = peer
    try:
        yield
    finally:
        _local.connection_id, _local.peer = previous


def current_connection_id() -> str | None:
    """Return the connection id bound to the calling thread, if any."""
    return getattr(_local, "connection_id", None)


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------


class StructuredFormatter(logging.Formatter):
    """JSON-lines formatter for production logging.

    Every record becomes a single JSON object on one line containing
    the standard fields, the connection context when present, and any
    *extra* attributes passed by the caller.
    """

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()

        data: dict = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.message,
        }

        for attr in _CONTEXT_ATTRS:
            value = getattr(record, attr, None)
            if value not in (None, "-"):
                data[attr] = value

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                data.setdefault(key, value)

        if record.exc_info and record.exc_info[0] is not None:
            data["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            data["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for development / console use."""

    _FMT = "%(asctime)s %(levelname)-8s [%(connection_id)s] %(peer)s %(name)s: %(message)s"

    def __init__(self) -> None:
        super().__init__(fmt=self._FMT, datefmt="%Y-%m-%d %H:%M:%S")


# ---------------------------------------------------------------------------
# Filter
# ---------------------------------------------------------------------------


class ConnectionContextFilter(logging.Filter):
    """Inject the calling thread's connection context into every record.

    Records logged outside a connection (renewal timer, startup) get
    ``"-"`` for both attributes so the text format always renders.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        record.connection_id = getattr(_local, "connection_id", None) or "-"  # type: ignore[attr-defined]
        record.peer = getattr(_local, "peer", None) or "-"  # type: ignore[attr-defined]
        return True


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def configure_logging(settings: LoggingSettings) -> logging.Logger:
    """Configure the ``acmetls`` logger hierarchy from settings.

    Replaces any bootstrap handlers with properly formatted output and
    returns the root ``acmetls`` logger.
    """
    level = getattr(logging, settings.level.upper(), logging.INFO)

    root = logging.getLogger("acmetls")
    root.setLevel(level)
    root.handlers.clear()
    root.propagate = False

    formatter: logging.Formatter
    formatter = StructuredFormatter() if settings.format == "json" else TextFormatter()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    console.addFilter(ConnectionContextFilter())
    root.addHandler(console)

    # The challenge server logs one werkzeug line per validation request
    logging.getLogger("werkzeug").setLevel(logging.WARNING)

    return root
