"""Logging setup for undock.

Console output goes through rich's RichHandler, or one JSON object per line
when JSON output is enabled. Modules log through
``logging.getLogger(__name__)``; per-image and per-blob context is attached
with :class:`ContextLogger`.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import MutableMapping
from datetime import datetime
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

TRACE = 5
logging.addLevelName(TRACE, "TRACE")


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that attaches ``key=value`` fields to each record.

    Fields are stored on the record as ``context``.
    """

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra["context"] = dict(self.extra or {})
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **fields: object) -> ContextLogger:
        """Return a new adapter with additional context fields."""
        extra = dict(self.extra or {})
        extra.update(fields)
        return ContextLogger(self.logger, extra)

    def trace(self, msg: str, *args: object) -> None:
        """Log at TRACE level."""
        self.log(TRACE, msg, *args)


def get_logger(name: str, **fields: object) -> ContextLogger:
    """Get a context logger for a module."""
    return ContextLogger(logging.getLogger(name), fields)


def record_context(record: logging.LogRecord) -> dict[str, Any]:
    """Return the context fields attached to a record."""
    return dict(getattr(record, "context", None) or {})


class ConsoleFormatter(logging.Formatter):
    """Formatter appending context fields as ``[key=value ...]``."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        fields = " ".join(f"{k}={v}" for k, v in record_context(record).items())
        if fields:
            message = f"{message} [{fields}]"
        return message


class JSONFormatter(logging.Formatter):
    """Formatter emitting one JSON object per record.

    Keys: ``time``, ``level``, ``message``, the record's context fields, its
    error ``code`` when present and, if enabled, ``caller``.
    """

    def __init__(self, caller: bool = False) -> None:
        super().__init__()
        self.caller = caller

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "time": datetime.fromtimestamp(record.created)
            .astimezone()
            .isoformat(timespec="seconds"),
            "level": record.levelname.lower(),
        }
        payload.update(record_context(record))
        code = getattr(record, "code", None)
        if code is not None:
            payload["code"] = code
        if self.caller:
            payload["caller"] = f"{record.filename}:{record.lineno}"
        if record.exc_info:
            payload["error"] = self.formatException(record.exc_info)
        payload["message"] = record.getMessage()
        return json.dumps(payload, default=str)


def parse_level(level: str) -> int:
    """Convert a level name to its numeric value.

    Raises:
        ValueError: If the level name is unknown.
    """
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level}")
    return value


def configure_logging(
    level: str = "INFO",
    no_color: bool = False,
    caller: bool = False,
    json_output: bool = False,
) -> None:
    """Configure root logging.

    Args:
        level: Log level name (TRACE, DEBUG, INFO, ...).
        no_color: Disable colorized output. ``NO_COLOR`` is honoured too.
        caller: Show file:line of the caller.
        json_output: Write JSON lines to stderr instead of rich console output.
    """
    handler: logging.Handler
    if json_output:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(JSONFormatter(caller=caller))
    else:
        no_color = no_color or "NO_COLOR" in os.environ
        handler = RichHandler(
            console=Console(stderr=True, no_color=no_color),
            show_path=caller,
            rich_tracebacks=False,
            markup=False,
        )
        handler.setFormatter(ConsoleFormatter("%(message)s", datefmt="[%X]"))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(parse_level(level))

    # Keep HTTP client chatter out of INFO output
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


__all__ = [
    "TRACE",
    "ConsoleFormatter",
    "ContextLogger",
    "JSONFormatter",
    "configure_logging",
    "get_logger",
    "parse_level",
    "record_context",
]
