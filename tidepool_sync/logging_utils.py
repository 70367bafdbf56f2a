"""
Structured JSON logging utilities.

Sync operations log through module loggers; hosts that ship logs to a
collector can switch the package (or the root logger) to single-line JSON
with configure_structured_logging(). Session tokens never reach a log
line: request headers are redacted before they are logged, and any
``headers`` mapping passed as log context is redacted by the formatter.
"""

import json
import logging
import sys
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import IO, Any

from .headers import HEADER_SESSION_ID

REDACTED = "<redacted>"

_SENSITIVE_HEADERS = frozenset({HEADER_SESSION_ID.lower(), "authorization"})

# Attributes every LogRecord carries; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}


def redact_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Return a copy of request headers safe to write to a log."""
    return {
        key: REDACTED if key.lower() in _SENSITIVE_HEADERS else value
        for key, value in headers.items()
    }


def _context_value(key: str, value: Any) -> Any:
    if key == "headers" and isinstance(value, Mapping):
        return redact_headers(value)
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredJsonFormatter(logging.Formatter):
    """
    Render each record as one JSON object per line.

    The fixed keys are ``timestamp`` (UTC, ISO 8601), ``level``, ``logger``
    and ``message``, plus ``exception`` when the record carries one.
    Context passed through ``extra`` (``operation``, ``session_present``,
    ...) is added as top-level keys; values that are not JSON-serializable
    are rendered with str().
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            (key, _context_value(key, value))
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_structured_logging(
    level: int = logging.INFO,
    logger_name: str | None = "tidepool_sync",
    stream: IO[str] | None = None,
) -> logging.Logger:
    """
    Send a logger's output to ``stream`` as structured JSON.

    Calling it again replaces the handler instead of adding a second one.

    Args:
        level: Logging level (default: INFO)
        logger_name: Logger to configure (default: the package logger,
            None for the root logger)
        stream: Destination (default: stdout)

    Returns:
        The configured logger
    """
    target = logging.getLogger(logger_name)
    for handler in list(target.handlers):
        if isinstance(handler.formatter, StructuredJsonFormatter):
            target.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(StructuredJsonFormatter())
    target.addHandler(handler)
    target.setLevel(level)
    return target


class OperationLoggerAdapter(logging.LoggerAdapter):
    """
    Stamps sync operation context onto every record.

    Typical context keys are ``operation`` and ``session_present``. Keys
    passed as ``extra`` at the call site take precedence.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs
