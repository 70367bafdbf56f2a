"""
Wire date formats.

The API uses two distinct formats and they must not be mixed up:

- DEFAULT: ``2023-01-31 09:15:00.123+00:00`` (millisecond precision),
  used for users and profiles.
- MESSAGE: ``2023-01-31T09:15:00+00:00`` (second precision), used for
  notes, the notes query string, note edits and device data.

Parsing is lenient and accepts any ISO-8601 variant the server emits.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum


class DateFormat(Enum):
    """Supported wire date formats."""

    DEFAULT = "default"
    MESSAGE = "message"


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def format_date(value: datetime, fmt: DateFormat = DateFormat.DEFAULT) -> str:
    """Format a datetime in one of the wire formats."""
    value = ensure_aware(value)
    if fmt is DateFormat.MESSAGE:
        return value.isoformat(sep="T", timespec="seconds")
    return value.isoformat(sep=" ", timespec="milliseconds")


def parse_date(text: str) -> datetime:
    """Parse a wire date string into an aware datetime.

    Raises:
        ValueError: If the string is not a recognizable ISO-8601 date
    """
    if not isinstance(text, str) or not text:
        raise ValueError(f"Invalid date value: {text!r}")
    return ensure_aware(datetime.fromisoformat(text))


def to_storage(value: datetime) -> str:
    """Normalize a datetime for the cache.

    Stored values are fixed-width UTC strings so SQL range comparisons
    order correctly.
    """
    return ensure_aware(value).astimezone(UTC).isoformat(timespec="microseconds")


def from_storage(text: str | None) -> datetime | None:
    """Inverse of to_storage()."""
    if text is None:
        return None
    return datetime.fromisoformat(text)
