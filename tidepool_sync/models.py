"""
Data model for cached Tidepool entities.

Each entity maps between the server's JSON field names (``userid``,
``messagetext``, ...) and Python attributes. ``from_json`` raises
ParseError when a required field is missing or has the wrong type.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .dates import DateFormat, format_date, parse_date
from .exceptions import ParseError


def _require_str(data: dict[str, Any], key: str, what: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ParseError(what, f"missing or invalid '{key}'")
    return value


def _optional_str(data: dict[str, Any], key: str, what: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ParseError(what, f"'{key}' must be a string")
    return value


def _string_list(data: dict[str, Any], key: str, what: str) -> list[str]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ParseError(what, f"'{key}' must be a list of strings")
    # Ordered set semantics
    return list(dict.fromkeys(value))


def _date(data: dict[str, Any], key: str, what: str, required: bool = True) -> datetime | None:
    value = data.get(key)
    if value is None and not required:
        return None
    try:
        return parse_date(value)
    except (TypeError, ValueError) as e:
        raise ParseError(what, f"invalid date in '{key}'", cause=e) from e


@dataclass
class Hashtag:
    """A hashtag token derived from a note's text."""

    text: str
    owner_id: str


@dataclass
class SharedUserId:
    """A user id the current user is allowed to view."""

    value: str


@dataclass
class Profile:
    """Profile metadata for a user.

    ``patient`` holds the free-form patient block (birthday, diagnosis
    date, ...) exactly as the server returned it.
    """

    user_id: str
    full_name: str | None = None
    emails: list[str] = field(default_factory=list)
    patient: dict[str, Any] | None = None

    @classmethod
    def from_json(cls, data: Any, user_id: str) -> Profile:
        """Parse a profile response. The user id comes from the request, not the body."""
        if not isinstance(data, dict):
            raise ParseError("profile", "expected a JSON object")
        patient = data.get("patient")
        if patient is not None and not isinstance(patient, dict):
            raise ParseError("profile", "'patient' must be an object")
        return cls(
            user_id=user_id,
            full_name=_optional_str(data, "fullName", "profile"),
            emails=_string_list(data, "emails", "profile"),
            patient=patient,
        )


@dataclass
class User:
    """A Tidepool user, keyed by ``user_id``."""

    user_id: str
    username: str | None = None
    emails: list[str] = field(default_factory=list)
    profile: Profile | None = None
    viewable_user_ids: list[SharedUserId] = field(default_factory=list)

    @property
    def userid(self) -> str:
        """Wire-name alias for user_id."""
        return self.user_id

    @classmethod
    def from_json(cls, data: Any) -> User:
        """Parse a user object (e.g. the sign-in response body)."""
        if not isinstance(data, dict):
            raise ParseError("user", "expected a JSON object")
        return cls(
            user_id=_require_str(data, "userid", "user"),
            username=_optional_str(data, "username", "user"),
            emails=_string_list(data, "emails", "user"),
        )


@dataclass
class Note:
    """A note (message) posted to a group.

    ``id`` stays None until the server assigns one; such a note is never
    written to the cache.
    """

    group_id: str
    user_id: str
    message_text: str
    timestamp: datetime
    id: str | None = None
    author_full_name: str | None = None
    parent_message: str | None = None
    created_time: datetime | None = None
    hashtags: list[Hashtag] = field(default_factory=list)

    def to_json(self) -> dict[str, Any]:
        """Serialize for the post-note request body (message date format)."""
        data: dict[str, Any] = {
            "groupid": self.group_id,
            "userid": self.user_id,
            "messagetext": self.message_text,
            "timestamp": format_date(self.timestamp, DateFormat.MESSAGE),
        }
        if self.id is not None:
            data["id"] = self.id
        if self.parent_message is not None:
            data["parentmessage"] = self.parent_message
        if self.created_time is not None:
            data["createdtime"] = format_date(self.created_time, DateFormat.MESSAGE)
        return data

    def to_edit_json(self) -> dict[str, Any]:
        """Serialize the partial payload sent by an edit."""
        return {
            "messagetext": self.message_text,
            "timestamp": format_date(self.timestamp, DateFormat.MESSAGE),
        }

    @classmethod
    def from_json(cls, data: Any) -> Note:
        """Parse one message fragment from the notes listing.

        The author's full name is denormalized from the nested ``user`` object.
        """
        if not isinstance(data, dict):
            raise ParseError("note", "expected a JSON object")
        user = data.get("user")
        if not isinstance(user, dict):
            raise ParseError("note", "missing or invalid 'user'")
        return cls(
            id=_require_str(data, "id", "note"),
            group_id=_require_str(data, "groupid", "note"),
            user_id=_require_str(data, "userid", "note"),
            message_text=_optional_str(data, "messagetext", "note") or "",
            timestamp=_date(data, "timestamp", "note"),
            author_full_name=_require_str(user, "fullName", "note"),
            parent_message=_optional_str(data, "parentmessage", "note"),
            created_time=_date(data, "createdtime", "note", required=False),
        )


@dataclass
class Session:
    """The single active session: a token plus the user it belongs to."""

    session_id: str
    user: User | None = None


@dataclass
class NotesPage:
    """Result of a notes listing.

    ``missing_user_ids`` lists author and group ids that had no cached
    user when the listing committed; callers backfill their profiles.
    """

    notes: list[Note]
    missing_user_ids: list[str] = field(default_factory=list)


@dataclass
class UploadResult:
    """Result of a device data upload."""

    data: list[Any]
    duplicate_indices: list[int] = field(default_factory=list)
