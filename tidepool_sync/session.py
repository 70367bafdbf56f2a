"""
Session store.

Owns the single active session (token plus owning user) held in the
local cache. Sync operations never read the session row directly; they
take an immutable SessionContext snapshot via ``context()`` and thread it
through request construction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .cache import LocalCache
from .exceptions import SessionStateError, SessionValidationError
from .models import Session, User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionContext:
    """Snapshot of the active session at the time an operation starts."""

    session_id: str
    user_id: str | None = None


def _validate_session_id(session_id: str | None) -> str:
    if not isinstance(session_id, str) or not session_id:
        raise SessionValidationError("Session requires a non-empty session id", field="session_id")
    return session_id


class SessionStore:
    """Manages the zero-or-one session row and the current user.

    Usage:
        >>> sessions = SessionStore(cache)
        >>> await sessions.begin_session("tok-123")
        >>> await sessions.bind_user(User(user_id="u1"))
        >>> await sessions.current_session_id()
        'tok-123'
    """

    def __init__(self, cache: LocalCache):
        self.cache = cache

    async def context(self) -> SessionContext | None:
        """Snapshot the current session, or None when signed out."""
        async with self.cache.read() as tx:
            row = await tx.get_session_row()
        if row is None:
            return None
        return SessionContext(session_id=row[0], user_id=row[1])

    async def current_session_id(self) -> str | None:
        context = await self.context()
        return context.session_id if context else None

    async def current_session(self) -> Session | None:
        """Load the active session together with its user."""
        async with self.cache.read() as tx:
            row = await tx.get_session_row()
            if row is None:
                return None
            user = await tx.get_user(row[1]) if row[1] else None
        return Session(session_id=row[0], user=user)

    async def current_user(self) -> User | None:
        """Return the user owning the session, or None if unauthenticated."""
        async with self.cache.read() as tx:
            row = await tx.get_session_row()
            if row is None or row[1] is None:
                return None
            return await tx.get_user(row[1])

    async def begin_session(self, session_id: str, user: User | None = None) -> None:
        """Atomically replace any prior session with a new one.

        Raises:
            SessionValidationError: If session_id is empty
        """
        _validate_session_id(session_id)
        async with self.cache.transaction() as tx:
            if user is not None:
                await tx.upsert_user(user)
            await tx.insert_session(session_id, user.user_id if user else None)
        logger.debug("Session started")

    async def bind_user(self, user: User) -> None:
        """Upsert ``user`` and make it the owner of the current session.

        Raises:
            SessionStateError: If there is no session to bind to
        """
        async with self.cache.transaction() as tx:
            await tx.upsert_user(user)
            if not await tx.set_session_user(user.user_id):
                raise SessionStateError("No session to bind user to", {"user_id": user.user_id})

    async def update_session_id(self, session_id: str) -> bool:
        """Update the token of the existing session in place.

        Never creates a session. Returns False (and logs the anomaly) when
        there is no session to update.
        """
        _validate_session_id(session_id)
        async with self.cache.transaction() as tx:
            updated = await tx.set_session_id(session_id)
        if updated:
            logger.debug("Session id refreshed")
        else:
            logger.warning("Session id refresh ignored: no active session")
        return updated

    async def end_session(self) -> None:
        """Delete the session row, leaving other cached data in place."""
        async with self.cache.transaction() as tx:
            await tx.delete_session()

    async def clear_all(self) -> None:
        """Delete the session and every other cached entity."""
        async with self.cache.transaction() as tx:
            await tx.clear_all()
        logger.info("Local cache cleared")
