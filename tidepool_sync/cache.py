"""
Local SQLite cache for Tidepool entities.

All access goes through one asyncio lock so there is at most one writer
(and no reader observing a half-applied write) at any time. Writes run
inside ``LocalCache.transaction()``, which commits on success and rolls
back on any exit path, including task cancellation.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from .dates import from_storage, to_storage
from .exceptions import CacheIOError, PreconditionError
from .models import Hashtag, Note, Profile, SharedUserId, User

logger = logging.getLogger(__name__)

# Every entity table, in the order a full clear deletes them
TABLES = (
    "session",
    "hashtags",
    "notes",
    "viewable_user_ids",
    "profiles",
    "users",
)

NOTE_COLUMNS = (
    "id",
    "group_id",
    "user_id",
    "message_text",
    "timestamp",
    "author_full_name",
    "parent_message",
    "created_time",
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS session (
        key INTEGER PRIMARY KEY CHECK (key = 1),
        session_id TEXT NOT NULL CHECK (session_id <> ''),
        user_id TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        user_id TEXT NOT NULL PRIMARY KEY,
        username TEXT,
        emails TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS profiles (
        user_id TEXT NOT NULL PRIMARY KEY,
        full_name TEXT,
        emails TEXT,
        patient TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS viewable_user_ids (
        owner_id TEXT NOT NULL,
        position INTEGER NOT NULL,
        value TEXT NOT NULL,
        PRIMARY KEY (owner_id, value)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notes (
        id TEXT NOT NULL PRIMARY KEY,
        group_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        message_text TEXT,
        timestamp TEXT NOT NULL,
        author_full_name TEXT,
        parent_message TEXT,
        created_time TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS hashtags (
        note_id TEXT NOT NULL REFERENCES notes(id) ON DELETE CASCADE,
        position INTEGER NOT NULL,
        text TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        PRIMARY KEY (note_id, text)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_notes_group_ts ON notes(group_id, timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_hashtags_owner ON hashtags(owner_id)",
)


@dataclass
class CacheConfig:
    """Configuration for the local cache."""

    db_path: str | Path = ":memory:"
    busy_timeout: float = 5.0  # seconds to wait for another writer's lock


def _dump_list(values: Iterable[str]) -> str:
    return json.dumps(list(values))


def _load_list(text: str | None) -> list[str]:
    return json.loads(text) if text else []


class CacheTransaction:
    """
    Typed reads and writes against an open cache connection.

    Instances are only handed out by LocalCache.transaction() and
    LocalCache.read(); they are invalid once the context exits.
    """

    def __init__(self, conn: aiosqlite.Connection):
        self.conn = conn

    async def _fetchone(self, query: str, params: tuple = ()) -> Any:
        async with self.conn.execute(query, params) as cursor:
            return await cursor.fetchone()

    async def _fetchall(self, query: str, params: tuple = ()) -> list[Any]:
        async with self.conn.execute(query, params) as cursor:
            return list(await cursor.fetchall())

    # =========================================================================
    # Session
    # =========================================================================

    async def get_session_row(self) -> tuple[str, str | None] | None:
        """Return (session_id, user_id) of the sole session row, if any."""
        row = await self._fetchone("SELECT session_id, user_id FROM session WHERE key = 1")
        return (row[0], row[1]) if row else None

    async def insert_session(self, session_id: str, user_id: str | None = None) -> None:
        """Replace any existing session row with a new one."""
        await self.conn.execute("DELETE FROM session")
        await self.conn.execute(
            "INSERT INTO session (key, session_id, user_id) VALUES (1, ?, ?)",
            (session_id, user_id),
        )

    async def set_session_id(self, session_id: str) -> bool:
        """Update the token of the existing session. Returns False if there is none."""
        cursor = await self.conn.execute(
            "UPDATE session SET session_id = ? WHERE key = 1", (session_id,)
        )
        return cursor.rowcount > 0

    async def set_session_user(self, user_id: str) -> bool:
        cursor = await self.conn.execute(
            "UPDATE session SET user_id = ? WHERE key = 1", (user_id,)
        )
        return cursor.rowcount > 0

    async def delete_session(self) -> None:
        await self.conn.execute("DELETE FROM session")

    async def clear_all(self) -> None:
        """Delete every row of every entity table."""
        for table in TABLES:
            await self.conn.execute(f"DELETE FROM {table}")

    # =========================================================================
    # Users and profiles
    # =========================================================================

    async def user_exists(self, user_id: str) -> bool:
        row = await self._fetchone("SELECT 1 FROM users WHERE user_id = ?", (user_id,))
        return row is not None

    async def upsert_user(self, user: User) -> None:
        """Insert or replace the user's own fields, keyed by user_id."""
        await self.conn.execute(
            """
            INSERT INTO users (user_id, username, emails) VALUES (?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                username = excluded.username,
                emails = excluded.emails
            """,
            (user.user_id, user.username, _dump_list(user.emails)),
        )

    async def ensure_user(self, user_id: str) -> bool:
        """Create a bare user row if none exists. Returns True if one was created."""
        cursor = await self.conn.execute(
            "INSERT OR IGNORE INTO users (user_id, emails) VALUES (?, '[]')", (user_id,)
        )
        return cursor.rowcount > 0

    async def upsert_profile(self, profile: Profile) -> None:
        await self.conn.execute(
            """
            INSERT INTO profiles (user_id, full_name, emails, patient) VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                full_name = excluded.full_name,
                emails = excluded.emails,
                patient = excluded.patient
            """,
            (
                profile.user_id,
                profile.full_name,
                _dump_list(profile.emails),
                json.dumps(profile.patient) if profile.patient is not None else None,
            ),
        )

    async def get_profile(self, user_id: str) -> Profile | None:
        row = await self._fetchone(
            "SELECT user_id, full_name, emails, patient FROM profiles WHERE user_id = ?",
            (user_id,),
        )
        if row is None:
            return None
        return Profile(
            user_id=row[0],
            full_name=row[1],
            emails=_load_list(row[2]),
            patient=json.loads(row[3]) if row[3] else None,
        )

    async def replace_viewable_user_ids(self, owner_id: str, values: Iterable[str]) -> None:
        """Replace (never merge) the viewable ids of ``owner_id``."""
        await self.conn.execute("DELETE FROM viewable_user_ids WHERE owner_id = ?", (owner_id,))
        ordered = list(dict.fromkeys(values))
        await self.conn.executemany(
            "INSERT INTO viewable_user_ids (owner_id, position, value) VALUES (?, ?, ?)",
            [(owner_id, i, value) for i, value in enumerate(ordered)],
        )

    async def get_viewable_user_ids(self, owner_id: str) -> list[SharedUserId]:
        rows = await self._fetchall(
            "SELECT value FROM viewable_user_ids WHERE owner_id = ? ORDER BY position",
            (owner_id,),
        )
        return [SharedUserId(value=row[0]) for row in rows]

    async def get_user(self, user_id: str) -> User | None:
        """Load a user together with its profile and viewable ids."""
        row = await self._fetchone(
            "SELECT user_id, username, emails FROM users WHERE user_id = ?", (user_id,)
        )
        if row is None:
            return None
        return User(
            user_id=row[0],
            username=row[1],
            emails=_load_list(row[2]),
            profile=await self.get_profile(user_id),
            viewable_user_ids=await self.get_viewable_user_ids(user_id),
        )

    # =========================================================================
    # Notes and hashtags
    # =========================================================================

    async def upsert_note(self, note: Note) -> None:
        """Insert or replace a note keyed by id. Hashtags are written separately."""
        if not note.id:
            raise PreconditionError("Cannot cache a note without a server-assigned id")
        await self.conn.execute(
            f"""
            INSERT INTO notes ({", ".join(NOTE_COLUMNS)}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                group_id = excluded.group_id,
                user_id = excluded.user_id,
                message_text = excluded.message_text,
                timestamp = excluded.timestamp,
                author_full_name = excluded.author_full_name,
                parent_message = excluded.parent_message,
                created_time = excluded.created_time
            """,
            (
                note.id,
                note.group_id,
                note.user_id,
                note.message_text,
                to_storage(note.timestamp),
                note.author_full_name,
                note.parent_message,
                to_storage(note.created_time) if note.created_time else None,
            ),
        )

    async def replace_hashtags(self, note_id: str, hashtags: Iterable[Hashtag]) -> None:
        """Fully replace the hashtags attached to a note."""
        await self.conn.execute("DELETE FROM hashtags WHERE note_id = ?", (note_id,))
        await self.conn.executemany(
            "INSERT INTO hashtags (note_id, position, text, owner_id) VALUES (?, ?, ?, ?)",
            [(note_id, i, tag.text, tag.owner_id) for i, tag in enumerate(hashtags)],
        )

    async def delete_hashtags_for_owner(self, owner_id: str) -> int:
        cursor = await self.conn.execute("DELETE FROM hashtags WHERE owner_id = ?", (owner_id,))
        return cursor.rowcount

    async def delete_note(self, note_id: str) -> int:
        cursor = await self.conn.execute("DELETE FROM notes WHERE id = ?", (note_id,))
        return cursor.rowcount

    async def delete_notes_in_range(
        self, group_id: str, from_date: datetime, to_date: datetime
    ) -> int:
        """Delete the group's notes with from_date < timestamp <= to_date."""
        cursor = await self.conn.execute(
            "DELETE FROM notes WHERE group_id = ? AND timestamp > ? AND timestamp <= ?",
            (group_id, to_storage(from_date), to_storage(to_date)),
        )
        return cursor.rowcount

    async def hashtags_for_note(self, note_id: str) -> list[Hashtag]:
        rows = await self._fetchall(
            "SELECT text, owner_id FROM hashtags WHERE note_id = ? ORDER BY position",
            (note_id,),
        )
        return [Hashtag(text=row[0], owner_id=row[1]) for row in rows]

    async def _row_to_note(self, row: Any) -> Note:
        return Note(
            id=row[0],
            group_id=row[1],
            user_id=row[2],
            message_text=row[3] or "",
            timestamp=from_storage(row[4]),
            author_full_name=row[5],
            parent_message=row[6],
            created_time=from_storage(row[7]),
            hashtags=await self.hashtags_for_note(row[0]),
        )

    async def get_note(self, note_id: str) -> Note | None:
        row = await self._fetchone(
            f"SELECT {', '.join(NOTE_COLUMNS)} FROM notes WHERE id = ?", (note_id,)
        )
        return await self._row_to_note(row) if row else None

    async def notes_in_range(
        self, group_id: str, from_date: datetime, to_date: datetime
    ) -> list[Note]:
        """Cached notes of a group with from_date < timestamp <= to_date, oldest first."""
        rows = await self._fetchall(
            f"""
            SELECT {', '.join(NOTE_COLUMNS)} FROM notes
            WHERE group_id = ? AND timestamp > ? AND timestamp <= ?
            ORDER BY timestamp, id
            """,
            (group_id, to_storage(from_date), to_storage(to_date)),
        )
        return [await self._row_to_note(row) for row in rows]

    async def count(self, table: str) -> int:
        """Row count of an entity table."""
        if table not in TABLES:
            raise ValueError(f"Unknown table: {table}")
        row = await self._fetchone(f"SELECT COUNT(*) FROM {table}")
        return row[0]


class LocalCache:
    """
    aiosqlite-backed persistent cache.

    Usage:
        >>> cache = await LocalCache.create(CacheConfig(db_path="tidepool.db"))
        >>> async with cache.transaction() as tx:
        ...     await tx.upsert_user(user)
        >>> async with cache.read() as tx:
        ...     user = await tx.get_user("u1")
        >>> await cache.close()
    """

    def __init__(self, config: CacheConfig | None = None):
        self.config = config or CacheConfig()
        self.conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._initialized = False

    @classmethod
    async def create(cls, config: CacheConfig | None = None) -> LocalCache:
        """Create and initialize a cache."""
        cache = cls(config)
        await cache.initialize()
        return cache

    async def initialize(self) -> None:
        """Open the connection and create the schema."""
        if self._initialized:
            return

        try:
            self.conn = await aiosqlite.connect(
                str(self.config.db_path), timeout=self.config.busy_timeout
            )
            await self.conn.execute("PRAGMA foreign_keys = ON")
            for statement in _SCHEMA:
                await self.conn.execute(statement)
            await self.conn.commit()
        except aiosqlite.Error as e:
            raise CacheIOError("initialize", str(self.config.db_path), e) from e

        self._initialized = True
        logger.info(f"Local cache opened: {self.config.db_path}")

    async def close(self) -> None:
        """Close the SQLite connection."""
        if self.conn:
            await self.conn.close()
            self.conn = None
        self._initialized = False

    async def delete_database(self) -> None:
        """Close the cache and remove its database file."""
        await self.close()
        path = str(self.config.db_path)
        if path != ":memory:" and os.path.exists(path):
            os.remove(path)
            logger.info(f"Local cache deleted: {path}")

    def _require_conn(self, operation: str) -> aiosqlite.Connection:
        if self.conn is None:
            raise CacheIOError(operation, cause=RuntimeError("Not initialized"))
        return self.conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[CacheTransaction]:
        """Scoped write transaction.

        Commits when the block exits normally; rolls back and re-raises on
        any exception. SQLite errors surface as CacheIOError.
        """
        async with self._lock:
            conn = self._require_conn("transaction")
            try:
                await conn.execute("BEGIN IMMEDIATE")
            except aiosqlite.Error as e:
                raise CacheIOError("begin", str(self.config.db_path), e) from e
            try:
                yield CacheTransaction(conn)
            except aiosqlite.Error as e:
                await conn.rollback()
                raise CacheIOError("transaction", cause=e) from e
            except BaseException:
                await conn.rollback()
                raise
            try:
                await conn.commit()
            except aiosqlite.Error as e:
                await conn.rollback()
                raise CacheIOError("commit", cause=e) from e

    @asynccontextmanager
    async def read(self) -> AsyncIterator[CacheTransaction]:
        """Scoped read access, serialized with writers."""
        async with self._lock:
            try:
                yield CacheTransaction(self._require_conn("read"))
            except aiosqlite.Error as e:
                raise CacheIOError("read", cause=e) from e

    # Convenience reads for offline access

    async def get_user(self, user_id: str) -> User | None:
        async with self.read() as tx:
            return await tx.get_user(user_id)

    async def get_note(self, note_id: str) -> Note | None:
        async with self.read() as tx:
            return await tx.get_note(note_id)

    async def notes_in_range(
        self, group_id: str, from_date: datetime, to_date: datetime
    ) -> list[Note]:
        async with self.read() as tx:
            return await tx.notes_in_range(group_id, from_date, to_date)

    async def count(self, table: str) -> int:
        async with self.read() as tx:
            return await tx.count(table)
