"""
Tidepool sync client.

Composes the session store, header construction, the network transport
and the local cache into the sync operations: sign-in, token refresh,
sign-out, note post/update/delete, note listing, profile and
viewable-user-id fetches, and device data upload.

Each operation:
1. Snapshots the session context
2. Builds the URL, headers and body
3. Awaits the transport
4. Applies cache writes inside one transaction
5. Returns exactly one OperationResult

Example:
    >>> async with await TidepoolClient.create(ClientConfig(environment="Staging")) as client:
    ...     result = await client.sign_in("alice", "secret")
    ...     if result.ok:
    ...         page = (await client.get_notes(result.value.user_id, start, end)).unwrap()
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from datetime import datetime
from typing import Any, TypeVar
from urllib.parse import quote, urlencode, urljoin, urlsplit

from .cache import CacheConfig, LocalCache
from .config import ClientConfig, parse_environment, resolve_environment
from .dates import DateFormat, format_date
from .exceptions import (
    AuthenticationError,
    NothingToRefreshError,
    OperationCancelledError,
    ParseError,
    PreconditionError,
    SessionStateError,
    TidepoolSyncError,
    TransportError,
    UnexpectedError,
    URLConstructionError,
)
from .hashtags import parse_hashtags
from .headers import HEADER_SESSION_ID, build_auth_header, build_session_headers
from .logging_utils import OperationLoggerAdapter, redact_headers
from .models import Note, NotesPage, Profile, SharedUserId, UploadResult, User
from .operations import CancellationToken, OperationHandle, OperationResult
from .session import SessionContext, SessionStore
from .transport import AiohttpTransport, Transport, TransportResponse

logger = logging.getLogger(__name__)

T = TypeVar("T")

JSON_HEADERS = {"Content-Type": "application/json"}


def _segment(value: Any, name: str) -> str:
    """Quote one path segment of a request URL."""
    if not isinstance(value, str) or not value:
        raise URLConstructionError(None, f"<{name}>", f"{name} must be a non-empty string")
    return quote(value, safe="")


def _encode_wire_value(value: Any) -> Any:
    """JSON fallback for device data: datetimes use the message date format."""
    if isinstance(value, datetime):
        return format_date(value, DateFormat.MESSAGE)
    if hasattr(value, "to_json"):
        return value.to_json()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _check(token: CancellationToken | None, operation: str, stage: str) -> None:
    if token is not None:
        token.raise_if_cancelled(operation, stage)


class TidepoolClient:
    """
    Client-side sync engine between the Tidepool API and the local cache.

    The client owns the SessionStore; exactly one session exists at a
    time. Public operations never raise library errors: failures come
    back as ``OperationResult.error``.
    """

    def __init__(
        self,
        cache: LocalCache,
        transport: Transport,
        config: ClientConfig | None = None,
    ):
        """Initialize the client.

        Args:
            cache: Initialized local cache
            transport: HTTP transport
            config: Client configuration (defaults to Production)
        """
        self.config = config or ClientConfig()
        self.cache = cache
        self.transport = transport
        self.sessions = SessionStore(cache)

        urls = self.config.urls()
        self.base_url = urls.api_base_url
        self.upload_base_url = urls.upload_base_url

        # Fire-and-forget profile fetches scheduled by note listings
        self._background: set[asyncio.Task[None]] = set()

    @classmethod
    async def create(
        cls,
        config: ClientConfig | None = None,
        transport: Transport | None = None,
    ) -> TidepoolClient:
        """Create a client with an initialized cache and (by default) an aiohttp transport."""
        if config is None:
            config = ClientConfig.from_env()
        cache = await LocalCache.create(CacheConfig(db_path=config.db_path))
        if transport is None:
            transport = AiohttpTransport(
                timeout=config.request_timeout,
                max_concurrent_requests=config.max_concurrent_requests,
            )
        return cls(cache, transport, config)

    async def close(self) -> None:
        """Cancel pending backfills and release the transport and cache."""
        for task in list(self._background):
            task.cancel()
        await self.wait_for_background()
        await self.transport.close()
        await self.cache.close()

    async def __aenter__(self) -> TidepoolClient:
        return self

    async def __aexit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        await self.close()

    def set_environment(self, name: str) -> None:
        """Point the client at another deployment (Production, Development or Staging)."""
        environment = parse_environment(name)
        urls = resolve_environment(environment)
        self.config.environment = environment
        self.base_url = urls.api_base_url
        self.upload_base_url = urls.upload_base_url
        logger.info(f"Using {environment.value} environment: {self.base_url}")

    # =========================================================================
    # Accessors
    # =========================================================================

    async def get_user(self) -> User | None:
        """The signed-in user, read from the cache."""
        return await self.sessions.current_user()

    async def get_session_id(self) -> str | None:
        return await self.sessions.current_session_id()

    async def clear_database(self) -> None:
        await self.sessions.clear_all()

    async def delete_database(self) -> None:
        """Close the cache and remove its database file."""
        await self.cache.delete_database()

    # =========================================================================
    # Plumbing
    # =========================================================================

    def _log(self, operation: str) -> OperationLoggerAdapter:
        return OperationLoggerAdapter(logger, {"operation": operation})

    def _build_url(
        self,
        base_url: str | None,
        path: str,
        query: Mapping[str, str] | None = None,
    ) -> str:
        parsed = urlsplit(base_url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise URLConstructionError(base_url, path, "base URL must be an absolute http(s) URL")
        url = urljoin(base_url, path)
        if query:
            url += "?" + urlencode(query)
        return url

    def _api_url(self, path: str, query: Mapping[str, str] | None = None) -> str:
        return self._build_url(self.base_url, path, query)

    def _upload_url(self, path: str) -> str:
        return self._build_url(self.upload_base_url, path)

    @staticmethod
    def _parse_json(text: str, what: str) -> Any:
        try:
            return json.loads(text)
        except (TypeError, ValueError) as e:
            raise ParseError(what, "malformed JSON", cause=e) from e

    def _network_error(self, operation: str, error: TransportError) -> None:
        log = self._log(operation)
        log.error(f"Network error in {operation}: {error}")
        if error.body:
            log.debug(f"Server returned error message: {error.body}")

    async def _send(
        self,
        operation: str,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: bytes | None = None,
        token: CancellationToken | None = None,
    ) -> TransportResponse:
        """Send one request; non-2xx responses become TransportError."""
        _check(token, operation, "before send")
        log = OperationLoggerAdapter(
            logger, {"operation": operation, "session_present": HEADER_SESSION_ID in headers}
        )
        log.debug(f"{method} {url} headers={redact_headers(headers)}")

        try:
            response = await self.transport.request(method, url, headers, body)
        except TransportError as e:
            self._network_error(operation, e)
            raise
        except (OSError, asyncio.TimeoutError) as e:
            error = TransportError(method, url, cause=e)
            self._network_error(operation, error)
            raise error from e

        if not response.ok:
            error = TransportError(method, url, status=response.status, body=response.body)
            self._network_error(operation, error)
            raise error

        _check(token, operation, "after receive")
        return response

    async def _run(self, operation: str, work: Awaitable[T]) -> OperationResult[T]:
        """Run an operation body and fold its outcome into an OperationResult."""
        log = self._log(operation)
        try:
            value = await work
        except OperationCancelledError as e:
            log.info(f"{operation} cancelled {e.stage}")
            return OperationResult.failure(operation, e)
        except TidepoolSyncError as e:
            log.warning(f"{operation} failed: {e}")
            return OperationResult.failure(operation, e)
        except Exception as e:
            log.exception(f"{operation} raised an unexpected error")
            return OperationResult.failure(operation, UnexpectedError(operation, e))
        return OperationResult.success(operation, value)

    def submit(
        self,
        operation: Callable[..., Awaitable[OperationResult[T]]],
        *args: Any,
        on_complete: Callable[[OperationResult[T]], Any] | None = None,
        **kwargs: Any,
    ) -> OperationHandle[T]:
        """Schedule an operation and return a cancellable handle immediately.

        Example:
            >>> handle = client.submit(client.post_note, note, on_complete=print)
            >>> handle.cancel()
        """
        token = CancellationToken()
        task = asyncio.create_task(operation(*args, cancel_token=token, **kwargs))
        handle: OperationHandle[T] = OperationHandle(operation.__name__, task, token)
        if on_complete is not None:
            handle.add_done_callback(on_complete)
        return handle

    # =========================================================================
    # Authentication
    # =========================================================================

    async def sign_in(
        self,
        username: str,
        password: str,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> OperationResult[User]:
        """Sign in and start a session bound to the returned user."""
        return await self._run("sign_in", self._sign_in(username, password, cancel_token))

    async def _sign_in(
        self, username: str, password: str, token: CancellationToken | None
    ) -> User:
        # Clear out any session left over from before
        await self.sessions.end_session()

        url = self._api_url("/auth/login")
        headers = build_auth_header(username, password)
        response = await self._send("sign_in", "POST", url, headers, token=token)

        session_id = response.header(HEADER_SESSION_ID)
        if not session_id:
            raise AuthenticationError(url, "No session ID returned in headers")

        await self.sessions.begin_session(session_id)
        try:
            user = User.from_json(self._parse_json(response.body, "user"))
            _check(token, "sign_in", "before commit")
            await self.sessions.bind_user(user)
        except (TidepoolSyncError, asyncio.CancelledError):
            await self.sessions.end_session()
            raise

        logger.info(f"Signed in as {user.user_id}")
        return user

    async def refresh_token(
        self, *, cancel_token: CancellationToken | None = None
    ) -> OperationResult[None]:
        """Exchange the session token for a fresh one."""
        return await self._run("refresh_token", self._refresh_token(cancel_token))

    async def _refresh_token(self, token: CancellationToken | None) -> None:
        context = await self.sessions.context()
        if context is None:
            raise NothingToRefreshError()

        url = self._api_url("/auth/login")
        response = await self._send(
            "refresh_token", "GET", url, build_session_headers(context), token=token
        )

        session_id = response.header(HEADER_SESSION_ID)
        if session_id:
            _check(token, "refresh_token", "before commit")
            if not await self.sessions.update_session_id(session_id):
                raise SessionStateError("Session ended before the refreshed token could be stored")

    async def sign_out(
        self, *, cancel_token: CancellationToken | None = None
    ) -> OperationResult[int]:
        """Clear all local state, then notify the server. Returns the HTTP status."""
        return await self._run("sign_out", self._sign_out(cancel_token))

    async def _sign_out(self, token: CancellationToken | None) -> int:
        # Capture the headers before the session is gone
        headers = build_session_headers(await self.sessions.context())

        await self.sessions.clear_all()

        url = self._api_url("/auth/logout")
        response = await self._send("sign_out", "POST", url, headers, token=token)
        return response.status

    # =========================================================================
    # Notes
    # =========================================================================

    async def post_note(
        self, note: Note, *, cancel_token: CancellationToken | None = None
    ) -> OperationResult[Note]:
        """Create a note; on success it carries its server id and hashtags and is cached."""
        return await self._run("post_note", self._post_note(note, cancel_token))

    async def _post_note(self, note: Note, token: CancellationToken | None) -> Note:
        url = self._api_url(f"/message/send/{_segment(note.group_id, 'group_id')}")
        context = await self.sessions.context()
        body = json.dumps({"message": note.to_json()}).encode()

        response = await self._send(
            "post_note",
            "POST",
            url,
            {**build_session_headers(context), **JSON_HEADERS},
            body,
            token,
        )

        # The response only contains the id
        data = self._parse_json(response.body, "note id")
        note_id = data.get("id") if isinstance(data, dict) else None
        if not isinstance(note_id, str) or not note_id:
            raise ParseError("note id", "missing 'id' in response")

        note.id = note_id
        note.hashtags = parse_hashtags(note.message_text, note.user_id)

        async with self.cache.transaction() as tx:
            await tx.upsert_note(note)
            await tx.replace_hashtags(note.id, note.hashtags)
            _check(token, "post_note", "before commit")

        return note

    async def update_note(
        self, note: Note, *, cancel_token: CancellationToken | None = None
    ) -> OperationResult[Note]:
        """Edit a note's text and timestamp.

        The caller's note is returned as the result. The cache is not
        written and hashtags are not recomputed.
        """
        return await self._run("update_note", self._update_note(note, cancel_token))

    async def _update_note(self, note: Note, token: CancellationToken | None) -> Note:
        if not note.id:
            raise PreconditionError("Cannot update a note without an id")

        url = self._api_url(f"/message/edit/{_segment(note.id, 'note_id')}")
        context = await self.sessions.context()
        body = json.dumps({"message": note.to_edit_json()}).encode()

        await self._send(
            "update_note",
            "PUT",
            url,
            {**build_session_headers(context), **JSON_HEADERS},
            body,
            token,
        )
        return note

    async def delete_note(
        self, note: Note | str, *, cancel_token: CancellationToken | None = None
    ) -> OperationResult[None]:
        """Delete a note on the server, then remove it from the cache."""
        return await self._run("delete_note", self._delete_note(note, cancel_token))

    async def _delete_note(self, note: Note | str, token: CancellationToken | None) -> None:
        note_id = note.id if isinstance(note, Note) else note
        if not note_id:
            raise PreconditionError("Cannot delete a note without an id")

        url = self._api_url(f"/message/remove/{_segment(note_id, 'note_id')}")
        context = await self.sessions.context()
        await self._send(
            "delete_note", "DELETE", url, build_session_headers(context), token=token
        )

        async with self.cache.transaction() as tx:
            await tx.delete_note(note_id)
            _check(token, "delete_note", "before commit")

    async def get_notes(
        self,
        user_id: str,
        from_date: datetime,
        to_date: datetime,
        *,
        backfill: bool | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> OperationResult[NotesPage]:
        """Fetch the notes of ``user_id`` with from_date < timestamp <= to_date.

        The cached notes and hashtags for the range are replaced in one
        transaction. Authors and groups missing from the cache are listed
        in ``NotesPage.missing_user_ids`` and, when backfill is enabled,
        their profiles are fetched in the background.
        """
        if backfill is None:
            backfill = self.config.backfill_profiles
        return await self._run(
            "get_notes",
            self._get_notes(user_id, from_date, to_date, backfill, cancel_token),
        )

    def _parse_notes(self, body: str) -> list[Note]:
        data = self._parse_json(body, "notes")
        messages = data.get("messages") if isinstance(data, dict) else None
        if not isinstance(messages, list):
            raise ParseError("notes", "missing 'messages' array")

        notes = []
        for fragment in messages:
            # Each message is itself a JSON-encoded string
            if isinstance(fragment, str):
                fragment = self._parse_json(fragment, "note")
            notes.append(Note.from_json(fragment))
        return notes

    async def _get_notes(
        self,
        user_id: str,
        from_date: datetime,
        to_date: datetime,
        backfill: bool,
        token: CancellationToken | None,
    ) -> NotesPage:
        query = {
            "starttime": format_date(from_date, DateFormat.MESSAGE),
            "endtime": format_date(to_date, DateFormat.MESSAGE),
        }
        url = self._api_url(f"/message/notes/{_segment(user_id, 'user_id')}", query)
        context = await self.sessions.context()
        response = await self._send(
            "get_notes", "GET", url, build_session_headers(context), token=token
        )

        # Parse everything before touching the cache, so a bad fragment
        # leaves the cached range as it was
        notes = self._parse_notes(response.body)
        for note in notes:
            note.hashtags = parse_hashtags(note.message_text, user_id)

        missing: list[str] = []
        async with self.cache.transaction() as tx:
            await tx.delete_hashtags_for_owner(user_id)
            await tx.delete_notes_in_range(user_id, from_date, to_date)

            for note in notes:
                await tx.upsert_note(note)
                await tx.replace_hashtags(note.id, note.hashtags)

            for note in notes:
                for referenced in (note.user_id, note.group_id):
                    if referenced not in missing and not await tx.user_exists(referenced):
                        missing.append(referenced)

            _check(token, "get_notes", "before commit")

        logger.debug(f"Cached {len(notes)} notes for {user_id}")
        if backfill and missing:
            self.backfill_profiles(missing)
        return NotesPage(notes=notes, missing_user_ids=missing)

    # =========================================================================
    # Users
    # =========================================================================

    async def get_profile(
        self, user_id: str, *, cancel_token: CancellationToken | None = None
    ) -> OperationResult[Profile]:
        """Fetch and cache a user's profile, creating a bare user row if needed."""
        return await self._run("get_profile", self._get_profile(user_id, cancel_token))

    async def _get_profile(self, user_id: str, token: CancellationToken | None) -> Profile:
        url = self._api_url(f"/metadata/{_segment(user_id, 'user_id')}/profile")
        context = await self.sessions.context()
        response = await self._send(
            "get_profile", "GET", url, build_session_headers(context), token=token
        )

        profile = Profile.from_json(self._parse_json(response.body, "profile"), user_id)

        async with self.cache.transaction() as tx:
            await tx.upsert_profile(profile)
            await tx.ensure_user(user_id)
            _check(token, "get_profile", "before commit")

        return profile

    def backfill_profiles(self, user_ids: Iterable[str]) -> list[asyncio.Task[None]]:
        """Schedule background profile fetches. Failures are logged, never raised."""
        tasks = []
        for user_id in user_ids:
            logger.debug(f"Getting profile for user: {user_id}")
            task = asyncio.create_task(self._backfill_profile(user_id))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            tasks.append(task)
        return tasks

    async def _backfill_profile(self, user_id: str) -> None:
        result = await self.get_profile(user_id)
        if not result.ok:
            logger.warning(f"Profile backfill for {user_id} failed: {result.error}")

    async def wait_for_background(self) -> None:
        """Wait until all scheduled profile backfills have finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def get_viewable_user_ids(
        self, *, cancel_token: CancellationToken | None = None
    ) -> OperationResult[list[SharedUserId]]:
        """Fetch the ids the current user may view, replacing the cached set."""
        return await self._run("get_viewable_user_ids", self._get_viewable_user_ids(cancel_token))

    async def _get_viewable_user_ids(
        self, token: CancellationToken | None
    ) -> list[SharedUserId]:
        context: SessionContext | None = await self.sessions.context()
        if context is None or context.user_id is None:
            raise PreconditionError("No signed-in user")

        url = self._api_url(f"/access/groups/{_segment(context.user_id, 'user_id')}")
        response = await self._send(
            "get_viewable_user_ids", "GET", url, build_session_headers(context), token=token
        )

        # The viewable ids are the keys of the returned object
        data = self._parse_json(response.body, "groups")
        if not isinstance(data, dict):
            raise ParseError("groups", "expected a JSON object")
        user_ids = [SharedUserId(value=key) for key in data]

        async with self.cache.transaction() as tx:
            await tx.ensure_user(context.user_id)
            await tx.replace_viewable_user_ids(context.user_id, (u.value for u in user_ids))
            _check(token, "get_viewable_user_ids", "before commit")

        return user_ids

    # =========================================================================
    # Device data
    # =========================================================================

    async def upload_device_data(
        self, data: list[Any], *, cancel_token: CancellationToken | None = None
    ) -> OperationResult[UploadResult]:
        """Upload a batch of device data records to the upload host.

        Nothing is cached; the server's duplicate indices are logged and
        returned.
        """
        return await self._run("upload_device_data", self._upload_device_data(data, cancel_token))

    async def _upload_device_data(
        self, data: list[Any], token: CancellationToken | None
    ) -> UploadResult:
        url = self._upload_url("/data/")
        try:
            body = json.dumps(list(data), default=_encode_wire_value).encode()
        except (TypeError, ValueError) as e:
            raise ParseError("device data", "not JSON serializable", cause=e) from e

        context = await self.sessions.context()
        response = await self._send(
            "upload_device_data",
            "POST",
            url,
            {**build_session_headers(context), **JSON_HEADERS},
            body,
            token,
        )

        duplicates: list[int] = []
        if response.body.strip():
            # A 2xx means the data was stored, whatever the body says
            try:
                parsed = json.loads(response.body)
            except ValueError:
                parsed = None
            if isinstance(parsed, list) and all(
                isinstance(i, int) and not isinstance(i, bool) for i in parsed
            ):
                duplicates = parsed
            else:
                logger.warning(f"Unreadable duplicates body: {response.body!r}")

        logger.info(f"Upload data response (indices of duplicate data): {duplicates}")
        return UploadResult(data=list(data), duplicate_indices=duplicates)
