"""
Tidepool Sync

Client-side synchronization between the Tidepool API and a local SQLite
cache.

Provides:
- A single authenticated session (sign-in, token refresh, sign-out)
- Notes with hashtag extraction, cached per group and date range
- Profile and viewable-user-id fetches with background profile backfill
- Device data upload to the uploads host
- Offline reads of previously fetched data

Usage:

    >>> from tidepool_sync import ClientConfig, TidepoolClient
    >>> config = ClientConfig.from_yaml("~/.tidepool/settings.yaml")
    >>> async with await TidepoolClient.create(config) as client:
    ...     user = (await client.sign_in("alice", "secret")).unwrap()
    ...     page = (await client.get_notes(user.user_id, start, end)).unwrap()
    ...     for note in page.notes:
    ...         print(note.author_full_name, [tag.text for tag in note.hashtags])

Callback style:

    >>> handle = client.submit(client.post_note, note, on_complete=on_posted)
    >>> handle.cancel()  # before the response arrives
"""

from .cache import CacheConfig, CacheTransaction, LocalCache
from .client import TidepoolClient
from .config import (
    ClientConfig,
    Environment,
    EnvironmentURLs,
    parse_environment,
    resolve_environment,
)
from .dates import DateFormat, format_date, parse_date
from .exceptions import (
    AuthenticationError,
    CacheIOError,
    ConfigurationError,
    NothingToRefreshError,
    OperationCancelledError,
    ParseError,
    PreconditionError,
    SessionStateError,
    SessionValidationError,
    TidepoolSyncError,
    TransportError,
    UnexpectedError,
    URLConstructionError,
)
from .hashtags import extract_hashtags, parse_hashtags
from .headers import HEADER_SESSION_ID, build_auth_header, build_session_headers
from .logging_utils import configure_structured_logging
from .models import (
    Hashtag,
    Note,
    NotesPage,
    Profile,
    Session,
    SharedUserId,
    UploadResult,
    User,
)
from .operations import CancellationToken, OperationHandle, OperationResult
from .session import SessionContext, SessionStore
from .transport import AiohttpTransport, Transport, TransportResponse

__all__ = [
    # Client
    "TidepoolClient",
    "ClientConfig",
    "Environment",
    "EnvironmentURLs",
    "parse_environment",
    "resolve_environment",
    # Results
    "OperationResult",
    "OperationHandle",
    "CancellationToken",
    # Session
    "SessionStore",
    "SessionContext",
    "HEADER_SESSION_ID",
    "build_auth_header",
    "build_session_headers",
    # Cache
    "LocalCache",
    "CacheConfig",
    "CacheTransaction",
    # Transport
    "Transport",
    "TransportResponse",
    "AiohttpTransport",
    # Models
    "User",
    "Profile",
    "Note",
    "NotesPage",
    "Hashtag",
    "Session",
    "SharedUserId",
    "UploadResult",
    # Utilities
    "extract_hashtags",
    "parse_hashtags",
    "DateFormat",
    "format_date",
    "parse_date",
    "configure_structured_logging",
    # Errors
    "TidepoolSyncError",
    "ConfigurationError",
    "URLConstructionError",
    "TransportError",
    "ParseError",
    "AuthenticationError",
    "PreconditionError",
    "NothingToRefreshError",
    "SessionValidationError",
    "SessionStateError",
    "CacheIOError",
    "OperationCancelledError",
    "UnexpectedError",
]

__version__ = "0.1.0"
