"""
Custom exceptions for the Tidepool sync client.

Every sync operation reports failures as one of these exceptions,
wrapped in an OperationResult rather than raised past the operation.
"""


class TidepoolSyncError(Exception):
    """Base exception for all sync client errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(TidepoolSyncError):
    """Raised when client configuration is invalid (e.g., unknown environment)."""

    def __init__(self, message: str, key: str | None = None):
        details = {}
        if key:
            details["key"] = key
        super().__init__(message, details)
        self.key = key


class URLConstructionError(TidepoolSyncError):
    """Raised when a request URL cannot be built from the base URL and path."""

    def __init__(self, base_url: str | None, path: str, reason: str | None = None):
        details = {"base_url": base_url, "path": path}
        if reason:
            details["reason"] = reason
        message = f"Cannot build URL from {base_url!r} and {path!r}"
        if reason:
            message += f": {reason}"
        super().__init__(message, details)
        self.base_url = base_url
        self.path = path
        self.reason = reason


class TransportError(TidepoolSyncError):
    """Raised when a request fails at the network level or returns a non-2xx status."""

    def __init__(
        self,
        method: str,
        url: str,
        status: int | None = None,
        body: str | None = None,
        cause: Exception | None = None,
    ):
        details: dict = {"method": method, "url": url}
        if status is not None:
            details["status"] = status
        if cause:
            details["cause"] = str(cause)
        if status is not None:
            message = f"{method} {url} failed with status {status}"
        else:
            message = f"{method} {url} failed: {cause}"
        super().__init__(message, details)
        self.method = method
        self.url = url
        self.status = status
        self.body = body
        self.cause = cause


class ParseError(TidepoolSyncError):
    """Raised when a server response cannot be parsed into the expected shape."""

    def __init__(self, what: str, reason: str, cause: Exception | None = None):
        details = {"what": what, "reason": reason}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Could not parse {what}: {reason}", details)
        self.what = what
        self.reason = reason
        self.cause = cause


class AuthenticationError(TidepoolSyncError):
    """Raised when sign-in succeeds at the HTTP level but yields no session token."""

    def __init__(self, endpoint: str, reason: str | None = None):
        details = {"endpoint": endpoint}
        if reason:
            details["reason"] = reason
        message = f"Authentication failed for {endpoint}"
        if reason:
            message += f": {reason}"
        super().__init__(message, details)
        self.endpoint = endpoint
        self.reason = reason


class PreconditionError(TidepoolSyncError):
    """Raised when an operation is invoked in a state that cannot satisfy it."""


class NothingToRefreshError(PreconditionError):
    """Raised when a token refresh is requested without an active session."""

    def __init__(self):
        super().__init__("No token to refresh")


class SessionValidationError(TidepoolSyncError):
    """Raised when a session would be persisted in an invalid state."""

    def __init__(self, message: str, field: str | None = None):
        details = {}
        if field:
            details["field"] = field
        super().__init__(message, details)
        self.field = field


class SessionStateError(TidepoolSyncError):
    """Raised when the session row required by a write does not exist."""


class CacheIOError(TidepoolSyncError):
    """Raised when a local cache operation fails."""

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        message = f"Cache I/O error during {operation}"
        if path:
            message += f": {path}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause


class OperationCancelledError(TidepoolSyncError):
    """Raised when an operation is cancelled before it completes."""

    def __init__(self, operation: str, stage: str):
        super().__init__(
            f"Operation {operation} cancelled {stage}",
            {"operation": operation, "stage": stage},
        )
        self.operation = operation
        self.stage = stage


class UnexpectedError(TidepoolSyncError):
    """Raised in place of an error outside this hierarchy escaping an operation."""

    def __init__(self, operation: str, cause: BaseException):
        super().__init__(
            f"Unexpected {type(cause).__name__} in {operation}: {cause}",
            {"operation": operation, "cause": repr(cause)},
        )
        self.operation = operation
        self.cause = cause
