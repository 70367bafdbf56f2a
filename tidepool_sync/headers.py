"""
Request header construction.

Sign-in is the only request that authenticates with Basic credentials;
everything after it carries the session token header.
"""

from __future__ import annotations

import base64
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .session import SessionContext

# Header label for the session token, on requests and responses
HEADER_SESSION_ID = "x-tidepool-session-token"


def build_auth_header(username: str, password: str) -> dict[str, str]:
    """Build the Basic authorization header used by sign-in."""
    credentials = f"{username}:{password}".encode()
    return {"Authorization": "Basic " + base64.b64encode(credentials).decode("ascii")}


def build_session_headers(context: SessionContext | None) -> dict[str, str]:
    """Build the headers for an authenticated request.

    Args:
        context: Session snapshot, or None when signed out

    Returns:
        Empty dict when unauthenticated, otherwise the session token header
    """
    if context is None or not context.session_id:
        return {}
    return {HEADER_SESSION_ID: context.session_id}
