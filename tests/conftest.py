"""
Shared test configuration and fixtures.

Provides a scripted in-process transport so sync operations run against
canned server responses, and an in-memory SQLite cache for each test.
"""

import asyncio
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qs, urlsplit

import pytest

from tidepool_sync import (
    HEADER_SESSION_ID,
    CacheConfig,
    ClientConfig,
    LocalCache,
    TidepoolClient,
    Transport,
    TransportResponse,
)

logger = logging.getLogger(__name__)

API_BASE = "https://api.tidepool.org"
UPLOAD_BASE = "https://uploads.tidepool.org"


@dataclass
class RecordedRequest:
    """A request seen by FakeTransport."""

    method: str
    url: str
    headers: dict[str, str]
    body: bytes | None

    @property
    def path(self) -> str:
        return urlsplit(self.url).path

    @property
    def host(self) -> str:
        return urlsplit(self.url).netloc

    @property
    def query(self) -> dict[str, list[str]]:
        return parse_qs(urlsplit(self.url).query)

    def json(self) -> Any:
        return json.loads(self.body) if self.body else None


@dataclass
class Reply:
    """A canned response (or error) for one route."""

    status: int = 200
    body: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    error: Exception | None = None
    gate: asyncio.Event | None = None
    used: bool = False


class FakeTransport(Transport):
    """
    Scripted transport for tests.

    Replies are queued per (method, path) and served in order. Once a
    route runs out of fresh replies its last one is reused; unknown routes
    answer 404.
    """

    def __init__(self) -> None:
        self.requests: list[RecordedRequest] = []
        self._routes: dict[tuple[str, str], list[Reply]] = {}
        self.closed = False

    def add(
        self,
        method: str,
        path: str,
        status: int = 200,
        body: Any = "",
        headers: Mapping[str, str] | None = None,
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        if not isinstance(body, str):
            body = json.dumps(body)
        self._routes.setdefault((method, path), []).append(
            Reply(status=status, body=body, headers=dict(headers or {}), error=error, gate=gate)
        )

    def requests_to(self, method: str, path: str) -> list[RecordedRequest]:
        return [r for r in self.requests if r.method == method and r.path == path]

    async def request(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: bytes | None = None,
    ) -> TransportResponse:
        recorded = RecordedRequest(method, url, dict(headers), body)
        self.requests.append(recorded)

        queue = self._routes.get((method, recorded.path))
        if not queue:
            return TransportResponse(status=404, body='{"message": "not found"}')
        fresh = [r for r in queue if not r.used]
        reply = fresh[0] if fresh else queue[-1]
        reply.used = True

        if reply.gate is not None:
            await reply.gate.wait()
        if reply.error is not None:
            raise reply.error
        return TransportResponse(status=reply.status, headers=reply.headers, body=reply.body)

    async def close(self) -> None:
        self.closed = True


def note_fragment(
    note_id: str,
    text: str,
    timestamp: str = "2023-01-15T10:00:00+00:00",
    group_id: str = "u1",
    user_id: str = "u1",
    full_name: str = "Alice Example",
) -> str:
    """One message of a notes listing, JSON-encoded as the server sends it."""
    return json.dumps(
        {
            "id": note_id,
            "groupid": group_id,
            "userid": user_id,
            "timestamp": timestamp,
            "createdtime": timestamp,
            "messagetext": text,
            "user": {"fullName": full_name},
        }
    )


@pytest.fixture
async def cache():
    """Fixture providing an initialized in-memory cache."""
    cache = await LocalCache.create(CacheConfig(db_path=":memory:"))
    yield cache
    await cache.close()


@pytest.fixture
def transport():
    """Fixture providing a scripted transport."""
    return FakeTransport()


@pytest.fixture
async def client(cache, transport):
    """Fixture providing a client without automatic profile backfill."""
    client = TidepoolClient(cache, transport, ClientConfig(backfill_profiles=False))
    yield client
    await client.close()


async def sign_in(
    client: TidepoolClient,
    transport: FakeTransport,
    user_id: str = "u1",
    token: str = "tok-123",
):
    """Sign ``client`` in against a scripted login response."""
    transport.add(
        "POST",
        "/auth/login",
        body={"userid": user_id, "username": "alice", "emails": ["alice@example.com"]},
        headers={HEADER_SESSION_ID: token},
    )
    result = await client.sign_in("alice", "pw1")
    assert result.ok, result.error
    return result.value


@pytest.fixture
async def signed_in_client(client, transport):
    """Fixture providing a client with an active session for user u1."""
    await sign_in(client, transport)
    return client
