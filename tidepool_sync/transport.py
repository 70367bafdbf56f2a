"""
Network transport.

The sync client only needs ``request(method, url, headers, body)`` from
its transport. AiohttpTransport is the default implementation; tests and
hosts with their own HTTP stack can provide any other Transport.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field

import aiohttp

from .exceptions import TransportError

logger = logging.getLogger(__name__)


@dataclass
class TransportResponse:
    """A raw HTTP response. Header names are stored lower-cased."""

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""

    def __post_init__(self) -> None:
        self.headers = {key.lower(): value for key, value in self.headers.items()}

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        return self.headers.get(name.lower())


class Transport(ABC):
    """Abstract base for the HTTP collaborator.

    Implementations deliver at most one response or raise one
    TransportError per request, and never retry on their own.
    """

    @abstractmethod
    async def request(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: bytes | None = None,
    ) -> TransportResponse:
        """
        Send one HTTP request.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            url: Absolute URL
            headers: Request headers
            body: Optional request body

        Returns:
            The response, whatever its status code

        Raises:
            TransportError: If no response could be obtained
        """
        pass

    async def close(self) -> None:
        """Cleanup resources (close connections)."""
        pass

    async def __aenter__(self) -> Transport:
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        """Async context manager exit."""
        await self.close()


class AiohttpTransport(Transport):
    """
    Transport backed by an aiohttp ClientSession.

    At most ``max_concurrent_requests`` requests are in flight at once;
    further requests wait for a free slot.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        max_concurrent_requests: int = 4,
        session: aiohttp.ClientSession | None = None,
    ):
        """Initialize the transport.

        Args:
            timeout: Total timeout per request in seconds
            max_concurrent_requests: Size of the request pool
            session: Optional pre-configured session (not closed by close())
        """
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.max_concurrent_requests = max_concurrent_requests
        self._session = session
        self._owns_session = session is None
        self._slots = asyncio.Semaphore(max_concurrent_requests)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def request(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: bytes | None = None,
    ) -> TransportResponse:
        async with self._slots:
            session = self._get_session()
            try:
                async with session.request(
                    method, url, headers=dict(headers), data=body
                ) as response:
                    raw = await response.read()
                    status = response.status
                    headers = {key: value for key, value in response.headers.items()}
                    charset = response.charset or "utf-8"
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.debug(f"{method} {url} raised {type(e).__name__}: {e}")
                raise TransportError(method, url, cause=e) from e

        try:
            text = raw.decode(charset)
        except (UnicodeDecodeError, LookupError) as e:
            logger.debug(f"{method} {url} returned an undecodable {charset} body")
            raise TransportError(method, url, cause=e) from e
        return TransportResponse(status=status, headers=headers, body=text)

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None
