"""
Tests for AiohttpTransport.

Runs against a local aiohttp server, so no network access is needed.
"""

import asyncio

import pytest
from aiohttp import web
from aiohttp import test_utils

from tidepool_sync import (
    HEADER_SESSION_ID,
    AiohttpTransport,
    ClientConfig,
    TidepoolClient,
    TransportError,
    TransportResponse,
)


async def login(request: web.Request) -> web.Response:
    return web.json_response(
        {"userid": "u1", "auth": request.headers.get("Authorization")},
        headers={"X-Tidepool-Session-Token": "tok-from-server"},
    )


async def echo(request: web.Request) -> web.Response:
    body = await request.read()
    return web.Response(
        text=body.decode(),
        headers={"X-Echo-Token": request.headers.get(HEADER_SESSION_ID, "")},
    )


async def missing(request: web.Request) -> web.Response:
    return web.Response(status=404, text='{"message": "no such note"}')


async def garbled(request: web.Request) -> web.Response:
    return web.Response(
        body=b'{"id": "\xff\xfe"}', content_type="application/json", charset="utf-8"
    )


async def slow(request: web.Request) -> web.Response:
    await asyncio.sleep(1)
    return web.Response(text="late")


@pytest.fixture
async def server():
    app = web.Application()
    app.router.add_post("/auth/login", login)
    app.router.add_put("/message/edit/{note_id}", echo)
    app.router.add_delete("/message/remove/{note_id}", missing)
    app.router.add_get("/slow", slow)
    app.router.add_get("/metadata/{user_id}/profile", garbled)
    server = test_utils.TestServer(app)
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
async def http():
    transport = AiohttpTransport(timeout=5.0, max_concurrent_requests=2)
    yield transport
    await transport.close()


class TestTransportResponse:
    """Tests for TransportResponse."""

    def test_header_lookup_ignores_case(self):
        response = TransportResponse(status=200, headers={"X-Tidepool-Session-Token": "t"})
        assert response.header(HEADER_SESSION_ID) == "t"
        assert response.header("X-TIDEPOOL-SESSION-TOKEN") == "t"
        assert response.header("missing") is None

    def test_ok_range(self):
        assert TransportResponse(status=204).ok
        assert not TransportResponse(status=199).ok
        assert not TransportResponse(status=302).ok


class TestAiohttpTransport:
    """Tests for AiohttpTransport against a local server."""

    @pytest.mark.asyncio
    async def test_response_headers_and_body(self, server, http):
        response = await http.request(
            "POST", str(server.make_url("/auth/login")), {"Authorization": "Basic abc"}
        )

        assert response.status == 200
        assert response.header(HEADER_SESSION_ID) == "tok-from-server"
        assert '"auth": "Basic abc"' in response.body

    @pytest.mark.asyncio
    async def test_body_and_headers_sent(self, server, http):
        response = await http.request(
            "PUT",
            str(server.make_url("/message/edit/n1")),
            {HEADER_SESSION_ID: "tok-1", "Content-Type": "application/json"},
            b'{"message": {}}',
        )

        assert response.body == '{"message": {}}'
        assert response.header("x-echo-token") == "tok-1"

    @pytest.mark.asyncio
    async def test_error_status_is_returned(self, server, http):
        response = await http.request("DELETE", str(server.make_url("/message/remove/n1")), {})

        assert response.status == 404
        assert not response.ok
        assert "no such note" in response.body

    @pytest.mark.asyncio
    async def test_connection_refused(self, http, unused_tcp_port):
        with pytest.raises(TransportError) as exc_info:
            await http.request("GET", f"http://127.0.0.1:{unused_tcp_port}/x", {})

        assert exc_info.value.status is None
        assert exc_info.value.cause is not None

    @pytest.mark.asyncio
    async def test_timeout(self, server):
        transport = AiohttpTransport(timeout=0.1)
        try:
            with pytest.raises(TransportError):
                await transport.request("GET", str(server.make_url("/slow")), {})
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, server, http):
        await http.request("POST", str(server.make_url("/auth/login")), {})
        await http.close()
        await http.close()

    @pytest.mark.asyncio
    async def test_undecodable_body(self, server, http):
        with pytest.raises(TransportError) as exc_info:
            await http.request("GET", str(server.make_url("/metadata/u1/profile")), {})

        assert isinstance(exc_info.value.cause, UnicodeDecodeError)


class TestClientOverAiohttp:
    """Tests for TidepoolClient driving a real AiohttpTransport."""

    @pytest.mark.asyncio
    async def test_undecodable_body_is_an_operation_failure(self, server, cache):
        base_url = str(server.make_url("/"))
        config = ClientConfig(api_base_url=base_url, upload_base_url=base_url)
        client = TidepoolClient(cache, AiohttpTransport(timeout=5.0), config)
        try:
            result = await client.get_profile("u1")
        finally:
            await client.transport.close()

        assert isinstance(result.error, TransportError)
        assert await cache.get_user("u1") is None
