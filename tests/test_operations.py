"""Tests for operation results, handles and cancellation."""

import asyncio
from datetime import UTC, datetime

import pytest

from tidepool_sync import (
    CancellationToken,
    Note,
    OperationCancelledError,
    OperationResult,
    ParseError,
    UnexpectedError,
)


def new_note() -> Note:
    return Note(
        group_id="u1",
        user_id="u1",
        message_text="#cancel",
        timestamp=datetime(2023, 1, 15, 10, tzinfo=UTC),
    )


async def until_requested(transport, method: str, path: str) -> None:
    """Yield to the loop until the transport has seen a request to ``path``."""
    for _ in range(100):
        if transport.requests_to(method, path):
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"{method} {path} was never sent")


class TestOperationResult:
    """Tests for OperationResult."""

    def test_success(self):
        result = OperationResult.success("op", 42)
        assert result.ok
        assert result.unwrap() == 42

    def test_failure(self):
        error = ParseError("thing", "bad")
        result = OperationResult.failure("op", error)
        assert not result.ok
        assert result.value is None
        with pytest.raises(ParseError):
            result.unwrap()


class TestCancellationToken:
    """Tests for CancellationToken."""

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled("op", "before send")

        token.cancel()

        assert token.cancelled
        with pytest.raises(OperationCancelledError) as exc_info:
            token.raise_if_cancelled("op", "before send")
        assert exc_info.value.stage == "before send"

    @pytest.mark.asyncio
    async def test_cancelled_before_send(self, signed_in_client, transport, cache):
        token = CancellationToken()
        token.cancel()

        result = await signed_in_client.post_note(new_note(), cancel_token=token)

        assert isinstance(result.error, OperationCancelledError)
        assert result.error.stage == "before send"
        assert transport.requests_to("POST", "/message/send/u1") == []
        assert await cache.count("notes") == 0

    @pytest.mark.asyncio
    async def test_cancelled_while_waiting_for_response(self, signed_in_client, transport, cache):
        gate = asyncio.Event()
        transport.add("POST", "/message/send/u1", body={"id": "n1"}, gate=gate)
        token = CancellationToken()

        task = asyncio.create_task(signed_in_client.post_note(new_note(), cancel_token=token))
        await until_requested(transport, "POST", "/message/send/u1")
        token.cancel()
        gate.set()
        result = await task

        assert isinstance(result.error, OperationCancelledError)
        assert result.error.stage == "after receive"
        assert await cache.count("notes") == 0


class TestSubmit:
    """Tests for TidepoolClient.submit and OperationHandle."""

    @pytest.mark.asyncio
    async def test_on_complete_called_once(self, signed_in_client, transport):
        transport.add("POST", "/message/send/u1", body={"id": "n1"})
        delivered = []

        handle = signed_in_client.submit(
            signed_in_client.post_note, new_note(), on_complete=delivered.append
        )
        result = await handle.result()
        await asyncio.sleep(0)

        assert handle.operation == "post_note"
        assert handle.done()
        assert result.ok
        assert delivered == [result]

    @pytest.mark.asyncio
    async def test_failure_delivered_to_callback(self, signed_in_client, transport):
        transport.add("POST", "/message/send/u1", status=500)
        delivered = []

        handle = signed_in_client.submit(
            signed_in_client.post_note, new_note(), on_complete=delivered.append
        )
        await handle.result()
        await asyncio.sleep(0)

        assert len(delivered) == 1
        assert not delivered[0].ok

    @pytest.mark.asyncio
    async def test_cancel_before_response(self, signed_in_client, transport, cache):
        gate = asyncio.Event()
        transport.add("POST", "/message/send/u1", body={"id": "n1"}, gate=gate)
        delivered = []

        handle = signed_in_client.submit(
            signed_in_client.post_note, new_note(), on_complete=delivered.append
        )
        await until_requested(transport, "POST", "/message/send/u1")
        handle.cancel()
        result = await handle.result()
        gate.set()
        await asyncio.sleep(0)

        assert isinstance(result.error, OperationCancelledError)
        assert len(delivered) == 1
        assert isinstance(delivered[0].error, OperationCancelledError)
        assert await cache.count("notes") == 0

    @pytest.mark.asyncio
    async def test_cancel_after_commit_has_no_effect(self, signed_in_client, transport, cache):
        transport.add("POST", "/message/send/u1", body={"id": "n1"})

        handle = signed_in_client.submit(signed_in_client.post_note, new_note())
        result = await handle.result()
        handle.cancel()

        assert result.ok
        assert (await handle.result()).ok
        assert await cache.get_note("n1") is not None

    @pytest.mark.asyncio
    async def test_failing_callback_is_logged(self, signed_in_client, transport, caplog):
        transport.add("POST", "/message/send/u1", body={"id": "n1"})

        def explode(result):
            raise RuntimeError("callback bug")

        handle = signed_in_client.submit(
            signed_in_client.post_note, new_note(), on_complete=explode
        )
        result = await handle.result()
        await asyncio.sleep(0)

        assert result.ok
        assert "Completion callback for post_note failed" in caplog.text

    @pytest.mark.asyncio
    async def test_independent_operations_run_concurrently(self, signed_in_client, transport):
        gate = asyncio.Event()
        transport.add("POST", "/message/send/u1", body={"id": "n1"}, gate=gate)
        transport.add("GET", "/metadata/u2/profile", body={"fullName": "Bob"})

        slow = signed_in_client.submit(signed_in_client.post_note, new_note())
        fast = signed_in_client.submit(signed_in_client.get_profile, "u2")

        profile = await fast.result()
        assert profile.ok
        assert not slow.done()

        gate.set()
        assert (await slow.result()).ok


class TestUnexpectedErrors:
    """Errors from outside the library never escape an operation."""

    @pytest.mark.asyncio
    async def test_foreign_error_becomes_result(self, signed_in_client, transport, cache):
        error = UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")
        transport.add("POST", "/message/send/u1", error=error)

        result = await signed_in_client.post_note(new_note())

        assert isinstance(result.error, UnexpectedError)
        assert isinstance(result.error.cause, UnicodeDecodeError)
        assert await cache.count("notes") == 0

    @pytest.mark.asyncio
    async def test_foreign_error_delivered_to_callback(self, signed_in_client, transport):
        transport.add("GET", "/metadata/u2/profile", error=RuntimeError("transport bug"))
        delivered = []

        handle = signed_in_client.submit(
            signed_in_client.get_profile, "u2", on_complete=delivered.append
        )
        result = await handle.result()
        await asyncio.sleep(0)

        assert isinstance(result.error, UnexpectedError)
        assert len(delivered) == 1
        assert isinstance(delivered[0].error, UnexpectedError)

    @pytest.mark.asyncio
    async def test_handle_folds_raising_coroutine(self, signed_in_client):
        async def broken(*, cancel_token=None):
            raise KeyError("missing")

        delivered = []
        handle = signed_in_client.submit(broken, on_complete=delivered.append)
        result = await handle.result()
        await asyncio.sleep(0)

        assert handle.operation == "broken"
        assert isinstance(result.error, UnexpectedError)
        assert isinstance(result.error.cause, KeyError)
        assert len(delivered) == 1
