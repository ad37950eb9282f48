"""Tests for the HTTP remote client against the emulator."""

import httpx
import pytest
import pytest_asyncio

from chatsync.db.models import Conversation, DeliveryStatus, Message
from chatsync.remote.base import RejectedError, RejectionReason, TransientRemoteError
from chatsync.remote.http import HttpRemoteClient, classify_response


@pytest_asyncio.fixture
async def http_remote(emulator_app):
    """HttpRemoteClient wired straight into the emulator app."""
    client = HttpRemoteClient(
        "http://emulator",
        poll_interval=0.01,
        transport=httpx.ASGITransport(app=emulator_app),
    )
    yield client
    await client.close()


def mock_client(handler):
    return HttpRemoteClient("http://remote", transport=httpx.MockTransport(handler))


def conversation():
    return Conversation(id="c1", participant_ids=["alice", "bob"])


def message(text="hello", sender_id="alice", id="m1"):
    return Message(id=id, conversation_id="c1", sender_id=sender_id, text=text)


class TestClassifyResponse:
    """Tests for mapping HTTP responses onto remote errors."""

    @pytest.mark.parametrize("code", [408, 429, 500, 503])
    def test_transient_codes(self, code):
        with pytest.raises(TransientRemoteError):
            classify_response(httpx.Response(code))

    def test_structured_rejection(self):
        response = httpx.Response(
            403, json={"detail": {"reason": "permission_denied", "detail": "not a participant"}}
        )
        with pytest.raises(RejectedError) as exc_info:
            classify_response(response)
        assert exc_info.value.reason == RejectionReason.PERMISSION_DENIED
        assert exc_info.value.detail == "not a participant"

    def test_plain_detail_uses_status_code(self):
        with pytest.raises(RejectedError) as exc_info:
            classify_response(httpx.Response(413, json={"detail": "payload too big"}))
        assert exc_info.value.reason == RejectionReason.TOO_LARGE
        assert exc_info.value.detail == "payload too big"

    def test_non_json_body(self):
        with pytest.raises(RejectedError) as exc_info:
            classify_response(httpx.Response(404, text="gone"))
        assert exc_info.value.reason == RejectionReason.NOT_FOUND

    def test_success_passes(self):
        classify_response(httpx.Response(200, json={}))


@pytest.mark.asyncio
class TestHttpRemoteClient:
    """Tests for writes and reads over HTTP."""

    async def test_send_and_resend(self, http_remote, remote_store):
        await http_remote.send_conversation(conversation())

        first = await http_remote.send(message())
        second = await http_remote.send(message())

        assert first.sequence_number == 1
        assert first == second
        assert len(remote_store.messages("c1")) == 1

    async def test_rejections_are_classified(self, http_remote):
        with pytest.raises(RejectedError) as exc_info:
            await http_remote.send(message())
        assert exc_info.value.reason == RejectionReason.NOT_FOUND

        await http_remote.send_conversation(conversation())
        with pytest.raises(RejectedError) as exc_info:
            await http_remote.send(message(sender_id="mallory"))
        assert exc_info.value.reason == RejectionReason.PERMISSION_DENIED

        with pytest.raises(RejectedError) as exc_info:
            await http_remote.send(message(text="x" * 10_001))
        assert exc_info.value.reason == RejectionReason.TOO_LARGE

    async def test_fetch_and_changes(self, http_remote, remote_store):
        await http_remote.send_conversation(conversation())
        await http_remote.send(message(id="m1"))
        await http_remote.send(message(id="m2"))
        remote_store.mark_status("c1", "m1", DeliveryStatus.DELIVERED)

        fetched = await http_remote.fetch("c1")
        assert [m.id for m in fetched] == ["m1", "m2"]
        assert fetched[0].status == DeliveryStatus.DELIVERED

        feed = await http_remote.changes("c1")
        assert [c.id for c in feed.changes] == ["m1", "m2", "m1"]
        later = await http_remote.changes("c1", feed.cursor)
        assert later.changes == []

    async def test_polling_subscription(self, http_remote, remote_store, wait_until):
        await http_remote.send_conversation(conversation())
        await http_remote.send(message(id="m1"))
        received = []

        async def on_change(event):
            received.append(event.id)

        subscription = await http_remote.subscribe("c1", on_change)
        await wait_until(lambda: received == ["m1"])

        await http_remote.send(message(id="m2"))
        await wait_until(lambda: received == ["m1", "m2"])

        subscription.cancel()
        await subscription.wait_closed()
        assert not subscription.active

    async def test_failed_change_is_retried_on_next_poll(self, http_remote, remote_store, wait_until):
        await http_remote.send_conversation(conversation())
        await http_remote.send(message(id="m1"))
        await http_remote.send(message(id="m2"))
        remote_store.mark_status("c1", "m1", DeliveryStatus.DELIVERED)
        received = []
        failures = ["m2"]

        async def on_change(event):
            if failures and event.id == failures[0]:
                failures.pop(0)
                raise RuntimeError("store busy")
            received.append((event.id, event.status))

        subscription = await http_remote.subscribe("c1", on_change)
        await wait_until(lambda: len(received) == 3)
        subscription.cancel()
        await subscription.wait_closed()

        assert received == [
            ("m1", DeliveryStatus.SENT),
            ("m2", DeliveryStatus.SENT),
            ("m1", DeliveryStatus.DELIVERED),
        ]

    async def test_network_errors_are_transient(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = mock_client(refuse)
        try:
            with pytest.raises(TransientRemoteError):
                await client.send(message())
        finally:
            await client.close()

    async def test_timeouts_are_transient(self):
        def slow(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = mock_client(slow)
        try:
            with pytest.raises(TransientRemoteError, match="timed out"):
                await client.fetch("c1")
        finally:
            await client.close()

    async def test_server_error_is_transient(self):
        client = mock_client(lambda request: httpx.Response(503))
        try:
            with pytest.raises(TransientRemoteError):
                await client.send_conversation(conversation())
        finally:
            await client.close()
