"""Tests for the user-facing messaging service."""

import pytest

from chatsync.db.models import DeliveryStatus, SyncStatus
from chatsync.errors import (
    InvalidConversationError,
    InvalidMessageError,
    NotAuthenticatedError,
    RecordNotFoundError,
)
from chatsync.schemas.remote import RemoteMessage
from chatsync.store import StoreEvent


@pytest.mark.asyncio
class TestConversations:
    """Tests for creating and managing conversations."""

    async def test_current_user_is_added_first(self, service):
        conversation = await service.create_conversation(["bob", "alice", "bob"])

        assert conversation.participant_ids == ["alice", "bob"]
        assert conversation.sync_status == SyncStatus.PENDING
        assert not conversation.is_group
        assert conversation.display_name is None

    async def test_group_fields_only_for_groups(self, service):
        direct = await service.create_conversation(["bob"], display_name="ignored")
        group = await service.create_conversation(["bob", "carol"], display_name="Team")

        assert direct.display_name is None
        assert group.is_group
        assert group.display_name == "Team"
        assert group.admin_ids == ["alice"]

    async def test_conversation_with_self_only_is_refused(self, service):
        with pytest.raises(InvalidConversationError):
            await service.create_conversation(["alice"])

    async def test_requires_signed_in_user(self, service, credentials):
        credentials.current_user_id = None
        with pytest.raises(NotAuthenticatedError):
            await service.create_conversation(["bob"])

    async def test_flags(self, service, store):
        conversation = await service.create_conversation(["bob"])

        await service.set_pinned(conversation.id, True)
        await service.set_muted(conversation.id, True)
        archived = await service.set_archived(conversation.id, True)

        assert archived.is_pinned and archived.is_muted and archived.is_archived
        assert await store.list_conversations() == []

    async def test_mark_conversation_read(self, service, store, reconciliation, seed_conversation):
        conversation = await seed_conversation()
        for n in (1, 2):
            message = RemoteMessage(
                id=f"b{n}",
                conversation_id=conversation.id,
                sender_id="bob",
                text=f"from bob {n}",
                server_timestamp=conversation.created_at,
                updated_at=conversation.created_at,
                sequence_number=n,
            )
            await reconciliation.apply_remote(message)
        await service.send_message(conversation.id, "mine")
        assert (await store.get_conversation(conversation.id)).unread_count == 2

        marked = await service.mark_conversation_read(conversation.id)

        assert marked == 2
        assert (await store.get_conversation(conversation.id)).unread_count == 0
        for id in ("b1", "b2"):
            stored = await store.get(id)
            assert "alice" in stored.read_by
            assert stored.status == DeliveryStatus.READ
        assert await service.mark_conversation_read(conversation.id) == 0

    async def test_delete_conversation(self, service, store, coordinator, seed_conversation):
        conversation = await seed_conversation()
        await coordinator.open_conversation(conversation.id)
        await service.send_message(conversation.id, "hello")

        await service.delete_conversation(conversation.id)

        assert not coordinator.is_open(conversation.id)
        assert await store.get_conversation(conversation.id) is None
        assert await store.query(conversation.id) == []


@pytest.mark.asyncio
class TestSendMessage:
    """Tests for the optimistic send path."""

    async def test_message_is_visible_before_send_returns(self, service, store, seed_conversation):
        conversation = await seed_conversation()
        seen = []
        store.observe(seen.append, conversation_id=conversation.id)

        sent = await service.send_message(conversation.id, "  hello  ")

        assert [c.message.id for c in seen if c.event == StoreEvent.INSERTED] == [sent.id]
        assert sent.text == "hello"
        assert sent.status == DeliveryStatus.SENDING
        assert sent.sync_status == SyncStatus.PENDING
        assert sent.sender_id == "alice"

    async def test_send_updates_preview(self, service, store, seed_conversation):
        conversation = await seed_conversation()
        await service.send_message(conversation.id, "latest")

        refreshed = await store.get_conversation(conversation.id)
        assert refreshed.last_message_text == "latest"

    @pytest.mark.parametrize("text", ["", "   \n\t", "x" * 10_001])
    async def test_invalid_text_is_refused_and_not_stored(self, service, store, seed_conversation, text):
        conversation = await seed_conversation()
        with pytest.raises(InvalidMessageError):
            await service.send_message(conversation.id, text)
        assert await store.query(conversation.id) == []

    async def test_unknown_conversation(self, service):
        with pytest.raises(RecordNotFoundError):
            await service.send_message("missing", "hello")

    async def test_send_requires_signed_in_user(self, service, credentials, seed_conversation):
        conversation = await seed_conversation()
        credentials.current_user_id = None
        with pytest.raises(NotAuthenticatedError):
            await service.send_message(conversation.id, "hello")

    async def test_system_message_is_local_only(self, service, store, queue, remote, seed_conversation):
        conversation = await seed_conversation()
        notice = await service.post_system_message(conversation.id, "Bob joined")

        assert notice.is_system_message
        assert notice.sync_status == SyncStatus.SYNCED
        await queue.drain()
        assert remote.sent == []

    async def test_delete_message(self, service, store, seed_conversation):
        conversation = await seed_conversation()
        sent = await service.send_message(conversation.id, "oops")

        await service.delete_message(sent.id)
        assert await store.get(sent.id) is None
