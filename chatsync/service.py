"""User-facing messaging operations.

MessagingService is the write path the UI calls. Every action commits to
the local store first and returns immediately; delivery happens later
through the coordinator and outbound queue.

Usage:
    service = MessagingService(store, coordinator, StaticCredentials("alice"))
    conversation = await service.create_conversation(["bob"])
    message = await service.send_message(conversation.id, "hello")
"""

from __future__ import annotations

from chatsync.coordinator import SyncCoordinator
from chatsync.credentials import CredentialProvider
from chatsync.db.models import (
    Conversation,
    DeliveryStatus,
    Message,
    SyncStatus,
    advance_status,
    to_epoch_ms,
    utc_now,
)
from chatsync.errors import InvalidConversationError, NotAuthenticatedError, RecordNotFoundError
from chatsync.logging import get_logger
from chatsync.store import LocalStore
from chatsync.validation import MAX_MESSAGE_LENGTH, validate_message_text

logger = get_logger(__name__)

SYSTEM_SENDER_ID = "system"


class MessagingService:
    """Optimistic writes for conversations and messages.

    Args:
        store: The local store.
        coordinator: Notified whenever something new is queued.
        credentials: Identifies the sender of new messages.
        max_message_length: Longest allowed message text after trimming.
    """

    def __init__(
        self,
        store: LocalStore,
        coordinator: SyncCoordinator,
        credentials: CredentialProvider,
        max_message_length: int = MAX_MESSAGE_LENGTH,
    ) -> None:
        self.store = store
        self.coordinator = coordinator
        self.credentials = credentials
        self.max_message_length = max_message_length

    def _require_user(self) -> str:
        user_id = self.credentials.current_user_id
        if not user_id:
            raise NotAuthenticatedError("No user is signed in")
        return user_id

    async def _require_conversation(self, conversation_id: str) -> Conversation:
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            raise RecordNotFoundError(f"Conversation '{conversation_id}' not found")
        return conversation

    # -------------------------------------------------------------------------
    # Conversations
    # -------------------------------------------------------------------------

    async def create_conversation(
        self,
        participant_ids: list[str],
        display_name: str | None = None,
        avatar_url: str | None = None,
        admin_ids: list[str] | None = None,
    ) -> Conversation:
        """Create a conversation with the current user and the given participants.

        Raises:
            NotAuthenticatedError: If no user is signed in.
            InvalidConversationError: If fewer than two distinct participants remain.
        """
        user_id = self._require_user()
        participants = list(dict.fromkeys([user_id, *participant_ids]))
        if len(participants) < 2:
            raise InvalidConversationError("A conversation needs at least two participants")

        is_group = len(participants) > 2
        conversation = Conversation(
            participant_ids=participants,
            display_name=display_name if is_group else None,
            avatar_url=avatar_url if is_group else None,
            admin_ids=(admin_ids or [user_id]) if is_group else [],
        )
        await self.store.insert_conversation(conversation)
        logger.info(
            "conversation_created",
            conversation_id=conversation.id,
            participants=len(participants),
        )
        self.coordinator.notify_pending()
        return conversation

    async def set_pinned(self, conversation_id: str, pinned: bool) -> Conversation:
        return await self._set_flag(conversation_id, "is_pinned", pinned)

    async def set_muted(self, conversation_id: str, muted: bool) -> Conversation:
        return await self._set_flag(conversation_id, "is_muted", muted)

    async def set_archived(self, conversation_id: str, archived: bool) -> Conversation:
        return await self._set_flag(conversation_id, "is_archived", archived)

    async def _set_flag(self, conversation_id: str, name: str, value: bool) -> Conversation:
        def apply(conversation: Conversation) -> None:
            setattr(conversation, name, value)

        return await self.store.update_conversation(conversation_id, apply)

    async def mark_conversation_read(self, conversation_id: str) -> int:
        """Record that the current user has read every message in a conversation.

        Returns:
            The number of messages that gained a read receipt.
        """
        user_id = self._require_user()
        await self._require_conversation(conversation_id)
        read_at = to_epoch_ms(utc_now())

        def mark_read(message: Message) -> None:
            message.read_by = {**message.read_by, user_id: read_at}
            message.status = advance_status(message.status, DeliveryStatus.READ)

        marked = 0
        for message in await self.store.query(conversation_id):
            if message.sender_id == user_id or message.is_system_message:
                continue
            if user_id in message.read_by:
                continue
            await self.store.update(message.id, mark_read)
            marked += 1

        def reset_unread(conversation: Conversation) -> None:
            conversation.unread_count = 0

        await self.store.update_conversation(conversation_id, reset_unread)
        logger.debug("conversation_marked_read", conversation_id=conversation_id, marked=marked)
        return marked

    async def delete_conversation(self, conversation_id: str) -> None:
        """Close and delete a conversation along with its messages."""
        self.coordinator.close_conversation(conversation_id)
        await self.store.delete_conversation(conversation_id)

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    async def send_message(self, conversation_id: str, text: str) -> Message:
        """Commit a new outgoing message and queue it for delivery.

        The message is visible to store observers before this returns.

        Raises:
            NotAuthenticatedError: If no user is signed in.
            InvalidMessageError: If the text is empty or too long.
            RecordNotFoundError: If the conversation does not exist locally.
        """
        user_id = self._require_user()
        validate_message_text(text, self.max_message_length)
        await self._require_conversation(conversation_id)

        message = Message(
            conversation_id=conversation_id,
            sender_id=user_id,
            text=text.strip(),
            status=DeliveryStatus.SENDING,
            sync_status=SyncStatus.PENDING,
        )
        await self.store.insert(message)
        logger.info(
            "message_queued",
            message_id=message.id,
            conversation_id=conversation_id,
        )
        self.coordinator.notify_pending()
        return message

    async def post_system_message(self, conversation_id: str, text: str) -> Message:
        """Add a local-only notice (e.g. "Bob joined") that is never sent."""
        await self._require_conversation(conversation_id)
        message = Message(
            conversation_id=conversation_id,
            sender_id=SYSTEM_SENDER_ID,
            text=text,
            status=DeliveryStatus.SENT,
            sync_status=SyncStatus.SYNCED,
            is_system_message=True,
        )
        return await self.store.insert(message)

    async def retry_message(self, message_id: str) -> Message:
        """Requeue a failed message."""
        return await self.coordinator.retry_message(message_id)

    async def delete_message(self, message_id: str) -> None:
        """Delete a message locally, whatever its sync status."""
        await self.store.delete(message_id)
