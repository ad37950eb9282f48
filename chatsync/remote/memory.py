"""In-process remote store.

InMemoryRemoteStore behaves like the managed backend the sync core talks
to: writes are upserts keyed by client-generated IDs, the server stamps
each new message with a strictly increasing timestamp and a per-conversation
sequence number, and a gatekeeper refuses writes that break the rules.
It backs the development emulator and the test suite.

LocalRemoteClient adapts it to the RemoteSyncClient interface without any
network hop, with a reachability switch to simulate being offline.
"""

from __future__ import annotations

import asyncio
import threading
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timedelta

from chatsync.db.models import Conversation, DeliveryStatus, Message, advance_status, to_epoch_ms, utc_now
from chatsync.errors import InvalidMessageError
from chatsync.logging import get_logger
from chatsync.remote.base import (
    ChangeHandler,
    RejectedError,
    RejectionReason,
    RemoteSyncClient,
    Subscription,
    TransientRemoteError,
    deliver_in_order,
)
from chatsync.schemas.remote import (
    ChangeFeed,
    ChangeKind,
    ConversationAck,
    ConversationPayload,
    MessagePayload,
    RemoteMessage,
    ServerAck,
)
from chatsync.validation import MAX_MESSAGE_LENGTH, validate_message_text

logger = get_logger(__name__)

ChangeListener = Callable[[RemoteMessage], None]


class InMemoryRemoteStore:
    """Replicated-store stand-in with upsert semantics and server ordering."""

    def __init__(
        self,
        clock: Callable[[], datetime] = utc_now,
        max_message_length: int = MAX_MESSAGE_LENGTH,
    ) -> None:
        self._clock = clock
        self._max_message_length = max_message_length
        self._lock = threading.RLock()
        self._conversations: dict[str, ConversationPayload] = {}
        self._conversation_acks: dict[str, ConversationAck] = {}
        self._messages: dict[str, dict[str, RemoteMessage]] = defaultdict(dict)
        self._sequences: dict[str, int] = defaultdict(int)
        self._changes: dict[str, list[RemoteMessage]] = defaultdict(list)
        self._listeners: dict[str, list[ChangeListener]] = defaultdict(list)
        self._last_stamp: datetime | None = None

    def _stamp(self) -> datetime:
        now = self._clock()
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def upsert_conversation(self, payload: ConversationPayload) -> ConversationAck:
        """Create or replace a conversation record."""
        if len(set(payload.participant_ids)) < 2:
            raise RejectedError(
                RejectionReason.INVALID_CONTENT,
                "A conversation needs at least two participants",
            )
        with self._lock:
            self._conversations[payload.id] = payload
            ack = self._conversation_acks.get(payload.id)
            if ack is None:
                ack = ConversationAck(conversation_id=payload.id, server_timestamp=self._stamp())
                self._conversation_acks[payload.id] = ack
            return ack

    def upsert_message(self, payload: MessagePayload) -> ServerAck:
        """Accept a message write, or return the original ack for a re-send.

        Raises:
            RejectedError: If the conversation is unknown, the sender is not
                a participant, or the content is invalid.
        """
        with self._lock:
            conversation = self._conversations.get(payload.conversation_id)
            if conversation is None:
                raise RejectedError(
                    RejectionReason.NOT_FOUND,
                    f"Conversation '{payload.conversation_id}' does not exist",
                )
            if payload.sender_id not in conversation.participant_ids:
                raise RejectedError(
                    RejectionReason.PERMISSION_DENIED,
                    f"'{payload.sender_id}' is not a participant",
                )
            self._check_content(payload.text)

            existing = self._messages[payload.conversation_id].get(payload.id)
            if existing is not None:
                return self._ack(existing)

            stamp = self._stamp()
            self._sequences[payload.conversation_id] += 1
            message = RemoteMessage(
                kind=ChangeKind.ADDED,
                id=payload.id,
                conversation_id=payload.conversation_id,
                sender_id=payload.sender_id,
                text=payload.text,
                client_created_at=payload.client_created_at,
                server_timestamp=stamp,
                updated_at=stamp,
                sequence_number=self._sequences[payload.conversation_id],
                status=DeliveryStatus.SENT,
                is_system_message=payload.is_system_message,
            )
            self._publish(message)
            return self._ack(message)

    def _check_content(self, text: str) -> None:
        try:
            validate_message_text(text, self._max_message_length)
        except InvalidMessageError as exc:
            reason = (
                RejectionReason.TOO_LARGE
                if len(text.strip()) > self._max_message_length
                else RejectionReason.INVALID_CONTENT
            )
            raise RejectedError(reason, str(exc)) from exc

    def mark_status(
        self,
        conversation_id: str,
        message_id: str,
        status: DeliveryStatus,
        reader_id: str | None = None,
    ) -> RemoteMessage:
        """Record delivery progress reported by a participant."""
        with self._lock:
            existing = self._require(conversation_id, message_id)
            stamp = self._stamp()
            read_by = dict(existing.read_by)
            if reader_id is not None and status == DeliveryStatus.READ:
                read_by[reader_id] = to_epoch_ms(stamp)
            updated = existing.model_copy(
                update={
                    "kind": ChangeKind.CHANGED,
                    "status": advance_status(existing.status, status),
                    "read_by": read_by,
                    "updated_at": stamp,
                }
            )
            self._publish(updated)
            return updated

    def annotate(
        self,
        conversation_id: str,
        message_id: str,
        annotations: dict,
    ) -> RemoteMessage:
        """Attach enrichment metadata to a stored message."""
        with self._lock:
            existing = self._require(conversation_id, message_id)
            updated = existing.model_copy(
                update={
                    "kind": ChangeKind.CHANGED,
                    "annotations": {**(existing.annotations or {}), **annotations},
                    "updated_at": self._stamp(),
                }
            )
            self._publish(updated)
            return updated

    def _require(self, conversation_id: str, message_id: str) -> RemoteMessage:
        existing = self._messages[conversation_id].get(message_id)
        if existing is None:
            raise RejectedError(
                RejectionReason.NOT_FOUND,
                f"Message '{message_id}' does not exist",
            )
        return existing

    @staticmethod
    def _ack(message: RemoteMessage) -> ServerAck:
        return ServerAck(
            message_id=message.id,
            conversation_id=message.conversation_id,
            server_timestamp=message.server_timestamp,
            updated_at=message.updated_at,
            sequence_number=message.sequence_number,
        )

    def _publish(self, message: RemoteMessage) -> None:
        self._messages[message.conversation_id][message.id] = message
        self._changes[message.conversation_id].append(message)
        for listener in list(self._listeners[message.conversation_id]):
            listener(message)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_conversation(self, conversation_id: str) -> ConversationPayload | None:
        with self._lock:
            return self._conversations.get(conversation_id)

    def messages(self, conversation_id: str) -> list[RemoteMessage]:
        """Current state of every message, in sequence order."""
        with self._lock:
            return sorted(
                self._messages[conversation_id].values(),
                key=lambda m: m.sequence_number or 0,
            )

    def changes_since(self, conversation_id: str, cursor: int = 0) -> ChangeFeed:
        """Change events after a cursor (an index into the change log)."""
        with self._lock:
            log = self._changes[conversation_id]
            cursor = max(0, min(cursor, len(log)))
            return ChangeFeed(changes=list(log[cursor:]), cursor=len(log))

    def add_listener(self, conversation_id: str, listener: ChangeListener) -> Callable[[], None]:
        """Register a listener for new change events; returns a remover."""
        with self._lock:
            self._listeners[conversation_id].append(listener)

        def remove() -> None:
            with self._lock:
                if listener in self._listeners[conversation_id]:
                    self._listeners[conversation_id].remove(listener)

        return remove


class LocalRemoteClient(RemoteSyncClient):
    """RemoteSyncClient over an InMemoryRemoteStore in the same process.

    Args:
        remote: The backing store, possibly shared by several clients to
            model several devices.
        latency: Seconds to wait before each request.
    """

    def __init__(self, remote: InMemoryRemoteStore, latency: float = 0.0) -> None:
        self.remote = remote
        self.latency = latency
        self.reachable = True

    async def _round_trip(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        if not self.reachable:
            raise TransientRemoteError("Remote store unreachable")

    async def send(self, message: Message) -> ServerAck:
        await self._round_trip()
        return self.remote.upsert_message(MessagePayload.from_message(message))

    async def send_conversation(self, conversation: Conversation) -> ConversationAck:
        await self._round_trip()
        return self.remote.upsert_conversation(ConversationPayload.from_conversation(conversation))

    async def subscribe(self, conversation_id: str, on_change: ChangeHandler) -> Subscription:
        events: asyncio.Queue[RemoteMessage] = asyncio.Queue()
        for event in self.remote.changes_since(conversation_id).changes:
            events.put_nowait(event)
        remove = self.remote.add_listener(conversation_id, events.put_nowait)

        task = asyncio.create_task(deliver_in_order(conversation_id, events, on_change))
        task.add_done_callback(lambda _: remove())
        logger.debug("subscription_opened", conversation_id=conversation_id)
        return Subscription(conversation_id, task)

    async def fetch(self, conversation_id: str) -> list[RemoteMessage]:
        await self._round_trip()
        return self.remote.messages(conversation_id)
