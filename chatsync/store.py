"""Local store for conversations and messages.

The local store is the single source of truth for what the UI renders.
Every write commits before the call returns and is pushed to observers
synchronously, which is what makes sends appear instantly.

All operations run under one asyncio lock, so a mutation such as
"increment retry count and set last attempt" is never observed half-done.
Storage failures are raised to the caller as StorageError and are not
retried here.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum

from sqlalchemy import and_, delete, func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm.attributes import flag_modified
from sqlmodel import select

from chatsync.db.engine import session_factory
from chatsync.db.models import (
    Conversation,
    Message,
    SyncStatus,
    advance_status,
    can_transition,
    ensure_utc,
    message_sort_key,
    recency_key,
    utc_now,
)
from chatsync.errors import (
    InvalidConversationError,
    InvalidTransitionError,
    InvariantViolationError,
    RecordNotFoundError,
    StorageError,
)
from chatsync.logging import get_logger

logger = get_logger(__name__)


class StoreEvent(str, Enum):
    """What happened to a record."""

    INSERTED = "inserted"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class StoreChange:
    """A committed change pushed to observers."""

    event: StoreEvent
    conversation_id: str
    message: Message | None = None
    conversation: Conversation | None = None


StoreObserver = Callable[[StoreChange], None]


class Observation:
    """Handle for a registered store observer."""

    def __init__(
        self,
        store: LocalStore,
        observer: StoreObserver,
        conversation_id: str | None,
    ) -> None:
        self._store = store
        self.observer = observer
        self.conversation_id = conversation_id

    def matches(self, change: StoreChange) -> bool:
        return self.conversation_id is None or self.conversation_id == change.conversation_id

    def cancel(self) -> None:
        """Stop receiving changes."""
        self._store._remove_observation(self)


@dataclass(frozen=True)
class OutboundCounts:
    """Aggregate outbound state for badges and banners."""

    pending: int
    failed: int


@dataclass(frozen=True)
class _MessageSnapshot:
    id: str
    conversation_id: str
    local_created_at: object
    server_timestamp: object
    sequence_number: int | None
    retry_count: int
    sync_status: SyncStatus
    status: object

    @classmethod
    def of(cls, message: Message) -> _MessageSnapshot:
        return cls(
            id=message.id,
            conversation_id=message.conversation_id,
            local_created_at=ensure_utc(message.local_created_at),
            server_timestamp=ensure_utc(message.server_timestamp),
            sequence_number=message.sequence_number,
            retry_count=message.retry_count,
            sync_status=message.sync_status,
            status=message.status,
        )


class LocalStore:
    """Durable, observable persistence over an async SQLAlchemy engine.

    Args:
        engine: Async engine whose database already has the tables created
            (see :func:`chatsync.db.init_db`).
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._sessions = session_factory(engine)
        self._lock = asyncio.Lock()
        self._observations: list[Observation] = []

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        async with self._lock:
            session = self._sessions()
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error("local_store_failure", error=str(exc))
                raise StorageError(f"Local store operation failed: {exc}") from exc
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    def observe(
        self,
        observer: StoreObserver,
        conversation_id: str | None = None,
    ) -> Observation:
        """Register a callback invoked after every committed change.

        Args:
            observer: Called synchronously with a StoreChange.
            conversation_id: Only receive changes for this conversation.
        """
        observation = Observation(self, observer, conversation_id)
        self._observations.append(observation)
        return observation

    def _remove_observation(self, observation: Observation) -> None:
        if observation in self._observations:
            self._observations.remove(observation)

    def _notify(self, changes: list[StoreChange]) -> None:
        for change in changes:
            for observation in list(self._observations):
                if not observation.matches(change):
                    continue
                try:
                    observation.observer(change)
                except Exception:
                    logger.exception(
                        "store_observer_failed",
                        conversation_id=change.conversation_id,
                        store_event=change.event.value,
                    )

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    async def insert(self, message: Message) -> Message:
        """Commit a new message and refresh its conversation's preview."""
        if message.is_system_message:
            message.sync_status = SyncStatus.SYNCED

        changes: list[StoreChange] = []
        async with self._transaction() as session:
            session.add(message)
            await session.flush()
            changes.append(
                StoreChange(StoreEvent.INSERTED, message.conversation_id, message=message)
            )
            conversation = await session.get(Conversation, message.conversation_id)
            if conversation is not None and await self._promote_last_message(
                session, conversation, message
            ):
                changes.append(
                    StoreChange(
                        StoreEvent.UPDATED,
                        conversation.id,
                        conversation=conversation,
                    )
                )

        logger.debug(
            "message_inserted",
            message_id=message.id,
            conversation_id=message.conversation_id,
            sync_status=message.sync_status.value,
        )
        self._notify(changes)
        return message

    async def update(self, message_id: str, mutator: Callable[[Message], None]) -> Message:
        """Apply a field-level mutation atomically.

        Raises:
            RecordNotFoundError: If the message does not exist.
            InvariantViolationError: If an immutable field was changed.
            InvalidTransitionError: If the sync status change is not allowed.
        """
        changes: list[StoreChange] = []
        async with self._transaction() as session:
            message = await session.get(Message, message_id)
            if message is None:
                raise RecordNotFoundError(f"Message '{message_id}' not found")

            before = _MessageSnapshot.of(message)
            mutator(message)
            self._check_message(before, message)

            message.updated_at = utc_now()
            flag_modified(message, "read_by")
            flag_modified(message, "annotations")
            await session.flush()
            changes.append(
                StoreChange(StoreEvent.UPDATED, message.conversation_id, message=message)
            )

            conversation = await session.get(Conversation, message.conversation_id)
            if conversation is not None and await self._promote_last_message(
                session, conversation, message
            ):
                changes.append(
                    StoreChange(
                        StoreEvent.UPDATED,
                        conversation.id,
                        conversation=conversation,
                    )
                )

        self._notify(changes)
        return message

    @staticmethod
    def _check_message(before: _MessageSnapshot, message: Message) -> None:
        if (
            message.id != before.id
            or message.conversation_id != before.conversation_id
            or ensure_utc(message.local_created_at) != before.local_created_at
        ):
            raise InvariantViolationError(
                f"Message '{before.id}': identity and local creation time are immutable"
            )
        if (
            before.server_timestamp is not None
            and ensure_utc(message.server_timestamp) != before.server_timestamp
        ):
            raise InvariantViolationError(
                f"Message '{before.id}': server timestamp is already assigned"
            )
        if before.sequence_number is not None and message.sequence_number != before.sequence_number:
            raise InvariantViolationError(
                f"Message '{before.id}': sequence number is already assigned"
            )
        if message.retry_count < before.retry_count:
            raise InvariantViolationError(f"Message '{before.id}': retry count cannot decrease")
        if advance_status(before.status, message.status) != message.status:
            raise InvariantViolationError(
                f"Message '{before.id}': delivery status cannot go from "
                f"{before.status.value} back to {message.status.value}"
            )
        if not can_transition(before.sync_status, message.sync_status):
            raise InvalidTransitionError(
                f"Message '{before.id}': sync status cannot go from "
                f"{before.sync_status.value} to {message.sync_status.value}"
            )

    async def get(self, message_id: str) -> Message | None:
        """Get a message by ID."""
        async with self._transaction() as session:
            return await session.get(Message, message_id)

    async def query(self, conversation_id: str) -> list[Message]:
        """Return a conversation's messages in display order.

        Ordered by local creation time, then server timestamp, then
        sequence number (see :func:`chatsync.db.models.compare_messages`).
        """
        async with self._transaction() as session:
            result = await session.execute(
                select(Message).where(Message.conversation_id == conversation_id)
            )
            messages = list(result.scalars().all())
        return sorted(messages, key=message_sort_key)

    async def delete(self, message_id: str) -> None:
        """Delete a message (explicit user action only)."""
        changes: list[StoreChange] = []
        async with self._transaction() as session:
            message = await session.get(Message, message_id)
            if message is None:
                raise RecordNotFoundError(f"Message '{message_id}' not found")
            await session.delete(message)
            await session.flush()
            changes.append(
                StoreChange(StoreEvent.DELETED, message.conversation_id, message=message)
            )

            conversation = await session.get(Conversation, message.conversation_id)
            if conversation is not None and conversation.last_message_id == message_id:
                await self._recompute_last_message(session, conversation)
                changes.append(
                    StoreChange(StoreEvent.UPDATED, conversation.id, conversation=conversation)
                )

        logger.info("message_deleted", message_id=message_id)
        self._notify(changes)

    async def outbound_messages(self, max_attempts: int) -> list[Message]:
        """Messages awaiting delivery, oldest first.

        Includes pending messages and failed ones that were neither rejected
        nor have exhausted their attempt ceiling.
        """
        async with self._transaction() as session:
            result = await session.execute(
                select(Message)
                .where(Message.is_system_message.is_(False))
                .where(self._eligible(Message, max_attempts))
                .order_by(Message.local_created_at, Message.id)
            )
            return list(result.scalars().all())

    async def count_outbound(self, max_attempts: int) -> OutboundCounts:
        """Count messages waiting to send and messages that gave up."""
        async with self._transaction() as session:
            pending = await session.execute(
                select(func.count())
                .select_from(Message)
                .where(Message.is_system_message.is_(False))
                .where(self._eligible(Message, max_attempts))
            )
            failed = await session.execute(
                select(func.count())
                .select_from(Message)
                .where(Message.is_system_message.is_(False))
                .where(Message.sync_status == SyncStatus.FAILED)
                .where(
                    or_(
                        Message.rejected.is_(True),
                        Message.retry_count >= max_attempts + Message.retry_allowance,
                    )
                )
            )
            return OutboundCounts(pending=pending.scalar_one(), failed=failed.scalar_one())

    async def failed_messages(self) -> list[Message]:
        """All messages in failed state, oldest first."""
        async with self._transaction() as session:
            result = await session.execute(
                select(Message)
                .where(Message.sync_status == SyncStatus.FAILED)
                .order_by(Message.local_created_at, Message.id)
            )
            return list(result.scalars().all())

    async def max_sequence_number(self, conversation_id: str) -> int | None:
        """Highest sequence number stored for a conversation."""
        async with self._transaction() as session:
            result = await session.execute(
                select(func.max(Message.sequence_number)).where(
                    Message.conversation_id == conversation_id
                )
            )
            return result.scalar_one_or_none()

    @staticmethod
    def _eligible(model, max_attempts: int):
        return or_(
            model.sync_status == SyncStatus.PENDING,
            and_(
                model.sync_status == SyncStatus.FAILED,
                model.rejected.is_(False),
                model.retry_count < max_attempts + model.retry_allowance,
            ),
        )

    # -------------------------------------------------------------------------
    # Conversations
    # -------------------------------------------------------------------------

    async def insert_conversation(self, conversation: Conversation) -> Conversation:
        """Commit a new conversation.

        Raises:
            InvalidConversationError: If it has fewer than two participants.
        """
        self._check_participants(conversation)
        async with self._transaction() as session:
            session.add(conversation)
        self._notify(
            [StoreChange(StoreEvent.INSERTED, conversation.id, conversation=conversation)]
        )
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        """Get a conversation by ID."""
        async with self._transaction() as session:
            return await session.get(Conversation, conversation_id)

    async def update_conversation(
        self,
        conversation_id: str,
        mutator: Callable[[Conversation], None],
    ) -> Conversation:
        """Apply a mutation to a conversation atomically."""
        async with self._transaction() as session:
            conversation = await session.get(Conversation, conversation_id)
            if conversation is None:
                raise RecordNotFoundError(f"Conversation '{conversation_id}' not found")

            sync_status = conversation.sync_status
            retry_count = conversation.retry_count
            mutator(conversation)

            self._check_participants(conversation)
            if conversation.retry_count < retry_count:
                raise InvariantViolationError(
                    f"Conversation '{conversation_id}': retry count cannot decrease"
                )
            if not can_transition(sync_status, conversation.sync_status):
                raise InvalidTransitionError(
                    f"Conversation '{conversation_id}': sync status cannot go from "
                    f"{sync_status.value} to {conversation.sync_status.value}"
                )
            conversation.updated_at = utc_now()
            flag_modified(conversation, "participant_ids")
            flag_modified(conversation, "admin_ids")

        self._notify(
            [StoreChange(StoreEvent.UPDATED, conversation.id, conversation=conversation)]
        )
        return conversation

    async def list_conversations(self, include_archived: bool = False) -> list[Conversation]:
        """Conversations for list rendering: pinned first, then most recent."""
        async with self._transaction() as session:
            query = select(Conversation)
            if not include_archived:
                query = query.where(Conversation.is_archived.is_(False))
            result = await session.execute(query)
            conversations = list(result.scalars().all())

        def recency(conversation: Conversation) -> float:
            moment = conversation.last_message_at or conversation.created_at
            return ensure_utc(moment).timestamp()

        return sorted(conversations, key=lambda c: (not c.is_pinned, -recency(c)))

    async def delete_conversation(self, conversation_id: str) -> None:
        """Hard-delete a conversation and all of its messages."""
        async with self._transaction() as session:
            conversation = await session.get(Conversation, conversation_id)
            if conversation is None:
                raise RecordNotFoundError(f"Conversation '{conversation_id}' not found")
            await session.execute(delete(Message).where(Message.conversation_id == conversation_id))
            await session.delete(conversation)

        logger.info("conversation_deleted", conversation_id=conversation_id)
        self._notify(
            [StoreChange(StoreEvent.DELETED, conversation_id, conversation=conversation)]
        )

    async def outbound_conversations(self, max_attempts: int) -> list[Conversation]:
        """Conversations awaiting delivery, oldest first."""
        async with self._transaction() as session:
            result = await session.execute(
                select(Conversation)
                .where(self._eligible(Conversation, max_attempts))
                .order_by(Conversation.created_at, Conversation.id)
            )
            return list(result.scalars().all())

    @staticmethod
    def _check_participants(conversation: Conversation) -> None:
        if len(set(conversation.participant_ids)) < 2:
            raise InvalidConversationError(
                f"Conversation '{conversation.id}' needs at least two participants"
            )

    # -------------------------------------------------------------------------
    # Denormalized fields
    # -------------------------------------------------------------------------

    @staticmethod
    def _set_last_message(conversation: Conversation, message: Message | None) -> None:
        if message is None:
            conversation.last_message_id = None
            conversation.last_message_text = None
            conversation.last_message_at = None
            conversation.last_message_sender_id = None
        else:
            conversation.last_message_id = message.id
            conversation.last_message_text = message.text
            conversation.last_message_at = message.server_timestamp or message.local_created_at
            conversation.last_message_sender_id = message.sender_id
        conversation.updated_at = utc_now()

    async def _promote_last_message(
        self,
        session: AsyncSession,
        conversation: Conversation,
        candidate: Message,
    ) -> bool:
        """Point the preview at candidate if it is at least as new as the current one."""
        if conversation.last_message_id == candidate.id:
            # Its server timestamp may have just moved it behind another message
            await self._recompute_last_message(session, conversation)
            return True
        current = None
        if conversation.last_message_id:
            current = await session.get(Message, conversation.last_message_id)
        if current is not None and recency_key(candidate) < recency_key(current):
            return False
        self._set_last_message(conversation, candidate)
        return True

    async def _recompute_last_message(
        self,
        session: AsyncSession,
        conversation: Conversation,
    ) -> None:
        result = await session.execute(
            select(Message).where(Message.conversation_id == conversation.id)
        )
        messages = list(result.scalars().all())
        newest = max(messages, key=recency_key) if messages else None
        self._set_last_message(conversation, newest)
