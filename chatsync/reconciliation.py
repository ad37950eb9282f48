"""Reconciliation engine.

Merges remote truth into the local store without losing data:

- Acks for local sends finalize the record (server timestamp, sequence
  number, synced).
- Remote change events insert unknown messages and merge known ones with
  last-write-wins on the remote version stamp. An event that is not
  strictly newer than what is stored is ignored, so an old event can never
  regress newer local state and re-applying an event changes nothing.
- Sequence numbers are tracked per conversation; anything other than
  "highest seen + 1" is recorded as a gap for the coordinator or UI.

The conversation preview is kept on the newest message by the store itself,
using the same ordering as message queries.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from chatsync.credentials import CredentialProvider
from chatsync.db.models import (
    Conversation,
    DeliveryStatus,
    Message,
    SyncStatus,
    advance_status,
    ensure_utc,
    utc_now,
)
from chatsync.logging import get_logger
from chatsync.metrics import record_remote_event, record_sequence_gap
from chatsync.schemas.remote import ConversationAck, RemoteMessage, ServerAck
from chatsync.store import LocalStore

logger = get_logger(__name__)


class GapKind(str, Enum):
    """How a sequence number departed from "highest seen + 1"."""

    MISSING = "missing"
    OUT_OF_ORDER = "out_of_order"


@dataclass(frozen=True)
class SequenceGap:
    """A detected break in a conversation's sequence numbers."""

    conversation_id: str
    expected: int
    received: int
    kind: GapKind
    detected_at: datetime = field(default_factory=utc_now)


class ApplyOutcome(str, Enum):
    INSERTED = "inserted"
    APPLIED = "applied"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ApplyResult:
    """What apply_remote did with an event."""

    outcome: ApplyOutcome
    message: Message | None = None
    gap: SequenceGap | None = None


GapListener = Callable[[SequenceGap], None]


class ReconciliationEngine:
    """Applies acks and remote events to the local store.

    Args:
        store: The local store.
        credentials: Identifies the current user, so incoming messages from
            other participants bump the unread count.
    """

    def __init__(self, store: LocalStore, credentials: CredentialProvider | None = None) -> None:
        self._store = store
        self._credentials = credentials
        self._apply_lock = asyncio.Lock()
        self._highest: dict[str, int] = {}
        self._gaps: dict[str, list[SequenceGap]] = defaultdict(list)
        self._gap_listeners: list[GapListener] = []

    # -------------------------------------------------------------------------
    # Local sends
    # -------------------------------------------------------------------------

    async def confirm_sent(self, ack: ServerAck) -> Message:
        """Finalize a message the remote store accepted."""
        await self._seed(ack.conversation_id)
        learned: list[int] = []

        def finalize(message: Message) -> None:
            if message.server_timestamp is None:
                message.server_timestamp = ack.server_timestamp
            if message.sequence_number is None and ack.sequence_number is not None:
                message.sequence_number = ack.sequence_number
                learned.append(ack.sequence_number)
            if _is_newer(ack.updated_at, message.server_updated_at):
                message.server_updated_at = ack.updated_at
            message.status = advance_status(message.status, DeliveryStatus.SENT)
            message.sync_status = SyncStatus.SYNCED
            message.rejected = False
            message.last_sync_error = None

        message = await self._store.update(ack.message_id, finalize)
        for sequence_number in learned:
            self._track(ack.conversation_id, sequence_number)

        logger.info(
            "message_synced",
            message_id=message.id,
            conversation_id=message.conversation_id,
            sequence_number=message.sequence_number,
        )
        return message

    async def confirm_conversation(self, ack: ConversationAck) -> Conversation:
        """Finalize a conversation the remote store accepted."""

        def finalize(conversation: Conversation) -> None:
            conversation.sync_status = SyncStatus.SYNCED
            conversation.rejected = False
            conversation.last_sync_error = None

        conversation = await self._store.update_conversation(ack.conversation_id, finalize)
        logger.info("conversation_synced", conversation_id=conversation.id)
        return conversation

    # -------------------------------------------------------------------------
    # Remote events
    # -------------------------------------------------------------------------

    async def apply_remote(self, event: RemoteMessage) -> ApplyResult:
        """Merge one change event delivered by a subscription or fetch."""
        async with self._apply_lock:
            await self._seed(event.conversation_id)
            existing = await self._store.get(event.id)
            if existing is None:
                result = await self._insert_remote(event)
            else:
                result = await self._merge_remote(existing, event)

        record_remote_event(result.outcome.value)
        return result

    async def _insert_remote(self, event: RemoteMessage) -> ApplyResult:
        message = Message(
            id=event.id,
            conversation_id=event.conversation_id,
            sender_id=event.sender_id,
            text=event.text,
            local_created_at=event.client_created_at or event.server_timestamp,
            server_timestamp=event.server_timestamp,
            server_updated_at=event.updated_at,
            sequence_number=event.sequence_number,
            status=advance_status(DeliveryStatus.SENT, event.status),
            sync_status=SyncStatus.SYNCED,
            read_by=dict(event.read_by),
            is_system_message=event.is_system_message,
            annotations=dict(event.annotations) if event.annotations else None,
        )
        await self._store.insert(message)

        gap = None
        if event.sequence_number is not None:
            gap = self._track(event.conversation_id, event.sequence_number)
        await self._count_unread(message)

        logger.debug(
            "remote_message_inserted",
            message_id=message.id,
            conversation_id=message.conversation_id,
            sequence_number=message.sequence_number,
        )
        return ApplyResult(ApplyOutcome.INSERTED, message, gap)

    async def _merge_remote(self, existing: Message, event: RemoteMessage) -> ApplyResult:
        if not _is_newer(event.updated_at, existing.server_updated_at):
            logger.debug(
                "remote_event_ignored",
                message_id=event.id,
                conversation_id=event.conversation_id,
                incoming=event.updated_at.isoformat(),
                stored=existing.server_updated_at.isoformat() if existing.server_updated_at else None,
            )
            return ApplyResult(ApplyOutcome.IGNORED, existing)

        learned: list[int] = []

        def merge(message: Message) -> None:
            if message.server_timestamp is None:
                message.server_timestamp = event.server_timestamp
            if message.sequence_number is None and event.sequence_number is not None:
                message.sequence_number = event.sequence_number
                learned.append(event.sequence_number)
            message.server_updated_at = event.updated_at
            message.text = event.text
            message.status = advance_status(message.status, event.status)
            message.read_by = _merge_receipts(message.read_by, event.read_by)
            if event.annotations:
                message.annotations = {**(message.annotations or {}), **event.annotations}
            if message.sync_status != SyncStatus.SYNCED:
                # The remote store has it, so an earlier send did land
                message.sync_status = SyncStatus.SYNCED
                message.rejected = False
                message.last_sync_error = None

        message = await self._store.update(existing.id, merge)
        gap = None
        for sequence_number in learned:
            gap = self._track(event.conversation_id, sequence_number)
        return ApplyResult(ApplyOutcome.APPLIED, message, gap)

    async def _count_unread(self, message: Message) -> None:
        user_id = self._credentials.current_user_id if self._credentials else None
        if message.is_system_message or user_id is None:
            return
        if message.sender_id == user_id or user_id in message.read_by:
            return
        if await self._store.get_conversation(message.conversation_id) is None:
            logger.debug(
                "unread_count_skipped",
                conversation_id=message.conversation_id,
                reason="conversation not stored locally",
            )
            return

        def bump(conversation: Conversation) -> None:
            conversation.unread_count += 1

        await self._store.update_conversation(message.conversation_id, bump)

    async def apply_enrichment(self, message_id: str, annotations: dict[str, Any]) -> Message:
        """Attach optional enrichment metadata to a message."""

        def annotate(message: Message) -> None:
            message.annotations = {**(message.annotations or {}), **annotations}

        return await self._store.update(message_id, annotate)

    # -------------------------------------------------------------------------
    # Gap detection
    # -------------------------------------------------------------------------

    async def _seed(self, conversation_id: str) -> None:
        if conversation_id in self._highest:
            return
        highest = await self._store.max_sequence_number(conversation_id)
        if highest is not None:
            self._highest.setdefault(conversation_id, highest)

    def _track(self, conversation_id: str, sequence_number: int) -> SequenceGap | None:
        """Feed a newly learned sequence number; returns the gap it reveals, if any."""
        highest = self._highest.get(conversation_id)
        if highest is None or sequence_number == highest + 1:
            self._highest[conversation_id] = sequence_number
            return None

        if sequence_number > highest:
            kind = GapKind.MISSING
            self._highest[conversation_id] = sequence_number
        else:
            kind = GapKind.OUT_OF_ORDER
        gap = SequenceGap(
            conversation_id=conversation_id,
            expected=highest + 1,
            received=sequence_number,
            kind=kind,
        )
        self._gaps[conversation_id].append(gap)
        record_sequence_gap(kind.value)
        logger.warning(
            "sequence_gap_detected",
            conversation_id=conversation_id,
            expected=gap.expected,
            received=gap.received,
            kind=kind.value,
        )
        for listener in list(self._gap_listeners):
            try:
                listener(gap)
            except Exception:
                logger.exception("gap_listener_failed", conversation_id=conversation_id)
        return gap

    def highest_sequence(self, conversation_id: str) -> int | None:
        """Highest sequence number seen so far for a conversation."""
        return self._highest.get(conversation_id)

    def gaps(self, conversation_id: str | None = None) -> list[SequenceGap]:
        """Outstanding gaps, for one conversation or all of them."""
        if conversation_id is not None:
            return list(self._gaps.get(conversation_id, []))
        return [gap for gaps in self._gaps.values() for gap in gaps]

    def has_gap(self, conversation_id: str) -> bool:
        return bool(self._gaps.get(conversation_id))

    def clear_gaps(self, conversation_id: str) -> None:
        """Forget a conversation's gaps, e.g. after a full resync.

        The highest sequence number is re-read from the store on the next event.
        """
        self._gaps.pop(conversation_id, None)
        self._highest.pop(conversation_id, None)

    def on_gap(self, listener: GapListener) -> Callable[[], None]:
        """Register a callback for newly detected gaps; returns a remover."""
        self._gap_listeners.append(listener)

        def remove() -> None:
            if listener in self._gap_listeners:
                self._gap_listeners.remove(listener)

        return remove


def _is_newer(incoming: datetime, stored: datetime | None) -> bool:
    return stored is None or ensure_utc(incoming) > ensure_utc(stored)


def _merge_receipts(current: dict[str, int], incoming: dict[str, int]) -> dict[str, int]:
    merged = dict(current)
    for reader, read_at in incoming.items():
        merged[reader] = max(merged.get(reader, read_at), read_at)
    return merged
