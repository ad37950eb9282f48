"""Database models for the local store.

All models use SQLModel for Pydantic + SQLAlchemy integration.
These models hold:
- Messages with their delivery and sync bookkeeping
- Conversations with denormalized "last message" fields for list rendering
"""

from datetime import datetime, timezone
from enum import Enum
from functools import cmp_to_key
from typing import Any
from uuid import uuid4

from sqlalchemy import DateTime, TypeDecorator
from sqlmodel import JSON, Column, Field, SQLModel


def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(timezone.utc)


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid4())


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    """Convert a datetime to epoch milliseconds."""
    return int(ensure_utc(value).timestamp() * 1000)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime stored as naive UTC.

    SQLite has no timezone support, so values are normalized on the way in
    and tagged as UTC on the way out.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return ensure_utc(value).astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class DeliveryStatus(str, Enum):
    """Delivery progress of a message as seen by its participants."""

    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class SyncStatus(str, Enum):
    """Sync status of a local record with respect to the remote store."""

    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


_DELIVERY_RANK = {
    DeliveryStatus.SENDING: 0,
    DeliveryStatus.SENT: 1,
    DeliveryStatus.DELIVERED: 2,
    DeliveryStatus.READ: 3,
}

_SYNC_TRANSITIONS = {
    SyncStatus.PENDING: {SyncStatus.SYNCED, SyncStatus.FAILED},
    SyncStatus.FAILED: {SyncStatus.PENDING, SyncStatus.SYNCED},
    SyncStatus.SYNCED: set(),
}


def advance_status(current: DeliveryStatus, incoming: DeliveryStatus) -> DeliveryStatus:
    """Return the further along of two delivery statuses."""
    if _DELIVERY_RANK[incoming] > _DELIVERY_RANK[current]:
        return incoming
    return current


def can_transition(current: SyncStatus, new: SyncStatus) -> bool:
    """Check whether a sync status change is allowed."""
    return current == new or new in _SYNC_TRANSITIONS[current]


class Message(SQLModel, table=True):
    """A unit of communication within a conversation.

    The id is generated on the client and never reassigned, which is what
    makes re-sending the same message an upsert on the remote side.
    """

    __tablename__ = "messages"
    __table_args__ = {"extend_existing": True}

    id: str = Field(default_factory=generate_uuid, primary_key=True)
    conversation_id: str = Field(index=True)  # Links to Conversation.id
    sender_id: str
    text: str

    # Ordering: client clock for display, server fields once accepted
    local_created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(UTCDateTime(), nullable=False, index=True),
    )
    server_timestamp: datetime | None = Field(
        default=None, sa_column=Column(UTCDateTime(), nullable=True)
    )
    server_updated_at: datetime | None = Field(
        default=None, sa_column=Column(UTCDateTime(), nullable=True)
    )
    sequence_number: int | None = Field(default=None, index=True)

    status: DeliveryStatus = Field(default=DeliveryStatus.SENDING)
    sync_status: SyncStatus = Field(default=SyncStatus.PENDING, index=True)
    retry_count: int = Field(default=0)
    retry_allowance: int = Field(default=0)
    rejected: bool = Field(default=False)
    last_sync_attempt: datetime | None = Field(
        default=None, sa_column=Column(UTCDateTime(), nullable=True)
    )
    last_sync_error: str | None = Field(default=None)

    read_by: dict[str, int] = Field(default_factory=dict, sa_column=Column(JSON))
    is_system_message: bool = Field(default=False)

    # Enrichment metadata (category, sentiment, ...); may never arrive
    annotations: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))

    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(UTCDateTime(), nullable=False),
    )

    @property
    def is_outbound(self) -> bool:
        """Whether the message still needs delivery to the remote store."""
        return not self.is_system_message and self.sync_status != SyncStatus.SYNCED


class Conversation(SQLModel, table=True):
    """A container of participants and their shared messages."""

    __tablename__ = "conversations"
    __table_args__ = {"extend_existing": True}

    id: str = Field(default_factory=generate_uuid, primary_key=True)
    participant_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))

    # Group-only fields
    display_name: str | None = Field(default=None)
    avatar_url: str | None = Field(default=None)
    admin_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))

    # Per-user flags
    is_pinned: bool = Field(default=False)
    is_muted: bool = Field(default=False)
    is_archived: bool = Field(default=False, index=True)

    # Denormalized from the newest message
    unread_count: int = Field(default=0)
    last_message_id: str | None = Field(default=None)
    last_message_text: str | None = Field(default=None)
    last_message_at: datetime | None = Field(
        default=None, sa_column=Column(UTCDateTime(), nullable=True)
    )
    last_message_sender_id: str | None = Field(default=None)

    sync_status: SyncStatus = Field(default=SyncStatus.PENDING, index=True)
    retry_count: int = Field(default=0)
    retry_allowance: int = Field(default=0)
    rejected: bool = Field(default=False)
    last_sync_attempt: datetime | None = Field(
        default=None, sa_column=Column(UTCDateTime(), nullable=True)
    )
    last_sync_error: str | None = Field(default=None)

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(UTCDateTime(), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(UTCDateTime(), nullable=False),
    )

    @property
    def is_group(self) -> bool:
        return len(self.participant_ids) > 2


_ORDERING_KEYS = ("local_created_at", "server_timestamp", "sequence_number")


def compare_messages(left: Message, right: Message) -> int:
    """Three-key message ordering used for display.

    Keys in order: local creation time, server timestamp, sequence number.
    A key is skipped whenever either side is missing it, so a freshly sent
    message with no server timestamp still sorts by its client clock.
    """
    for key in _ORDERING_KEYS:
        a, b = getattr(left, key), getattr(right, key)
        if a is None or b is None:
            continue
        if isinstance(a, datetime):
            a, b = ensure_utc(a), ensure_utc(b)
        if a != b:
            return -1 if a < b else 1
    return (left.id > right.id) - (left.id < right.id)


message_sort_key = cmp_to_key(compare_messages)


def recency_key(message: Message) -> tuple[datetime, int, str]:
    """Sort key for the newest message in a conversation.

    Server time decides, falling back to local creation time for messages the
    remote store has not stamped yet, then sequence number, then id.
    """
    moment = ensure_utc(message.server_timestamp or message.local_created_at)
    sequence = message.sequence_number if message.sequence_number is not None else -1
    return moment, sequence, message.id
