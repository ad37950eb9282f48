"""Remote store payload definitions.

These schemas are the JSON documents exchanged with the remote store:
what the client writes, what the server acknowledges, and the change
events a subscription delivers.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from chatsync.db.models import Conversation, DeliveryStatus, Message


class ChangeKind(str, Enum):
    """Kind of change carried by a remote event."""

    ADDED = "added"
    CHANGED = "changed"


class MessagePayload(BaseModel):
    """A message write sent to the remote store."""

    id: str = Field(..., description="Client-generated message ID")
    conversation_id: str
    sender_id: str
    text: str
    client_created_at: datetime = Field(..., description="Sender's local clock")
    is_system_message: bool = False

    @classmethod
    def from_message(cls, message: Message) -> "MessagePayload":
        return cls(
            id=message.id,
            conversation_id=message.conversation_id,
            sender_id=message.sender_id,
            text=message.text,
            client_created_at=message.local_created_at,
            is_system_message=message.is_system_message,
        )


class ConversationPayload(BaseModel):
    """A conversation write sent to the remote store."""

    id: str
    participant_ids: list[str]
    display_name: str | None = None
    avatar_url: str | None = None
    admin_ids: list[str] = Field(default_factory=list)
    created_at: datetime

    @classmethod
    def from_conversation(cls, conversation: Conversation) -> "ConversationPayload":
        return cls(
            id=conversation.id,
            participant_ids=list(conversation.participant_ids),
            display_name=conversation.display_name,
            avatar_url=conversation.avatar_url,
            admin_ids=list(conversation.admin_ids),
            created_at=conversation.created_at,
        )


class ServerAck(BaseModel):
    """Acknowledgement of an accepted message write."""

    message_id: str
    conversation_id: str
    server_timestamp: datetime
    updated_at: datetime
    sequence_number: int | None = None


class ConversationAck(BaseModel):
    """Acknowledgement of an accepted conversation write."""

    conversation_id: str
    server_timestamp: datetime


class RemoteMessage(BaseModel):
    """A message as the remote store currently holds it.

    Delivered by subscriptions as change events and returned by full
    fetches. ``updated_at`` is the version stamp used for last-write-wins.
    """

    kind: ChangeKind = ChangeKind.ADDED
    id: str
    conversation_id: str
    sender_id: str
    text: str
    client_created_at: datetime | None = None
    server_timestamp: datetime
    updated_at: datetime
    sequence_number: int | None = None
    status: DeliveryStatus = DeliveryStatus.SENT
    read_by: dict[str, int] = Field(default_factory=dict)
    is_system_message: bool = False
    annotations: dict[str, Any] | None = None


class ChangeFeed(BaseModel):
    """A page of change events after a cursor."""

    changes: list[RemoteMessage]
    cursor: int


class MessageList(BaseModel):
    """Full snapshot of a conversation's messages."""

    messages: list[RemoteMessage]
    count: int


class StatusUpdate(BaseModel):
    """Delivery progress reported by a participant's device."""

    status: DeliveryStatus
    reader_id: str | None = None


class Rejection(BaseModel):
    """Body of a rejected write."""

    reason: str
    detail: str
