"""Remote store schemas."""

from chatsync.schemas.remote import (
    ChangeFeed,
    ChangeKind,
    ConversationAck,
    ConversationPayload,
    MessageList,
    MessagePayload,
    Rejection,
    RemoteMessage,
    ServerAck,
    StatusUpdate,
)

__all__ = [
    "ChangeFeed",
    "ChangeKind",
    "ConversationAck",
    "ConversationPayload",
    "MessageList",
    "MessagePayload",
    "Rejection",
    "RemoteMessage",
    "ServerAck",
    "StatusUpdate",
]
