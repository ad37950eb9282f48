"""Local store persistence: engine and table models."""

from chatsync.db.engine import close_db, create_engine, get_engine, init_db, session_factory
from chatsync.db.models import (
    Conversation,
    DeliveryStatus,
    Message,
    SyncStatus,
    compare_messages,
    message_sort_key,
    recency_key,
)

__all__ = [
    "close_db",
    "create_engine",
    "get_engine",
    "init_db",
    "session_factory",
    "Conversation",
    "DeliveryStatus",
    "Message",
    "SyncStatus",
    "compare_messages",
    "message_sort_key",
    "recency_key",
]
