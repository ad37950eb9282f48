"""Exceptions raised by the sync core.

Remote failures live in :mod:`chatsync.remote.base`; everything here is
raised by local operations and propagates to the immediate caller.
"""


class ChatSyncError(Exception):
    """Base exception for chatsync errors."""

    pass


class StorageError(ChatSyncError):
    """Raised when the local store fails (disk full, corruption, ...)."""

    pass


class RecordNotFoundError(ChatSyncError):
    """Raised when a message or conversation does not exist locally."""

    pass


class InvalidTransitionError(ChatSyncError):
    """Raised when a sync status change is not allowed."""

    pass


class InvariantViolationError(ChatSyncError):
    """Raised when a mutation touches a field that must never change."""

    pass


class InvalidMessageError(ChatSyncError):
    """Raised when message content fails validation."""

    pass


class InvalidConversationError(ChatSyncError):
    """Raised when a conversation would have fewer than two participants."""

    pass


class NotAuthenticatedError(ChatSyncError):
    """Raised when an action needs a current user and there is none."""

    pass


class RetryLimitExceededError(ChatSyncError):
    """Raised when a manual retry would exceed the lifetime attempt limit."""

    pass
