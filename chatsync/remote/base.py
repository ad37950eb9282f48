"""Remote sync client interface and error taxonomy.

The remote sync client is the only component that talks to the remote
store. Every failure it reports is classified, because the outbound queue
decides between "retry later" and "give up now" from the class alone:

- TransientRemoteError: network unreachable, timeout, server-side failure.
- RejectedError: the remote gatekeeper declined the write; retrying the
  same content can never succeed.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from enum import Enum

from chatsync.db.models import Conversation, Message
from chatsync.logging import get_logger
from chatsync.schemas.remote import ConversationAck, RemoteMessage, ServerAck

logger = get_logger(__name__)

ChangeHandler = Callable[[RemoteMessage], Awaitable[None]]


class RemoteError(Exception):
    """Base exception for remote store failures.

    Unclassified remote errors are treated as transient.
    """

    retryable = True


class TransientRemoteError(RemoteError):
    """Raised for failures that may succeed on a later attempt."""

    pass


class RejectionReason(str, Enum):
    """Why the remote gatekeeper declined a write."""

    INVALID_CONTENT = "invalid_content"
    TOO_LARGE = "too_large"
    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"


class RejectedError(RemoteError):
    """Raised when the remote store permanently refuses a write."""

    retryable = False

    def __init__(self, reason: RejectionReason, detail: str = "") -> None:
        self.reason = reason
        self.detail = detail or reason.value
        super().__init__(f"{reason.value}: {self.detail}")


class Subscription:
    """A standing subscription to one conversation's change events.

    Events are handed to the change handler one at a time, in the order the
    remote store delivered them. Cancel it when the conversation is closed.
    """

    def __init__(self, conversation_id: str, task: asyncio.Task) -> None:
        self.conversation_id = conversation_id
        self._task = task

    @property
    def active(self) -> bool:
        return not self._task.done()

    def cancel(self) -> None:
        """Stop delivering events."""
        if not self._task.done():
            self._task.cancel()
            logger.debug("subscription_cancelled", conversation_id=self.conversation_id)

    async def wait_closed(self) -> None:
        """Wait until the delivery task has finished."""
        try:
            await self._task
        except asyncio.CancelledError:
            pass


async def deliver_in_order(
    conversation_id: str,
    events: asyncio.Queue[RemoteMessage],
    on_change: ChangeHandler,
) -> None:
    """Feed queued events to a change handler sequentially.

    A handler failure is logged and does not end the subscription.
    """
    while True:
        event = await events.get()
        try:
            await on_change(event)
        except Exception:
            logger.exception(
                "change_handler_failed",
                conversation_id=conversation_id,
                message_id=event.id,
            )


class RemoteSyncClient(ABC):
    """Interface to the remote store."""

    @abstractmethod
    async def send(self, message: Message) -> ServerAck:
        """Write a message.

        Must be an upsert keyed by the message ID, so resending after a
        timeout never creates a duplicate.
        """

    @abstractmethod
    async def send_conversation(self, conversation: Conversation) -> ConversationAck:
        """Write a conversation record."""

    @abstractmethod
    async def subscribe(self, conversation_id: str, on_change: ChangeHandler) -> Subscription:
        """Open a standing subscription to a conversation's changes."""

    @abstractmethod
    async def fetch(self, conversation_id: str) -> list[RemoteMessage]:
        """Return every message the remote store holds for a conversation."""

    async def close(self) -> None:
        """Release client resources."""
        return None
