"""HTTP client for a remote store speaking the emulator's JSON API.

Usage:
    from chatsync.remote import HttpRemoteClient

    async with HttpRemoteClient("http://127.0.0.1:8765") as remote:
        ack = await remote.send(message)
        subscription = await remote.subscribe(conversation_id, on_change)
        ...
        subscription.cancel()

Subscriptions poll the conversation's change feed with a cursor, so
events arrive in the order the remote store recorded them.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx

from chatsync.db.models import Conversation, Message
from chatsync.logging import get_logger
from chatsync.remote.base import (
    ChangeHandler,
    RejectedError,
    RejectionReason,
    RemoteSyncClient,
    Subscription,
    TransientRemoteError,
)
from chatsync.schemas.remote import (
    ChangeFeed,
    ConversationAck,
    ConversationPayload,
    MessageList,
    MessagePayload,
    RemoteMessage,
    ServerAck,
)

logger = get_logger(__name__)

_STATUS_REASONS = {
    400: RejectionReason.INVALID_CONTENT,
    401: RejectionReason.PERMISSION_DENIED,
    403: RejectionReason.PERMISSION_DENIED,
    404: RejectionReason.NOT_FOUND,
    413: RejectionReason.TOO_LARGE,
    422: RejectionReason.INVALID_CONTENT,
}


def classify_response(response: httpx.Response) -> None:
    """Raise the remote error matching a failed response.

    408, 429 and 5xx are transient; every other 4xx is a permanent rejection.
    """
    code = response.status_code
    if code < 400:
        return
    if code in (408, 429) or code >= 500:
        raise TransientRemoteError(f"Remote store returned {code}")

    reason = _STATUS_REASONS.get(code, RejectionReason.INVALID_CONTENT)
    detail = f"Remote store returned {code}"
    try:
        body: Any = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("detail"), dict):
        rejection = body["detail"]
        try:
            reason = RejectionReason(rejection.get("reason"))
        except ValueError:
            pass
        detail = rejection.get("detail") or detail
    elif isinstance(body, dict) and isinstance(body.get("detail"), str):
        detail = body["detail"]
    raise RejectedError(reason, detail)


class HttpRemoteClient(RemoteSyncClient):
    """Remote sync client over HTTP.

    Args:
        base_url: The base URL of the remote store.
        timeout: Request timeout in seconds.
        poll_interval: Seconds between change feed polls per subscription.
        transport: Optional httpx transport (ASGI app, mock) for tests.
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8765",
        timeout: float = 10.0,
        poll_interval: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> HttpRemoteClient:
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientRemoteError(f"Request to {path} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientRemoteError(f"Network error: {exc}") from exc
        classify_response(response)
        return response

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def send(self, message: Message) -> ServerAck:
        payload = MessagePayload.from_message(message)
        response = await self._request(
            "PUT",
            f"/v1/conversations/{message.conversation_id}/messages/{message.id}",
            json=payload.model_dump(mode="json"),
        )
        return ServerAck.model_validate(response.json())

    async def send_conversation(self, conversation: Conversation) -> ConversationAck:
        payload = ConversationPayload.from_conversation(conversation)
        response = await self._request(
            "PUT",
            f"/v1/conversations/{conversation.id}",
            json=payload.model_dump(mode="json"),
        )
        return ConversationAck.model_validate(response.json())

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def fetch(self, conversation_id: str) -> list[RemoteMessage]:
        response = await self._request("GET", f"/v1/conversations/{conversation_id}/messages")
        return MessageList.model_validate(response.json()).messages

    async def changes(self, conversation_id: str, cursor: int = 0) -> ChangeFeed:
        """Fetch change events recorded after a cursor."""
        response = await self._request(
            "GET",
            f"/v1/conversations/{conversation_id}/changes",
            params={"after": cursor},
        )
        return ChangeFeed.model_validate(response.json())

    async def subscribe(self, conversation_id: str, on_change: ChangeHandler) -> Subscription:
        task = asyncio.create_task(self._poll(conversation_id, on_change))
        logger.debug("subscription_opened", conversation_id=conversation_id)
        return Subscription(conversation_id, task)

    async def _poll(self, conversation_id: str, on_change: ChangeHandler) -> None:
        cursor = 0
        while True:
            try:
                feed = await self.changes(conversation_id, cursor)
            except TransientRemoteError as exc:
                logger.warning(
                    "subscription_poll_failed",
                    conversation_id=conversation_id,
                    error=str(exc),
                )
                await asyncio.sleep(self.poll_interval)
                continue
            except RejectedError as exc:
                logger.error(
                    "subscription_rejected",
                    conversation_id=conversation_id,
                    reason=exc.reason.value,
                    error=exc.detail,
                )
                return

            # The cursor indexes the change log; stop at the first event not applied
            cursor = feed.cursor - len(feed.changes)
            for event in feed.changes:
                try:
                    await on_change(event)
                except Exception:
                    logger.exception(
                        "change_handler_failed",
                        conversation_id=conversation_id,
                        message_id=event.id,
                        cursor=cursor,
                    )
                    break
                cursor += 1
            await asyncio.sleep(self.poll_interval)
