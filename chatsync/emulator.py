"""Remote store emulator.

A FastAPI app over InMemoryRemoteStore that speaks the JSON API
HttpRemoteClient expects, for local development and end-to-end tests:

- Conversation and message upserts keyed by client-generated IDs
- Full message snapshots and a cursor-based change feed
- Delivery status updates and enrichment annotations from other devices

Rejections from the gatekeeper map to 4xx responses whose detail carries
the rejection reason. The emulator keeps everything in memory.
"""

from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, FastAPI, HTTPException, Query, status
from starlette.responses import PlainTextResponse

from chatsync import __version__
from chatsync.config import get_settings
from chatsync.logging import configure_logging, get_logger
from chatsync.metrics import metrics
from chatsync.middleware import RequestTracingMiddleware
from chatsync.remote.base import RejectedError, RejectionReason
from chatsync.remote.memory import InMemoryRemoteStore
from chatsync.schemas.remote import (
    ChangeFeed,
    ConversationAck,
    ConversationPayload,
    MessageList,
    MessagePayload,
    Rejection,
    RemoteMessage,
    ServerAck,
    StatusUpdate,
)

logger = get_logger(__name__)

REJECTION_STATUS = {
    RejectionReason.INVALID_CONTENT: status.HTTP_400_BAD_REQUEST,
    RejectionReason.PERMISSION_DENIED: status.HTTP_403_FORBIDDEN,
    RejectionReason.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    RejectionReason.TOO_LARGE: status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
}


def rejection_to_http(exc: RejectedError) -> HTTPException:
    """Translate a gatekeeper rejection into an HTTP error."""
    return HTTPException(
        status_code=REJECTION_STATUS[exc.reason],
        detail=Rejection(reason=exc.reason.value, detail=exc.detail).model_dump(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    configure_logging(
        json_format=not settings.debug,
        level="DEBUG" if settings.debug else settings.log_level,
    )
    logger.info(
        "emulator_starting",
        version=__version__,
        host=settings.emulator_host,
        port=settings.emulator_port,
    )
    yield
    logger.info("emulator_shutdown")


def create_app(store: InMemoryRemoteStore | None = None) -> FastAPI:
    """Create the emulator app, optionally over an existing store."""
    settings = get_settings()
    remote = store or InMemoryRemoteStore(max_message_length=settings.max_message_length)

    app = FastAPI(
        title="chatsync remote emulator",
        description="In-memory stand-in for the remote message store",
        version=__version__,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.remote_store = remote
    app.add_middleware(RequestTracingMiddleware)

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint (also used as the connectivity probe)."""
        return {"status": "healthy", "version": __version__}

    @app.get("/metrics", include_in_schema=False)
    async def get_metrics() -> PlainTextResponse:
        """Return Prometheus-formatted metrics."""
        return PlainTextResponse(
            content=metrics.to_prometheus(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    @app.get("/metrics/json")
    async def get_metrics_json() -> dict:
        """Return metrics as JSON."""
        return metrics.get_stats()

    # ---- Writes ----

    @app.put("/v1/conversations/{conversation_id}", response_model=ConversationAck)
    async def put_conversation(
        conversation_id: str,
        payload: ConversationPayload,
    ) -> ConversationAck:
        """Create or replace a conversation."""
        if payload.id != conversation_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=Rejection(
                    reason=RejectionReason.INVALID_CONTENT.value,
                    detail="Conversation ID in path and body differ",
                ).model_dump(),
            )
        try:
            return remote.upsert_conversation(payload)
        except RejectedError as exc:
            raise rejection_to_http(exc) from exc

    @app.put(
        "/v1/conversations/{conversation_id}/messages/{message_id}",
        response_model=ServerAck,
    )
    async def put_message(
        conversation_id: str,
        message_id: str,
        payload: MessagePayload,
    ) -> ServerAck:
        """Upsert a message. Re-sending the same ID returns the original ack."""
        if payload.id != message_id or payload.conversation_id != conversation_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=Rejection(
                    reason=RejectionReason.INVALID_CONTENT.value,
                    detail="Message IDs in path and body differ",
                ).model_dump(),
            )
        try:
            ack = remote.upsert_message(payload)
        except RejectedError as exc:
            logger.info("message_rejected", message_id=message_id, reason=exc.reason.value)
            raise rejection_to_http(exc) from exc
        logger.info("message_accepted", message_id=message_id, sequence_number=ack.sequence_number)
        return ack

    @app.post(
        "/v1/conversations/{conversation_id}/messages/{message_id}/status",
        response_model=RemoteMessage,
    )
    async def post_status(
        conversation_id: str,
        message_id: str,
        update: StatusUpdate,
    ) -> RemoteMessage:
        """Record delivered/read progress from a participant's device."""
        try:
            return remote.mark_status(conversation_id, message_id, update.status, update.reader_id)
        except RejectedError as exc:
            raise rejection_to_http(exc) from exc

    @app.post(
        "/v1/conversations/{conversation_id}/messages/{message_id}/annotations",
        response_model=RemoteMessage,
    )
    async def post_annotations(
        conversation_id: str,
        message_id: str,
        annotations: dict[str, Any] = Body(...),
    ) -> RemoteMessage:
        """Attach enrichment metadata, as an external annotator would."""
        try:
            return remote.annotate(conversation_id, message_id, annotations)
        except RejectedError as exc:
            raise rejection_to_http(exc) from exc

    # ---- Reads ----

    @app.get("/v1/conversations/{conversation_id}/messages", response_model=MessageList)
    async def list_messages(conversation_id: str) -> MessageList:
        """Full snapshot of a conversation, in sequence order."""
        messages = remote.messages(conversation_id)
        return MessageList(messages=messages, count=len(messages))

    @app.get("/v1/conversations/{conversation_id}/changes", response_model=ChangeFeed)
    async def list_changes(
        conversation_id: str,
        after: int = Query(default=0, ge=0, description="Cursor from the previous page"),
    ) -> ChangeFeed:
        """Change events recorded after a cursor."""
        return remote.changes_since(conversation_id, after)

    return app


app = create_app()
