"""Outbound queue: delivery of locally committed writes.

There is no queue table. A record is queued when its sync status says so:
pending, or failed without a permanent rejection and still under its
attempt ceiling. Draining delivers each conversation's records one at a
time, oldest first (the conversation record itself goes before its
messages), while different conversations drain concurrently.

Failures are classified by the remote sync client:

- Transient (network, timeout, server error): the attempt counts against
  the ceiling and is retried after an exponential backoff with jitter.
- Rejected: marked failed at once with the reason recorded. The attempt
  does not count, and the record is never retried automatically.

A record that reaches its ceiling stays failed and visible until the user
retries or discards it.
"""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from chatsync.config import Settings
from chatsync.db.models import Conversation, Message, SyncStatus, utc_now
from chatsync.errors import InvalidTransitionError, RecordNotFoundError, RetryLimitExceededError
from chatsync.logging import bound_context, get_logger
from chatsync.metrics import record_delivery, set_outbound_gauges
from chatsync.reconciliation import ReconciliationEngine
from chatsync.remote.base import RejectedError, RemoteError, RemoteSyncClient
from chatsync.store import LocalStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff and attempt limits for automatic delivery.

    Attributes:
        max_attempts: Automatic attempts before a record gives up.
        base_delay: Delay after the first failure, doubled per attempt.
        max_delay: Upper bound for a single delay.
        jitter: Fraction of the delay added or removed at random.
        lifetime_max_attempts: Hard cap on attempts, manual retries included.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.2
    lifetime_max_attempts: int = 10

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.backoff_base_seconds,
            max_delay=settings.backoff_max_seconds,
            jitter=settings.backoff_jitter,
            lifetime_max_attempts=settings.lifetime_max_attempts,
        )

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        delay = min(self.base_delay * 2 ** max(attempt - 1, 0), self.max_delay)
        if self.jitter:
            spread = delay * self.jitter
            delay += (rng or random).uniform(-spread, spread)
        return max(delay, 0.0)

    def ceiling_for(self, record: Message | Conversation) -> int:
        """Attempt count at which a record stops being retried automatically."""
        return min(self.max_attempts + record.retry_allowance, self.lifetime_max_attempts)

    def allowance_for_retry(self, record: Message | Conversation) -> int:
        """Allowance that gives a failed record a fresh round of attempts.

        Raises:
            RetryLimitExceededError: If the lifetime cap is already used up.
        """
        if record.retry_count >= self.lifetime_max_attempts:
            raise RetryLimitExceededError(
                f"'{record.id}' has used all {self.lifetime_max_attempts} attempts"
            )
        ceiling = min(record.retry_count + self.max_attempts, self.lifetime_max_attempts)
        return max(record.retry_allowance, ceiling - self.max_attempts)


class DeliveryOutcome(str, Enum):
    """How one record's delivery ended within a drain."""

    SYNCED = "synced"
    FAILED = "failed"
    REJECTED = "rejected"
    DEFERRED = "deferred"
    DISCARDED = "discarded"


@dataclass
class DrainReport:
    """Per-record outcomes of one drain."""

    outcomes: dict[str, DeliveryOutcome] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    interrupted: bool = False

    def count(self, outcome: DeliveryOutcome) -> int:
        return sum(1 for value in self.outcomes.values() if value == outcome)

    @property
    def synced(self) -> int:
        return self.count(DeliveryOutcome.SYNCED)

    @property
    def failed(self) -> int:
        return self.count(DeliveryOutcome.FAILED) + self.count(DeliveryOutcome.REJECTED)

    @property
    def deferred(self) -> int:
        return self.count(DeliveryOutcome.DEFERRED)


@dataclass(frozen=True)
class _Target:
    """How to send, confirm and update one kind of record."""

    kind: str
    send: Callable[[Any], Awaitable[Any]]
    confirm: Callable[[Any], Awaitable[Any]]
    update: Callable[[str, Callable[[Any], None]], Awaitable[Any]]


def _always() -> bool:
    return True


class OutboundQueue:
    """Delivers queued records through the remote sync client.

    Args:
        store: The local store.
        remote: The remote sync client.
        reconciliation: Finalizes records once the remote store accepts them.
        policy: Retry policy.
        send_timeout: Seconds before a single attempt counts as failed.
        sleep: Awaitable used for backoff delays (replaceable in tests).
        rng: Random source for jitter.
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteSyncClient,
        reconciliation: ReconciliationEngine,
        policy: RetryPolicy | None = None,
        send_timeout: float = 5.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.remote = remote
        self.reconciliation = reconciliation
        self.policy = policy or RetryPolicy()
        self.send_timeout = send_timeout
        self._sleep = sleep
        self._rng = rng
        self._drain_lock = asyncio.Lock()
        self._messages = _Target(
            kind="message",
            send=remote.send,
            confirm=reconciliation.confirm_sent,
            update=store.update,
        )
        self._conversations = _Target(
            kind="conversation",
            send=remote.send_conversation,
            confirm=reconciliation.confirm_conversation,
            update=store.update_conversation,
        )

    # -------------------------------------------------------------------------
    # Draining
    # -------------------------------------------------------------------------

    async def drain(self, should_continue: Callable[[], bool] = _always) -> DrainReport:
        """Attempt delivery of everything currently queued.

        Args:
            should_continue: Checked before each attempt and each backoff;
                returning False (e.g. connectivity lost) leaves the remaining
                records queued for the next drain.
        """
        async with self._drain_lock:
            report = DrainReport()
            max_attempts = self.policy.max_attempts
            conversations = await self.store.outbound_conversations(max_attempts)
            messages = await self.store.outbound_messages(max_attempts)

            batches: dict[str, tuple[Conversation | None, list[Message]]] = {}
            for conversation in conversations:
                batches[conversation.id] = (conversation, [])
            for message in messages:
                batches.setdefault(message.conversation_id, (None, []))[1].append(message)

            if batches:
                logger.info(
                    "drain_started",
                    conversations=len(batches),
                    messages=len(messages),
                )
                await asyncio.gather(
                    *(
                        self._drain_conversation(cid, conversation, queued, should_continue, report)
                        for cid, (conversation, queued) in batches.items()
                    )
                )
                logger.info(
                    "drain_finished",
                    synced=report.synced,
                    failed=report.failed,
                    deferred=report.deferred,
                    errors=len(report.errors),
                    interrupted=report.interrupted,
                )

            counts = await self.store.count_outbound(max_attempts)
            set_outbound_gauges(counts.pending, counts.failed)
            return report

    async def _drain_conversation(
        self,
        conversation_id: str,
        conversation: Conversation | None,
        messages: list[Message],
        should_continue: Callable[[], bool],
        report: DrainReport,
    ) -> None:
        with bound_context(conversation_id=conversation_id):
            try:
                await self._drain_batch(conversation_id, conversation, messages, should_continue, report)
            except Exception as exc:
                # Other conversations keep draining; this batch waits for the next drain
                logger.exception("conversation_drain_failed", error=str(exc))
                report.errors[conversation_id] = str(exc)
                records = ([conversation] if conversation is not None else []) + messages
                for record in records:
                    report.outcomes.setdefault(record.id, DeliveryOutcome.DEFERRED)
                report.interrupted = True

    async def _drain_batch(
        self,
        conversation_id: str,
        conversation: Conversation | None,
        messages: list[Message],
        should_continue: Callable[[], bool],
        report: DrainReport,
    ) -> None:
        if conversation is not None:
            outcome = await self._deliver(conversation, self._conversations, should_continue)
            report.outcomes[conversation.id] = outcome
            if outcome != DeliveryOutcome.SYNCED:
                self._defer(messages, report, outcome == DeliveryOutcome.DEFERRED)
                return
        elif messages and not await self._conversation_ready(conversation_id):
            self._defer(messages, report, False)
            return

        for index, message in enumerate(messages):
            if not should_continue():
                self._defer(messages[index:], report, True)
                return
            outcome = await self._deliver(message, self._messages, should_continue)
            report.outcomes[message.id] = outcome
            if outcome == DeliveryOutcome.DEFERRED:
                self._defer(messages[index + 1 :], report, True)
                return

    async def _conversation_ready(self, conversation_id: str) -> bool:
        # Conversations not stored locally were created elsewhere
        conversation = await self.store.get_conversation(conversation_id)
        return conversation is None or conversation.sync_status == SyncStatus.SYNCED

    @staticmethod
    def _defer(messages: list[Message], report: DrainReport, interrupted: bool) -> None:
        for message in messages:
            report.outcomes[message.id] = DeliveryOutcome.DEFERRED
        if interrupted and messages:
            report.interrupted = True

    async def _deliver(
        self,
        record: Message | Conversation,
        target: _Target,
        should_continue: Callable[[], bool],
    ) -> DeliveryOutcome:
        """Run attempts for one record until it syncs, gives up or is deferred."""
        try:
            return await self._attempt(record, target, should_continue)
        except RecordNotFoundError:
            # Discarded by the user while in flight
            logger.info("delivery_skipped_discarded", record_id=record.id, kind=target.kind)
            return DeliveryOutcome.DISCARDED

    async def _attempt(
        self,
        record: Message | Conversation,
        target: _Target,
        should_continue: Callable[[], bool],
    ) -> DeliveryOutcome:
        attempts = record.retry_count
        ceiling = self.policy.ceiling_for(record)

        while attempts < ceiling:
            if not should_continue():
                return DeliveryOutcome.DEFERRED
            started = time.perf_counter()
            current = await target.update(record.id, _stamp_attempt)
            if current.sync_status == SyncStatus.SYNCED:
                return DeliveryOutcome.SYNCED
            try:
                ack = await asyncio.wait_for(target.send(record), timeout=self.send_timeout)
                await target.confirm(ack)
            except RejectedError as exc:
                current = await self._record_rejection(record, target, exc)
                if current.sync_status == SyncStatus.SYNCED:
                    return self._finalized_elsewhere(record, target, started)
                record_delivery(target.kind, "rejected", time.perf_counter() - started)
                return DeliveryOutcome.REJECTED
            except (RemoteError, asyncio.TimeoutError) as exc:
                attempts += 1
                error = str(exc) or "Send attempt timed out"
                current = await target.update(record.id, _failure(attempts, error))
                if current.sync_status == SyncStatus.SYNCED:
                    return self._finalized_elsewhere(record, target, started)
                record_delivery(target.kind, "failed", time.perf_counter() - started)
                logger.warning(
                    f"{target.kind}_delivery_failed",
                    record_id=record.id,
                    attempt=attempts,
                    ceiling=ceiling,
                    error=error,
                )
                if attempts >= ceiling:
                    break
                if not should_continue():
                    return DeliveryOutcome.DEFERRED
                await self._sleep(self.policy.delay_for(attempts, self._rng))
                continue

            record_delivery(target.kind, "synced", time.perf_counter() - started)
            return DeliveryOutcome.SYNCED

        logger.error(
            f"{target.kind}_delivery_exhausted",
            record_id=record.id,
            attempts=attempts,
        )
        return DeliveryOutcome.FAILED

    @staticmethod
    def _finalized_elsewhere(
        record: Message | Conversation, target: _Target, started: float
    ) -> DeliveryOutcome:
        # The change feed applied the server copy while the attempt was failing
        record_delivery(target.kind, "synced", time.perf_counter() - started)
        logger.info(f"{target.kind}_synced_by_change_feed", record_id=record.id)
        return DeliveryOutcome.SYNCED

    async def _record_rejection(
        self,
        record: Message | Conversation,
        target: _Target,
        exc: RejectedError,
    ) -> Message | Conversation:
        def reject(item: Message | Conversation) -> None:
            if item.sync_status == SyncStatus.SYNCED:
                return
            item.sync_status = SyncStatus.FAILED
            item.rejected = True
            item.last_sync_error = str(exc)

        updated = await target.update(record.id, reject)
        if updated.sync_status == SyncStatus.SYNCED:
            return updated
        logger.warning(
            f"{target.kind}_rejected",
            record_id=record.id,
            reason=exc.reason.value,
            error=exc.detail,
        )
        return updated

    # -------------------------------------------------------------------------
    # User actions
    # -------------------------------------------------------------------------

    async def retry(self, message_id: str) -> Message:
        """Put a failed message back in the queue (explicit user action).

        Raises:
            RecordNotFoundError: If the message does not exist.
            InvalidTransitionError: If the message is already synced.
            RetryLimitExceededError: If the lifetime attempt cap is used up.
        """
        message = await self.store.get(message_id)
        if message is None:
            raise RecordNotFoundError(f"Message '{message_id}' not found")
        if message.sync_status == SyncStatus.SYNCED:
            raise InvalidTransitionError(f"Message '{message_id}' is already synced")
        if message.sync_status == SyncStatus.PENDING:
            return message

        allowance = self.policy.allowance_for_retry(message)
        message = await self.store.update(message_id, _requeue(allowance))
        logger.info(
            "message_retry_requested",
            message_id=message_id,
            retry_count=message.retry_count,
            ceiling=self.policy.ceiling_for(message),
        )
        return message

    async def retry_conversation(self, conversation_id: str) -> Conversation:
        """Put a failed conversation back in the queue."""
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            raise RecordNotFoundError(f"Conversation '{conversation_id}' not found")
        if conversation.sync_status == SyncStatus.SYNCED:
            raise InvalidTransitionError(f"Conversation '{conversation_id}' is already synced")
        if conversation.sync_status == SyncStatus.PENDING:
            return conversation

        allowance = self.policy.allowance_for_retry(conversation)
        conversation = await self.store.update_conversation(conversation_id, _requeue(allowance))
        logger.info("conversation_retry_requested", conversation_id=conversation_id)
        return conversation

    async def discard(self, message_id: str) -> None:
        """Delete an undelivered message (explicit user action).

        Raises:
            InvalidTransitionError: If the message already reached the remote store.
        """
        message = await self.store.get(message_id)
        if message is None:
            raise RecordNotFoundError(f"Message '{message_id}' not found")
        if message.sync_status == SyncStatus.SYNCED:
            raise InvalidTransitionError(f"Message '{message_id}' is synced and cannot be discarded")
        await self.store.delete(message_id)
        logger.info("message_discarded", message_id=message_id)


def _stamp_attempt(record: Message | Conversation) -> None:
    record.last_sync_attempt = utc_now()


def _failure(attempts: int, error: str) -> Callable[[Message | Conversation], None]:
    def fail(record: Message | Conversation) -> None:
        if record.sync_status == SyncStatus.SYNCED:
            return
        record.retry_count = attempts
        record.sync_status = SyncStatus.FAILED
        record.last_sync_error = error

    return fail


def _requeue(allowance: int) -> Callable[[Message | Conversation], None]:
    def requeue(record: Message | Conversation) -> None:
        record.retry_allowance = allowance
        record.sync_status = SyncStatus.PENDING
        record.rejected = False
        record.last_sync_error = None

    return requeue
