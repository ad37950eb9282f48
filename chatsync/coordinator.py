"""Sync coordinator.

The one stateful controller of the sync core. It watches connectivity,
decides when the outbound queue drains, owns the per-conversation remote
subscriptions, and publishes an aggregate snapshot for banners and badges.

State machine::

    OFFLINE --(online)--> DRAINING --(queue empty)--> IDLE
    IDLE --(new pending write)--> DRAINING
    any state --(offline)--> OFFLINE

Losing connectivity mid-drain stops the drain before its next attempt.
Records that were not attempted stay queued. On a metered link automatic
drains wait unless metered sync is allowed; user retries still go out. In
power-saving mode each drain starts after a short delay. Snapshots are for display
only; delivery logic never reads them.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from chatsync.connectivity import ConnectivityMonitor
from chatsync.db.models import Message
from chatsync.logging import get_logger
from chatsync.queue import OutboundQueue
from chatsync.reconciliation import ApplyOutcome, ReconciliationEngine, SequenceGap
from chatsync.remote.base import RemoteError, RemoteSyncClient, Subscription
from chatsync.schemas.remote import RemoteMessage
from chatsync.store import LocalStore

logger = get_logger(__name__)


class SyncState(str, Enum):
    OFFLINE = "offline"
    DRAINING = "draining"
    IDLE = "idle"


@dataclass(frozen=True)
class SyncSnapshot:
    """Aggregate sync state for UI consumption."""

    state: SyncState
    is_online: bool
    is_draining: bool
    pending_count: int
    failed_count: int
    network_type: str = "offline"
    is_held: bool = False


SnapshotObserver = Callable[[SyncSnapshot], None]


class SyncCoordinator:
    """Drives draining from connectivity and manages subscriptions.

    Args:
        store: The local store.
        queue: The outbound queue.
        remote: The remote sync client, used for subscriptions and resyncs.
        reconciliation: Applies remote events and reports sequence gaps.
        connectivity: Source of online/offline transitions.
        drain_interval: Seconds between periodic drains; None disables them.
        resync_on_gap: Fetch a full snapshot when a sequence gap is detected.
        allow_metered_sync: Drain automatically on a metered link.
        power_saving_delay: Seconds to wait before a drain in power-saving mode.
        sleep: Awaitable used for delays (replaceable in tests).
    """

    def __init__(
        self,
        store: LocalStore,
        queue: OutboundQueue,
        remote: RemoteSyncClient,
        reconciliation: ReconciliationEngine,
        connectivity: ConnectivityMonitor,
        drain_interval: float | None = None,
        resync_on_gap: bool = True,
        allow_metered_sync: bool = True,
        power_saving_delay: float = 5.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.queue = queue
        self.remote = remote
        self.reconciliation = reconciliation
        self.connectivity = connectivity
        self.drain_interval = drain_interval
        self.resync_on_gap = resync_on_gap
        self.allow_metered_sync = allow_metered_sync
        self.power_saving_delay = power_saving_delay
        self._sleep = sleep

        self._state = SyncState.IDLE if connectivity.is_online else SyncState.OFFLINE
        self._observers: list[SnapshotObserver] = []
        self._subscriptions: dict[str, Subscription] = {}
        self._resyncs: dict[str, asyncio.Task] = {}
        self._drain_task: asyncio.Task | None = None
        self._drain_again = False
        self._draining = False
        self._periodic_task: asyncio.Task | None = None
        self._started = False

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_draining(self) -> bool:
        return self._draining

    @property
    def is_held(self) -> bool:
        """Online, but automatic drains wait for an unmetered link."""
        return (
            self.connectivity.is_online
            and self.connectivity.is_metered
            and not self.allow_metered_sync
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Begin reacting to connectivity and drain anything already queued."""
        if self._started:
            return
        self._started = True
        # Connectivity observation lasts for the life of the process
        self.connectivity.add_listener(self._on_connectivity)
        self.reconciliation.on_gap(self._on_gap)
        if self.drain_interval:
            self._periodic_task = asyncio.create_task(self._periodic_drain())
        logger.info(
            "sync_coordinator_started",
            online=self.connectivity.is_online,
            drain_interval=self.drain_interval,
        )
        if self.connectivity.is_online:
            await self._transition(SyncState.IDLE)
            self.request_drain()
        else:
            await self._transition(SyncState.OFFLINE)

    async def stop(self) -> None:
        """Cancel background work and close every subscription."""
        for conversation_id in list(self._subscriptions):
            self.close_conversation(conversation_id)
        tasks = [
            task
            for task in (self._periodic_task, self._drain_task, *self._resyncs.values())
            if task is not None and not task.done()
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._periodic_task = None
        self._drain_task = None
        self._draining = False
        self._resyncs.clear()
        logger.info("sync_coordinator_stopped")

    async def _on_connectivity(self, online: bool) -> None:
        if online:
            if not self.is_draining:
                await self._transition(SyncState.IDLE, force=True)
            self.request_drain()
        else:
            await self._transition(SyncState.OFFLINE)

    # -------------------------------------------------------------------------
    # Draining
    # -------------------------------------------------------------------------

    def notify_pending(self) -> None:
        """Tell the coordinator a new record was queued."""
        self.request_drain()

    def request_drain(self, force: bool = False) -> asyncio.Task | None:
        """Start a drain if online; coalesces with one already running.

        Args:
            force: Drain even on a metered link when metered sync is off.
        """
        if not self.connectivity.is_online:
            return None
        if self.is_held and not force:
            logger.debug("drain_held_metered")
            return None
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_again = True
            return self._drain_task
        self._drain_task = asyncio.create_task(self._run_drain())
        return self._drain_task

    async def wait_idle(self) -> None:
        """Wait for the current drain (and any drain it triggers) to finish."""
        while self._drain_task is not None and not self._drain_task.done():
            await asyncio.shield(self._drain_task)

    async def _run_drain(self) -> None:
        while True:
            self._drain_again = False
            if self.connectivity.is_power_saving and self.power_saving_delay:
                await self._sleep(self.power_saving_delay)
            self._draining = True
            await self._transition(SyncState.DRAINING)
            try:
                await self.queue.drain(should_continue=lambda: self.connectivity.is_online)
            except Exception:
                logger.exception("sync_drain_failed")
            finally:
                self._draining = False
            await self._settle()
            if not (self._drain_again and self.connectivity.is_online):
                return

    async def _settle(self) -> None:
        final = SyncState.IDLE if self.connectivity.is_online else SyncState.OFFLINE
        await self._transition(final, force=True)

    async def _periodic_drain(self) -> None:
        while True:
            await self._sleep(self.drain_interval)
            self.request_drain()

    # -------------------------------------------------------------------------
    # UI state
    # -------------------------------------------------------------------------

    async def snapshot(self) -> SyncSnapshot:
        """Current state plus pending and failed counts from the store."""
        counts = await self.store.count_outbound(self.queue.policy.max_attempts)
        return SyncSnapshot(
            state=self._state,
            is_online=self.connectivity.is_online,
            is_draining=self.is_draining,
            pending_count=counts.pending,
            failed_count=counts.failed,
            network_type=self.connectivity.network_type,
            is_held=self.is_held,
        )

    def observe(self, observer: SnapshotObserver) -> Callable[[], None]:
        """Register a callback for every state change; returns a remover."""
        self._observers.append(observer)

        def remove() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return remove

    async def _transition(self, state: SyncState, force: bool = False) -> None:
        if state == self._state and not force:
            return
        previous, self._state = self._state, state
        if previous != state:
            logger.info("sync_state_changed", previous=previous.value, state=state.value)
        await self._publish()

    async def _publish(self) -> None:
        if not self._observers:
            return
        snapshot = await self.snapshot()
        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception:
                logger.exception("sync_observer_failed")

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    async def open_conversation(self, conversation_id: str) -> Subscription:
        """Subscribe to a conversation's remote changes while it is on screen."""
        subscription = self._subscriptions.get(conversation_id)
        if subscription is not None and subscription.active:
            return subscription
        subscription = await self.remote.subscribe(conversation_id, self._on_remote_change)
        self._subscriptions[conversation_id] = subscription
        logger.info("conversation_opened", conversation_id=conversation_id)
        return subscription

    def close_conversation(self, conversation_id: str) -> None:
        """Cancel a conversation's subscription. In-flight sends are unaffected."""
        subscription = self._subscriptions.pop(conversation_id, None)
        if subscription is not None:
            subscription.cancel()
            logger.info("conversation_closed", conversation_id=conversation_id)

    def is_open(self, conversation_id: str) -> bool:
        return conversation_id in self._subscriptions

    async def _on_remote_change(self, event: RemoteMessage) -> None:
        await self.reconciliation.apply_remote(event)

    # -------------------------------------------------------------------------
    # Gaps and resync
    # -------------------------------------------------------------------------

    def _on_gap(self, gap: SequenceGap) -> None:
        if not self.resync_on_gap or not self.connectivity.is_online:
            return
        # Events applied by a running resync must not start another one
        if gap.conversation_id in self._resyncs:
            return
        task = asyncio.create_task(self._auto_resync(gap.conversation_id))
        self._resyncs[gap.conversation_id] = task

    async def _auto_resync(self, conversation_id: str) -> None:
        try:
            await self.resync(conversation_id)
        except RemoteError as exc:
            logger.warning("resync_failed", conversation_id=conversation_id, error=str(exc))
        finally:
            self._resyncs.pop(conversation_id, None)

    async def resync(self, conversation_id: str) -> int:
        """Fetch the remote snapshot of a conversation and apply all of it.

        Returns:
            The number of events that changed the local store.
        """
        events = await self.remote.fetch(conversation_id)
        events.sort(key=lambda event: (event.sequence_number is None, event.sequence_number or 0))
        changed = 0
        for event in events:
            result = await self.reconciliation.apply_remote(event)
            if result.outcome != ApplyOutcome.IGNORED:
                changed += 1
        self.reconciliation.clear_gaps(conversation_id)
        logger.info(
            "conversation_resynced",
            conversation_id=conversation_id,
            fetched=len(events),
            changed=changed,
        )
        return changed

    # -------------------------------------------------------------------------
    # User actions
    # -------------------------------------------------------------------------

    async def retry_message(self, message_id: str) -> Message:
        """Requeue a failed message and drain if online."""
        message = await self.queue.retry(message_id)
        self.request_drain(force=True)
        await self._publish()
        return message

    async def discard_message(self, message_id: str) -> None:
        """Delete an undelivered message."""
        await self.queue.discard(message_id)
        await self._publish()
