"""Assembled sync core for one signed-in device.

SyncClient wires the local store, outbound queue, reconciliation engine,
remote client, connectivity probe, coordinator and messaging service
together from Settings, and owns their startup and shutdown.

Usage:
    async with SyncClient(StaticCredentials("alice")) as client:
        conversation = await client.service.create_conversation(["bob"])
        await client.service.send_message(conversation.id, "hello")
"""

from __future__ import annotations

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine

from chatsync.config import Settings, get_settings
from chatsync.connectivity import ConnectivityMonitor, HttpConnectivityProbe
from chatsync.coordinator import SyncCoordinator
from chatsync.credentials import CredentialProvider
from chatsync.db.engine import create_engine, init_db
from chatsync.logging import get_logger
from chatsync.queue import OutboundQueue, RetryPolicy
from chatsync.reconciliation import ReconciliationEngine
from chatsync.remote.base import RemoteSyncClient
from chatsync.remote.http import HttpRemoteClient
from chatsync.service import MessagingService
from chatsync.store import LocalStore

logger = get_logger(__name__)


class SyncClient:
    """The sync core's components, built from settings.

    Args:
        credentials: Identifies the signed-in user.
        settings: Defaults to the environment-derived settings.
        engine: An existing engine; otherwise one is created from
            ``settings.database_url`` and disposed on stop.
        remote: An existing remote client. When omitted, an HttpRemoteClient
            for ``settings.remote_url`` is created along with a health probe
            that drives connectivity.
        transport: Optional httpx transport for the HTTP client and probe.
    """

    def __init__(
        self,
        credentials: CredentialProvider,
        settings: Settings | None = None,
        engine: AsyncEngine | None = None,
        remote: RemoteSyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        s = self.settings

        self._owns_engine = engine is None
        self.engine = engine or create_engine(s.database_url, echo=s.debug)

        self.connectivity = ConnectivityMonitor(online=False)
        self.probe: HttpConnectivityProbe | None = None
        if remote is None:
            remote = HttpRemoteClient(
                s.remote_url,
                timeout=s.request_timeout_seconds,
                poll_interval=s.poll_interval_seconds,
                transport=transport,
            )
            self.probe = HttpConnectivityProbe(
                self.connectivity,
                s.remote_url,
                interval=s.probe_interval_seconds,
                timeout=s.request_timeout_seconds,
                transport=transport,
            )
        self.remote = remote

        self.store = LocalStore(self.engine)
        self.reconciliation = ReconciliationEngine(self.store, credentials)
        self.queue = OutboundQueue(
            self.store,
            self.remote,
            self.reconciliation,
            policy=RetryPolicy.from_settings(s),
            send_timeout=s.send_timeout_seconds,
        )
        self.coordinator = SyncCoordinator(
            self.store,
            self.queue,
            self.remote,
            self.reconciliation,
            self.connectivity,
            drain_interval=s.drain_interval_seconds,
            resync_on_gap=s.resync_on_gap,
            allow_metered_sync=s.allow_metered_sync,
            power_saving_delay=s.power_saving_delay_seconds,
        )
        self.service = MessagingService(
            self.store,
            self.coordinator,
            credentials,
            max_message_length=s.max_message_length,
        )

    async def __aenter__(self) -> SyncClient:
        await self.start()
        return self

    async def __aexit__(self, *args) -> None:
        await self.stop()

    async def start(self) -> None:
        """Create tables, probe connectivity once, then start the coordinator."""
        await init_db(self.engine)
        if self.probe is not None:
            await self.probe.check()
        await self.coordinator.start()
        if self.probe is not None:
            self.probe.start()
        logger.info("sync_client_started", online=self.connectivity.is_online)

    async def stop(self) -> None:
        """Stop background work and release the remote client and engine."""
        await self.coordinator.stop()
        if self.probe is not None:
            await self.probe.stop()
        await self.remote.close()
        if self._owns_engine:
            await self.engine.dispose()
        logger.info("sync_client_stopped")
