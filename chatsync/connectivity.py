"""Connectivity tracking.

ConnectivityMonitor holds the current online flag and tells listeners
about transitions. Something else decides what "online" means: the host
application can call ``set_online`` from its own network callbacks, or an
HttpConnectivityProbe can poll the remote store's health endpoint.

The monitor also carries two conditions the host reports about the device:
whether the current link is metered (cellular, tethered), and whether the
device is in a power-saving mode. The coordinator uses them to hold back or
slow down automatic drains.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import httpx

from chatsync.logging import get_logger

logger = get_logger(__name__)

ConnectivityListener = Callable[[bool], Awaitable[None]]


class ConnectivityMonitor:
    """Online/offline flag with transition listeners."""

    def __init__(self, online: bool = False, metered: bool = False, power_saving: bool = False) -> None:
        self._online = online
        self._metered = metered
        self._power_saving = power_saving
        self._listeners: list[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def is_metered(self) -> bool:
        return self._metered

    @property
    def is_power_saving(self) -> bool:
        return self._power_saving

    @property
    def network_type(self) -> str:
        if not self._online:
            return "offline"
        return "metered" if self._metered else "unmetered"

    def add_listener(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Register an async callback fired on transitions; returns a remover."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def set_online(self, online: bool) -> None:
        """Record the current connectivity and notify listeners on change.

        Listeners are awaited one after another in registration order.
        """
        if online == self._online:
            return
        self._online = online
        logger.info("connectivity_changed", online=online, metered=self._metered)
        await self._notify()

    async def set_metered(self, metered: bool) -> None:
        """Record whether the current link is metered.

        While online, listeners are told (with ``True``) when the link
        changes, so a drain held back on a metered link can start.
        """
        if metered == self._metered:
            return
        self._metered = metered
        logger.info("network_type_changed", network_type=self.network_type)
        if self._online:
            await self._notify()

    def set_power_saving(self, enabled: bool) -> None:
        if enabled != self._power_saving:
            logger.info("power_saving_changed", enabled=enabled)
        self._power_saving = enabled

    async def _notify(self) -> None:
        online = self._online
        for listener in list(self._listeners):
            try:
                await listener(online)
            except Exception:
                logger.exception("connectivity_listener_failed", online=online)


class HttpConnectivityProbe:
    """Periodically probes the remote store's /health endpoint.

    Args:
        monitor: The monitor to update.
        base_url: Base URL of the remote store.
        interval: Seconds between probes.
        timeout: Probe request timeout in seconds.
        transport: Optional httpx transport for tests.
    """

    def __init__(
        self,
        monitor: ConnectivityMonitor,
        base_url: str,
        interval: float = 10.0,
        timeout: float = 3.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.monitor = monitor
        self.interval = interval
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )
        self._task: asyncio.Task | None = None

    async def check(self) -> bool:
        """Probe once and update the monitor."""
        try:
            response = await self._client.get("/health")
            online = response.status_code == 200
        except httpx.HTTPError as exc:
            logger.debug("connectivity_probe_failed", error=str(exc))
            online = False
        await self.monitor.set_online(online)
        return online

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self.interval)

    async def stop(self) -> None:
        """Stop probing and close the HTTP client."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._client.aclose()
