"""Connectivity checks used before starting or resuming a generation stage."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

import httpx

logger = logging.getLogger(__name__)


class NetworkOfflineError(Exception):
    """Raised when a stage needs the network and none is available."""
    pass


@dataclass(frozen=True)
class NetworkStatus:
    connected: bool
    connection_type: str = "unknown"


StatusListener = Callable[[NetworkStatus], None]


class NetworkMonitor:
    """Base monitor: keeps the last status and notifies listeners on change."""

    def __init__(self, initial: Optional[NetworkStatus] = None):
        self._status = initial or NetworkStatus(connected=True)
        self._listeners: List[StatusListener] = []
        self._changed = asyncio.Event()

    async def get_status(self) -> NetworkStatus:
        return self._status

    async def is_online(self) -> bool:
        return (await self.get_status()).connected

    async def require_online(self) -> None:
        if not await self.is_online():
            raise NetworkOfflineError("No network connection")

    def on_status_change(self, listener: StatusListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, status: NetworkStatus) -> None:
        if status == self._status:
            return
        self._status = status
        logger.info("Network status changed: connected=%s", status.connected)
        self._changed.set()
        self._changed = asyncio.Event()
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("Network status listener failed")

    async def wait_until_online(self, timeout: float, poll_interval: float = 1.0) -> bool:
        """Wait for connectivity. Returns False if still offline after ``timeout``."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if await self.is_online():
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            try:
                await asyncio.wait_for(self._changed.wait(), timeout=min(poll_interval, remaining))
            except asyncio.TimeoutError:
                pass


class StaticNetworkMonitor(NetworkMonitor):
    """Status set explicitly (tests, CLI flags, embedding apps)."""

    def set_connected(self, connected: bool, connection_type: str = "unknown") -> None:
        self._publish(NetworkStatus(connected=connected, connection_type=connection_type))


class HttpProbeNetworkMonitor(NetworkMonitor):
    """Online when a lightweight GET against ``probe_url`` gets any response."""

    def __init__(self, probe_url: str, timeout_seconds: float = 3.0, http_client: Optional[httpx.AsyncClient] = None):
        super().__init__()
        self._probe_url = probe_url
        self._timeout = timeout_seconds
        self._http = http_client

    async def get_status(self) -> NetworkStatus:
        try:
            if self._http is not None:
                await self._http.get(self._probe_url, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    await client.get(self._probe_url)
            status = NetworkStatus(connected=True, connection_type="http")
        except httpx.HTTPError as e:
            logger.warning("Network probe %s failed: %s", self._probe_url, e)
            status = NetworkStatus(connected=False, connection_type="none")
        self._publish(status)
        return status
