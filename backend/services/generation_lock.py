"""Cross-instance coordination for onboarding generation.

Two strategies share one interface and are picked once, at construction:

- BroadcastCoordinator: instances in the same process announce
  ``generation-started`` / ``generation-stopped`` on a named channel of a
  BroadcastHub. Hearing another instance start sets the conflict flag.
- StorageLockCoordinator: a ``{instance_id, timestamp}`` record under a
  shared storage key, refreshed every 30s. A record from another instance
  younger than 5 minutes is a conflict; older records are taken over.

Conflicts are advisory. They keep a second instance from starting its own
run but never touch session data.
"""

import abc
import asyncio
import json
import logging
import uuid
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional

from backend.services.plan_session import KEY_PREFIX, now_ms
from backend.storage.base import KeyValueStorage, StorageError

logger = logging.getLogger(__name__)

BROADCAST_CHANNEL = "fitjourney-generating"
LOCK_KEY_PREFIX = f"{KEY_PREFIX}:generation-lock"

MSG_STARTED = "generation-started"
MSG_STOPPED = "generation-stopped"

DEFAULT_STALE_SECONDS = 300.0
DEFAULT_REFRESH_SECONDS = 30.0


def lock_key(device_id: str) -> str:
    return f"{LOCK_KEY_PREFIX}:{device_id}"


def new_instance_id() -> str:
    return uuid.uuid4().hex


class GenerationCoordinator(abc.ABC):
    """Advisory mutual exclusion between pipeline instances of one device."""

    def __init__(self, instance_id: Optional[str] = None):
        self.instance_id = instance_id or new_instance_id()

    @property
    @abc.abstractmethod
    def conflict(self) -> bool:
        """True while another live instance is generating."""

    @abc.abstractmethod
    async def start(self) -> bool:
        """Claim generation. Returns False (and claims nothing) on conflict."""

    @abc.abstractmethod
    async def stop(self) -> None:
        """Release whatever start() claimed. Safe to call repeatedly."""

    async def close(self) -> None:
        await self.stop()


# =============================================================================
# Broadcast variant
# =============================================================================


@dataclass
class GenerationMessage:
    type: str
    timestamp: int
    instance_id: str


class BroadcastSubscription:
    def __init__(self, hub: "BroadcastHub", channel: str, callback: Callable[[GenerationMessage], None]):
        self._hub = hub
        self.channel = channel
        self.callback = callback

    def post(self, message: GenerationMessage) -> None:
        self._hub.post(self.channel, message, sender=self)

    def close(self) -> None:
        self._hub.unsubscribe(self)


class BroadcastHub:
    """In-process pub/sub keyed by channel name.

    Messages reach every subscriber except the sender. The last start
    announcement on each channel is retained and replayed to new
    subscribers until it is stopped or the channel empties.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[BroadcastSubscription]] = {}
        self._last: Dict[str, GenerationMessage] = {}

    def subscribe(self, channel: str, callback: Callable[[GenerationMessage], None]) -> BroadcastSubscription:
        sub = BroadcastSubscription(self, channel, callback)
        self._subscribers.setdefault(channel, []).append(sub)
        last = self._last.get(channel)
        if last is not None:
            callback(last)
        return sub

    def unsubscribe(self, sub: BroadcastSubscription) -> None:
        subs = self._subscribers.get(sub.channel)
        if subs and sub in subs:
            subs.remove(sub)
            if not subs:
                del self._subscribers[sub.channel]
        if not self.subscriber_count(sub.channel):
            self._last.pop(sub.channel, None)

    def post(self, channel: str, message: GenerationMessage, sender: Optional[BroadcastSubscription] = None) -> None:
        if message.type == MSG_STOPPED:
            self._last.pop(channel, None)
        else:
            self._last[channel] = message
        for sub in list(self._subscribers.get(channel, [])):
            if sub is sender:
                continue
            try:
                sub.callback(message)
            except Exception:
                logger.exception("Broadcast subscriber failed on %s", channel)

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, []))


class BroadcastCoordinator(GenerationCoordinator):
    def __init__(
        self,
        hub: BroadcastHub,
        device_id: str,
        instance_id: Optional[str] = None,
        stale_seconds: float = DEFAULT_STALE_SECONDS,
        clock: Callable[[], int] = now_ms,
    ):
        super().__init__(instance_id)
        self._stale_ms = stale_seconds * 1000
        self._clock = clock
        self._other_started_at: Optional[int] = None
        self._active = False
        self._sub = hub.subscribe(f"{BROADCAST_CHANNEL}:{device_id}", self._on_message)

    def _on_message(self, message: GenerationMessage) -> None:
        if message.instance_id == self.instance_id:
            return
        if message.type == MSG_STARTED:
            logger.warning("Another instance started generation (%s)", message.instance_id)
            self._other_started_at = message.timestamp
        elif message.type == MSG_STOPPED:
            logger.info("Another instance stopped generation (%s)", message.instance_id)
            self._other_started_at = None

    @property
    def conflict(self) -> bool:
        if self._other_started_at is None:
            return False
        return self._clock() - self._other_started_at < self._stale_ms

    async def start(self) -> bool:
        if self.conflict:
            return False
        self._sub.post(GenerationMessage(MSG_STARTED, self._clock(), self.instance_id))
        self._active = True
        return True

    async def stop(self) -> None:
        if not self._active:
            return
        self._active = False
        self._sub.post(GenerationMessage(MSG_STOPPED, self._clock(), self.instance_id))

    async def close(self) -> None:
        await self.stop()
        self._sub.close()


# =============================================================================
# Storage-lock variant
# =============================================================================


@dataclass
class GenerationLock:
    instance_id: str
    timestamp: int


class StorageLockCoordinator(GenerationCoordinator):
    def __init__(
        self,
        storage: KeyValueStorage,
        device_id: str,
        instance_id: Optional[str] = None,
        stale_seconds: float = DEFAULT_STALE_SECONDS,
        refresh_seconds: float = DEFAULT_REFRESH_SECONDS,
        clock: Callable[[], int] = now_ms,
    ):
        super().__init__(instance_id)
        self._storage = storage
        self._key = lock_key(device_id)
        self._stale_ms = stale_seconds * 1000
        self._refresh_seconds = refresh_seconds
        self._clock = clock
        self._conflict = False
        self._held = False
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def key(self) -> str:
        return self._key

    @property
    def conflict(self) -> bool:
        return self._conflict

    @property
    def held(self) -> bool:
        return self._held

    async def read_lock(self) -> Optional[GenerationLock]:
        raw = await self._storage.get_item(self._key)
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return GenerationLock(instance_id=str(data["instance_id"]), timestamp=int(data["timestamp"]))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring unreadable generation lock %s: %s", self._key, e)
            return None

    async def check(self) -> bool:
        """Refresh the conflict flag from storage. True means blocked."""
        lock = await self.read_lock()
        self._conflict = (
            lock is not None
            and lock.instance_id != self.instance_id
            and self._clock() - lock.timestamp < self._stale_ms
        )
        if self._conflict:
            logger.warning("Generation lock %s held by %s", self._key, lock.instance_id)
        return self._conflict

    async def refresh(self) -> bool:
        """One lock tick: check, then write our timestamp unless blocked."""
        if await self.check():
            return False
        lock = GenerationLock(instance_id=self.instance_id, timestamp=self._clock())
        await self._storage.set_item(self._key, json.dumps(asdict(lock)))
        self._held = True
        return True

    async def start(self) -> bool:
        if not await self.refresh():
            return False
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_loop())
        return True

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self._refresh_seconds)
            try:
                await self.refresh()
            except StorageError as e:
                logger.warning("Generation lock refresh failed: %s", e)

    async def stop(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if not self._held:
            return
        self._held = False
        lock = await self.read_lock()
        if lock is not None and lock.instance_id == self.instance_id:
            await self._storage.remove_item(self._key)


def build_coordinator(
    backend: str,
    storage: KeyValueStorage,
    device_id: str,
    hub: Optional[BroadcastHub] = None,
    stale_seconds: float = DEFAULT_STALE_SECONDS,
    refresh_seconds: float = DEFAULT_REFRESH_SECONDS,
    clock: Callable[[], int] = now_ms,
) -> GenerationCoordinator:
    """Pick a coordination strategy.

    ``auto`` uses broadcast when storage is process-local (nobody else can
    see a storage lock) and a storage lock when storage is shared.
    """
    if backend == "auto":
        backend = "storage" if storage.shared or hub is None else "broadcast"
    if backend == "broadcast":
        if hub is None:
            raise ValueError("broadcast coordination requires a BroadcastHub")
        return BroadcastCoordinator(hub, device_id, stale_seconds=stale_seconds, clock=clock)
    if backend == "storage":
        return StorageLockCoordinator(
            storage,
            device_id,
            stale_seconds=stale_seconds,
            refresh_seconds=refresh_seconds,
            clock=clock,
        )
    raise ValueError(f"Unknown generation lock backend: {backend}")
