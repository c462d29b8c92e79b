"""Persisted plan-generation session.

One PlanSession per device tracks the nutrition, workout and journey-stages
sub-plans of an onboarding run together with the overall status and the
progress percentage shown to the user. Records are JSON documents in a
KeyValueStorage under ``fitjourney:planSession:<device_id>``.

Writes are read-modify-write merges serialized by an asyncio.Lock so two
runners updating different sub-plans never drop each other's fields.
"""

import asyncio
import logging
import secrets
import string
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from backend.storage.base import KeyValueStorage

logger = logging.getLogger(__name__)

SESSION_VERSION = 1
KEY_PREFIX = "fitjourney"
SESSION_KEY_PREFIX = f"{KEY_PREFIX}:planSession:"
DEVICE_ID_KEY = f"{KEY_PREFIX}:deviceId"

_UNSET: Any = object()


def now_ms() -> int:
    return int(time.time() * 1000)


class PlanStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    READY = "ready"
    FAILED = "failed"


class SessionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class SubPlanKind(str, Enum):
    NUTRITION = "nutrition"
    WORKOUT = "workout"
    STAGES = "stages"


class SubPlan(BaseModel):
    """Generation record for one artifact."""

    model_config = ConfigDict(extra="ignore")

    status: PlanStatus = PlanStatus.PENDING
    plan: Optional[Any] = None
    error: Optional[str] = None
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    soft_timeouts: int = 0

    @model_validator(mode="after")
    def _plan_error_exclusive(self) -> "SubPlan":
        if self.plan is not None and self.error is not None:
            raise ValueError("plan and error are mutually exclusive")
        if self.status == PlanStatus.READY and self.plan is None:
            raise ValueError("a ready sub-plan requires a plan")
        if self.status == PlanStatus.FAILED and not self.error:
            raise ValueError("a failed sub-plan requires an error")
        return self


class NutritionSubPlan(SubPlan):
    fingerprint: Optional[str] = None
    calories: Optional[float] = None


class PlanSession(BaseModel):
    """Mutable state of one generation attempt."""

    model_config = ConfigDict(extra="ignore")

    version: int = SESSION_VERSION
    device_id: str
    status: SessionStatus = SessionStatus.IDLE
    progress: int = Field(default=0, ge=0, le=100)
    message: Optional[str] = None
    created_at: int
    updated_at: int
    nutrition: NutritionSubPlan = Field(default_factory=NutritionSubPlan)
    workout: SubPlan = Field(default_factory=SubPlan)
    stages: SubPlan = Field(default_factory=SubPlan)

    def sub_plan(self, kind: SubPlanKind) -> SubPlan:
        return getattr(self, SubPlanKind(kind).value)


# =============================================================================
# Device identity
# =============================================================================


def new_device_id(clock: Callable[[], int] = now_ms) -> str:
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(7))
    return f"device-{clock()}-{suffix}"


async def get_or_create_device_id(storage: KeyValueStorage) -> str:
    """Return the persisted device id, creating one on first use."""
    device_id = await storage.get_item(DEVICE_ID_KEY)
    if not device_id:
        device_id = new_device_id()
        await storage.set_item(DEVICE_ID_KEY, device_id)
        logger.info("Allocated device id %s", device_id)
    return device_id


def session_key(device_id: str) -> str:
    return f"{SESSION_KEY_PREFIX}{device_id}"


# =============================================================================
# Store
# =============================================================================


class PlanSessionStore:
    """Device-scoped persistence for PlanSession records."""

    def __init__(
        self,
        storage: KeyValueStorage,
        device_id: str,
        clock: Callable[[], int] = now_ms,
    ):
        self._storage = storage
        self._device_id = device_id
        self._clock = clock
        self._key = session_key(device_id)
        self._lock = asyncio.Lock()

    @property
    def device_id(self) -> str:
        return self._device_id

    @property
    def key(self) -> str:
        return self._key

    async def create(self) -> PlanSession:
        """Write a fresh idle session, replacing any previous one.

        Storage failures propagate as StorageError subclasses.
        """
        ts = self._clock()
        session = PlanSession(device_id=self._device_id, created_at=ts, updated_at=ts)
        async with self._lock:
            await self._storage.set_item(self._key, session.model_dump_json())
        logger.info("Created plan session for %s", self._device_id)
        return session

    async def read(self) -> Optional[PlanSession]:
        """Return the stored session, or None if absent or not a valid current record."""
        raw = await self._storage.get_item(self._key)
        if not raw:
            return None
        try:
            session = PlanSession.model_validate_json(raw)
        except (ValidationError, ValueError) as e:
            logger.warning("Discarding unreadable plan session %s: %s", self._key, e)
            return None
        if session.version != SESSION_VERSION:
            logger.info(
                "Discarding plan session %s with version %s (expected %s)",
                self._key, session.version, SESSION_VERSION,
            )
            return None
        return session

    async def update_sub_plan(self, kind: SubPlanKind, **fields: Any) -> Optional[PlanSession]:
        """Merge ``fields`` into one sub-plan.

        Only the supplied keys change; pass ``None`` explicitly to clear a
        field. A status change normalizes the plan/error pair: ``ready`` and
        ``generating`` drop a stale error, ``failed`` drops a stale plan.
        Returns None when there is no session to update.
        """
        kind = SubPlanKind(kind)

        def apply(session: PlanSession) -> None:
            current = session.sub_plan(kind)
            unknown = set(fields) - set(type(current).model_fields)
            if unknown:
                raise TypeError(f"Unknown {kind.value} fields: {sorted(unknown)}")
            merged: Dict[str, Any] = current.model_dump()
            merged.update(fields)
            status = PlanStatus(merged["status"])
            if "status" in fields:
                if status in (PlanStatus.READY, PlanStatus.GENERATING) and "error" not in fields:
                    merged["error"] = None
                if status == PlanStatus.FAILED and "plan" not in fields:
                    merged["plan"] = None
            setattr(session, kind.value, type(current).model_validate(merged))

        session = await self._mutate(apply)
        if session is not None:
            logger.debug(
                "Updated %s sub-plan: %s", kind.value, session.sub_plan(kind).status.value
            )
        return session

    async def update_progress(self, value: int, message: Optional[str] = _UNSET) -> Optional[PlanSession]:
        """Set progress (clamped to 0-100) and optionally the status message.

        Decreasing values are written as given and logged; callers own the
        ordering of their checkpoints.
        """
        clamped = max(0, min(100, int(value)))

        def apply(session: PlanSession) -> None:
            if clamped < session.progress:
                logger.warning(
                    "Progress for %s moved backwards: %d -> %d",
                    self._device_id, session.progress, clamped,
                )
            session.progress = clamped
            if message is not _UNSET:
                session.message = message

        return await self._mutate(apply)

    async def set_message(self, message: Optional[str]) -> Optional[PlanSession]:
        def apply(session: PlanSession) -> None:
            session.message = message

        return await self._mutate(apply)

    async def mark_running(self) -> Optional[PlanSession]:
        def apply(session: PlanSession) -> None:
            session.status = SessionStatus.RUNNING

        return await self._mutate(apply)

    async def mark_done(self, message: Optional[str] = "Your plans are ready!") -> Optional[PlanSession]:
        """Terminal success: status done and progress 100, whatever the sub-plans say."""

        def apply(session: PlanSession) -> None:
            session.status = SessionStatus.DONE
            session.progress = 100
            session.message = message

        session = await self._mutate(apply)
        if session is not None:
            logger.info("Marked plan session done for %s", self._device_id)
        return session

    async def mark_failed(self, message: Optional[str] = None) -> Optional[PlanSession]:
        def apply(session: PlanSession) -> None:
            session.status = SessionStatus.FAILED
            if message:
                session.message = message

        session = await self._mutate(apply)
        if session is not None:
            logger.info("Marked plan session failed for %s: %s", self._device_id, message)
        return session

    async def clear(self) -> None:
        async with self._lock:
            await self._storage.remove_item(self._key)
        logger.info("Cleared plan session for %s", self._device_id)

    async def _mutate(self, apply: Callable[[PlanSession], None]) -> Optional[PlanSession]:
        async with self._lock:
            session = await self.read()
            if session is None:
                logger.warning("No plan session to update for %s", self._device_id)
                return None
            apply(session)
            session.updated_at = self._clock()
            await self._storage.set_item(self._key, session.model_dump_json())
            return session


# =============================================================================
# Helpers
# =============================================================================


def is_session_complete(session: PlanSession) -> bool:
    """Nutrition settled and no optional artifact still generating."""
    if session.nutrition.status not in (PlanStatus.READY, PlanStatus.FAILED):
        return False
    return all(
        session.sub_plan(kind).status != PlanStatus.GENERATING
        for kind in (SubPlanKind.WORKOUT, SubPlanKind.STAGES)
    )


def has_ready_plans(session: PlanSession) -> bool:
    return any(session.sub_plan(kind).status == PlanStatus.READY for kind in SubPlanKind)


def session_summary(session: PlanSession) -> Dict[str, Any]:
    """Compact status view used by API responses and logs."""
    summary: Dict[str, Any] = {
        "status": session.status.value,
        "progress": session.progress,
        "message": session.message,
        "complete": is_session_complete(session),
        "has_ready_plans": has_ready_plans(session),
    }
    for kind in SubPlanKind:
        sub = session.sub_plan(kind)
        summary[kind.value] = {
            "status": sub.status.value,
            "has_data": sub.plan is not None,
            "error": sub.error,
        }
    return summary


def is_stale(session: PlanSession, now: int, stale_after_seconds: float) -> bool:
    """A running session nobody has touched for ``stale_after_seconds``."""
    if session.status != SessionStatus.RUNNING:
        return False
    return now - session.updated_at > stale_after_seconds * 1000
