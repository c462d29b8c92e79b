"""Program draft snapshot written when onboarding generation finishes.

The preview step reads the draft once. Drafts carry a schema version; a
record with any other version reads as absent. Expiry is judged by readers
(see ``is_expired``), never by the writer.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from backend.services.plan_session import KEY_PREFIX, SESSION_KEY_PREFIX, now_ms
from backend.storage.base import KeyValueStorage, StorageError

logger = logging.getLogger(__name__)

PROGRAM_DRAFT_VERSION = 1
DRAFT_KEY_PREFIX = f"{KEY_PREFIX}:programDraft:"
DEFAULT_MAX_AGE_HOURS = 48.0

DEVICE_SCOPED_PREFIXES = (SESSION_KEY_PREFIX, DRAFT_KEY_PREFIX)


class ProgramDraft(BaseModel):
    model_config = ConfigDict(extra="ignore")

    version: int = PROGRAM_DRAFT_VERSION
    days: int
    nutrition_json: Optional[Any] = None
    workout_plan: Optional[Any] = None
    stages: Optional[List[Any]] = None
    created_at: int


def draft_key(device_id: str) -> str:
    return f"{DRAFT_KEY_PREFIX}{device_id}"


class ProgramDraftStore:
    """Device-scoped draft persistence."""

    def __init__(self, storage: KeyValueStorage, device_id: str):
        self._storage = storage
        self._key = draft_key(device_id)

    @property
    def key(self) -> str:
        return self._key

    async def save(self, draft: ProgramDraft) -> None:
        """Persist the snapshot.

        StorageQuotaExceededError propagates unchanged; the caller decides
        whether a full store blocks navigation.
        """
        await self._storage.set_item(self._key, draft.model_dump_json())
        logger.info(
            "Saved program draft %s (days=%d, nutrition=%s, workout=%s)",
            self._key, draft.days,
            draft.nutrition_json is not None, draft.workout_plan is not None,
        )

    async def read(self) -> Optional[ProgramDraft]:
        raw = await self._storage.get_item(self._key)
        if not raw:
            return None
        try:
            draft = ProgramDraft.model_validate_json(raw)
        except (ValidationError, ValueError) as e:
            logger.warning("Discarding unreadable program draft %s: %s", self._key, e)
            return None
        if draft.version != PROGRAM_DRAFT_VERSION:
            logger.info(
                "Ignoring program draft %s with version %s (expected %s)",
                self._key, draft.version, PROGRAM_DRAFT_VERSION,
            )
            return None
        return draft

    async def clear(self) -> None:
        await self._storage.remove_item(self._key)


def is_expired(
    draft: ProgramDraft,
    now: Optional[int] = None,
    max_age_hours: float = DEFAULT_MAX_AGE_HOURS,
) -> bool:
    now = now_ms() if now is None else now
    return now - draft.created_at > max_age_hours * 3600 * 1000


# =============================================================================
# Storage cleanup
# =============================================================================


@dataclass
class CleanupResult:
    removed_keys: List[str] = field(default_factory=list)
    failed_keys: List[str] = field(default_factory=list)

    @property
    def removed(self) -> int:
        return len(self.removed_keys)


async def cleanup_storage(
    storage: KeyValueStorage,
    device_id: str,
    keep_keys: Iterable[str] = (),
) -> CleanupResult:
    """Free space by removing this device's session and draft records.

    Only keys scoped to ``device_id`` are candidates; records of other
    devices sharing the store, generation locks and the device id itself are
    never touched. Removal keeps going past individual failures; those keys
    are reported in ``failed_keys``.
    """
    owned = {prefix + device_id for prefix in DEVICE_SCOPED_PREFIXES}
    owned -= set(keep_keys)
    result = CleanupResult()
    for key in await storage.keys(f"{KEY_PREFIX}:"):
        if key not in owned:
            continue
        try:
            await storage.remove_item(key)
        except StorageError as e:
            logger.warning("Cleanup could not remove %s: %s", key, e)
            result.failed_keys.append(key)
        else:
            result.removed_keys.append(key)
    logger.info(
        "Storage cleanup for %s removed %d keys (%d failed)",
        device_id, result.removed, len(result.failed_keys),
    )
    return result


def build_draft(
    session_nutrition: Optional[Any],
    session_workout: Optional[Any],
    session_stages: Optional[List[Any]],
    days: int,
    clock: Callable[[], int] = now_ms,
) -> ProgramDraft:
    return ProgramDraft(
        days=days,
        nutrition_json=session_nutrition,
        workout_plan=session_workout,
        stages=session_stages,
        created_at=clock(),
    )
