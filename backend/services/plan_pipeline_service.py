"""Onboarding plan-generation pipeline that yields SSE events.

Sequences the nutrition, workout and journey-stages runners over one
persisted PlanSession and streams PipelineEvent objects:

  stage     progress checkpoints (0 -> 10 -> 30 -> 50 -> 70 -> 85 -> 100)
  warning   recoverable conditions (stuck request, soft timeout, optional
            artifact failed, another instance generating)
  error     GeneratingError payloads
  complete  final session summary and whether the draft was saved

All per-instance flags live on ``PlanPipelineOrchestrator.state``; nothing is
module-global, so several orchestrators can run side by side in one process.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Awaitable, Callable, List, Optional, Set

from backend.services.generating_errors import (
    GeneratingError,
    GeneratingErrorType,
    get_error_message,
    map_error,
    to_event_payload,
)
from backend.services.generation_client import GenerationClient
from backend.services.generation_lock import GenerationCoordinator
from backend.services.network_status import NetworkMonitor, NetworkOfflineError
from backend.services.plan_session import (
    PlanSession,
    PlanSessionStore,
    PlanStatus,
    SessionStatus,
    SubPlanKind,
    is_stale,
    now_ms,
    session_summary,
)
from backend.services.program_draft import (
    CleanupResult,
    ProgramDraftStore,
    build_draft,
    cleanup_storage,
)
from backend.services.request_builders import (
    OnboardingProfile,
    build_stages_avatar,
    build_workout_request,
    nutrition_request_or_default,
)
from backend.services.retry_policy import FailureKind, nutrition_policy
from backend.services.task_runners import (
    PROGRESS_COMPLETE,
    PROGRESS_NUTRITION_DONE,
    PROGRESS_NUTRITION_FETCHING,
    PROGRESS_NUTRITION_START,
    PROGRESS_START,
    PROGRESS_WORKOUT_DONE,
    PROGRESS_WORKOUT_FETCHING,
    PROGRESS_WORKOUT_START,
    TaskOutcome,
    TaskRunner,
    build_nutrition_runner,
    build_stages_runner,
    build_workout_runner,
)
from backend.storage.base import KeyValueStorage, StorageError, StorageQuotaExceededError

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Something went wrong while building your plans."

Navigator = Callable[[], Awaitable[Any]]


@dataclass
class PipelineEvent:
    """A single SSE event from the onboarding generation pipeline."""

    event: str  # "stage", "warning", "error", "complete"
    data: str  # JSON string


@dataclass
class PipelineConfig:
    nutrition_timeout_seconds: float = 90.0
    workout_timeout_seconds: float = 60.0
    stages_timeout_seconds: float = 30.0
    soft_retry_backoff_seconds: float = 1.5
    nutrition_soft_retries: int = 1
    nutrition_days: int = 1
    workouts_enabled: bool = True
    session_stale_seconds: float = 600.0
    nav_watchdog_seconds: float = 2.0
    stuck_warning_seconds: List[float] = field(default_factory=lambda: [30.0, 90.0])
    offline_wait_seconds: float = 30.0

    @classmethod
    def from_settings(cls, settings) -> "PipelineConfig":
        return cls(
            nutrition_timeout_seconds=settings.nutrition_timeout_seconds,
            workout_timeout_seconds=settings.workout_timeout_seconds,
            stages_timeout_seconds=settings.stages_timeout_seconds,
            soft_retry_backoff_seconds=settings.soft_retry_backoff_seconds,
            nutrition_soft_retries=settings.nutrition_soft_retries,
            nutrition_days=settings.nutrition_days,
            workouts_enabled=settings.workouts_enabled,
            session_stale_seconds=settings.session_stale_seconds,
            nav_watchdog_seconds=settings.nav_watchdog_seconds,
            stuck_warning_seconds=list(settings.stuck_warning_seconds),
            offline_wait_seconds=settings.offline_wait_seconds,
        )


@dataclass
class OrchestratorState:
    has_run_once: bool = False
    is_generating: bool = False
    generation_complete: bool = False
    navigated: bool = False
    nav_stuck: bool = False
    last_progress: int = 0
    instance_conflict: bool = False
    blocking_error: Optional[GeneratingErrorType] = None


@dataclass
class NavigationResult:
    navigated: bool
    stuck: bool = False
    reason: Optional[str] = None
    error: Optional[GeneratingError] = None


@dataclass
class ContinueResult:
    draft_saved: bool
    session: Optional[PlanSession] = None
    error: Optional[GeneratingError] = None
    conflict: bool = False


@dataclass
class _Watched:
    outcome: Optional[TaskOutcome] = None


def _event(name: str, payload: dict) -> PipelineEvent:
    return PipelineEvent(name, json.dumps(payload))


class PlanPipelineOrchestrator:
    """Runs onboarding generation for one device."""

    def __init__(
        self,
        store: PlanSessionStore,
        drafts: ProgramDraftStore,
        client: GenerationClient,
        coordinator: GenerationCoordinator,
        network: NetworkMonitor,
        storage: KeyValueStorage,
        profile: Optional[OnboardingProfile] = None,
        config: Optional[PipelineConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], int] = now_ms,
    ):
        self._store = store
        self._drafts = drafts
        self._client = client
        self._coordinator = coordinator
        self._network = network
        self._storage = storage
        self._profile = profile or OnboardingProfile()
        self._config = config or PipelineConfig()
        self._sleep = sleep
        self._clock = clock
        self.state = OrchestratorState()
        self._inflight: Optional[asyncio.Task] = None
        self._nav_task: Optional[asyncio.Task] = None
        self._finishing: Optional[asyncio.Future] = None
        self._detached = False
        self._started_at: Optional[float] = None
        self._warned: Set[float] = set()

    @property
    def store(self) -> PlanSessionStore:
        return self._store

    # -------------------------------------------------------------------------
    # Progress
    # -------------------------------------------------------------------------

    async def _advance(self, value: int, message: Optional[str] = None) -> None:
        """Write progress only if it does not move backwards."""
        if value < self.state.last_progress:
            logger.debug(
                "Skipping progress %d (already at %d)", value, self.state.last_progress
            )
            return
        self.state.last_progress = value
        if message is None:
            await self._store.update_progress(value)
        else:
            await self._store.update_progress(value, message)

    def _stage_event(self, stage: str, message: Optional[str] = None) -> PipelineEvent:
        return _event("stage", {
            "stage": stage,
            "progress": self.state.last_progress,
            "message": message,
        })

    def _error_event(
        self, error: GeneratingError, stage: str, detail: Optional[str] = None
    ) -> PipelineEvent:
        return _event("error", to_event_payload(error, stage, detail))

    # -------------------------------------------------------------------------
    # Runners
    # -------------------------------------------------------------------------

    def _nutrition_runner(self) -> TaskRunner:
        request = nutrition_request_or_default(self._profile, self._config.nutrition_days)
        return build_nutrition_runner(
            self._store,
            self._client,
            request,
            timeout_seconds=self._config.nutrition_timeout_seconds,
            policy=nutrition_policy(
                self._config.nutrition_soft_retries, self._config.soft_retry_backoff_seconds
            ),
            progress=self._advance,
            sleep=self._sleep,
        )

    def _workout_runner(self) -> TaskRunner:
        return build_workout_runner(
            self._store,
            self._client,
            build_workout_request(self._profile),
            timeout_seconds=self._config.workout_timeout_seconds,
            progress=self._advance,
            sleep=self._sleep,
        )

    def _stages_runner(self) -> TaskRunner:
        return build_stages_runner(
            self._store,
            self._client,
            build_stages_avatar(self._profile),
            timeout_seconds=self._config.stages_timeout_seconds,
            sleep=self._sleep,
        )

    def _elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return asyncio.get_running_loop().time() - self._started_at

    async def _watch(
        self, runner: TaskRunner, stage: str, holder: _Watched
    ) -> AsyncGenerator[PipelineEvent, None]:
        """Run ``runner`` as a task, yielding stuck warnings while it is in flight."""
        task = asyncio.create_task(runner.run())
        self._inflight = task
        while True:
            upcoming = [t for t in self._config.stuck_warning_seconds if t not in self._warned]
            timeout = max(0.0, upcoming[0] - self._elapsed()) if upcoming else None
            done, _ = await asyncio.wait({task}, timeout=timeout)
            if done:
                break
            threshold = upcoming[0]
            self._warned.add(threshold)
            logger.warning("%s still running after %.0fs", stage, threshold)
            yield _event("warning", {
                "type": "stuck",
                "stage": stage,
                "after_seconds": threshold,
                "message": "This is taking longer than usual. You can keep waiting or continue.",
            })
        self._inflight = None
        holder.outcome = task.result()

    # -------------------------------------------------------------------------
    # Generation lifecycle
    # -------------------------------------------------------------------------

    async def _begin_generation(self) -> bool:
        if not await self._coordinator.start():
            self.state.instance_conflict = True
            return False
        self.state.instance_conflict = False
        self.state.is_generating = True
        self._started_at = asyncio.get_running_loop().time()
        self._warned = set()
        return True

    async def _finish_generation(self) -> None:
        self.state.is_generating = False
        try:
            if self._detached:
                await self._coordinator.close()
            else:
                await self._coordinator.stop()
        except StorageError as e:
            logger.warning("Failed to release generation lock: %s", e)

    def _finish_in_background(self, _request: asyncio.Task) -> None:
        self._finishing = asyncio.ensure_future(self._finish_generation())
        self._finishing.add_done_callback(self._log_finish_failure)

    @staticmethod
    def _log_finish_failure(task: asyncio.Future) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Releasing generation after disconnect failed: %s", exc)

    async def _end_generation(self) -> None:
        pending = self._inflight
        if pending is not None and not pending.done():
            # Let a request that outlived its stream finish and persist first.
            logger.info("Generation stream closed with a request in flight; finishing in background")
            pending.add_done_callback(self._finish_in_background)
            return
        await self._finish_generation()

    def _conflict_event(self) -> PipelineEvent:
        return _event("warning", {
            "type": "instance_conflict",
            "message": "Your plans are already being generated in another window.",
            "recoverable": True,
        })

    async def run(self) -> AsyncGenerator[PipelineEvent, None]:
        """Run (or resume) the pipeline, yielding events as it progresses."""
        if self.state.is_generating:
            yield self._conflict_event()
            return
        self.state.has_run_once = True

        session = await self._store.read()
        if session is not None and session.status == SessionStatus.DONE:
            logger.info("Plan session already done for %s; skipping generation", self._store.device_id)
            self.state.last_progress = PROGRESS_COMPLETE
            self.state.generation_complete = True
            yield self._stage_event("complete", session.message)
            yield _event("complete", {
                "session": session_summary(session),
                "draft_saved": await self._drafts.read() is not None,
                "resumed": True,
            })
            return

        if not await self._begin_generation():
            logger.warning("Generation conflict for %s", self._store.device_id)
            yield self._conflict_event()
            return

        try:
            fresh = (
                session is None
                or session.status == SessionStatus.FAILED
                or is_stale(session, self._clock(), self._config.session_stale_seconds)
            )
            if fresh:
                session = await self._store.create()
                self.state.last_progress = PROGRESS_START
            else:
                logger.info("Resuming plan session at %d%%", session.progress)
                self.state.last_progress = session.progress
            await self._store.mark_running()
            await self._advance(PROGRESS_START, "Starting plan generation...")
            yield self._stage_event("start", "Starting plan generation...")

            # --- Nutrition ---------------------------------------------------
            if session.nutrition.status != PlanStatus.READY:
                if not await self._network.is_online():
                    yield self._error_event(
                        get_error_message(GeneratingErrorType.NETWORK_OFFLINE), "nutrition"
                    )
                    if not await self._network.wait_until_online(self._config.offline_wait_seconds):
                        logger.warning("Still offline; pausing generation")
                        yield self._stage_event("paused_offline", "Waiting for a connection...")
                        return
                    yield self._stage_event("resumed", "Back online, continuing...")

                await self._advance(PROGRESS_NUTRITION_START, "Building your nutrition plan...")
                yield self._stage_event("nutrition_start", "Building your nutrition plan...")
                await self._advance(PROGRESS_NUTRITION_FETCHING, "Calculating calories and macros...")
                yield self._stage_event("nutrition_fetching", "Calculating calories and macros...")

                watched = _Watched()
                async for event in self._watch(self._nutrition_runner(), "nutrition", watched):
                    yield event
                outcome = watched.outcome
                if outcome.ok:
                    yield self._stage_event("nutrition_done", "Nutrition plan ready!")
                elif outcome.reason == FailureKind.SOFT_TIMEOUT:
                    yield _event("warning", {
                        "type": "soft_timeout",
                        "stage": "nutrition",
                        "message": "Still working on your nutrition plan. You can retry or continue.",
                        "recoverable": True,
                    })
                else:
                    yield self._error_event(
                        get_error_message(GeneratingErrorType.API_ERROR), "nutrition", outcome.error
                    )

            await self._advance(PROGRESS_NUTRITION_DONE)

            # --- Workout -----------------------------------------------------
            if self._config.workouts_enabled and session.workout.status != PlanStatus.READY:
                if await self._network.is_online():
                    await self._advance(PROGRESS_WORKOUT_START, "Building your workout plan...")
                    yield self._stage_event("workout_start", "Building your workout plan...")
                    await self._advance(PROGRESS_WORKOUT_FETCHING, "Picking your exercises...")
                    yield self._stage_event("workout_fetching", "Picking your exercises...")

                    watched = _Watched()
                    async for event in self._watch(self._workout_runner(), "workout", watched):
                        yield event
                    if watched.outcome.ok:
                        yield self._stage_event("workout_done", "Workout plan ready!")
                    else:
                        yield _event("warning", {
                            "type": "optional_artifact_failed",
                            "stage": "workout",
                            "message": watched.outcome.error,
                            "recoverable": True,
                        })
                else:
                    logger.info("Offline; skipping workout generation")

            await self._advance(PROGRESS_WORKOUT_DONE)

            # --- Journey stages ----------------------------------------------
            if session.stages.status != PlanStatus.READY:
                watched = _Watched()
                async for event in self._watch(self._stages_runner(), "stages", watched):
                    yield event
                if watched.outcome.ok:
                    yield self._stage_event("stages_done", "Journey stages created!")
                else:
                    yield _event("warning", {
                        "type": "optional_artifact_failed",
                        "stage": "stages",
                        "message": watched.outcome.error,
                        "recoverable": True,
                    })

            # --- Complete ----------------------------------------------------
            async for event in self._complete():
                yield event
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Unhandled error in onboarding generation pipeline")
            try:
                await self._store.set_message(GENERIC_ERROR_MESSAGE)
            except StorageError as store_err:
                logger.warning("Could not record pipeline error on session: %s", store_err)
            yield self._error_event(map_error(e), "pipeline", GENERIC_ERROR_MESSAGE)
        finally:
            await self._end_generation()

    async def _complete(self) -> AsyncGenerator[PipelineEvent, None]:
        session = await self._store.mark_done()
        self.state.last_progress = PROGRESS_COMPLETE
        self.state.generation_complete = True
        yield self._stage_event("complete", "Your plans are ready!")

        draft_saved = False
        error = await self._save_draft()
        if error is None:
            draft_saved = True
        else:
            yield self._error_event(error, "draft")

        session = await self._store.read() or session
        yield _event("complete", {
            "session": session_summary(session) if session else None,
            "draft_saved": draft_saved,
            "resumed": False,
        })

    async def _save_draft(self) -> Optional[GeneratingError]:
        """Snapshot the session into a draft. Returns the error instead of raising."""
        session = await self._store.read()
        if session is None:
            return get_error_message(GeneratingErrorType.SESSION_CORRUPTED)
        stages = session.stages.plan if session.stages.status == PlanStatus.READY else None
        draft = build_draft(
            session.nutrition.plan,
            session.workout.plan,
            stages,
            days=self._config.nutrition_days,
            clock=self._clock,
        )
        try:
            await self._drafts.save(draft)
        except StorageQuotaExceededError as e:
            logger.error("Draft save hit storage quota: %s", e)
            self.state.blocking_error = GeneratingErrorType.STORAGE_QUOTA
            return get_error_message(GeneratingErrorType.STORAGE_QUOTA)
        except StorageError as e:
            logger.error("Draft save failed: %s", e)
            return get_error_message(GeneratingErrorType.DRAFT_SAVE_FAILED)
        if self.state.blocking_error == GeneratingErrorType.STORAGE_QUOTA:
            self.state.blocking_error = None
        return None

    # -------------------------------------------------------------------------
    # User actions
    # -------------------------------------------------------------------------

    async def retry_nutrition(self) -> AsyncGenerator[PipelineEvent, None]:
        """Explicit retry of the nutrition plan, finishing the session on success."""
        try:
            await self._network.require_online()
        except NetworkOfflineError as e:
            logger.warning("Nutrition retry refused: %s", e)
            yield self._error_event(map_error(e), "nutrition")
            return
        if self.state.is_generating or not await self._begin_generation():
            yield self._conflict_event()
            return
        try:
            session = await self._store.read()
            if session is None:
                session = await self._store.create()
                self.state.last_progress = PROGRESS_START
            else:
                self.state.last_progress = session.progress
            await self._store.mark_running()
            yield self._stage_event("nutrition_retry", "Retrying your nutrition plan...")

            watched = _Watched()
            async for event in self._watch(self._nutrition_runner(), "nutrition", watched):
                yield event
            outcome = watched.outcome
            if not outcome.ok:
                if outcome.reason == FailureKind.SOFT_TIMEOUT:
                    yield _event("warning", {
                        "type": "soft_timeout",
                        "stage": "nutrition",
                        "message": "Still working on your nutrition plan. You can retry or continue.",
                        "recoverable": True,
                    })
                else:
                    yield self._error_event(
                        get_error_message(GeneratingErrorType.API_ERROR), "nutrition", outcome.error
                    )
                return

            yield self._stage_event("nutrition_done", "Nutrition plan ready!")
            async for event in self._complete():
                yield event
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Unhandled error retrying nutrition generation")
            yield self._error_event(map_error(e), "nutrition", GENERIC_ERROR_MESSAGE)
        finally:
            await self._end_generation()

    async def continue_anyway(self) -> ContinueResult:
        """Finish with whatever is ready so the user can move on.

        Refused with ``conflict=True`` while another instance is generating
        for this device; its runners would keep writing to the session.
        """
        if self.state.is_generating or not await self._begin_generation():
            logger.warning("Continue refused; generation running elsewhere for %s", self._store.device_id)
            return ContinueResult(draft_saved=False, conflict=True)
        try:
            session = await self._store.read()
            if session is None:
                await self._store.create()
            session = await self._store.mark_done()
            self.state.last_progress = PROGRESS_COMPLETE
            self.state.generation_complete = True
            logger.info("User continued without waiting for %s", self._store.device_id)

            error = await self._save_draft()
        finally:
            await self._end_generation()
        return ContinueResult(draft_saved=error is None, session=session, error=error)

    async def cleanup_storage(self) -> CleanupResult:
        """Remove this device's stale records, keeping its current session."""
        result = await cleanup_storage(
            self._storage, self._store.device_id, keep_keys={self._store.key}
        )
        if self.state.blocking_error == GeneratingErrorType.STORAGE_QUOTA:
            self.state.blocking_error = None
        return result

    async def restart(self) -> bool:
        """Abandon the current session; the next run starts from scratch.

        Returns False, leaving the session alone, while another instance is
        generating for this device.
        """
        if self.state.is_generating or not await self._begin_generation():
            logger.warning("Restart refused; generation running elsewhere for %s", self._store.device_id)
            return False
        try:
            await self._store.mark_failed("Restarting plan generation")
        finally:
            await self._end_generation()
        self.state.generation_complete = False
        self.state.navigated = False
        self.state.nav_stuck = False
        self.state.last_progress = PROGRESS_START
        return True

    async def navigate(self, navigator: Navigator, force: bool = False) -> NavigationResult:
        """Move on to the preview step once generation is complete.

        Runs at most once per orchestrator. Unless ``force`` is set, requires
        a done session at 100% and a saved draft; a full store blocks it. The
        navigator is watched for ``nav_watchdog_seconds`` and reported stuck
        when it has not finished by then.
        """
        if self.state.navigated:
            return NavigationResult(navigated=False, reason="already_navigated")

        if not force:
            session = await self._store.read()
            if session is None or session.status != SessionStatus.DONE or session.progress < PROGRESS_COMPLETE:
                return NavigationResult(navigated=False, reason="not_ready")
            error = await self._save_draft()
            if error is not None and error.type == GeneratingErrorType.STORAGE_QUOTA:
                return NavigationResult(navigated=False, reason="blocked", error=error)
            if error is not None:
                logger.warning("Navigating without a fresh draft: %s", error.type.value)

        self.state.navigated = True
        task = asyncio.create_task(navigator())
        self._nav_task = task
        done, _ = await asyncio.wait({task}, timeout=self._config.nav_watchdog_seconds)
        if not done:
            self.state.nav_stuck = True
            logger.warning("Navigation still pending after %.1fs", self._config.nav_watchdog_seconds)
            return NavigationResult(navigated=False, stuck=True, reason="stuck")

        self._nav_task = None
        exc = task.exception()
        if exc is not None:
            self.state.navigated = False
            logger.error("Navigation failed: %s", exc)
            return NavigationResult(
                navigated=False,
                reason="failed",
                error=get_error_message(GeneratingErrorType.NAVIGATION_FAILED),
            )
        self.state.nav_stuck = False
        return NavigationResult(navigated=True)

    async def detach(self) -> bool:
        """The consumer went away.

        In-flight work is aborted only when no generation is marked active;
        an active run keeps going and persists its results, and the
        coordinator is closed once it is released. Returns True when
        something was aborted.
        """
        self._detached = True
        if self.state.is_generating:
            logger.info("Detach during active generation; leaving request running")
            return False
        aborted = False
        for task in (self._inflight, self._nav_task):
            if task is not None and not task.done():
                task.cancel()
                aborted = True
        self._inflight = None
        self._nav_task = None
        await self._coordinator.close()
        return aborted
