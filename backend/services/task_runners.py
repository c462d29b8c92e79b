"""Per-artifact generation runners.

A runner marks its sub-plan ``generating``, calls the endpoint under a
deadline (``asyncio.wait_for`` cancels the in-flight request when it fires),
and records the outcome on the session:

  success       -> ready, plan stored, progress advanced to the checkpoint
  soft timeout  -> stays generating; retried per RetryPolicy
  hard failure  -> failed with the error message, no automatic retry

Runners never raise for generation failures; they return a TaskOutcome.
Cancellation of the runner itself propagates.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from backend.services.generation_client import GenerationClient
from backend.services.plan_session import PlanSessionStore, PlanStatus, SubPlanKind, now_ms
from backend.services.request_builders import NutritionRequest
from backend.services.retry_policy import (
    NUTRITION_POLICY,
    OPTIONAL_ARTIFACT_POLICY,
    FailureKind,
    RetryPolicy,
    classify_failure,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, Optional[str]], Awaitable[Any]]

# Progress checkpoints (percent).
PROGRESS_START = 0
PROGRESS_NUTRITION_START = 10
PROGRESS_NUTRITION_FETCHING = 30
PROGRESS_NUTRITION_DONE = 50
PROGRESS_WORKOUT_START = 50
PROGRESS_WORKOUT_FETCHING = 70
PROGRESS_WORKOUT_DONE = 85
PROGRESS_COMPLETE = 100


@dataclass
class TaskResult:
    """What a generation call produced: the plan plus extra sub-plan fields."""

    plan: Any
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TaskOutcome:
    ok: bool
    reason: Optional[FailureKind] = None
    error: Optional[str] = None
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "reason": self.reason.value if self.reason else None,
            "error": self.error,
            "attempts": self.attempts,
        }


def _error_message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__ or "Unknown error"


class TaskRunner:
    """Runs one artifact's generation call against the session store."""

    def __init__(
        self,
        kind: SubPlanKind,
        store: PlanSessionStore,
        call: Callable[[], Awaitable[TaskResult]],
        policy: RetryPolicy,
        timeout_seconds: float,
        checkpoint: Optional[int] = None,
        checkpoint_message: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
        start_fields: Optional[Dict[str, Any]] = None,
        failure_fields: Optional[Callable[[], Dict[str, Any]]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], int] = now_ms,
    ):
        self.kind = SubPlanKind(kind)
        self._store = store
        self._call = call
        self._policy = policy
        self._timeout = timeout_seconds
        self._checkpoint = checkpoint
        self._checkpoint_message = checkpoint_message
        self._progress = progress or store.update_progress
        self._start_fields = start_fields or {}
        self._failure_fields = failure_fields
        self._sleep = sleep
        self._clock = clock

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    async def run(self) -> TaskOutcome:
        # Mark generating before the first network await.
        await self._store.update_sub_plan(
            self.kind,
            status=PlanStatus.GENERATING,
            started_at=self._clock(),
            soft_timeouts=0,
            **self._start_fields,
        )

        attempt = 0
        soft_timeouts = 0
        while True:
            attempt += 1
            started = time.monotonic()
            try:
                result = await asyncio.wait_for(self._call(), timeout=self._timeout)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                elapsed_ms = int((time.monotonic() - started) * 1000)
                failure = classify_failure(e)

                if failure == FailureKind.SOFT_TIMEOUT and not self._policy.timeout_is_failure:
                    soft_timeouts += 1
                    logger.warning(
                        "%s soft-timeout after %dms (attempt %d); keeping generating",
                        self.kind.value, elapsed_ms, attempt,
                    )
                    await self._store.update_sub_plan(
                        self.kind, status=PlanStatus.GENERATING, soft_timeouts=soft_timeouts
                    )
                    if self._policy.should_retry(failure, attempt):
                        logger.info(
                            "Retrying %s after %.1fs", self.kind.value, self._policy.backoff_seconds
                        )
                        await self._sleep(self._policy.backoff_seconds)
                        continue
                    return TaskOutcome(ok=False, reason=failure, attempts=attempt)

                if failure == FailureKind.SOFT_TIMEOUT:
                    message = f"Timeout after {self._timeout:g}s"
                else:
                    message = _error_message(e)
                logger.error(
                    "%s generation failed after %dms: %s", self.kind.value, elapsed_ms, message
                )
                fields = self._failure_fields() if self._failure_fields else {}
                await self._store.update_sub_plan(
                    self.kind,
                    status=PlanStatus.FAILED,
                    error=message,
                    completed_at=self._clock(),
                    **fields,
                )
                return TaskOutcome(ok=False, reason=failure, error=message, attempts=attempt)

            await self._store.update_sub_plan(
                self.kind,
                status=PlanStatus.READY,
                plan=result.plan,
                completed_at=self._clock(),
                **result.extra,
            )
            if self._checkpoint is not None:
                await self._progress(self._checkpoint, self._checkpoint_message)
            logger.info("%s generation ready (attempt %d)", self.kind.value, attempt)
            return TaskOutcome(ok=True, attempts=attempt)


# =============================================================================
# Factories
# =============================================================================


def build_nutrition_runner(
    store: PlanSessionStore,
    client: GenerationClient,
    request: NutritionRequest,
    timeout_seconds: float = 90.0,
    policy: RetryPolicy = NUTRITION_POLICY,
    progress: Optional[ProgressCallback] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> TaskRunner:
    async def call() -> TaskResult:
        result = await client.generate_nutrition(request)
        return TaskResult(
            plan=result.plan,
            extra={"calories": result.calories, "fingerprint": result.fingerprint},
        )

    return TaskRunner(
        SubPlanKind.NUTRITION,
        store,
        call,
        policy,
        timeout_seconds,
        checkpoint=PROGRESS_NUTRITION_DONE,
        checkpoint_message="Nutrition plan ready!",
        progress=progress,
        start_fields={"fingerprint": None, "calories": None},
        failure_fields=lambda: {"fingerprint": f"failed-{now_ms()}"},
        sleep=sleep,
    )


def build_workout_runner(
    store: PlanSessionStore,
    client: GenerationClient,
    request: Dict[str, Any],
    timeout_seconds: float = 60.0,
    progress: Optional[ProgressCallback] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> TaskRunner:
    async def call() -> TaskResult:
        return TaskResult(plan=await client.generate_workout(request))

    return TaskRunner(
        SubPlanKind.WORKOUT,
        store,
        call,
        OPTIONAL_ARTIFACT_POLICY,
        timeout_seconds,
        checkpoint=PROGRESS_WORKOUT_DONE,
        checkpoint_message="Workout plan ready!",
        progress=progress,
        sleep=sleep,
    )


def build_stages_runner(
    store: PlanSessionStore,
    client: GenerationClient,
    avatar: Dict[str, Any],
    timeout_seconds: float = 30.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> TaskRunner:
    async def call() -> TaskResult:
        return TaskResult(plan=await client.generate_stages(avatar))

    return TaskRunner(
        SubPlanKind.STAGES,
        store,
        call,
        OPTIONAL_ARTIFACT_POLICY,
        timeout_seconds,
        sleep=sleep,
    )
