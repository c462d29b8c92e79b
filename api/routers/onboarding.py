"""Onboarding plan generation endpoints.

All endpoints are scoped by the X-Device-Id header.

  POST   /api/onboarding/generate/stream                  run or resume generation (SSE)
  POST   /api/onboarding/generate/retry-nutrition/stream  retry the nutrition plan (SSE)
  POST   /api/onboarding/generate/continue                finish with whatever is ready
  POST   /api/onboarding/generate/restart                 abandon the current session
  GET    /api/onboarding/session                          current session snapshot
  GET    /api/onboarding/draft                            program draft for the preview step
  DELETE /api/onboarding/draft                            discard the draft
  POST   /api/onboarding/storage/cleanup                  free storage after a quota error
"""

import json
import logging
from typing import AsyncGenerator, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Response
from sse_starlette.sse import EventSourceResponse

from api.deps import (
    OrchestratorFactory,
    get_draft_store,
    get_orchestrator_factory,
    get_session_store,
    get_settings,
)
from backend.services.generating_errors import to_event_payload
from backend.services.plan_pipeline_service import PipelineEvent, PlanPipelineOrchestrator
from backend.services.plan_session import PlanSessionStore, session_summary
from backend.services.program_draft import ProgramDraftStore, is_expired
from backend.services.request_builders import OnboardingProfile
from backend.settings import Settings

router = APIRouter(prefix="/api/onboarding", tags=["onboarding"])
logger = logging.getLogger(__name__)


def _stream(
    orchestrator: PlanPipelineOrchestrator,
    events: AsyncGenerator[PipelineEvent, None],
    stage: str,
    settings: Settings,
) -> EventSourceResponse:
    async def event_generator():
        try:
            async for event in events:
                yield {"event": event.event, "data": event.data}
        except Exception:
            logger.exception("Unhandled error in onboarding %s stream", stage)
            yield {
                "event": "error",
                "data": json.dumps({
                    "stage": stage,
                    "message": "An unexpected error occurred. Please try again.",
                    "recoverable": True,
                }),
            }
        finally:
            await events.aclose()
            await orchestrator.detach()

    return EventSourceResponse(event_generator(), ping=settings.sse_heartbeat_interval)


# =============================================================================
# Generation
# =============================================================================


@router.post("/generate/stream")
async def generate_stream(
    profile: Optional[OnboardingProfile] = Body(default=None),
    factory: OrchestratorFactory = Depends(get_orchestrator_factory),
    settings: Settings = Depends(get_settings),
):
    """Run (or resume) onboarding generation.

    Returns an SSE stream with event types:
    - stage: progress checkpoints (start -> nutrition -> workout -> complete)
    - warning: stuck requests, soft timeouts, optional artifact failures, conflicts
    - error: GeneratingError payloads
    - complete: final session summary
    """
    orchestrator = factory(profile)
    return _stream(orchestrator, orchestrator.run(), "generate", settings)


@router.post("/generate/retry-nutrition/stream")
async def retry_nutrition_stream(
    profile: Optional[OnboardingProfile] = Body(default=None),
    factory: OrchestratorFactory = Depends(get_orchestrator_factory),
    settings: Settings = Depends(get_settings),
):
    """Retry the nutrition plan after a soft timeout or failure (SSE)."""
    orchestrator = factory(profile)
    return _stream(orchestrator, orchestrator.retry_nutrition(), "nutrition", settings)


@router.post("/generate/continue")
async def continue_anyway(
    factory: OrchestratorFactory = Depends(get_orchestrator_factory),
):
    """Mark the session done with partial results and write the draft."""
    orchestrator = factory(None)
    try:
        result = await orchestrator.continue_anyway()
    finally:
        await orchestrator.detach()
    if result.conflict:
        raise HTTPException(status_code=409, detail="Plans are being generated in another window")
    return {
        "draft_saved": result.draft_saved,
        "session": session_summary(result.session) if result.session else None,
        "error": to_event_payload(result.error, "draft") if result.error else None,
    }


@router.post("/generate/restart")
async def restart(
    factory: OrchestratorFactory = Depends(get_orchestrator_factory),
):
    """Mark the current session failed so the next run starts fresh."""
    orchestrator = factory(None)
    try:
        restarted = await orchestrator.restart()
    finally:
        await orchestrator.detach()
    if not restarted:
        raise HTTPException(status_code=409, detail="Plans are being generated in another window")
    return {"status": "restarted"}


# =============================================================================
# Session / Draft
# =============================================================================


@router.get("/session")
async def get_session(store: PlanSessionStore = Depends(get_session_store)):
    session = await store.read()
    if session is None:
        raise HTTPException(status_code=404, detail="No plan session for this device")
    return {
        "summary": session_summary(session),
        "session": session.model_dump(mode="json"),
    }


@router.get("/draft")
async def get_draft(
    drafts: ProgramDraftStore = Depends(get_draft_store),
    settings: Settings = Depends(get_settings),
):
    """Draft for the preview step; absent, outdated and expired drafts are 404."""
    draft = await drafts.read()
    if draft is None:
        raise HTTPException(status_code=404, detail="No program draft")
    if is_expired(draft, max_age_hours=settings.draft_max_age_hours):
        raise HTTPException(status_code=404, detail="Program draft expired")
    return draft.model_dump(mode="json")


@router.delete("/draft", status_code=204)
async def delete_draft(drafts: ProgramDraftStore = Depends(get_draft_store)):
    await drafts.clear()
    return Response(status_code=204)


@router.post("/storage/cleanup")
async def cleanup(
    factory: OrchestratorFactory = Depends(get_orchestrator_factory),
):
    """Free space after a storage-quota error.

    Only this device's records are removed; its current session is kept.
    """
    orchestrator = factory(None)
    try:
        result = await orchestrator.cleanup_storage()
    finally:
        await orchestrator.detach()
    return {
        "removed": result.removed,
        "removed_keys": result.removed_keys,
        "failed_keys": result.failed_keys,
    }
