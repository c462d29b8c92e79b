"""Run the onboarding plan-generation pipeline from the command line.

Streams pipeline events to stdout as JSON lines and keeps session/draft
state in a storage directory, so re-running resumes (or short-circuits a
finished session) just like a reopened onboarding screen.

Usage:
    python scripts/run_onboarding_generation.py --profile profile.json \
        --base-url http://localhost:3000 --storage-dir .fitjourney

    # Finish with whatever is ready
    python scripts/run_onboarding_generation.py --continue-anyway
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from backend.services.generation_client import GenerationClient
from backend.services.generation_lock import StorageLockCoordinator
from backend.services.network_status import StaticNetworkMonitor
from backend.services.plan_pipeline_service import PipelineConfig, PlanPipelineOrchestrator
from backend.services.plan_session import PlanSessionStore, SessionStatus, get_or_create_device_id
from backend.services.program_draft import ProgramDraftStore
from backend.services.request_builders import OnboardingProfile
from backend.settings import Settings, get_settings
from backend.storage import FileStorage

logger = logging.getLogger("run_onboarding_generation")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate onboarding plans")
    parser.add_argument("--profile", type=Path, help="JSON file with onboarding answers")
    parser.add_argument("--device-id", help="Device scope (default: persisted per storage dir)")
    parser.add_argument("--storage-dir", help="Directory for session/draft files")
    parser.add_argument("--base-url", help="Generation API base URL")
    parser.add_argument("--no-workouts", action="store_true", help="Skip workout generation")
    parser.add_argument("--retry-nutrition", action="store_true", help="Retry only the nutrition plan")
    parser.add_argument("--continue-anyway", action="store_true", help="Finish with partial results")
    parser.add_argument("--restart", action="store_true", help="Discard the current session first")
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args(argv)


def load_profile(path: Optional[Path]) -> Optional[OnboardingProfile]:
    if path is None:
        return None
    return OnboardingProfile.model_validate(json.loads(path.read_text(encoding="utf-8")))


async def run(
    args: argparse.Namespace,
    settings: Settings,
    client: Optional[GenerationClient] = None,
) -> int:
    storage = FileStorage(args.storage_dir or settings.storage_dir, quota_bytes=settings.storage_quota_bytes)
    device_id = args.device_id or await get_or_create_device_id(storage)
    config = PipelineConfig.from_settings(settings)
    if args.no_workouts:
        config.workouts_enabled = False

    orchestrator = PlanPipelineOrchestrator(
        store=PlanSessionStore(storage, device_id),
        drafts=ProgramDraftStore(storage, device_id),
        client=client or GenerationClient(
            args.base_url or settings.generation_api_base_url,
            auth_token=settings.generation_api_token,
        ),
        coordinator=StorageLockCoordinator(
            storage,
            device_id,
            stale_seconds=settings.lock_stale_seconds,
            refresh_seconds=settings.lock_refresh_seconds,
        ),
        network=StaticNetworkMonitor(),
        storage=storage,
        profile=load_profile(args.profile),
        config=config,
    )

    if args.restart and not await orchestrator.restart():
        print(json.dumps({"event": "restart", "conflict": True}))
        return 1

    if args.continue_anyway:
        result = await orchestrator.continue_anyway()
        print(json.dumps({
            "event": "continue",
            "draft_saved": result.draft_saved,
            "conflict": result.conflict,
        }))
    else:
        events = orchestrator.retry_nutrition() if args.retry_nutrition else orchestrator.run()
        async for event in events:
            print(json.dumps({"event": event.event, "data": json.loads(event.data)}))

    session = await orchestrator.store.read()
    return 0 if session is not None and session.status == SessionStatus.DONE else 1


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    return asyncio.run(run(args, get_settings()))


if __name__ == "__main__":
    sys.exit(main())
