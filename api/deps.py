"""
FastAPI Dependency Providers for the onboarding plan API.

Architecture:
- Settings, the broadcast hub, the generation client and the network
  monitor are cached per-process (lru_cache)
- Storage and the async Supabase client are async singletons guarded by
  asyncio.Lock
- Session stores and orchestrators are built per request, scoped to the
  caller's X-Device-Id
"""

import asyncio
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Optional

from fastapi import Depends, Header, HTTPException
from supabase import AsyncClient, create_async_client

from backend.services.generation_client import GenerationClient
from backend.services.generation_lock import BroadcastHub, build_coordinator
from backend.services.network_status import (
    HttpProbeNetworkMonitor,
    NetworkMonitor,
    StaticNetworkMonitor,
)
from backend.services.plan_pipeline_service import PipelineConfig, PlanPipelineOrchestrator
from backend.services.plan_session import PlanSessionStore
from backend.services.program_draft import ProgramDraftStore
from backend.services.request_builders import OnboardingProfile
from backend.settings import Settings, get_settings as _get_settings
from backend.storage import KeyValueStorage, StorageError, build_storage

_DEVICE_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


# =============================================================================
# Settings Provider
# =============================================================================


def get_settings() -> Settings:
    """
    Get application settings.

    Returns cached Settings instance from backend.settings.
    Use this as a FastAPI dependency for settings access.
    """
    return _get_settings()


# =============================================================================
# Async Supabase Client Provider
# =============================================================================

# Async singleton state (lru_cache doesn't work with async functions)
_async_supabase_client: Optional[AsyncClient] = None
_async_supabase_lock = asyncio.Lock()


async def get_supabase_async_client() -> Optional[AsyncClient]:
    """
    Get async Supabase client instance (singleton).

    Returns None if credentials are not configured.
    """
    global _async_supabase_client

    if _async_supabase_client is not None:
        return _async_supabase_client

    async with _async_supabase_lock:
        # Another coroutine may have initialized while we waited
        if _async_supabase_client is not None:
            return _async_supabase_client

        settings = _get_settings()
        if not settings.supabase_url or not settings.supabase_key:
            return None

        _async_supabase_client = await create_async_client(
            settings.supabase_url, settings.supabase_key
        )
        return _async_supabase_client


# =============================================================================
# Storage Provider
# =============================================================================

_storage: Optional[KeyValueStorage] = None
_storage_lock = asyncio.Lock()


async def get_storage(settings: Settings = Depends(get_settings)) -> KeyValueStorage:
    """
    Get the process-wide key/value storage backend.

    Raises:
        HTTPException: 503 if the configured backend cannot be created
    """
    global _storage

    if _storage is not None:
        return _storage

    async with _storage_lock:
        if _storage is not None:
            return _storage
        client = None
        if settings.storage_backend == "supabase":
            client = await get_supabase_async_client()
        try:
            _storage = build_storage(settings, supabase_client=client)
        except StorageError as e:
            raise HTTPException(status_code=503, detail=str(e))
        return _storage


# =============================================================================
# Shared Services
# =============================================================================


@lru_cache
def get_broadcast_hub() -> BroadcastHub:
    return BroadcastHub()


@lru_cache
def get_generation_client() -> GenerationClient:
    settings = _get_settings()
    return GenerationClient(
        base_url=settings.generation_api_base_url,
        auth_token=settings.generation_api_token,
    )


@lru_cache
def get_network_monitor() -> NetworkMonitor:
    settings = _get_settings()
    if settings.network_probe_url:
        return HttpProbeNetworkMonitor(settings.network_probe_url)
    return StaticNetworkMonitor()


# =============================================================================
# Device-scoped Providers
# =============================================================================


def get_device_id(x_device_id: Optional[str] = Header(default=None)) -> str:
    """Device scope for sessions and drafts, taken from the X-Device-Id header."""
    if not x_device_id or not _DEVICE_ID_RE.match(x_device_id):
        raise HTTPException(status_code=400, detail="Missing or invalid X-Device-Id header")
    return x_device_id


def get_session_store(
    device_id: str = Depends(get_device_id),
    storage: KeyValueStorage = Depends(get_storage),
) -> PlanSessionStore:
    return PlanSessionStore(storage, device_id)


def get_draft_store(
    device_id: str = Depends(get_device_id),
    storage: KeyValueStorage = Depends(get_storage),
) -> ProgramDraftStore:
    return ProgramDraftStore(storage, device_id)


@dataclass
class OrchestratorFactory:
    """Builds one orchestrator per request for a given profile."""

    build: Callable[[Optional[OnboardingProfile]], PlanPipelineOrchestrator]

    def __call__(self, profile: Optional[OnboardingProfile] = None) -> PlanPipelineOrchestrator:
        return self.build(profile)


def get_orchestrator_factory(
    device_id: str = Depends(get_device_id),
    settings: Settings = Depends(get_settings),
    storage: KeyValueStorage = Depends(get_storage),
    client: GenerationClient = Depends(get_generation_client),
    hub: BroadcastHub = Depends(get_broadcast_hub),
    network: NetworkMonitor = Depends(get_network_monitor),
) -> OrchestratorFactory:
    def build(profile: Optional[OnboardingProfile]) -> PlanPipelineOrchestrator:
        coordinator = build_coordinator(
            settings.generation_lock_backend,
            storage,
            device_id,
            hub=hub,
            stale_seconds=settings.lock_stale_seconds,
            refresh_seconds=settings.lock_refresh_seconds,
        )
        return PlanPipelineOrchestrator(
            store=PlanSessionStore(storage, device_id),
            drafts=ProgramDraftStore(storage, device_id),
            client=client,
            coordinator=coordinator,
            network=network,
            storage=storage,
            profile=profile,
            config=PipelineConfig.from_settings(settings),
        )

    return OrchestratorFactory(build)
