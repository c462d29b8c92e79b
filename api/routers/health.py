"""
Health check router.

This router provides health check endpoints for monitoring and load balancers.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from api.deps import get_storage
from backend.settings import Settings, get_settings
from backend.storage import KeyValueStorage, StorageError

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["Health"],
)

_PROBE_KEY = "fitjourney:health-probe"


@router.get("/health")
def health():
    """
    Simple liveness endpoint.

    Returns:
        dict: Status indicator for health checks
    """
    return {"status": "ok", "service": "plan-api"}


@router.get("/health/ready")
async def health_ready(
    settings: Settings = Depends(get_settings),
    storage: KeyValueStorage = Depends(get_storage),
):
    """
    Readiness probe that checks the storage backend.

    Returns 503 if sessions and drafts cannot be read.
    """
    checks = {"storage_backend": settings.storage_backend}

    try:
        await storage.get_item(_PROBE_KEY)
        checks["storage"] = "ok"
    except StorageError as e:
        logger.warning("Readiness check failed for storage: %s", e)
        checks["storage"] = "unavailable"
        return JSONResponse(
            status_code=503,
            content={
                "status": "not_ready",
                "service": "plan-api",
                "checks": checks,
            },
        )

    return {"status": "ready", "service": "plan-api", "checks": checks}
