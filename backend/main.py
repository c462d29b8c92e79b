"""
Application factory for FastAPI.

The factory pattern allows for:
- Easy testing with custom settings
- Multiple app instances with different configurations
- Clear separation of app creation from route definitions

Usage:
    from backend.main import create_app
    from backend.settings import Settings

    # Default app (uses get_settings())
    app = create_app()

    # Test app with custom settings
    test_settings = Settings(environment="test", _env_file=None)
    test_app = create_app(settings=test_settings)
"""

import logging
from typing import Optional

import sentry_sdk
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from backend.settings import Settings, get_settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Application Factory
# ---------------------------------------------------------------------------


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Create and configure a FastAPI application instance.

    Args:
        settings: Optional Settings instance. If not provided, uses get_settings()
                  which loads from environment variables.

    Returns:
        Configured FastAPI application instance.
    """
    if settings is None:
        settings = get_settings()

    # Initialize Sentry for error tracking
    _init_sentry(settings)

    app = FastAPI(
        title="FitJourney Plan API",
        description="Onboarding nutrition, workout and journey plan generation",
        version="1.0.0",
    )

    # Store settings on app state for middleware access
    app.state.settings = settings

    _configure_cors(app, settings)
    _add_sse_headers_middleware(app)
    _include_routers(app, settings)

    return app


def _init_sentry(settings: Settings) -> None:
    """Initialize Sentry SDK if DSN is configured."""
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            release=settings.render_git_commit,
            traces_sample_rate=0.1,
        )
        logger.info(
            "Sentry initialized for plan-api (release=%s)",
            settings.render_git_commit or "unknown",
        )


def _configure_cors(app: FastAPI, settings: Settings) -> None:
    """Configure CORS middleware for the application."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


class SSEHeadersMiddleware(BaseHTTPMiddleware):
    """Add X-Accel-Buffering: no header for SSE endpoints."""

    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)
        content_type = response.headers.get("content-type", "")
        if "text/event-stream" in content_type:
            response.headers["X-Accel-Buffering"] = "no"
            response.headers["Cache-Control"] = "no-cache"
        return response


def _add_sse_headers_middleware(app: FastAPI) -> None:
    """Add middleware for SSE header injection."""
    app.add_middleware(SSEHeadersMiddleware)


def _include_routers(app: FastAPI, settings: Settings) -> None:
    """Include all API routers in the application."""
    from api.deps import get_settings as deps_get_settings
    from api.routers import health_router, onboarding_router

    # Routers resolve settings through api.deps; bind them to this app's instance.
    app.dependency_overrides[deps_get_settings] = lambda: settings
    app.dependency_overrides[get_settings] = lambda: settings

    # Health router (no prefix - /health at root)
    app.include_router(health_router)

    # Onboarding router (/api/onboarding/*)
    app.include_router(onboarding_router)


# Default app instance for uvicorn
# This allows: uvicorn backend.main:app --reload
app = create_app()
