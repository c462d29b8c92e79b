"""
Router package for the onboarding plan API.

- health: Health check endpoints
- onboarding: Plan generation SSE streams, session and draft endpoints
"""

from api.routers.health import router as health_router
from api.routers.onboarding import router as onboarding_router

__all__ = [
    "health_router",
    "onboarding_router",
]
