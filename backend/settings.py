"""
Centralized settings configuration using Pydantic BaseSettings.

All environment variables for the onboarding plan API are defined here with
types, defaults, and validation. Use get_settings() for dependency injection
compatibility in FastAPI.

Usage:
    from backend.settings import get_settings, Settings

    # In FastAPI endpoints (dependency injection)
    @app.get("/")
    def read_root(settings: Settings = Depends(get_settings)):
        return {"environment": settings.environment}

    # Direct access (module-level)
    settings = get_settings()
    print(settings.generation_api_base_url)
"""

import json
from functools import lru_cache
from typing import List, Optional, Union

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Core Environment
    # -------------------------------------------------------------------------
    environment: str = Field(
        default="development",
        description="Runtime environment: development, staging, production",
    )

    # -------------------------------------------------------------------------
    # Generation API
    # -------------------------------------------------------------------------
    generation_api_base_url: str = Field(
        default="http://localhost:3000",
        description="Base URL of the service exposing the nutrition/workout/stages endpoints",
    )
    generation_api_token: Optional[str] = Field(
        default=None,
        description="Optional bearer token forwarded to the generation endpoints",
    )

    # -------------------------------------------------------------------------
    # Timeouts and Retries
    # -------------------------------------------------------------------------
    nutrition_timeout_seconds: float = Field(
        default=90.0,
        description="Per-attempt timeout for the nutrition request",
    )
    workout_timeout_seconds: float = Field(
        default=60.0,
        description="Per-attempt timeout for the workout request",
    )
    stages_timeout_seconds: float = Field(
        default=30.0,
        description="Per-attempt timeout for the journey stages request",
    )
    soft_retry_backoff_seconds: float = Field(
        default=1.5,
        description="Delay before retrying a nutrition request after a soft timeout",
    )
    nutrition_soft_retries: int = Field(
        default=1,
        description="Automatic retries after a nutrition soft timeout",
    )

    # -------------------------------------------------------------------------
    # Pipeline Features
    # -------------------------------------------------------------------------
    nutrition_days: int = Field(
        default=1,
        description="Days requested from the nutrition endpoint during onboarding",
    )
    workouts_enabled: bool = Field(
        default=True,
        description="Generate a workout plan as part of onboarding",
    )

    # -------------------------------------------------------------------------
    # Client Storage
    # -------------------------------------------------------------------------
    storage_backend: str = Field(
        default="memory",
        description="Key/value backend for sessions and drafts: memory, file, supabase",
    )
    storage_dir: str = Field(
        default=".fitjourney",
        description="Directory used by the file storage backend",
    )
    storage_quota_bytes: Optional[int] = Field(
        default=None,
        description="Byte budget for memory/file storage; unlimited when unset",
    )
    supabase_storage_table: str = Field(
        default="client_storage",
        description="Supabase table backing the supabase storage backend",
    )

    # -------------------------------------------------------------------------
    # Supabase Database
    # -------------------------------------------------------------------------
    supabase_url: Optional[str] = Field(
        default=None,
        description="Supabase project URL",
    )
    supabase_service_role_key: Optional[str] = Field(
        default=None,
        description="Supabase service role key (full access)",
    )

    @property
    def supabase_key(self) -> Optional[str]:
        """Get the Supabase key."""
        return self.supabase_service_role_key

    # -------------------------------------------------------------------------
    # Cross-Instance Coordination
    # -------------------------------------------------------------------------
    generation_lock_backend: str = Field(
        default="auto",
        description="Coordination strategy: auto, broadcast, storage",
    )
    lock_stale_seconds: float = Field(
        default=300.0,
        description="Age after which another instance's generation lock is ignored",
    )
    lock_refresh_seconds: float = Field(
        default=30.0,
        description="Interval between generation lock timestamp refreshes",
    )

    # -------------------------------------------------------------------------
    # Session / Draft Lifetimes
    # -------------------------------------------------------------------------
    session_stale_seconds: float = Field(
        default=600.0,
        description="A running session untouched for this long is restarted",
    )
    draft_max_age_hours: float = Field(
        default=48.0,
        description="Drafts older than this are ignored by readers",
    )

    # -------------------------------------------------------------------------
    # Watchdogs
    # -------------------------------------------------------------------------
    nav_watchdog_seconds: float = Field(
        default=2.0,
        description="Navigation is reported stuck when it takes longer than this",
    )
    stuck_warning_seconds: List[float] = Field(
        default_factory=lambda: [30.0, 90.0],
        description="Elapsed seconds at which a still-running request emits a stuck warning",
    )
    offline_wait_seconds: float = Field(
        default=30.0,
        description="How long a run waits for connectivity before giving up",
    )
    network_probe_url: Optional[str] = Field(
        default=None,
        description="URL probed to detect connectivity; always online when unset",
    )

    # -------------------------------------------------------------------------
    # CORS
    # -------------------------------------------------------------------------
    allowed_origins: List[str] = Field(
        default_factory=list,
        description="Allowed CORS origins. If empty, defaults to localhost:3000/3001.",
    )

    # -------------------------------------------------------------------------
    # Observability - Sentry
    # -------------------------------------------------------------------------
    sentry_dsn: Optional[str] = Field(
        default=None,
        description="Sentry DSN for error tracking",
    )

    # -------------------------------------------------------------------------
    # Deployment / Render
    # -------------------------------------------------------------------------
    render_git_commit: Optional[str] = Field(
        default=None,
        description="Git commit SHA provided by Render (RENDER_GIT_COMMIT)",
    )

    # -------------------------------------------------------------------------
    # SSE Configuration
    # -------------------------------------------------------------------------
    sse_heartbeat_interval: int = Field(
        default=15,
        description="Seconds between SSE heartbeat pings",
    )

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, v: Union[str, List[str], None]) -> List[str]:
        """Accept JSON array, comma-separated string, or list."""
        if v is None:
            return []
        if isinstance(v, list):
            return v
        v = v.strip()
        if not v:
            return []
        if v.startswith("["):
            return json.loads(v)
        return [origin.strip() for origin in v.split(",") if origin.strip()]

    @field_validator("stuck_warning_seconds", mode="before")
    @classmethod
    def parse_stuck_warnings(cls, v: Union[str, List[float], None]) -> List[float]:
        """Accept JSON array, comma-separated string, or list; sorted ascending."""
        if v is None:
            return []
        if isinstance(v, str):
            v = v.strip()
            if not v:
                return []
            if v.startswith("["):
                v = json.loads(v)
            else:
                v = [part for part in v.split(",") if part.strip()]
        return sorted(float(x) for x in v)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is a valid value."""
        valid_environments = {"development", "staging", "production", "test"}
        if v.lower() not in valid_environments:
            raise ValueError(
                f"Invalid environment '{v}'. Must be one of: {valid_environments}"
            )
        return v.lower()

    @field_validator("storage_backend")
    @classmethod
    def validate_storage_backend(cls, v: str) -> str:
        valid = {"memory", "file", "supabase"}
        if v.lower() not in valid:
            raise ValueError(f"Invalid storage_backend '{v}'. Must be one of: {valid}")
        return v.lower()

    @field_validator("generation_lock_backend")
    @classmethod
    def validate_lock_backend(cls, v: str) -> str:
        valid = {"auto", "broadcast", "storage"}
        if v.lower() not in valid:
            raise ValueError(
                f"Invalid generation_lock_backend '{v}'. Must be one of: {valid}"
            )
        return v.lower()

    @field_validator("nutrition_days")
    @classmethod
    def validate_nutrition_days(cls, v: int) -> int:
        if not 1 <= v <= 14:
            raise ValueError("nutrition_days must be between 1 and 14")
        return v

    @field_validator(
        "nutrition_timeout_seconds",
        "workout_timeout_seconds",
        "stages_timeout_seconds",
        "lock_stale_seconds",
        "lock_refresh_seconds",
        "nav_watchdog_seconds",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    # -------------------------------------------------------------------------
    # Helper Properties
    # -------------------------------------------------------------------------
    @property
    def allowed_origins_list(self) -> List[str]:
        """CORS origins with the local development fallback applied."""
        if self.allowed_origins:
            return self.allowed_origins
        return ["http://localhost:3000", "http://localhost:3001"]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"

    @property
    def is_test(self) -> bool:
        """Check if running in test environment."""
        return self.environment == "test"


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    For testing, you can clear the cache with get_settings.cache_clear().

    Returns:
        Settings: Application settings instance
    """
    return Settings()
