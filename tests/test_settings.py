"""Tests for Settings parsing and validation."""

import pytest
from pydantic import ValidationError

from backend.services.plan_pipeline_service import PipelineConfig
from backend.settings import Settings


def _settings(**kwargs) -> Settings:
    return Settings(_env_file=None, **kwargs)


class TestDefaults:
    def test_timing_defaults(self):
        settings = _settings(environment="test")
        assert settings.nutrition_timeout_seconds == 90
        assert settings.workout_timeout_seconds == 60
        assert settings.stages_timeout_seconds == 30
        assert settings.soft_retry_backoff_seconds == 1.5
        assert settings.lock_stale_seconds == 300
        assert settings.lock_refresh_seconds == 30
        assert settings.stuck_warning_seconds == [30.0, 90.0]

    def test_cors_fallback(self):
        assert _settings().allowed_origins_list == ["http://localhost:3000", "http://localhost:3001"]

    def test_environment_flags(self):
        settings = _settings(environment="PRODUCTION")
        assert settings.environment == "production"
        assert settings.is_production
        assert not settings.is_test


class TestParsing:
    def test_origins_from_comma_string(self):
        settings = _settings(allowed_origins="https://a.test, https://b.test")
        assert settings.allowed_origins == ["https://a.test", "https://b.test"]

    def test_origins_from_json(self):
        settings = _settings(allowed_origins='["https://a.test"]')
        assert settings.allowed_origins_list == ["https://a.test"]

    def test_stuck_warnings_sorted(self):
        assert _settings(stuck_warning_seconds="90, 30").stuck_warning_seconds == [30.0, 90.0]

    def test_backend_names_are_lowercased(self):
        settings = _settings(storage_backend="FILE", generation_lock_backend="Storage")
        assert settings.storage_backend == "file"
        assert settings.generation_lock_backend == "storage"


class TestValidation:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"environment": "qa"},
            {"storage_backend": "redis"},
            {"generation_lock_backend": "zookeeper"},
            {"nutrition_days": 0},
            {"nutrition_days": 15},
            {"nutrition_timeout_seconds": 0},
            {"lock_refresh_seconds": -1},
        ],
    )
    def test_rejects_invalid_values(self, kwargs):
        with pytest.raises(ValidationError):
            _settings(**kwargs)


class TestPipelineConfig:
    def test_from_settings(self):
        settings = _settings(nutrition_days=3, workouts_enabled=False, stuck_warning_seconds=[5])
        config = PipelineConfig.from_settings(settings)
        assert config.nutrition_days == 3
        assert config.workouts_enabled is False
        assert config.stuck_warning_seconds == [5.0]
        assert config.nutrition_timeout_seconds == 90
