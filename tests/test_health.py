"""
Health endpoint tests.

Covers the liveness endpoint and the storage readiness probe.
"""

import pytest
from fastapi.testclient import TestClient

from api.deps import get_storage
from backend.main import create_app
from backend.settings import Settings
from backend.storage import StorageUnavailableError
from backend.storage.memory import InMemoryStorage


class _BrokenStorage(InMemoryStorage):
    async def get_item(self, key):
        raise StorageUnavailableError("storage offline")


@pytest.fixture
def health_app():
    return create_app(settings=Settings(environment="test", _env_file=None))


@pytest.fixture
def api_client(health_app):
    health_app.dependency_overrides[get_storage] = lambda: InMemoryStorage()
    yield TestClient(health_app)
    health_app.dependency_overrides.clear()


@pytest.mark.unit
def test_health_returns_ok(api_client):
    """GET /health returns 200 with status ok."""
    response = api_client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["service"] == "plan-api"


@pytest.mark.unit
def test_health_ready_with_working_storage(api_client):
    """GET /health/ready returns 200 when storage answers."""
    response = api_client.get("/health/ready")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ready"
    assert data["checks"] == {"storage_backend": "memory", "storage": "ok"}


@pytest.mark.unit
def test_health_ready_with_broken_storage(health_app):
    """GET /health/ready returns 503 when storage is unavailable."""
    health_app.dependency_overrides[get_storage] = lambda: _BrokenStorage()
    response = TestClient(health_app).get("/health/ready")
    health_app.dependency_overrides.clear()

    assert response.status_code == 503
    data = response.json()
    assert data["status"] == "not_ready"
    assert data["checks"]["storage"] == "unavailable"
