"""Router-level tests for the onboarding generation endpoints.

Tests for:
- POST /api/onboarding/generate/stream (SSE)
- POST /api/onboarding/generate/retry-nutrition/stream (SSE)
- POST /api/onboarding/generate/continue and /restart
- GET /api/onboarding/session, GET/DELETE /api/onboarding/draft
- POST /api/onboarding/storage/cleanup
- X-Device-Id validation
"""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from api.deps import (
    get_broadcast_hub,
    get_generation_client,
    get_network_monitor,
    get_storage,
)
from backend.main import create_app
from backend.services.generation_client import GenerationHTTPError
from backend.services.generation_lock import BROADCAST_CHANNEL, MSG_STARTED, BroadcastHub, GenerationMessage
from backend.services.network_status import StaticNetworkMonitor
from backend.services.plan_session import PlanSessionStore, PlanStatus, SubPlanKind, now_ms
from backend.services.program_draft import ProgramDraft, ProgramDraftStore
from backend.settings import Settings
from backend.storage.memory import InMemoryStorage
from tests.conftest import NUTRITION_PLAN, STAGES, TEST_DEVICE_ID

HEADERS = {"X-Device-Id": TEST_DEVICE_ID}

PROFILE = {
    "gender": "female",
    "age": 29,
    "height_cm": 165,
    "weight_kg": 68,
    "target_weight_kg": 60,
    "activity": "light",
    "goal": "loss",
    "diet": "none",
}


@pytest.fixture
def onboarding_app():
    settings = Settings(environment="test", _env_file=None)
    return create_app(settings=settings)


@pytest.fixture
def memory_storage():
    return InMemoryStorage()


@pytest.fixture
def broadcast_hub():
    return BroadcastHub()


@pytest.fixture
def client(onboarding_app, memory_storage, generation_client, broadcast_hub):
    network = StaticNetworkMonitor()
    onboarding_app.dependency_overrides[get_storage] = lambda: memory_storage
    onboarding_app.dependency_overrides[get_generation_client] = lambda: generation_client
    onboarding_app.dependency_overrides[get_broadcast_hub] = lambda: broadcast_hub
    onboarding_app.dependency_overrides[get_network_monitor] = lambda: network
    yield TestClient(onboarding_app)
    onboarding_app.dependency_overrides.clear()


def _parse_sse_events(response_text: str) -> list:
    """Parse SSE response text into list of (event, data) tuples."""
    events = []
    current_event = None
    current_data = None

    for line in response_text.strip().split("\n"):
        line = line.strip()
        if line.startswith("event:"):
            current_event = line[len("event:"):].strip()
        elif line.startswith("data:"):
            current_data = line[len("data:"):].strip()
        elif line == "" and current_event and current_data:
            events.append((current_event, json.loads(current_data)))
            current_event = None
            current_data = None

    if current_event and current_data:
        events.append((current_event, json.loads(current_data)))

    return events


class TestDeviceHeader:
    def test_missing_header_returns_400(self, client):
        response = client.get("/api/onboarding/session")
        assert response.status_code == 400

    def test_invalid_header_returns_400(self, client):
        response = client.get("/api/onboarding/session", headers={"X-Device-Id": "bad id/../"})
        assert response.status_code == 400


class TestGenerateStream:
    def test_sse_event_sequence(self, client, generation_client):
        response = client.post("/api/onboarding/generate/stream", json=PROFILE, headers=HEADERS)

        assert response.status_code == 200
        assert "text/event-stream" in response.headers.get("content-type", "")
        events = _parse_sse_events(response.text)
        assert events[0] == ("stage", {"stage": "start", "progress": 0, "message": "Starting plan generation..."})
        assert events[-1][0] == "complete"
        assert events[-1][1]["draft_saved"] is True

        request = generation_client.generate_nutrition.call_args[0][0]
        assert request.gender == "female"
        assert request.goal == "loss"

    def test_without_profile_uses_defaults(self, client, generation_client):
        response = client.post("/api/onboarding/generate/stream", headers=HEADERS)

        assert response.status_code == 200
        request = generation_client.generate_nutrition.call_args[0][0]
        assert request.gender == "male"
        assert request.goal == "recomp"

    def test_second_run_resumes_done_session(self, client, generation_client):
        client.post("/api/onboarding/generate/stream", headers=HEADERS)
        response = client.post("/api/onboarding/generate/stream", headers=HEADERS)

        events = _parse_sse_events(response.text)
        assert events[-1][1]["resumed"] is True
        assert generation_client.generate_nutrition.await_count == 1

    def test_workout_failure_is_warning(self, client, generation_client):
        generation_client.generate_workout.side_effect = GenerationHTTPError("Workout API failed: 500 x", 500)

        response = client.post("/api/onboarding/generate/stream", headers=HEADERS)

        events = _parse_sse_events(response.text)
        warnings = [data for name, data in events if name == "warning"]
        assert warnings[0]["stage"] == "workout"
        assert events[-1][0] == "complete"

    def test_sse_headers(self, client):
        response = client.post("/api/onboarding/generate/stream", headers=HEADERS)
        assert response.headers.get("x-accel-buffering") == "no"


class TestRetryNutrition:
    def test_retry_stream(self, client, memory_storage, generation_client):
        generation_client.generate_nutrition.side_effect = [
            GenerationHTTPError("Nutrition API failed: 500 boom", 500),
            generation_client.generate_nutrition.return_value,
        ]
        client.post("/api/onboarding/generate/stream", headers=HEADERS)
        client.post("/api/onboarding/generate/restart", headers=HEADERS)

        response = client.post("/api/onboarding/generate/retry-nutrition/stream", headers=HEADERS)

        events = _parse_sse_events(response.text)
        stages = [data["stage"] for name, data in events if name == "stage"]
        assert stages[0] == "nutrition_retry"
        assert "nutrition_done" in stages


class TestSessionEndpoints:
    def test_no_session_returns_404(self, client):
        response = client.get("/api/onboarding/session", headers=HEADERS)
        assert response.status_code == 404

    def test_session_after_generation(self, client):
        client.post("/api/onboarding/generate/stream", headers=HEADERS)

        response = client.get("/api/onboarding/session", headers=HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["summary"]["status"] == "done"
        assert data["summary"]["progress"] == 100
        assert data["session"]["nutrition"]["plan"] == NUTRITION_PLAN
        assert data["session"]["device_id"] == TEST_DEVICE_ID

    def test_sessions_are_per_device(self, client):
        client.post("/api/onboarding/generate/stream", headers=HEADERS)
        response = client.get("/api/onboarding/session", headers={"X-Device-Id": "device-other"})
        assert response.status_code == 404

    def test_restart_marks_failed(self, client):
        client.post("/api/onboarding/generate/stream", headers=HEADERS)

        response = client.post("/api/onboarding/generate/restart", headers=HEADERS)

        assert response.json() == {"status": "restarted"}
        session = client.get("/api/onboarding/session", headers=HEADERS).json()
        assert session["summary"]["status"] == "failed"

    def test_continue_with_partial_results(self, client, memory_storage):
        async def seed():
            store = PlanSessionStore(memory_storage, TEST_DEVICE_ID)
            await store.create()
            await store.update_sub_plan(SubPlanKind.STAGES, status=PlanStatus.READY, plan=STAGES)

        asyncio.run(seed())

        response = client.post("/api/onboarding/generate/continue", headers=HEADERS)

        data = response.json()
        assert data["draft_saved"] is True
        assert data["session"]["status"] == "done"
        assert data["error"] is None


    def test_continue_and_restart_conflict_while_generating_elsewhere(self, client, broadcast_hub):
        other = broadcast_hub.subscribe(f"{BROADCAST_CHANNEL}:{TEST_DEVICE_ID}", lambda _message: None)
        other.post(GenerationMessage(MSG_STARTED, now_ms(), "other-instance"))

        assert client.post("/api/onboarding/generate/continue", headers=HEADERS).status_code == 409
        assert client.post("/api/onboarding/generate/restart", headers=HEADERS).status_code == 409
        assert client.get("/api/onboarding/session", headers=HEADERS).status_code == 404


class TestDraftEndpoints:
    def test_draft_after_generation(self, client):
        client.post("/api/onboarding/generate/stream", headers=HEADERS)

        response = client.get("/api/onboarding/draft", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["nutrition_json"] == NUTRITION_PLAN

    def test_missing_draft_returns_404(self, client):
        assert client.get("/api/onboarding/draft", headers=HEADERS).status_code == 404

    def test_expired_draft_returns_404(self, client, memory_storage):
        drafts = ProgramDraftStore(memory_storage, TEST_DEVICE_ID)
        asyncio.run(drafts.save(ProgramDraft(days=1, created_at=1)))
        assert client.get("/api/onboarding/draft", headers=HEADERS).status_code == 404

    def test_delete_draft(self, client):
        client.post("/api/onboarding/generate/stream", headers=HEADERS)

        response = client.delete("/api/onboarding/draft", headers=HEADERS)

        assert response.status_code == 204
        assert client.get("/api/onboarding/draft", headers=HEADERS).status_code == 404


class TestStorageCleanup:
    def test_cleanup_removes_only_this_devices_draft(self, client, memory_storage):
        own_draft = ProgramDraftStore(memory_storage, TEST_DEVICE_ID).key
        other_draft = ProgramDraftStore(memory_storage, "device-other").key
        asyncio.run(memory_storage.set_item(own_draft, "{}"))
        asyncio.run(memory_storage.set_item(other_draft, "{}"))

        response = client.post("/api/onboarding/storage/cleanup", headers=HEADERS)

        data = response.json()
        assert data["removed"] == 1
        assert data["removed_keys"] == [own_draft]
        assert data["failed_keys"] == []
        assert asyncio.run(memory_storage.get_item(other_draft)) == "{}"

    def test_cleanup_keeps_other_devices_sessions(self, client, memory_storage):
        client.post("/api/onboarding/generate/stream", headers={"X-Device-Id": "device-other"})

        response = client.post("/api/onboarding/storage/cleanup", headers=HEADERS)

        assert response.json()["removed_keys"] == []
        other = client.get("/api/onboarding/session", headers={"X-Device-Id": "device-other"})
        assert other.status_code == 200
