"""Shared fixtures for onboarding plan generation tests."""

from unittest.mock import AsyncMock

import pytest

from backend.services.generation_client import GenerationClient, NutritionResult
from backend.services.plan_session import PlanSessionStore
from backend.services.program_draft import ProgramDraftStore
from backend.storage.memory import InMemoryStorage

TEST_DEVICE_ID = "device-1700000000000-abc1234"
START_MS = 1_700_000_000_000

NUTRITION_PLAN = {"meals": [{"name": "Oats", "kcal": 450}], "days": 1}
WORKOUT_PLAN = {"weeks": [{"days": ["push", "pull", "legs"]}]}
STAGES = [{"id": "stage-1", "title": "Foundations"}, {"id": "stage-2", "title": "Build"}]


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def store(storage, clock) -> PlanSessionStore:
    return PlanSessionStore(storage, TEST_DEVICE_ID, clock=clock)


@pytest.fixture
def drafts(storage) -> ProgramDraftStore:
    return ProgramDraftStore(storage, TEST_DEVICE_ID)


@pytest.fixture
def generation_client() -> AsyncMock:
    """GenerationClient double that succeeds for every artifact."""
    client = AsyncMock(spec=GenerationClient)
    client.generate_nutrition.return_value = NutritionResult(
        plan=NUTRITION_PLAN, calories=1800, fingerprint="abc123def4567890"
    )
    client.generate_workout.return_value = WORKOUT_PLAN
    client.generate_stages.return_value = STAGES
    return client
