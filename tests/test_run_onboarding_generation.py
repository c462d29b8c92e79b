"""Tests for the onboarding generation CLI."""

import json

import pytest

from backend.services.plan_session import DEVICE_ID_KEY, PlanSessionStore, SessionStatus
from backend.settings import Settings
from backend.storage import FileStorage
from scripts.run_onboarding_generation import load_profile, parse_args, run
from tests.conftest import TEST_DEVICE_ID


@pytest.fixture
def settings():
    return Settings(environment="test", _env_file=None)


def _printed_events(capsys):
    return [json.loads(line) for line in capsys.readouterr().out.splitlines() if line]


class TestParseArgs:
    def test_defaults(self):
        args = parse_args([])
        assert args.profile is None
        assert not args.no_workouts
        assert not args.retry_nutrition
        assert args.log_level == "INFO"

    def test_flags(self, tmp_path):
        args = parse_args([
            "--storage-dir", str(tmp_path),
            "--device-id", TEST_DEVICE_ID,
            "--no-workouts",
            "--restart",
        ])
        assert args.storage_dir == str(tmp_path)
        assert args.device_id == TEST_DEVICE_ID
        assert args.no_workouts
        assert args.restart


class TestLoadProfile:
    def test_reads_json(self, tmp_path):
        path = tmp_path / "profile.json"
        path.write_text(json.dumps({"gender": "female", "age": 29, "unknown": 1}))
        profile = load_profile(path)
        assert profile.gender == "female"
        assert profile.age == 29

    def test_none(self):
        assert load_profile(None) is None


class TestRun:
    @pytest.mark.asyncio
    async def test_full_run_persists_to_storage_dir(self, tmp_path, settings, generation_client, capsys):
        args = parse_args(["--storage-dir", str(tmp_path), "--device-id", TEST_DEVICE_ID])

        code = await run(args, settings, client=generation_client)

        assert code == 0
        events = _printed_events(capsys)
        assert events[0]["event"] == "stage"
        assert events[-1]["event"] == "complete"
        session = await PlanSessionStore(FileStorage(str(tmp_path)), TEST_DEVICE_ID).read()
        assert session.status == SessionStatus.DONE

    @pytest.mark.asyncio
    async def test_second_run_resumes(self, tmp_path, settings, generation_client, capsys):
        args = parse_args(["--storage-dir", str(tmp_path), "--device-id", TEST_DEVICE_ID])
        await run(args, settings, client=generation_client)
        capsys.readouterr()

        await run(args, settings, client=generation_client)

        events = _printed_events(capsys)
        assert events[-1]["data"]["resumed"] is True
        assert generation_client.generate_nutrition.await_count == 1

    @pytest.mark.asyncio
    async def test_device_id_is_persisted(self, tmp_path, settings, generation_client):
        args = parse_args(["--storage-dir", str(tmp_path), "--no-workouts"])

        await run(args, settings, client=generation_client)

        assert await FileStorage(str(tmp_path)).get_item(DEVICE_ID_KEY) is not None
        generation_client.generate_workout.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_continue_anyway(self, tmp_path, settings, generation_client, capsys):
        args = parse_args(["--storage-dir", str(tmp_path), "--device-id", TEST_DEVICE_ID, "--continue-anyway"])

        code = await run(args, settings, client=generation_client)

        assert code == 0
        assert _printed_events(capsys) == [{"event": "continue", "draft_saved": True, "conflict": False}]
        generation_client.generate_nutrition.assert_not_awaited()
