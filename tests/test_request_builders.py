"""Tests for generation request builders."""

from datetime import date

import pytest

from backend.services.request_builders import (
    DEFAULT_NUTRITION_REQUEST,
    MissingProfileFieldsError,
    OnboardingProfile,
    build_nutrition_request,
    build_stages_avatar,
    build_workout_request,
    nutrition_request_or_default,
    profile_fingerprint,
)

SCENARIO_PROFILE = OnboardingProfile(
    gender="female",
    age=29,
    height_cm=165,
    weight_kg=68,
    target_weight_kg=60,
    activity="light",
    goal="loss",
    diet="none",
)


class TestBuildNutritionRequest:
    def test_complete_profile(self):
        req = build_nutrition_request(SCENARIO_PROFILE, days=1)
        assert req.gender == "female"
        assert req.age == 29
        assert req.target_weight_kg == 60
        assert req.activity_level == "light"
        assert req.goal == "loss"
        assert req.days == 1

    def test_missing_fields_listed(self):
        with pytest.raises(MissingProfileFieldsError) as exc_info:
            build_nutrition_request(OnboardingProfile(gender="male", age=30))
        missing = exc_info.value.missing
        assert "height_cm" in missing
        assert "goal" in missing
        assert "gender" not in missing
        assert exc_info.value.code == "CLIENT_MISSING_FIELDS"

    def test_days_out_of_range(self):
        with pytest.raises(MissingProfileFieldsError) as exc_info:
            build_nutrition_request(SCENARIO_PROFILE, days=15)
        assert exc_info.value.missing == ["days"]

    def test_goal_falls_back_to_goals_list(self):
        profile = SCENARIO_PROFILE.model_copy(update={"goal": None, "goals": ["gain", "tone"]})
        assert build_nutrition_request(profile).goal == "gain"

    def test_diet_defaults_to_none(self):
        profile = SCENARIO_PROFILE.model_copy(update={"diet": None})
        assert build_nutrition_request(profile).diet_type == "none"


class TestDefaults:
    def test_incomplete_profile_uses_defaults_with_days(self):
        req = nutrition_request_or_default(OnboardingProfile(gender="female"), days=1)
        assert req == DEFAULT_NUTRITION_REQUEST.model_copy(update={"days": 1})
        assert req.gender == "male"

    def test_no_profile(self):
        assert nutrition_request_or_default(None).goal == "recomp"

    def test_complete_profile_is_kept(self):
        assert nutrition_request_or_default(SCENARIO_PROFILE).gender == "female"


class TestResolvedAge:
    def test_from_birthdate_before_birthday(self):
        profile = OnboardingProfile(birthdate=date(1995, 12, 31))
        assert profile.resolved_age(today=date(2025, 6, 1)) == 29

    def test_from_birthdate_after_birthday(self):
        profile = OnboardingProfile(birthdate=date(1995, 1, 1))
        assert profile.resolved_age(today=date(2025, 6, 1)) == 30

    def test_non_positive_age_is_missing(self):
        assert OnboardingProfile(age=0).resolved_age() is None


class TestFingerprint:
    def test_stable_and_short(self):
        req = build_nutrition_request(SCENARIO_PROFILE)
        assert profile_fingerprint(req) == profile_fingerprint(req.model_copy())
        assert len(profile_fingerprint(req)) == 16

    def test_normalizes_case_and_whitespace(self):
        a = build_nutrition_request(SCENARIO_PROFILE)
        b = a.model_copy(update={"gender": "  Female "})
        assert profile_fingerprint(a) == profile_fingerprint(b)

    def test_differs_by_input(self):
        a = build_nutrition_request(SCENARIO_PROFILE)
        b = a.model_copy(update={"weight_kg": 70})
        assert profile_fingerprint(a) != profile_fingerprint(b)


class TestWorkoutAndStages:
    def test_workout_defaults(self):
        req = build_workout_request(None)
        assert req["gender"] == "male"
        assert req["age"] == 25
        assert req["heightCm"] == 170
        assert req["goal"] == "muscle_gain"
        assert req["experienceLevel"] == "intermediate"
        assert req["workoutsPerWeek"] == 3

    def test_workout_from_profile(self):
        req = build_workout_request(SCENARIO_PROFILE)
        assert req["gender"] == "female"
        assert req["weight"] == 68

    def test_stages_avatar_omits_unknown_traits(self):
        avatar = build_stages_avatar(OnboardingProfile(goals=["loss"]))
        assert avatar == {"goal": "loss", "gender": "male"}

    def test_stages_avatar_defaults_goal(self):
        assert build_stages_avatar(None)["goal"] == "maintain"
