"""Request payloads for the generation endpoints, built from onboarding answers.

Nutrition is strict: ``build_nutrition_request`` refuses incomplete profiles
and lists what is missing. The pipeline itself never blocks on that and uses
``nutrition_request_or_default`` instead. Workout and stages payloads fill
gaps with fixed defaults.
"""

import hashlib
import json
import logging
from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from backend.services.plan_session import now_ms

logger = logging.getLogger(__name__)

MIN_DAYS = 1
MAX_DAYS = 14


class MissingProfileFieldsError(ValueError):
    """Raised when a nutrition request cannot be built from the profile."""

    code = "CLIENT_MISSING_FIELDS"

    def __init__(self, missing: List[str]):
        self.missing = missing
        super().__init__(
            f"Missing required fields for nutrition plan: {', '.join(missing)}"
        )


class OnboardingProfile(BaseModel):
    """Answers collected by the onboarding wizard. Every field is optional."""

    model_config = ConfigDict(extra="ignore")

    gender: Optional[str] = None
    birthdate: Optional[date] = None
    age: Optional[int] = None
    height_cm: Optional[float] = None
    weight_kg: Optional[float] = None
    target_weight_kg: Optional[float] = None
    activity: Optional[str] = None
    goal: Optional[str] = None
    goals: List[str] = Field(default_factory=list)
    diet: Optional[str] = None
    experience: Optional[str] = None
    training_frequency_actual: Optional[str] = None

    def resolved_age(self, today: Optional[date] = None) -> Optional[int]:
        if self.age is not None:
            return self.age if self.age > 0 else None
        if self.birthdate is None:
            return None
        today = today or date.today()
        years = today.year - self.birthdate.year
        if (today.month, today.day) < (self.birthdate.month, self.birthdate.day):
            years -= 1
        return years if years > 0 else None

    def primary_goal(self) -> Optional[str]:
        if self.goal:
            return self.goal
        return self.goals[0] if self.goals else None


class NutritionRequest(BaseModel):
    gender: str
    age: int
    height_cm: float
    weight_kg: float
    target_weight_kg: float
    activity_level: str
    goal: str
    diet_type: str
    days: int


DEFAULT_NUTRITION_REQUEST = NutritionRequest(
    gender="male",
    age=25,
    height_cm=170,
    weight_kg=70,
    target_weight_kg=70,
    activity_level="moderate",
    goal="recomp",
    diet_type="none",
    days=1,
)


def _is_positive(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool) and v > 0


def _is_text(v: Any) -> bool:
    return isinstance(v, str) and bool(v.strip())


def build_nutrition_request(profile: OnboardingProfile, days: int = 1) -> NutritionRequest:
    """Build a complete nutrition payload or raise MissingProfileFieldsError."""
    body: Dict[str, Any] = {
        "gender": profile.gender,
        "age": profile.resolved_age(),
        "height_cm": profile.height_cm,
        "weight_kg": profile.weight_kg,
        "target_weight_kg": profile.target_weight_kg,
        "activity_level": profile.activity,
        "goal": profile.primary_goal(),
        "diet_type": profile.diet or "none",
        "days": days,
    }

    missing = []
    for name in ("gender", "activity_level", "goal", "diet_type"):
        if not _is_text(body[name]):
            missing.append(name)
    for name in ("age", "height_cm", "weight_kg", "target_weight_kg"):
        if not _is_positive(body[name]):
            missing.append(name)
    if not isinstance(days, int) or not MIN_DAYS <= days <= MAX_DAYS:
        missing.append("days")

    if missing:
        logger.warning("Nutrition request missing fields: %s", missing)
        raise MissingProfileFieldsError(missing)
    return NutritionRequest(**body)


def nutrition_request_or_default(profile: Optional[OnboardingProfile], days: int = 1) -> NutritionRequest:
    """Like build_nutrition_request, but never blocks: falls back to defaults."""
    try:
        return build_nutrition_request(profile or OnboardingProfile(), days)
    except MissingProfileFieldsError as e:
        logger.warning("Using default nutrition request; missing %s", e.missing)
        return DEFAULT_NUTRITION_REQUEST.model_copy(update={"days": days})


def profile_fingerprint(request: NutritionRequest) -> str:
    """Stable short hash identifying the inputs a nutrition plan was built from."""
    try:
        normalized = {
            k: (v.strip().lower() if isinstance(v, str) else v)
            for k, v in request.model_dump().items()
        }
        payload = json.dumps(normalized, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]
    except (TypeError, ValueError) as e:
        logger.warning("Fingerprint failed, using fallback id: %s", e)
        return f"fallback-{now_ms()}"


def build_workout_request(profile: Optional[OnboardingProfile]) -> Dict[str, Any]:
    profile = profile or OnboardingProfile()
    return {
        "gender": profile.gender or "male",
        "age": profile.resolved_age() or 25,
        "heightCm": profile.height_cm or 170,
        "weight": profile.weight_kg or 70,
        "goal": profile.primary_goal() or "muscle_gain",
        "experienceLevel": profile.experience or "intermediate",
        "workoutsPerWeek": 3,
        "equipment": [],
        "notes": "",
    }


def build_stages_avatar(profile: Optional[OnboardingProfile]) -> Dict[str, Any]:
    """Avatar for the stages endpoint; unknown optional traits are left out."""
    profile = profile or OnboardingProfile()
    avatar = {
        "goal": profile.primary_goal() or "maintain",
        "diet": profile.diet,
        "frequency": profile.training_frequency_actual,
        "experience": profile.experience,
        "gender": profile.gender or "male",
    }
    return {k: v for k, v in avatar.items() if v is not None}
