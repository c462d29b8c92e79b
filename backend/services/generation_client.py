"""HTTP client for the three onboarding generation endpoints.

  POST /api/ai/nutrition/onboarding    -> {ok, plan, calories, fingerprint}
  POST /api/ai/workout                 -> {plan} (or the plan itself)
  POST /api/journey/stages/generate    -> {ok, stages[], count}

Deadlines are enforced by the task runners; this client only turns transport
and payload problems into typed exceptions.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from backend.services.request_builders import NutritionRequest, profile_fingerprint

logger = logging.getLogger(__name__)

NUTRITION_PATH = "/api/ai/nutrition/onboarding"
WORKOUT_PATH = "/api/ai/workout"
STAGES_PATH = "/api/journey/stages/generate"


class GenerationError(Exception):
    """Base class for generation endpoint failures."""
    pass


class GenerationHTTPError(GenerationError):
    """Endpoint answered with a non-2xx status."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class GenerationResponseError(GenerationError):
    """Endpoint answered 2xx with an unusable body."""
    pass


class GenerationTimeoutError(GenerationError):
    """Transport-level timeout while talking to an endpoint."""
    pass


class GenerationNetworkError(GenerationError):
    """Connection failure before any response arrived."""
    pass


@dataclass
class NutritionResult:
    plan: Any
    calories: Optional[float]
    fingerprint: str


def _safe_json(resp: httpx.Response) -> Optional[Any]:
    try:
        return resp.json()
    except (json.JSONDecodeError, ValueError):
        return None


class GenerationClient:
    """Calls the generation endpoints of one deployment."""

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._auth_token = auth_token
        self._http = http_client

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        return headers

    async def _post(self, path: str, body: Dict[str, Any]) -> httpx.Response:
        url = f"{self._base_url}{path}"
        try:
            if self._http is not None:
                return await self._http.post(url, json=body, headers=self._headers())
            async with httpx.AsyncClient(timeout=None) as client:
                return await client.post(url, json=body, headers=self._headers())
        except httpx.TimeoutException as e:
            raise GenerationTimeoutError(f"timeout calling {path}: {e}") from e
        except httpx.HTTPError as e:
            raise GenerationNetworkError(f"network error calling {path}: {e}") from e

    async def generate_nutrition(self, request: NutritionRequest) -> NutritionResult:
        fingerprint = profile_fingerprint(request)
        logger.info("Calling nutrition endpoint (fingerprint %s)", fingerprint[:12])

        resp = await self._post(NUTRITION_PATH, request.model_dump())
        if resp.status_code >= 400:
            logger.error("Nutrition API error: %s %s", resp.status_code, resp.text)
            raise GenerationHTTPError(
                f"Nutrition API failed: {resp.status_code} {resp.text}", resp.status_code
            )

        data = _safe_json(resp)
        if not isinstance(data, dict) or not data.get("ok"):
            message = data.get("message") if isinstance(data, dict) else None
            raise GenerationResponseError(message or "Nutrition generation failed")
        if data.get("plan") is None:
            raise GenerationResponseError("Nutrition response has no plan")

        return NutritionResult(
            plan=data.get("plan"),
            calories=data.get("calories") or None,
            fingerprint=data.get("fingerprint") or fingerprint,
        )

    async def generate_workout(self, request: Dict[str, Any]) -> Any:
        resp = await self._post(WORKOUT_PATH, request)
        if resp.status_code >= 400:
            raise GenerationHTTPError(
                f"Workout API failed: {resp.status_code} {resp.text}", resp.status_code
            )
        data = _safe_json(resp)
        if data is None:
            raise GenerationResponseError("Workout API returned an unreadable body")
        plan = data.get("plan") if isinstance(data, dict) and data.get("plan") else data
        logger.info("Workout plan generated")
        return plan

    async def generate_stages(self, avatar: Dict[str, Any]) -> List[Any]:
        resp = await self._post(STAGES_PATH, {"avatar": avatar})
        if resp.status_code >= 400:
            raise GenerationHTTPError(
                f"Stages generation failed: {resp.status_code} {resp.reason_phrase}",
                resp.status_code,
            )
        data = _safe_json(resp)
        if not isinstance(data, dict) or not data.get("ok"):
            message = data.get("message") if isinstance(data, dict) else None
            raise GenerationResponseError(message or "Stages generation failed")
        stages = data.get("stages")
        if not isinstance(stages, list):
            raise GenerationResponseError("Stages data is invalid or missing")
        logger.info("Built %d journey stages", len(stages))
        return stages
