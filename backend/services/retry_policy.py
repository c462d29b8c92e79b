"""Soft-timeout vs hard-failure classification and per-artifact retry rules.

A soft timeout means the deadline fired before the endpoint answered. For
nutrition this is recoverable: the sub-plan stays ``generating`` and the call
is retried once after a short backoff. Anything else is a hard failure and is
recorded on the sub-plan without an automatic retry.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum

import httpx

from backend.services.generation_client import GenerationTimeoutError


class FailureKind(str, Enum):
    SOFT_TIMEOUT = "soft-timeout"
    HARD_FAILURE = "hard-failure"


def classify_failure(exc: BaseException) -> FailureKind:
    """Classify a runner exception. Cancellation is never passed in here."""
    if isinstance(exc, asyncio.CancelledError):
        raise TypeError("cancellation is not a generation failure")
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException, GenerationTimeoutError)):
        return FailureKind.SOFT_TIMEOUT
    return FailureKind.HARD_FAILURE


@dataclass(frozen=True)
class RetryPolicy:
    """How a runner reacts to failures.

    soft_retries: automatic retries after a soft timeout.
    backoff_seconds: pause before each soft retry.
    timeout_is_failure: record a timeout as ``failed`` instead of keeping the
        sub-plan ``generating``.
    """

    soft_retries: int = 0
    backoff_seconds: float = 0.0
    timeout_is_failure: bool = False

    def should_retry(self, kind: FailureKind, attempt: int) -> bool:
        """``attempt`` is 1-based: the attempt that just failed."""
        if kind != FailureKind.SOFT_TIMEOUT or self.timeout_is_failure:
            return False
        return attempt <= self.soft_retries


NUTRITION_POLICY = RetryPolicy(soft_retries=1, backoff_seconds=1.5)
OPTIONAL_ARTIFACT_POLICY = RetryPolicy(timeout_is_failure=True)


def nutrition_policy(soft_retries: int, backoff_seconds: float) -> RetryPolicy:
    return RetryPolicy(soft_retries=soft_retries, backoff_seconds=backoff_seconds)
