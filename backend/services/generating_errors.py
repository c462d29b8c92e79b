"""User-facing error catalog for the generation flow.

Maps exceptions raised anywhere in the pipeline to a GeneratingError with a
title, a description, a severity level and the actions the user can take.
Critical errors block progress; warning and info errors are recoverable.
"""

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from backend.services.generation_client import (
    GenerationHTTPError,
    GenerationNetworkError,
    GenerationResponseError,
    GenerationTimeoutError,
)
from backend.services.network_status import NetworkOfflineError
from backend.storage.base import (
    StoragePermissionError,
    StorageQuotaExceededError,
    StorageUnavailableError,
)


class GeneratingErrorType(str, Enum):
    NETWORK_OFFLINE = "network_offline"
    NETWORK_TIMEOUT = "network_timeout"
    NETWORK_ERROR = "network_error"
    STORAGE_QUOTA = "storage_quota"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    STORAGE_PERMISSION = "storage_permission"
    NAVIGATION_FAILED = "navigation_failed"
    DRAFT_SAVE_FAILED = "draft_save_failed"
    SESSION_CORRUPTED = "session_corrupted"
    API_ERROR = "api_error"
    TIMEOUT = "timeout"
    ABORT = "abort"
    PARSE_ERROR = "parse_error"
    UNKNOWN = "unknown"


class ErrorLevel(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class ActionType(str, Enum):
    RETRY = "retry"
    CONTINUE = "continue"
    CANCEL = "cancel"
    CLEANUP = "cleanup"
    REPORT = "report"


@dataclass(frozen=True)
class ErrorAction:
    label: str
    type: ActionType


@dataclass(frozen=True)
class GeneratingError:
    type: GeneratingErrorType
    title: str
    desc: str
    level: ErrorLevel
    actions: List[ErrorAction] = field(default_factory=list)


_RETRY = ErrorAction("Try again", ActionType.RETRY)
_CONTINUE = ErrorAction("Continue anyway", ActionType.CONTINUE)
_REPORT = ErrorAction("Report a problem", ActionType.REPORT)
_CLEANUP = ErrorAction("Clear old drafts", ActionType.CLEANUP)


def _entry(t, title, desc, level, *actions) -> GeneratingError:
    return GeneratingError(t, title, desc, level, list(actions))


_T = GeneratingErrorType
_C, _W = ErrorLevel.CRITICAL, ErrorLevel.WARNING

ERROR_MESSAGES: Dict[GeneratingErrorType, GeneratingError] = {
    e.type: e
    for e in (
        _entry(_T.NETWORK_OFFLINE, "No internet connection",
               "Check your network connection and try again.", _C, _RETRY),
        _entry(_T.NETWORK_TIMEOUT, "Timed out",
               "The server did not answer in time. Try again, or continue without waiting.",
               _W, _RETRY, _CONTINUE),
        _entry(_T.NETWORK_ERROR, "Connection problem",
               "Something went wrong talking to the server. Try again.", _C, _RETRY, _REPORT),
        _entry(_T.STORAGE_QUOTA, "Storage full",
               "Device storage is full. Clear old drafts or free up space.", _C, _CLEANUP, _RETRY),
        _entry(_T.STORAGE_UNAVAILABLE, "Local storage unavailable",
               "Private browsing may be on or the device may be full.", _C, _CLEANUP, _RETRY),
        _entry(_T.STORAGE_PERMISSION, "No storage permission",
               "Access to local storage is blocked. Check your settings.", _C, _RETRY),
        _entry(_T.NAVIGATION_FAILED, "Navigation failed",
               "We could not move to the next step. Try again.", _W, _RETRY,
               ErrorAction("Go to my plan", ActionType.CONTINUE)),
        _entry(_T.DRAFT_SAVE_FAILED, "Could not save your plan",
               "Saving your plan failed. Device storage may be full.", _C, _RETRY, _REPORT),
        _entry(_T.SESSION_CORRUPTED, "Generation data is damaged",
               "Something is wrong with the saved generation data. We need to start over.",
               _C, ErrorAction("Start over", ActionType.RETRY)),
        _entry(_T.API_ERROR, "Server error",
               "The server hit an error. Try again later.", _C, _RETRY, _REPORT),
        _entry(_T.TIMEOUT, "Timed out",
               "That took too long. Try again.", _W, _RETRY, _CONTINUE),
        _entry(_T.ABORT, "Cancelled",
               "The operation was cancelled. You can try again.", _W, _RETRY),
        _entry(_T.PARSE_ERROR, "Could not read the response",
               "The server response could not be processed. Try again.", _C, _RETRY, _REPORT),
        _entry(_T.UNKNOWN, "Unexpected error",
               "Something unexpected happened. Try again or report the problem.",
               _C, _RETRY, _REPORT),
    )
}


def get_error_message(error_type: GeneratingErrorType) -> GeneratingError:
    return ERROR_MESSAGES[GeneratingErrorType(error_type)]


def map_error(error: Optional[BaseException], operation: Optional[str] = None) -> GeneratingError:
    """Map an exception to its catalog entry.

    ``operation`` (network, storage, navigation, parsing) disambiguates
    generic exceptions that carry no type information of their own.
    """
    if error is None:
        return ERROR_MESSAGES[_T.UNKNOWN]

    message = str(error).lower()

    if isinstance(error, NetworkOfflineError):
        return ERROR_MESSAGES[_T.NETWORK_OFFLINE]
    if isinstance(error, StorageQuotaExceededError):
        return ERROR_MESSAGES[_T.STORAGE_QUOTA]
    if isinstance(error, StoragePermissionError):
        return ERROR_MESSAGES[_T.STORAGE_PERMISSION]
    if isinstance(error, StorageUnavailableError):
        return ERROR_MESSAGES[_T.STORAGE_UNAVAILABLE]
    if isinstance(error, (GenerationTimeoutError, httpx.TimeoutException)):
        return ERROR_MESSAGES[_T.NETWORK_TIMEOUT]
    if isinstance(error, asyncio.CancelledError):
        return ERROR_MESSAGES[_T.ABORT]
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        if operation == "network":
            return ERROR_MESSAGES[_T.NETWORK_TIMEOUT]
        return ERROR_MESSAGES[_T.TIMEOUT]
    if isinstance(error, (GenerationNetworkError, httpx.TransportError)):
        return ERROR_MESSAGES[_T.NETWORK_ERROR]
    if isinstance(error, (json.JSONDecodeError, ValidationError)):
        return ERROR_MESSAGES[_T.PARSE_ERROR]
    if isinstance(error, (GenerationHTTPError, GenerationResponseError, httpx.HTTPStatusError)):
        return ERROR_MESSAGES[_T.API_ERROR]

    if "timeout" in message or "timed out" in message:
        return ERROR_MESSAGES[_T.TIMEOUT]
    if "storage" in message:
        if "quota" in message or "full" in message:
            return ERROR_MESSAGES[_T.STORAGE_QUOTA]
        return ERROR_MESSAGES[_T.STORAGE_UNAVAILABLE]
    if "json" in message:
        return ERROR_MESSAGES[_T.PARSE_ERROR]
    if "api" in message or "server" in message or "status" in message:
        return ERROR_MESSAGES[_T.API_ERROR]

    if operation == "storage":
        return ERROR_MESSAGES[_T.STORAGE_UNAVAILABLE]
    if operation == "network":
        return ERROR_MESSAGES[_T.NETWORK_ERROR]
    if operation == "navigation":
        return ERROR_MESSAGES[_T.NAVIGATION_FAILED]
    if operation == "parsing":
        return ERROR_MESSAGES[_T.PARSE_ERROR]
    return ERROR_MESSAGES[_T.UNKNOWN]


def is_recoverable_error(error: GeneratingError) -> bool:
    return error.level in (ErrorLevel.WARNING, ErrorLevel.INFO)


def should_block_progress(error: GeneratingError) -> bool:
    return error.level == ErrorLevel.CRITICAL


def to_event_payload(error: GeneratingError, stage: str, detail: Optional[str] = None) -> Dict[str, Any]:
    """Body of an ``error`` pipeline event."""
    payload: Dict[str, Any] = {
        "stage": stage,
        "type": error.type.value,
        "title": error.title,
        "message": error.desc,
        "level": error.level.value,
        "recoverable": is_recoverable_error(error),
        "actions": [{"label": a.label, "type": a.type.value} for a in error.actions],
    }
    if detail:
        payload["detail"] = detail
    return payload
