from __future__ import annotations

import json
import socket
import sqlite3
from typing import Any, Literal

ErrorCode = Literal[
    "PROMPT_TOO_LONG",
    "TOO_MANY_FILES",
    "INVALID_REQUEST",
    "NOT_FOUND",
    "INSUFFICIENT_CREDITS",
    "OPENAI_KEY_MISSING",
    "SERVER_MISCONFIGURED",
    "OPENAI_TIMEOUT",
    "OPENAI_INVALID_STRUCTURED_OUTPUT",
    "OPENAI_REQUEST_FAILED",
    "PLANS_SCHEMA_MISMATCH",
    "CREDITS_CHARGE_FAILED",
    "EXTRACTION_FAILED",
    "FILE_UNSUPPORTED",
    "STORAGE_ERROR",
    "UNKNOWN_ERROR",
]

ERROR_HTTP_STATUS: dict[ErrorCode, int] = {
    "PROMPT_TOO_LONG": 400,
    "TOO_MANY_FILES": 400,
    "INVALID_REQUEST": 400,
    "NOT_FOUND": 404,
    "INSUFFICIENT_CREDITS": 402,
    "OPENAI_KEY_MISSING": 500,
    "SERVER_MISCONFIGURED": 500,
    "OPENAI_TIMEOUT": 500,
    "OPENAI_INVALID_STRUCTURED_OUTPUT": 500,
    "OPENAI_REQUEST_FAILED": 500,
    "PLANS_SCHEMA_MISMATCH": 500,
    "CREDITS_CHARGE_FAILED": 500,
    "EXTRACTION_FAILED": 500,
    "FILE_UNSUPPORTED": 400,
    "STORAGE_ERROR": 500,
    "UNKNOWN_ERROR": 500,
}

ERROR_FRIENDLY_MESSAGES: dict[ErrorCode, str] = {
    "PROMPT_TOO_LONG": "Prompt is too long. Shorten it and try again.",
    "TOO_MANY_FILES": "Too many files attached. Remove some and try again.",
    "INVALID_REQUEST": "Request is missing required data.",
    "NOT_FOUND": "Requested item was not found.",
    "INSUFFICIENT_CREDITS": "Not enough credits. Top up to continue.",
    "OPENAI_KEY_MISSING": "Generation service is not configured.",
    "SERVER_MISCONFIGURED": "Server configuration error. Please contact support.",
    "OPENAI_TIMEOUT": "Generation took too long. Please retry.",
    "OPENAI_INVALID_STRUCTURED_OUTPUT": (
        "Model returned an unusable answer. Please retry."
    ),
    "OPENAI_REQUEST_FAILED": "Generation service request failed. Please retry.",
    "PLANS_SCHEMA_MISMATCH": (
        "Storage schema is out of date. An operator must apply migrations."
    ),
    "CREDITS_CHARGE_FAILED": "Charging credits failed. You were not charged.",
    "EXTRACTION_FAILED": "Text could not be extracted from this file.",
    "FILE_UNSUPPORTED": "Uploaded file format is not supported.",
    "STORAGE_ERROR": "Storage operation failed while saving data.",
    "UNKNOWN_ERROR": "Unexpected error occurred.",
}

_SCHEMA_MISMATCH_MARKERS = (
    "no such table",
    "no such column",
    "has no column named",
    "pgrst204",
    "does not exist",
)


class ExamlyError(Exception):
    """Base error carrying a stable error code for the API boundary."""

    default_code: ErrorCode = "UNKNOWN_ERROR"

    def __init__(self, message: str = "", *, code: ErrorCode | None = None) -> None:
        self.code: ErrorCode = code or self.default_code
        super().__init__(message or ERROR_FRIENDLY_MESSAGES[self.code])

    @property
    def http_status(self) -> int:
        return ERROR_HTTP_STATUS[self.code]

    @property
    def friendly_message(self) -> str:
        return ERROR_FRIENDLY_MESSAGES[self.code]


class InputError(ExamlyError):
    """Caller-fixable request problem; raised before any side effect."""

    default_code: ErrorCode = "INVALID_REQUEST"


class InsufficientCreditsError(ExamlyError):
    default_code: ErrorCode = "INSUFFICIENT_CREDITS"


class LedgerUnavailableError(ExamlyError):
    """Raised when the credit ledger cannot be read or written."""

    default_code: ErrorCode = "SERVER_MISCONFIGURED"


class SchemaMismatchError(ExamlyError):
    """Raised when persisted tables do not match the expected columns."""

    default_code: ErrorCode = "PLANS_SCHEMA_MISMATCH"


class LLMKeyMissingError(ExamlyError):
    default_code: ErrorCode = "OPENAI_KEY_MISSING"


class StructuredOutputError(ExamlyError):
    """Raised when model text cannot be parsed or fails schema validation."""

    default_code: ErrorCode = "OPENAI_INVALID_STRUCTURED_OUTPUT"


class GenerationFailedError(ExamlyError):
    """Terminal generation failure; the generation row is already marked failed."""

    def __init__(
        self,
        message: str = "",
        *,
        code: ErrorCode | None = None,
        generation_id: str | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.generation_id = generation_id


class ExtractionFailed(ExamlyError):
    default_code: ErrorCode = "EXTRACTION_FAILED"


class UnsupportedFileTypeError(ExtractionFailed):
    default_code: ErrorCode = "FILE_UNSUPPORTED"


def classify_llm_error(error: Exception) -> ErrorCode:
    if isinstance(error, ExamlyError):
        return error.code
    if isinstance(error, json.JSONDecodeError):
        return "OPENAI_INVALID_STRUCTURED_OUTPUT"
    if is_timeout_exception(error):
        return "OPENAI_TIMEOUT"
    if is_schema_mismatch_exception(error):
        return "PLANS_SCHEMA_MISMATCH"
    if is_storage_error_exception(error):
        return "STORAGE_ERROR"
    return "OPENAI_REQUEST_FAILED"


def classify_storage_error(error: Exception) -> ErrorCode:
    if isinstance(error, ExamlyError):
        return error.code
    if is_schema_mismatch_exception(error):
        return "PLANS_SCHEMA_MISMATCH"
    if is_storage_error_exception(error):
        return "STORAGE_ERROR"
    return "UNKNOWN_ERROR"


def is_timeout_exception(error: Exception) -> bool:
    if isinstance(error, (TimeoutError, socket.timeout)):
        return True

    class_name = error.__class__.__name__.lower()
    message = str(error).lower()
    return "timeout" in class_name or "timed out" in message


def is_retryable_ocr_exception(error: Exception) -> bool:
    if isinstance(error, ExamlyError):
        return False
    status_code = extract_http_status_code(error)
    if status_code is not None and is_retryable_status_code(status_code):
        return True

    if isinstance(error, (ConnectionError, TimeoutError, socket.timeout)):
        return True

    if is_timeout_exception(error):
        return True

    class_name = error.__class__.__name__.lower()
    message = str(error).lower()
    if "connection" in class_name or "connection" in message:
        return True
    if "network" in class_name or "network" in message:
        return True
    return False


def is_retryable_llm_exception(error: Exception) -> bool:
    status_code = extract_http_status_code(error)
    return status_code is not None and is_retryable_status_code(status_code)


def is_retryable_status_code(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code <= 599


def is_schema_mismatch_exception(error: Exception) -> bool:
    if isinstance(error, SchemaMismatchError):
        return True
    if not isinstance(error, sqlite3.OperationalError):
        return False
    message = str(error).lower()
    return any(marker in message for marker in _SCHEMA_MISMATCH_MARKERS)


def is_storage_error_exception(error: Exception) -> bool:
    if isinstance(error, sqlite3.Error):
        return True
    if isinstance(error, OSError):
        return True
    return False


def extract_http_status_code(error: Exception) -> int | None:
    """Status of an upstream HTTP response carried by ``error``, if any."""
    if isinstance(error, ExamlyError):
        # Its http_status is what this service answers with, not an upstream reply.
        return None
    for field_name in ("status_code", "status"):
        value = getattr(error, field_name, None)
        parsed = _to_int_or_none(value)
        if parsed is not None:
            return parsed

    response = getattr(error, "response", None)
    if response is not None:
        parsed = _to_int_or_none(getattr(response, "status_code", None))
        if parsed is not None:
            return parsed

    return None


def build_error_details(error: Exception) -> str:
    details: list[str] = [f"{error.__class__.__name__}: {error}"]
    status_code = extract_http_status_code(error)
    if status_code is not None:
        details.append(f"status_code={status_code}")

    for field_name in ("body", "response_body", "payload"):
        value = getattr(error, field_name, None)
        if value is None:
            continue
        details.append(f"{field_name}={value}")
    return "\n".join(details)


def _to_int_or_none(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
