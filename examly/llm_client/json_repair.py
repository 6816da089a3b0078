from __future__ import annotations

import json
import re
from typing import Any

from examly.utils.error_taxonomy import StructuredOutputError

_CODE_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_SMART_QUOTES = str.maketrans(
    {"“": '"', "”": '"', "„": '"', "‘": "'", "’": "'"}
)


def parse_with_repair(text: str) -> dict[str, Any]:
    """Parse model text into a JSON object, tolerating common formatting slips.

    Tries the raw text, then the outermost ``{...}`` span, then a cleaned copy
    with code fences, smart quotes and trailing commas removed.
    """
    raw = (text or "").strip()
    if not raw:
        raise StructuredOutputError("Model returned empty output")

    candidates = [raw]
    extracted = _extract_object_span(raw)
    if extracted is not None:
        candidates.append(extracted)
    cleaned = _clean(raw)
    candidates.append(cleaned)
    cleaned_span = _extract_object_span(cleaned)
    if cleaned_span is not None:
        candidates.append(cleaned_span)

    last_error: ValueError | None = None
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError as error:
            # JSONDecodeError, or an integer literal past the digit limit.
            last_error = error
            continue
        if isinstance(parsed, dict):
            return parsed
        raise StructuredOutputError("Model output JSON root must be an object")

    raise StructuredOutputError(f"Model output is not valid JSON: {last_error}")


def _extract_object_span(text: str) -> str | None:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]


def _clean(text: str) -> str:
    cleaned = _CODE_FENCE_RE.sub("", text).translate(_SMART_QUOTES)
    return _TRAILING_COMMA_RE.sub(r"\1", cleaned).strip()
