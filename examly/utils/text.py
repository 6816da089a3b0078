from __future__ import annotations

import math
import re
import unicodedata
from typing import Any

ELLIPSIS = "…"

_WHITESPACE_RE = re.compile(r"\s+")


def clean_text(value: Any) -> str:
    """Coerce a scalar to a single-line string; containers become ``""``."""
    if isinstance(value, bool) or value is None:
        return ""
    if isinstance(value, float):
        return str(value) if math.isfinite(value) else ""
    if isinstance(value, int):
        try:
            return str(value)
        except ValueError:
            return ""
    if not isinstance(value, str):
        return ""
    cleaned = "".join(
        char if unicodedata.category(char) != "Cc" else " " for char in value
    )
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


def truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    if limit <= 1:
        return value[:limit]
    return value[: limit - 1].rstrip() + ELLIPSIS


def clip_text(value: str, max_chars: int) -> str:
    """Hard cap for stored text; no marker so downstream parsing sees raw text."""
    if len(value) <= max_chars:
        return value
    return value[:max_chars]
