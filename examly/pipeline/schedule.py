from __future__ import annotations

import math
import re
from typing import Any, Sequence

DEADLINE_RE = re.compile(r"\bholnap\b|\btomorrow\b", re.IGNORECASE)
TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")

FIRST_DAY_START = "18:00"
LATER_DAY_START = "18:30"
DEFAULT_BLOCK_MINUTES = 30
MIN_BLOCK_MINUTES = 15
MAX_BLOCK_MINUTES = 90
DENSE_FIRST_DAY_BLOCKS = 4
BLOCKS_PER_DAY = 2
MAX_BLOCKS_PER_DAY = 6
MAX_DAYS = 6

_MINUTES_PER_DAY = 24 * 60

_LABELS = {
    "hu": {
        "day": "{day}. nap",
        "recap_title": "Ismétlés és gyakorlás",
        "recap_details": "Nézd át a jegyzeteket, majd oldd meg a gyakorló kérdéseket.",
        "default_title": "Áttekintés",
        "default_details": "Gyűjtsd össze az anyagot és nézd át a fő témákat.",
    },
    "en": {
        "day": "Day {day}",
        "recap_title": "Recap and practice",
        "recap_details": "Review the notes, then work through the practice questions.",
        "default_title": "Overview",
        "default_details": "Collect the material and skim the main topics.",
    },
}


def has_imminent_deadline(prompt: str | None) -> bool:
    return bool(DEADLINE_RE.search(prompt or ""))


def clamp_duration(value: Any) -> int:
    minutes = coerce_int(value)
    if minutes is None:
        return DEFAULT_BLOCK_MINUTES
    return max(MIN_BLOCK_MINUTES, min(MAX_BLOCK_MINUTES, minutes))


def parse_clock(value: Any) -> int | None:
    if not isinstance(value, str):
        return None
    match = TIME_RE.match(value.strip())
    if match is None:
        return None
    return int(match.group(1)) * 60 + int(match.group(2))


def format_clock(minutes: int) -> str:
    minutes %= _MINUTES_PER_DAY
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def day_label(day: int, language: str) -> str:
    return _labels(language)["day"].format(day=day)


def build_schedule_from_blocks(
    blocks: Sequence[dict[str, Any]],
    *,
    language: str,
    prompt: str | None = None,
) -> list[dict[str, Any]]:
    """Pack study blocks into day buckets with contiguous clock times.

    When the prompt mentions an imminent deadline the first day takes up to
    four blocks; other days take two. Day 1 starts at 18:00 and later days at
    18:30. Each block ends where the next one starts.
    """
    labels = _labels(language)
    dense = has_imminent_deadline(prompt)

    if not blocks:
        start = parse_clock(FIRST_DAY_START) or 0
        return [
            {
                "day": 1,
                "label": day_label(1, language),
                "blocks": [
                    {
                        "start": format_clock(start),
                        "end": format_clock(start + DEFAULT_BLOCK_MINUTES),
                        "title": labels["default_title"],
                        "details": labels["default_details"],
                    }
                ],
            }
        ]

    buckets: list[list[dict[str, Any]]] = []
    remaining = list(blocks)
    while remaining and len(buckets) < MAX_DAYS:
        capacity = DENSE_FIRST_DAY_BLOCKS if dense and not buckets else BLOCKS_PER_DAY
        if len(buckets) == MAX_DAYS - 1:
            capacity = MAX_BLOCKS_PER_DAY
        buckets.append(remaining[:capacity])
        remaining = remaining[capacity:]

    days: list[dict[str, Any]] = []
    for index, bucket in enumerate(buckets, start=1):
        cursor = parse_clock(FIRST_DAY_START if index == 1 else LATER_DAY_START) or 0
        day_blocks: list[dict[str, Any]] = []
        for block in bucket:
            duration = clamp_duration(block.get("duration_minutes"))
            day_blocks.append(
                {
                    "start": format_clock(cursor),
                    "end": format_clock(cursor + duration),
                    "title": str(block.get("title") or ""),
                    "details": str(block.get("description") or ""),
                }
            )
            cursor += duration
        days.append(
            {"day": index, "label": day_label(index, language), "blocks": day_blocks}
        )

    if dense and len(days) < 2:
        start = parse_clock(LATER_DAY_START) or 0
        days.append(
            {
                "day": 2,
                "label": day_label(2, language),
                "blocks": [
                    {
                        "start": format_clock(start),
                        "end": format_clock(start + DEFAULT_BLOCK_MINUTES),
                        "title": labels["recap_title"],
                        "details": labels["recap_details"],
                    }
                ],
            }
        )

    return days


def _labels(language: str) -> dict[str, str]:
    return _LABELS.get(language, _LABELS["en"])


def coerce_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return int(round(value))
    if isinstance(value, str):
        match = re.search(r"\d+", value)
        if match is not None:
            try:
                return int(match.group(0))
            except ValueError:
                # Digit runs past the interpreter's int conversion limit.
                return None
    return None
