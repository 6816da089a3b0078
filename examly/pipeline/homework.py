from __future__ import annotations

from typing import Any

from examly.pipeline.normalize import coerce_model_output, resolve_language
from examly.utils.text import clean_text, truncate

ANSWER_MAX = 600
STEP_TITLE_MAX = 80
STEP_WHY_MAX = 240
STEP_WORK_MAX = 600
MIN_STEPS = 3
MAX_STEPS = 10

_FALLBACK = {
    "en": {
        "answer": "The task could not be solved fully. Follow the steps below and check each one.",
        "steps": [
            ("Understand the task", "Knowing what is asked prevents wasted work.", "List the given data and the unknown."),
            ("Choose a method", "The right rule shortens the solution.", "Pick the formula or theorem that links the data to the unknown."),
            ("Solve and check", "Checking catches arithmetic slips.", "Carry out the calculation, then substitute the result back."),
        ],
    },
    "hu": {
        "answer": "A feladatot nem sikerült teljesen megoldani. Kövesd az alábbi lépéseket, és ellenőrizd mindegyiket.",
        "steps": [
            ("Értsd meg a feladatot", "Ha tudod, mi a kérdés, nem dolgozol feleslegesen.", "Írd fel az adatokat és az ismeretlent."),
            ("Válassz módszert", "A megfelelő szabály lerövidíti a megoldást.", "Válaszd ki a képletet vagy tételt, ami összeköti az adatokat az ismeretlennel."),
            ("Oldd meg és ellenőrizd", "Az ellenőrzés kiszűri a számolási hibákat.", "Végezd el a számolást, majd helyettesítsd vissza az eredményt."),
        ],
    },
}


def normalize_homework_solution(
    raw: Any,
    *,
    language: str | None,
    prompt: str | None,
) -> dict[str, Any]:
    """Total normalizer for step-by-step solutions; pads to three steps."""
    data = coerce_model_output(raw)
    lang = resolve_language(language, prompt)
    fallback = _FALLBACK[lang]

    steps: list[dict[str, str]] = []
    raw_steps = data.get("steps")
    for item in raw_steps if isinstance(raw_steps, list) else []:
        if isinstance(item, str):
            item = {"title": item}
        if not isinstance(item, dict):
            continue
        title = truncate(clean_text(item.get("title")), STEP_TITLE_MAX)
        work = truncate(clean_text(item.get("work") or item.get("details")), STEP_WORK_MAX)
        if not title and not work:
            continue
        steps.append(
            {
                "title": title or truncate(work, STEP_TITLE_MAX),
                "why": truncate(clean_text(item.get("why")), STEP_WHY_MAX),
                "work": work,
            }
        )

    for title, why, work in fallback["steps"][len(steps) :]:
        if len(steps) >= MIN_STEPS:
            break
        steps.append({"title": title, "why": why, "work": work})

    return {
        "language": lang,
        "answer": truncate(clean_text(data.get("answer")), ANSWER_MAX) or fallback["answer"],
        "steps": steps[:MAX_STEPS],
    }
