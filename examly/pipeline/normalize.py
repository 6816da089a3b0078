from __future__ import annotations

import json
import re
from typing import Any, Callable, Iterable

from examly.llm_client.json_repair import parse_with_repair
from examly.pipeline.schedule import (
    DEFAULT_BLOCK_MINUTES,
    FIRST_DAY_START,
    LATER_DAY_START,
    MAX_BLOCKS_PER_DAY,
    MAX_DAYS,
    build_schedule_from_blocks,
    clamp_duration,
    coerce_int,
    day_label,
    format_clock,
    parse_clock,
)
from examly.utils.error_taxonomy import StructuredOutputError
from examly.utils.text import clean_text, truncate

TITLE_MAX = 90
SUMMARY_MAX = 260
BLOCK_TITLE_MAX = 80
BLOCK_DESCRIPTION_MAX = 180
MIN_BLOCKS = 4
MAX_BLOCKS = 10
HEADING_MAX = 80
BULLET_MAX = 240
MAX_BULLETS = 8
MIN_SECTIONS = 5
MAX_SECTIONS = 8
SCHEDULE_TITLE_MAX = 80
SCHEDULE_DETAILS_MAX = 180
QUESTION_MAX = 180
CHOICE_MAX = 120
MAX_CHOICES = 6
ANSWER_MAX = 260
EXPLANATION_MAX = 320
MIN_PRACTICE = 3
MAX_PRACTICE = 16
TOPIC_MAX = 60

DEFAULT_CHAR_BUDGET = 24_000
# Every list is capped, so a document with all strings at the floor always
# fits in this many serialized characters.
MIN_CHAR_BUDGET = 16_000
TRIM_FLOOR = 8

HUNGARIAN_RE = re.compile(
    r"\bhu\b|magyar|szia|tetel|t[eé]tel|vizsga|erettsegi|[áéíóöőúüű]",
    re.IGNORECASE,
)
_BULLET_PREFIX_RE = re.compile(r"^(?:[-*•]+|\d+[.)])\s*")

_FALLBACK = {
    "en": {
        "topic": "your exam",
        "title": "Study plan: {topic}",
        "summary": "A focused plan for {topic}: core concepts, rules, worked examples and practice.",
        "notes_summary": "Key points to review for {topic}.",
        "blocks": [
            ("Core concepts", "Read through the core definitions of {topic} and mark what is unclear.", 30),
            ("Formulas and rules", "Collect the formulas and rules of {topic} on one page.", 35),
            ("Worked examples", "Follow two worked examples step by step and redo them alone.", 35),
            ("Independent practice", "Solve the practice questions without notes, then check.", 30),
        ],
        "sections": [
            ("Concepts", "Define the key terms of {topic} in your own words."),
            ("Formulas", "Write down the rules and formulas used in {topic}."),
            ("Steps", "List the usual solution steps for {topic} tasks."),
            ("Typical tasks", "Collect two typical {topic} exercises and their solutions."),
            ("Common mistakes", "Note earlier mistakes and how to avoid them."),
            ("Mini examples", "Solve one short example for each concept."),
        ],
        "practice": [
            (
                "What are the key concepts of {topic}?",
                "The main definitions collected in the Concepts section.",
                "Recalling definitions is the base of every task.",
            ),
            (
                "Which rule or formula is used most often in {topic}?",
                "The first rule listed in the Formulas section.",
                "Knowing when to apply a rule matters more than memorizing it.",
            ),
            (
                "What is a common mistake in {topic} tasks and how can you avoid it?",
                "See the Common mistakes section and check each step.",
                "Naming typical errors helps you spot them under exam pressure.",
            ),
        ],
    },
    "hu": {
        "topic": "a vizsga",
        "title": "Tanulási terv: {topic}",
        "summary": "Célzott terv ehhez: {topic}. Alapfogalmak, szabályok, kidolgozott példák és gyakorlás.",
        "notes_summary": "Átnézendő fő pontok: {topic}.",
        "blocks": [
            ("Alapfogalmak", "Olvasd át a(z) {topic} alapfogalmait, jelöld, ami nem világos.", 30),
            ("Képletek és szabályok", "Gyűjtsd egy lapra a(z) {topic} képleteit és szabályait.", 35),
            ("Kidolgozott példák", "Kövess végig két kidolgozott példát, majd oldd meg őket egyedül.", 35),
            ("Önálló gyakorlás", "Oldd meg a gyakorló kérdéseket jegyzet nélkül, majd ellenőrizz.", 30),
        ],
        "sections": [
            ("Fogalmak", "Fogalmazd meg saját szavaiddal a(z) {topic} kulcsfogalmait."),
            ("Képletek", "Írd le a(z) {topic} szabályait és képleteit."),
            ("Lépések", "Sorold fel a tipikus megoldási lépéseket."),
            ("Tipikus feladatok", "Gyűjts két tipikus feladatot megoldással."),
            ("Gyakori hibák", "Írd fel a korábbi hibáidat és az elkerülésük módját."),
            ("Mini példák", "Oldj meg minden fogalomhoz egy rövid példát."),
        ],
        "practice": [
            (
                "Melyek a(z) {topic} kulcsfogalmai?",
                "A Fogalmak részben összegyűjtött definíciók.",
                "A definíciók felidézése minden feladat alapja.",
            ),
            (
                "Melyik szabályt vagy képletet használod a leggyakrabban?",
                "A Képletek rész első szabálya.",
                "Fontosabb tudni, mikor alkalmazd, mint bemagolni.",
            ),
            (
                "Mi egy gyakori hiba a feladatokban, és hogyan kerülöd el?",
                "Lásd a Gyakori hibák részt, és ellenőrizd minden lépésed.",
                "A tipikus hibák ismerete segít észrevenni őket a vizsgán.",
            ),
        ],
    },
}


def detect_language(text: str | None) -> str:
    return "hu" if HUNGARIAN_RE.search(text or "") else "en"


def resolve_language(language: str | None, prompt: str | None) -> str:
    if language in _FALLBACK:
        return str(language)
    return detect_language(prompt)


def normalize_plan_document(
    raw: Any,
    *,
    language: str | None,
    prompt: str | None,
    char_budget: int = DEFAULT_CHAR_BUDGET,
) -> dict[str, Any]:
    """Turn arbitrary model output into a complete study plan document.

    Never raises. Missing or unusable parts are filled from the localized
    template, lists are clamped to their limits and the serialized document
    is trimmed to ``char_budget``.
    """
    data = coerce_model_output(raw)
    lang = resolve_language(language, prompt)
    fallback = _FALLBACK[lang]
    topic = _topic(prompt, lang)

    blocks = _normalize_blocks(
        _first_list(
            data.get("blocks"),
            _nested(data, "plan", "blocks"),
            _nested(data, "plan_json", "blocks"),
        ),
        fallback=fallback,
        topic=topic,
    )

    notes_raw = data.get("notes")
    if not isinstance(notes_raw, (dict, str)):
        notes_raw = data.get("notes_json")
    if isinstance(notes_raw, str):
        notes_summary, parsed_sections = parse_markdown_outline(notes_raw)
        sections_raw: Any = parsed_sections
    else:
        notes_dict = notes_raw if isinstance(notes_raw, dict) else {}
        notes_summary = clean_text(notes_dict.get("summary"))
        sections_raw = _first_list(
            notes_dict.get("sections"), notes_dict.get("outline")
        )
        markdown = notes_dict.get("content_markdown")
        if not sections_raw and isinstance(markdown, str):
            markdown_summary, sections_raw = parse_markdown_outline(markdown)
            notes_summary = notes_summary or markdown_summary
    sections = _normalize_sections(sections_raw, fallback=fallback, topic=topic)

    schedule = _normalize_schedule(
        _first_list(
            data.get("schedule"),
            _nested(data, "daily", "schedule"),
            _nested(data, "daily_json", "schedule"),
        ),
        language=lang,
    )
    if not schedule:
        legacy_slots = _first_list(
            _nested(data, "daily", "slots"), _nested(data, "daily_json", "slots")
        )
        schedule = _normalize_schedule(_group_slots_by_day(legacy_slots), language=lang)
    if not schedule:
        schedule = build_schedule_from_blocks(blocks, language=lang, prompt=prompt)

    practice = _normalize_practice(
        _first_list(
            data.get("practice"),
            _nested(data, "practice", "questions"),
            _nested(data, "practice_json", "questions"),
        ),
        fallback=fallback,
        topic=topic,
    )

    document: dict[str, Any] = {
        "title": truncate(clean_text(data.get("title")), TITLE_MAX)
        or truncate(fallback["title"].format(topic=topic), TITLE_MAX),
        "language": lang,
        "summary": truncate(clean_text(data.get("summary")), SUMMARY_MAX)
        or truncate(fallback["summary"].format(topic=topic), SUMMARY_MAX),
        "blocks": blocks,
        "notes": {
            "summary": truncate(notes_summary, SUMMARY_MAX)
            or truncate(fallback["notes_summary"].format(topic=topic), SUMMARY_MAX),
            "sections": sections,
        },
        "schedule": schedule,
        "practice": practice,
    }
    return enforce_char_budget(document, char_budget=char_budget)


def serialized_length(document: dict[str, Any]) -> int:
    return len(json.dumps(document, ensure_ascii=False))


Slot = tuple[Any, Any]

# Trim priority; the first four classes carry the documented order, the rest
# are only reached when those are already at the floor.
TRIM_ORDER: tuple[tuple[str, Callable[[dict[str, Any]], list[Slot]]], ...] = (
    (
        "notes_bullets",
        lambda d: [
            (section["bullets"], index)
            for section in d["notes"]["sections"]
            for index in range(len(section["bullets"]))
        ],
    ),
    (
        "practice_answers",
        lambda d: [(item, key) for item in d["practice"] for key in ("answer", "explanation")],
    ),
    ("block_descriptions", lambda d: [(block, "description") for block in d["blocks"]]),
    ("title", lambda d: [(d, "title")]),
    (
        "schedule_details",
        lambda d: [(block, "details") for day in d["schedule"] for block in day["blocks"]],
    ),
    ("practice_questions", lambda d: [(item, "question") for item in d["practice"]]),
    (
        "practice_choices",
        lambda d: [
            (item["choices"], index)
            for item in d["practice"]
            for index in range(len(item["choices"]))
        ],
    ),
    (
        "schedule_titles",
        lambda d: [(block, "title") for day in d["schedule"] for block in day["blocks"]],
    ),
    ("notes_headings", lambda d: [(section, "heading") for section in d["notes"]["sections"]]),
    ("block_titles", lambda d: [(block, "title") for block in d["blocks"]]),
    ("notes_summary", lambda d: [(d["notes"], "summary")]),
    ("summary", lambda d: [(d, "summary")]),
)


def enforce_char_budget(
    document: dict[str, Any], *, char_budget: int = DEFAULT_CHAR_BUDGET
) -> dict[str, Any]:
    """Shorten strings until the serialized document fits the budget.

    Classes are visited in ``TRIM_ORDER``. Inside a class the longest string
    is cut first (document order breaks ties) and nothing is cut below
    ``TRIM_FLOOR`` characters. Structure is never removed.
    """
    budget = max(int(char_budget), MIN_CHAR_BUDGET)
    for _, selector in TRIM_ORDER:
        while True:
            overflow = serialized_length(document) - budget
            if overflow <= 0:
                return document
            slot = _longest_slot(selector(document))
            if slot is None:
                break
            container, key = slot
            value = container[key]
            container[key] = truncate(value, max(TRIM_FLOOR, len(value) - overflow))
    return document


def parse_markdown_outline(markdown: str) -> tuple[str, list[dict[str, Any]]]:
    """Parse legacy free-form notes (``# heading`` plus ``- bullet`` lines)."""
    summary_lines: list[str] = []
    sections: list[dict[str, Any]] = []
    current: dict[str, Any] | None = None

    for raw_line in (markdown or "").splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if line.startswith("#"):
            current = {"heading": line.lstrip("#").strip(), "bullets": []}
            sections.append(current)
            continue
        if (
            line.endswith(":")
            and len(line) <= HEADING_MAX
            and not _BULLET_PREFIX_RE.match(line)
        ):
            current = {"heading": line[:-1].strip(), "bullets": []}
            sections.append(current)
            continue
        text = _BULLET_PREFIX_RE.sub("", line)
        if current is None:
            summary_lines.append(text)
        else:
            current["bullets"].append(text)

    return " ".join(summary_lines), sections


def _normalize_blocks(
    raw_blocks: list[Any], *, fallback: dict[str, Any], topic: str
) -> list[dict[str, Any]]:
    blocks: list[dict[str, Any]] = []
    for item in raw_blocks:
        if not isinstance(item, dict):
            continue
        title = truncate(clean_text(item.get("title")), BLOCK_TITLE_MAX)
        if not title:
            continue
        blocks.append(
            {
                "title": title,
                "description": truncate(
                    clean_text(item.get("description") or item.get("details")),
                    BLOCK_DESCRIPTION_MAX,
                ),
                "duration_minutes": clamp_duration(
                    item.get("duration_minutes", item.get("duration"))
                ),
            }
        )

    used = {block["title"].casefold() for block in blocks}
    for title, description, minutes in fallback["blocks"]:
        if len(blocks) >= MIN_BLOCKS:
            break
        if title.casefold() in used:
            continue
        blocks.append(
            {
                "title": title,
                "description": truncate(description.format(topic=topic), BLOCK_DESCRIPTION_MAX),
                "duration_minutes": minutes,
            }
        )
    _pad_numbered(blocks, MIN_BLOCKS, lambda n: {
        "title": f"{fallback['blocks'][-1][0]} {n}",
        "description": "",
        "duration_minutes": DEFAULT_BLOCK_MINUTES,
    })
    return blocks[:MAX_BLOCKS]


def _normalize_sections(
    raw_sections: list[Any], *, fallback: dict[str, Any], topic: str
) -> list[dict[str, Any]]:
    fallback_bullets = {
        heading.casefold(): bullet.format(topic=topic)
        for heading, bullet in fallback["sections"]
    }
    sections: list[dict[str, Any]] = []
    seen: set[str] = set()
    for item in raw_sections:
        if not isinstance(item, dict):
            continue
        heading = truncate(clean_text(item.get("heading") or item.get("title")), HEADING_MAX)
        if not heading or heading.casefold() in seen:
            continue
        bullets = [
            truncate(text, BULLET_MAX)
            for text in (clean_text(bullet) for bullet in _as_list(item.get("bullets")))
            if text
        ][:MAX_BULLETS]
        if not bullets:
            bullets = [
                truncate(
                    fallback_bullets.get(heading.casefold())
                    or fallback["sections"][0][1].format(topic=topic),
                    BULLET_MAX,
                )
            ]
        seen.add(heading.casefold())
        sections.append({"heading": heading, "bullets": bullets})

    for heading, bullet in fallback["sections"]:
        if len(sections) >= MIN_SECTIONS:
            break
        if heading.casefold() in seen:
            continue
        seen.add(heading.casefold())
        sections.append(
            {"heading": heading, "bullets": [truncate(bullet.format(topic=topic), BULLET_MAX)]}
        )
    return sections[:MAX_SECTIONS]


def _normalize_schedule(raw_days: list[Any], *, language: str) -> list[dict[str, Any]]:
    days: list[dict[str, Any]] = []
    for item in raw_days:
        if len(days) >= MAX_DAYS:
            break
        if not isinstance(item, dict):
            continue
        day_number = len(days) + 1
        cursor = parse_clock(FIRST_DAY_START if day_number == 1 else LATER_DAY_START) or 0
        blocks: list[dict[str, Any]] = []
        for block in _first_list(item.get("blocks"), item.get("slots")):
            if len(blocks) >= MAX_BLOCKS_PER_DAY:
                break
            if not isinstance(block, dict):
                continue
            title = truncate(clean_text(block.get("title")), SCHEDULE_TITLE_MAX)
            if not title:
                continue
            start = parse_clock(block.get("start") or block.get("start_time"))
            end = parse_clock(block.get("end") or block.get("end_time"))
            if start is None:
                start = cursor
            if end is None or end <= start:
                end = start + DEFAULT_BLOCK_MINUTES
            cursor = end
            blocks.append(
                {
                    "start": format_clock(start),
                    "end": format_clock(end),
                    "title": title,
                    "details": truncate(
                        clean_text(block.get("details") or block.get("description")),
                        SCHEDULE_DETAILS_MAX,
                    ),
                }
            )
        if blocks:
            days.append(
                {"day": day_number, "label": day_label(day_number, language), "blocks": blocks}
            )
    return days


def _group_slots_by_day(slots: list[Any]) -> list[dict[str, Any]]:
    """Flat ``[{day, start, end, title}]`` slot lists become day entries."""
    grouped: dict[int, list[Any]] = {}
    for slot in slots:
        if not isinstance(slot, dict):
            continue
        day = min(max(coerce_int(slot.get("day")) or 1, 1), MAX_DAYS)
        grouped.setdefault(day, []).append(slot)
    return [{"blocks": grouped[day]} for day in sorted(grouped)]


def _normalize_practice(
    raw_items: list[Any], *, fallback: dict[str, Any], topic: str
) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    for item in raw_items:
        if not isinstance(item, dict):
            continue
        question = truncate(clean_text(item.get("question") or item.get("q")), QUESTION_MAX)
        answer = truncate(clean_text(item.get("answer") or item.get("a")), ANSWER_MAX)
        if not question or not answer:
            continue
        choices = [
            truncate(text, CHOICE_MAX)
            for text in (clean_text(choice) for choice in _as_list(item.get("choices")))
            if text
        ][:MAX_CHOICES]
        items.append(
            {
                "question": question,
                "choices": choices,
                "answer": answer,
                "explanation": truncate(clean_text(item.get("explanation")), EXPLANATION_MAX),
            }
        )

    used = {item["question"].casefold() for item in items}
    for question, answer, explanation in fallback["practice"]:
        if len(items) >= MIN_PRACTICE:
            break
        text = truncate(question.format(topic=topic), QUESTION_MAX)
        if text.casefold() in used:
            continue
        items.append(
            {
                "question": text,
                "choices": [],
                "answer": truncate(answer, ANSWER_MAX),
                "explanation": truncate(explanation, EXPLANATION_MAX),
            }
        )
    _pad_numbered(items, MIN_PRACTICE, lambda n: {
        "question": f"{fallback['practice'][0][0].format(topic=topic)} ({n})",
        "choices": [],
        "answer": fallback["practice"][0][1],
        "explanation": "",
    })
    return items[:MAX_PRACTICE]


def _pad_numbered(
    items: list[dict[str, Any]], minimum: int, factory: Callable[[int], dict[str, Any]]
) -> None:
    while len(items) < minimum:
        items.append(factory(len(items) + 1))


def _longest_slot(slots: Iterable[Slot]) -> Slot | None:
    best: Slot | None = None
    best_length = TRIM_FLOOR
    for container, key in slots:
        value = container[key]
        if isinstance(value, str) and len(value) > best_length:
            best = (container, key)
            best_length = len(value)
    return best


def coerce_model_output(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, (str, bytes)):
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        try:
            return parse_with_repair(text)
        except StructuredOutputError:
            return {}
    return {}


def _topic(prompt: str | None, language: str) -> str:
    topic = clean_text(prompt)
    if not topic:
        return _FALLBACK[language]["topic"]
    return truncate(topic, TOPIC_MAX)


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, str) and value.strip():
        return [value]
    return []


def _first_list(*candidates: Any) -> list[Any]:
    for candidate in candidates:
        if isinstance(candidate, list) and candidate:
            return candidate
    return []


def _nested(data: dict[str, Any], *keys: str) -> Any:
    current: Any = data
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current
