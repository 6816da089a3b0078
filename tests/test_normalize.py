from __future__ import annotations

import json
from typing import Any

import pytest

from examly.pipeline.normalize import (
    MAX_BLOCKS,
    MAX_PRACTICE,
    MIN_BLOCKS,
    MIN_PRACTICE,
    MIN_SECTIONS,
    detect_language,
    enforce_char_budget,
    normalize_plan_document,
    parse_markdown_outline,
    resolve_language,
    serialized_length,
)
from examly.pipeline.schedule import DEFAULT_BLOCK_MINUTES


def _assert_complete(document: dict[str, Any]) -> None:
    assert document["title"]
    assert document["summary"]
    assert len(document["blocks"]) >= MIN_BLOCKS
    assert len(document["notes"]["sections"]) >= MIN_SECTIONS
    assert all(section["bullets"] for section in document["notes"]["sections"])
    assert document["schedule"]
    assert len(document["practice"]) >= MIN_PRACTICE


_HUGE_DIGITS = "9" * 5000


@pytest.mark.parametrize(
    "raw",
    [
        None,
        {},
        "not json at all",
        42,
        ["a", "b"],
        b"{",
        pytest.param('{"blocks": [{"title": "A", "duration_minutes": NaN}]}', id="nan-duration"),
        pytest.param(
            '{"blocks": [{"title": "A", "duration_minutes": Infinity}]}', id="inf-duration"
        ),
        pytest.param(
            {"blocks": [{"title": "A", "duration_minutes": _HUGE_DIGITS}]}, id="digit-run-duration"
        ),
        pytest.param('{"title": ' + _HUGE_DIGITS + "}", id="huge-int-literal"),
        {"title": float("nan"), "summary": 10**5000},
    ],
)
def test_unusable_input_yields_complete_document(raw: Any) -> None:
    document = normalize_plan_document(raw, language="en", prompt="Cell biology")

    _assert_complete(document)
    assert document["language"] == "en"
    assert "Cell biology" in document["title"]


def test_model_output_is_kept_and_padded() -> None:
    raw = {
        "title": "  Algebra\nrevision ",
        "summary": "Linear equations.",
        "blocks": [
            {"title": "Equations", "description": "Solve 10 equations", "duration_minutes": 200},
            {"title": "", "description": "dropped"},
            "not a block",
        ],
        "practice": [{"question": "2x=4?", "answer": "x=2", "choices": ["1", "2", ""]}],
    }

    document = normalize_plan_document(raw, language="en", prompt="algebra")

    _assert_complete(document)
    assert document["title"] == "Algebra revision"
    assert document["blocks"][0] == {
        "title": "Equations",
        "description": "Solve 10 equations",
        "duration_minutes": 90,
    }
    assert document["practice"][0]["choices"] == ["1", "2"]
    assert document["practice"][0]["answer"] == "x=2"


def test_json_string_output_is_repaired() -> None:
    raw = '```json\n{"title": "Optics", "blocks": [{"title": "Lenses",}]}\n```'

    document = normalize_plan_document(raw, language="en", prompt="physics")

    assert document["title"] == "Optics"
    assert document["blocks"][0]["title"] == "Lenses"


def test_lists_are_capped() -> None:
    raw = {
        "blocks": [{"title": f"Block {index}"} for index in range(25)],
        "practice": [{"question": f"Q{index}", "answer": "A"} for index in range(40)],
    }

    document = normalize_plan_document(raw, language="en", prompt="x")

    assert len(document["blocks"]) == MAX_BLOCKS
    assert len(document["practice"]) == MAX_PRACTICE


def test_legacy_nested_keys_are_accepted() -> None:
    raw = {
        "plan": {"blocks": [{"title": "Legacy block", "duration": "45 min"}]},
        "daily": {
            "schedule": [
                {"slots": [{"title": "Warm-up", "start_time": "17:00", "end_time": "17:20"}]}
            ]
        },
        "practice": {"questions": [{"q": "Legacy question?", "a": "Legacy answer"}]},
    }

    document = normalize_plan_document(raw, language="en", prompt="history")

    assert document["blocks"][0]["title"] == "Legacy block"
    assert document["blocks"][0]["duration_minutes"] == 45
    assert document["schedule"][0]["blocks"][0] == {
        "start": "17:00",
        "end": "17:20",
        "title": "Warm-up",
        "details": "",
    }
    assert document["practice"][0]["question"] == "Legacy question?"


def test_legacy_json_suffixed_keys_and_flat_slots_are_accepted() -> None:
    raw = {
        "plan_json": {"blocks": [{"title": "Stored block", "duration_minutes": 40}]},
        "notes_json": {"content_markdown": "Stored overview\n# Dates\n- 1848 revolution"},
        "daily_json": {
            "slots": [
                {"day": 3, "start": "19:00", "end": "19:45", "title": "Late slot"},
                {"day": 1, "start": "18:00", "end": "18:30", "title": "Early slot"},
                "not a slot",
            ]
        },
        "practice_json": {"questions": [{"q": "When?", "a": "1848"}]},
    }

    document = normalize_plan_document(raw, language="en", prompt="history")

    assert document["blocks"][0]["title"] == "Stored block"
    assert document["notes"]["summary"] == "Stored overview"
    assert document["notes"]["sections"][0] == {"heading": "Dates", "bullets": ["1848 revolution"]}
    assert [day["blocks"][0]["title"] for day in document["schedule"]] == [
        "Early slot",
        "Late slot",
    ]
    assert document["schedule"][1]["blocks"][0]["start"] == "19:00"
    assert document["practice"][0]["answer"] == "1848"


def test_non_finite_duration_falls_back_to_default() -> None:
    raw = (
        '{"blocks": [{"title": "A", "duration_minutes": NaN},'
        ' {"title": "B", "duration_minutes": -Infinity}]}'
    )

    document = normalize_plan_document(raw, language="en", prompt="x")

    assert [block["duration_minutes"] for block in document["blocks"][:2]] == [
        DEFAULT_BLOCK_MINUTES,
        DEFAULT_BLOCK_MINUTES,
    ]


def test_markdown_notes_become_sections() -> None:
    notes = "Overview line\n# Kinematics\n- velocity\n* acceleration\nForces:\n1. Newton's laws"

    summary, sections = parse_markdown_outline(notes)

    assert summary == "Overview line"
    assert sections == [
        {"heading": "Kinematics", "bullets": ["velocity", "acceleration"]},
        {"heading": "Forces", "bullets": ["Newton's laws"]},
    ]

    document = normalize_plan_document({"notes": notes}, language="en", prompt="physics")
    headings = [section["heading"] for section in document["notes"]["sections"]]
    assert headings[:2] == ["Kinematics", "Forces"]
    assert document["notes"]["summary"] == "Overview line"


def test_schedule_is_derived_from_blocks_when_missing() -> None:
    raw = {"blocks": [{"title": f"B{index}", "duration_minutes": 30} for index in range(4)]}

    document = normalize_plan_document(raw, language="en", prompt="chemistry")

    assert [day["day"] for day in document["schedule"]] == [1, 2]
    assert document["schedule"][0]["blocks"][0]["start"] == "18:00"
    assert document["schedule"][1]["blocks"][0]["start"] == "18:30"


def test_hungarian_prompt_uses_hungarian_fallback() -> None:
    document = normalize_plan_document(None, language=None, prompt="Holnap vizsga: törtek")

    assert document["language"] == "hu"
    assert document["title"].startswith("Tanulási terv")
    assert document["schedule"][0]["label"] == "1. nap"


@pytest.mark.parametrize(
    ("language", "prompt", "expected"),
    [
        ("hu", "plain english", "hu"),
        ("en", "magyar tétel", "en"),
        (None, "Érettségi tétel", "hu"),
        (None, "Organic chemistry", "en"),
        ("de", "Organic chemistry", "en"),
        (None, None, "en"),
    ],
)
def test_resolve_language(language: str | None, prompt: str | None, expected: str) -> None:
    assert resolve_language(language, prompt) == expected


def test_detect_language_does_not_match_inside_words() -> None:
    assert detect_language("Please help with thumb rules") == "en"


def _document(*, bullets: list[str], answers: list[str], descriptions: list[str]) -> dict[str, Any]:
    return {
        "title": "Title",
        "language": "en",
        "summary": "Summary",
        "blocks": [
            {"title": f"B{index}", "description": text, "duration_minutes": 30}
            for index, text in enumerate(descriptions)
        ],
        "notes": {"summary": "Notes", "sections": [{"heading": "H", "bullets": bullets}]},
        "schedule": [],
        "practice": [
            {"question": f"Q{index}", "choices": [], "answer": text, "explanation": ""}
            for index, text in enumerate(answers)
        ],
    }


def test_budget_trims_note_bullets_before_practice_answers() -> None:
    document = _document(
        bullets=["b" * 5000, "c" * 5000],
        answers=["a" * 4000, "a" * 4000, "a" * 4000],
        descriptions=["d" * 3000, "d" * 3000],
    )

    trimmed = enforce_char_budget(document, char_budget=16_000)

    assert serialized_length(trimmed) <= 16_000
    assert [len(bullet) for bullet in trimmed["notes"]["sections"][0]["bullets"]] == [8, 8]
    answers = [len(item["answer"]) for item in trimmed["practice"]]
    assert answers[0] < 4000
    assert answers[1:] == [4000, 4000]
    assert [len(block["description"]) for block in trimmed["blocks"]] == [3000, 3000]


def test_budget_cuts_longest_bullet_first() -> None:
    document = _document(
        bullets=["short bullet", "x" * 9000, "y" * 9000],
        answers=["answer"],
        descriptions=["description"],
    )

    trimmed = enforce_char_budget(document, char_budget=16_000)

    bullets = trimmed["notes"]["sections"][0]["bullets"]
    assert bullets[0] == "short bullet"
    assert len(bullets[1]) < 9000
    assert len(bullets[2]) == 9000
    assert serialized_length(trimmed) <= 16_000


def test_budget_is_clamped_to_minimum() -> None:
    document = _document(bullets=["b" * 12000], answers=["a"], descriptions=["d"])

    trimmed = enforce_char_budget(document, char_budget=10)

    assert len(trimmed["notes"]["sections"][0]["bullets"][0]) == 12000


def test_normalized_document_fits_default_budget() -> None:
    raw = {
        "title": "T" * 500,
        "blocks": [{"title": "B" * 200, "description": "D" * 500} for _ in range(12)],
        "notes": {
            "summary": "S" * 500,
            "sections": [
                {"heading": f"H{index}", "bullets": ["x" * 500] * 10} for index in range(10)
            ],
        },
        "practice": [
            {
                "question": f"Q{index}" + "q" * 300,
                "answer": "a" * 500,
                "explanation": "e" * 500,
                "choices": ["c" * 200] * 8,
            }
            for index in range(20)
        ],
    }

    document = normalize_plan_document(raw, language="en", prompt="x", char_budget=16_000)

    assert serialized_length(document) <= 16_000
    json.dumps(document)
    _assert_complete(document)
