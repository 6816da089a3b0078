from __future__ import annotations

from examly.pipeline.homework import (
    ANSWER_MAX,
    MAX_STEPS,
    MIN_STEPS,
    normalize_homework_solution,
)


def test_empty_output_gets_localized_fallback() -> None:
    solution = normalize_homework_solution(None, language="en", prompt="Solve x+1=3")

    assert solution["language"] == "en"
    assert solution["answer"].startswith("The task could not be solved")
    assert len(solution["steps"]) == MIN_STEPS
    assert solution["steps"][0]["title"] == "Understand the task"


def test_hungarian_fallback() -> None:
    solution = normalize_homework_solution({}, language=None, prompt="Oldd meg: x+1=3, kérlek")

    assert solution["language"] == "hu"
    assert solution["steps"][0]["title"] == "Értsd meg a feladatot"


def test_short_solution_is_padded_to_three_steps() -> None:
    raw = {
        "answer": "x = 2",
        "steps": [
            {"title": "Subtract 1", "why": "Isolate x", "work": "x + 1 - 1 = 3 - 1"},
            "Read the result",
        ],
    }

    solution = normalize_homework_solution(raw, language="en", prompt="x+1=3")

    assert solution["answer"] == "x = 2"
    assert [step["title"] for step in solution["steps"]] == [
        "Subtract 1",
        "Read the result",
        "Solve and check",
    ]
    assert solution["steps"][1] == {"title": "Read the result", "why": "", "work": ""}


def test_steps_and_answer_are_capped() -> None:
    raw = {
        "answer": "a" * 2000,
        "steps": [{"work": f"step {index}"} for index in range(15)] + [{"title": ""}],
    }

    solution = normalize_homework_solution(raw, language="en", prompt="x")

    assert len(solution["answer"]) == ANSWER_MAX
    assert len(solution["steps"]) == MAX_STEPS
    assert solution["steps"][0]["title"] == "step 0"


def test_string_output_is_parsed() -> None:
    solution = normalize_homework_solution(
        'Here you go: {"answer": "42", "steps": []}', language="en", prompt="x"
    )

    assert solution["answer"] == "42"
    assert len(solution["steps"]) == MIN_STEPS
