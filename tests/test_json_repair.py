from __future__ import annotations

import pytest

from examly.llm_client.json_repair import parse_with_repair
from examly.utils.error_taxonomy import StructuredOutputError


def test_parse_plain_json() -> None:
    assert parse_with_repair('{"title": "Plan"}') == {"title": "Plan"}


def test_parse_strips_code_fences_and_prose() -> None:
    text = 'Here is the plan:\n```json\n{"title": "Plan", "blocks": []}\n```\nGood luck!'

    assert parse_with_repair(text) == {"title": "Plan", "blocks": []}


def test_parse_repairs_trailing_commas_and_smart_quotes() -> None:
    text = "{“title”: “Plan”, “blocks”: [1, 2,],}"

    assert parse_with_repair(text) == {"title": "Plan", "blocks": [1, 2]}


@pytest.mark.parametrize("text", ["", "   ", "not json at all", "{broken"])
def test_parse_rejects_unusable_text(text: str) -> None:
    with pytest.raises(StructuredOutputError):
        parse_with_repair(text)


def test_parse_rejects_non_object_root() -> None:
    with pytest.raises(StructuredOutputError):
        parse_with_repair("[1, 2, 3]")
