from __future__ import annotations

from typing import Any

import pytest

from examly.llm_client.base import ImageInput
from examly.llm_client.openai_client import OpenAILLMClient, normalize_openai_usage
from examly.utils.error_taxonomy import LLMKeyMissingError, StructuredOutputError


class FakeResponsesService:
    def __init__(self, text: str = '{"result": "ok"}') -> None:
        self.calls: list[dict[str, Any]] = []
        self._text = text

    def create(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(kwargs)
        return {
            "output": [
                {
                    "content": [
                        {"type": "output_text", "text": self._text},
                    ]
                }
            ],
            "usage": {
                "input_tokens": 100,
                "output_tokens": 50,
                "total_tokens": 150,
            },
        }


def test_openai_payload_builder_uses_strict_schema_without_tools() -> None:
    payload = OpenAILLMClient.build_request_payload(
        system_prompt="sys",
        user_content="user",
        json_schema={"type": "object"},
        model="gpt-4.1",
        params={"temperature": 0.3, "max_output_tokens": 1400},
        run_meta={"schema_name": "study_plan"},
    )

    assert payload["text"]["format"] == {
        "type": "json_schema",
        "name": "study_plan",
        "schema": {"type": "object"},
        "strict": True,
    }
    assert payload["tools"] == []
    assert payload["tool_choice"] == "none"
    assert payload["temperature"] == 0.3
    assert payload["max_output_tokens"] == 1400
    assert payload["input"][0]["role"] == "system"


def test_openai_payload_builder_attaches_images_as_data_urls() -> None:
    payload = OpenAILLMClient.build_request_payload(
        system_prompt="sys",
        user_content="solve",
        json_schema={"type": "object"},
        model="gpt-4.1",
        params={"image_detail": "high"},
        run_meta={},
        images=[ImageInput(data=b"png-bytes", mime_type="image/png")],
    )

    user_parts = payload["input"][1]["content"]
    assert user_parts[0] == {"type": "input_text", "text": "solve"}
    assert user_parts[1]["type"] == "input_image"
    assert user_parts[1]["image_url"].startswith("data:image/png;base64,")
    assert user_parts[1]["detail"] == "high"
    assert "temperature" not in payload


def test_openai_generate_json_passes_timeout_and_normalizes_usage() -> None:
    fake_service = FakeResponsesService()
    client = OpenAILLMClient(responses_service=fake_service)

    result = client.generate_json(
        system_prompt="sys",
        user_content="user",
        json_schema={"type": "object"},
        model="gpt-4.1",
        params={"timeout_seconds": 30},
        run_meta={"schema_name": "study_plan"},
    )

    assert result.parsed_json == {"result": "ok"}
    assert result.usage_normalized == {
        "prompt_tokens": 100,
        "completion_tokens": 50,
        "total_tokens": 150,
    }
    assert len(fake_service.calls) == 1
    assert fake_service.calls[0]["timeout"] == 30.0
    assert "t_llm_total_ms" in result.timings


def test_openai_generate_json_raises_on_unparseable_output() -> None:
    client = OpenAILLMClient(responses_service=FakeResponsesService(text="sorry, no"))

    with pytest.raises(StructuredOutputError):
        client.generate_json(
            system_prompt="sys",
            user_content="user",
            json_schema={"type": "object"},
            model="gpt-4.1",
            params={},
            run_meta={},
        )


def test_openai_client_without_key_or_service_raises_key_missing() -> None:
    client = OpenAILLMClient(api_key=None)

    with pytest.raises(LLMKeyMissingError) as excinfo:
        client.generate_json(
            system_prompt="sys",
            user_content="user",
            json_schema={"type": "object"},
            model="gpt-4.1",
            params={},
            run_meta={},
        )

    assert excinfo.value.code == "OPENAI_KEY_MISSING"


def test_normalize_usage_accepts_chat_style_keys() -> None:
    assert normalize_openai_usage({"prompt_tokens": 3, "completion_tokens": 4}) == {
        "prompt_tokens": 3,
        "completion_tokens": 4,
        "total_tokens": 7,
    }
    assert normalize_openai_usage(None) == {
        "prompt_tokens": None,
        "completion_tokens": None,
        "total_tokens": None,
    }


class CannedResponsesService:
    def __init__(self, body: dict[str, Any]) -> None:
        self._body = body

    def create(self, **kwargs: Any) -> dict[str, Any]:
        return self._body


def _generate(service: CannedResponsesService) -> Any:
    return OpenAILLMClient(responses_service=service).generate_json(
        system_prompt="sys",
        user_content="user",
        json_schema={"type": "object"},
        model="gpt-4.1",
        params={},
        run_meta={},
    )


def test_openai_refusal_is_a_structured_output_error() -> None:
    service = CannedResponsesService(
        {
            "output": [
                {
                    "type": "message",
                    "content": [{"type": "refusal", "refusal": "cannot help"}],
                }
            ]
        }
    )

    with pytest.raises(StructuredOutputError, match="cannot help"):
        _generate(service)


def test_openai_truncated_response_is_a_structured_output_error() -> None:
    service = CannedResponsesService(
        {
            "status": "incomplete",
            "incomplete_details": {"reason": "max_output_tokens"},
            "output": [{"content": [{"type": "output_text", "text": '{"title": "'}]}],
        }
    )

    with pytest.raises(StructuredOutputError, match="max_output_tokens"):
        _generate(service)


def test_openai_joins_text_parts_and_skips_reasoning_items() -> None:
    service = CannedResponsesService(
        {
            "output": [
                {"type": "reasoning", "summary": []},
                {
                    "type": "message",
                    "content": [
                        {"type": "output_text", "text": '{"a": '},
                        {"type": "output_text", "text": "1}"},
                    ],
                },
            ]
        }
    )

    result = _generate(service)

    assert result.parsed_json == {"a": 1}
    assert result.usage_normalized["total_tokens"] is None
