from __future__ import annotations

import time
from typing import Any, Protocol, Sequence

from examly.llm_client.base import ImageInput, LLMResult
from examly.llm_client.json_repair import parse_with_repair
from examly.utils.error_taxonomy import LLMKeyMissingError, StructuredOutputError


class OpenAIResponsesService(Protocol):
    def create(self, **kwargs: Any) -> Any: ...


class OpenAILLMClient:
    """Structured JSON generation over the Responses API.

    The SDK's own retries are disabled; the generation orchestrator owns the
    retry/repair budget.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        responses_service: OpenAIResponsesService | None = None,
    ) -> None:
        self._api_key = api_key
        self._responses_service = responses_service

    def generate_json(
        self,
        *,
        system_prompt: str,
        user_content: str,
        json_schema: dict[str, Any],
        model: str,
        params: dict[str, Any],
        run_meta: dict[str, Any],
        images: Sequence[ImageInput] = (),
    ) -> LLMResult:
        service = self._responses()
        request = self.build_request_payload(
            system_prompt=system_prompt,
            user_content=user_content,
            json_schema=json_schema,
            model=model,
            params=params,
            run_meta=run_meta,
            images=images,
        )
        if params.get("timeout_seconds") is not None:
            # Forwarded to httpx; the request is aborted once it elapses.
            request["timeout"] = float(params["timeout_seconds"])

        started = time.perf_counter()
        response = service.create(**request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        body = _as_dict(response)
        raw_text = _read_output_text(response, body)
        usage_raw = body.get("usage")
        if not isinstance(usage_raw, dict):
            usage_raw = _as_dict(getattr(response, "usage", None))

        return LLMResult(
            raw_text=raw_text,
            parsed_json=parse_with_repair(raw_text),
            raw_response=body,
            usage_raw=usage_raw,
            usage_normalized=normalize_openai_usage(usage_raw),
            timings={"t_llm_total_ms": elapsed_ms},
        )

    @staticmethod
    def build_request_payload(
        *,
        system_prompt: str,
        user_content: str,
        json_schema: dict[str, Any],
        model: str,
        params: dict[str, Any],
        run_meta: dict[str, Any],
        images: Sequence[ImageInput] = (),
    ) -> dict[str, Any]:
        detail = str(params.get("image_detail") or "auto")
        user_parts: list[dict[str, Any]] = [{"type": "input_text", "text": user_content}]
        user_parts.extend(
            {"type": "input_image", "image_url": image.to_data_url(), "detail": detail}
            for image in images
        )

        payload: dict[str, Any] = {
            "model": model,
            "input": [
                {
                    "role": "system",
                    "content": [{"type": "input_text", "text": system_prompt}],
                },
                {"role": "user", "content": user_parts},
            ],
            "text": {
                "format": {
                    "type": "json_schema",
                    "name": str(run_meta.get("schema_name") or "study_plan"),
                    "schema": json_schema,
                    "strict": True,
                }
            },
            "tools": [],
            "tool_choice": "none",
        }
        if params.get("temperature") is not None:
            payload["temperature"] = float(params["temperature"])
        if params.get("max_output_tokens") is not None:
            payload["max_output_tokens"] = int(params["max_output_tokens"])
        return payload

    def _responses(self) -> OpenAIResponsesService:
        if self._responses_service is None:
            if not self._api_key:
                raise LLMKeyMissingError("OPENAI_API_KEY is not configured")
            try:
                from openai import OpenAI
            except ImportError as error:
                raise RuntimeError("openai package is not installed") from error
            self._responses_service = OpenAI(api_key=self._api_key, max_retries=0).responses
        return self._responses_service


def normalize_openai_usage(usage: dict[str, Any] | None) -> dict[str, int | None]:
    """Map Responses or Chat Completions usage keys onto one shape."""
    data = usage or {}
    prompt = _int_or_none(data.get("input_tokens", data.get("prompt_tokens")))
    completion = _int_or_none(data.get("output_tokens", data.get("completion_tokens")))
    total = _int_or_none(data.get("total_tokens"))
    if total is None and (prompt is not None or completion is not None):
        total = (prompt or 0) + (completion or 0)
    return {
        "prompt_tokens": prompt,
        "completion_tokens": completion,
        "total_tokens": total,
    }


def _read_output_text(response: Any, body: dict[str, Any]) -> str:
    """Join the message text parts of a response.

    A refusal or a response cut short by the token limit raises
    ``StructuredOutputError`` so the caller can spend its repair attempt.
    """
    if body.get("status") == "incomplete":
        details = body.get("incomplete_details")
        reason = details.get("reason") if isinstance(details, dict) else None
        raise StructuredOutputError(f"Model output is incomplete: {reason or 'unknown'}")

    chunks: list[str] = []
    for item in body.get("output") or []:
        if not isinstance(item, dict) or item.get("type", "message") != "message":
            continue
        for part in item.get("content") or []:
            if not isinstance(part, dict):
                continue
            if part.get("type") == "refusal":
                raise StructuredOutputError(
                    f"Model refused the request: {part.get('refusal') or 'no reason given'}"
                )
            if isinstance(part.get("text"), str):
                chunks.append(part["text"])

    text = "".join(chunks)
    if text.strip():
        return text
    # SDK objects expose the aggregated text as a convenience property.
    fallback = getattr(response, "output_text", None) or body.get("output_text")
    return fallback if isinstance(fallback, str) else ""


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if hasattr(value, "model_dump"):
        dumped = value.model_dump()
        if isinstance(dumped, dict):
            return dumped
    return {}


def _int_or_none(value: Any) -> int | None:
    try:
        return None if value is None else int(value)
    except (TypeError, ValueError):
        return None
