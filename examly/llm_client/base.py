from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence


@dataclass(frozen=True, slots=True)
class ImageInput:
    data: bytes
    mime_type: str = "image/png"

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


@dataclass(frozen=True, slots=True)
class LLMResult:
    raw_text: str
    parsed_json: dict[str, Any]
    raw_response: dict[str, Any]
    usage_raw: dict[str, Any]
    usage_normalized: dict[str, int | None]
    timings: dict[str, float] = field(default_factory=dict)


class LLMClient(Protocol):
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
    ) -> LLMResult: ...
