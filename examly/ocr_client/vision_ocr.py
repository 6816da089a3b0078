from __future__ import annotations

from typing import Any

from examly.llm_client.base import ImageInput, LLMClient
from examly.ocr_client.types import OCRResult
from examly.prompts.manager import PromptSet

OCR_PROMPT_NAME = "material_ocr"


class VisionOCRClient:
    """OCR through the multimodal model with a fixed extraction instruction."""

    def __init__(
        self,
        *,
        llm_client: LLMClient,
        prompt_set: PromptSet,
        model: str,
        max_output_tokens: int = 4000,
    ) -> None:
        self._llm_client = llm_client
        self._prompt_set = prompt_set
        self._schema = prompt_set.schema
        self._model = model
        self._max_output_tokens = max_output_tokens

    def extract_text(
        self,
        *,
        data: bytes,
        mime_type: str,
        timeout_seconds: float,
    ) -> OCRResult:
        result = self._llm_client.generate_json(
            system_prompt=self._prompt_set.system_prompt_text,
            user_content=str(
                self._prompt_set.meta.get("user_instruction")
                or "Extract the readable text from this image."
            ),
            json_schema=self._schema,
            model=self._model,
            params={
                "temperature": 0,
                "max_output_tokens": self._max_output_tokens,
                "timeout_seconds": timeout_seconds,
                "image_detail": "high",
            },
            run_meta={"schema_name": OCR_PROMPT_NAME},
            images=[ImageInput(data=data, mime_type=mime_type)],
        )
        parsed = result.parsed_json
        return OCRResult(
            text=str(parsed.get("extracted_text") or "").strip(),
            ocr_model=self._model,
            language=_optional_str(parsed.get("language")),
            confidence=_optional_float(parsed.get("confidence")),
        )


def _optional_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _optional_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None
