from __future__ import annotations

import base64
from typing import Any, Protocol

from examly.ocr_client.types import OCRResult
from examly.utils.error_taxonomy import (
    ExtractionFailed,
    LLMKeyMissingError,
    UnsupportedFileTypeError,
)


class OCRProcessService(Protocol):
    def process(self, **kwargs: Any) -> Any: ...


class MistralOCRClient:
    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str = "mistral-ocr-latest",
        process_service: OCRProcessService | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._process_service = process_service

    def extract_text(
        self,
        *,
        data: bytes,
        mime_type: str,
        timeout_seconds: float,
    ) -> OCRResult:
        if not mime_type.lower().startswith("image/"):
            raise UnsupportedFileTypeError(
                f"Mistral OCR accepts images only, got {mime_type or 'unknown'}"
            )

        encoded = base64.b64encode(data).decode("ascii")
        request_payload: dict[str, Any] = {
            "model": self._model,
            "document": {
                "type": "image_url",
                "image_url": f"data:{mime_type};base64,{encoded}",
            },
            "include_image_base64": False,
            "timeout_ms": int(timeout_seconds * 1000),
        }

        response = self._resolve_service().process(**request_payload)
        payload = _response_to_dict(response)

        pages = payload.get("pages")
        if not isinstance(pages, list):
            raise ExtractionFailed("OCR response missing pages list")

        page_markdowns = [
            str(page.get("markdown") or "").strip()
            for page in pages
            if isinstance(page, dict)
        ]
        text = "\n\n".join(item for item in page_markdowns if item)

        return OCRResult(
            text=text,
            ocr_model=str(payload.get("model") or self._model),
            pages_count=len(page_markdowns),
        )

    def _resolve_service(self) -> OCRProcessService:
        if self._process_service is not None:
            return self._process_service

        if not self._api_key:
            raise LLMKeyMissingError(
                "Mistral API key is required when service is not provided",
                code="SERVER_MISCONFIGURED",
            )

        try:
            from mistralai import Mistral
        except ImportError as error:
            raise RuntimeError("mistralai package is not installed") from error

        client = Mistral(api_key=self._api_key)
        self._process_service = client.ocr
        return self._process_service


def _response_to_dict(response: Any) -> dict[str, Any]:
    if isinstance(response, dict):
        return response

    model_dump = getattr(response, "model_dump", None)
    if callable(model_dump):
        dumped = model_dump()
        if isinstance(dumped, dict):
            return dumped

    raise ExtractionFailed("Unsupported OCR response type")
