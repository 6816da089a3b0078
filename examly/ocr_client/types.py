from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True, slots=True)
class OCRResult:
    text: str
    ocr_model: str
    pages_count: int = 1
    language: str | None = None
    confidence: float | None = None


class OCRClient(Protocol):
    def extract_text(
        self,
        *,
        data: bytes,
        mime_type: str,
        timeout_seconds: float,
    ) -> OCRResult: ...
