from __future__ import annotations

import logging
import mimetypes
import time
from pathlib import PurePosixPath
from typing import Callable

import fitz  # PyMuPDF

from examly.ocr_client.types import OCRClient
from examly.storage.blob_store import BlobStore
from examly.storage.models import MaterialKind, MaterialRecord
from examly.utils.error_taxonomy import (
    ExtractionFailed,
    build_error_details,
    is_retryable_ocr_exception,
)
from examly.utils.retry import OCR_RETRY_POLICY, RetryPolicy, run_with_retry

logger = logging.getLogger("examly.pipeline.extraction")

IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp", ".gif", ".bmp", ".tif", ".tiff"}
DEFAULT_MIME_TYPE = "application/octet-stream"


def infer_kind(mime_type: str | None, path: str | None) -> MaterialKind:
    """Declared MIME type wins; the file extension is the fallback."""
    mime = (mime_type or "").strip().lower()
    if mime == "application/pdf":
        return "pdf"
    if mime.startswith("image/"):
        return "image"
    if mime.startswith("text/"):
        return "file"

    suffix = PurePosixPath(path or "").suffix.lower()
    if suffix == ".pdf":
        return "pdf"
    if suffix in IMAGE_EXTENSIONS:
        return "image"
    return "file"


def extract_pdf_text(data: bytes) -> str:
    """Text layer only; scanned PDFs without one yield an empty string."""
    with fitz.open(stream=data, filetype="pdf") as doc:
        pages = [(page.get_text("text") or "").strip() for page in doc]
    return "\n\n".join(page for page in pages if page)


def decode_text(data: bytes) -> str:
    text = data.decode("utf-8")
    return text.lstrip("\ufeff")


class ExtractionStrategy:
    def __init__(
        self,
        *,
        ocr_client: OCRClient,
        blob_store: BlobStore | None = None,
        ocr_timeout_seconds: float = 20.0,
        retry_policy: RetryPolicy = OCR_RETRY_POLICY,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self.ocr_client = ocr_client
        self.blob_store = blob_store
        self.ocr_timeout_seconds = ocr_timeout_seconds
        self.retry_policy = retry_policy
        self.sleep_fn = sleep_fn

    def extract_material(self, material: MaterialRecord) -> str:
        if self.blob_store is None:
            raise ExtractionFailed("Blob store is not configured")
        try:
            data = self.blob_store.download(material.file_path)
        except Exception as error:  # noqa: BLE001
            raise ExtractionFailed(
                f"Download failed for {material.file_path}: {build_error_details(error)}"
            ) from error
        return self.extract(data=data, mime_type=material.mime_type, path=material.file_path)

    def extract(self, *, data: bytes, mime_type: str | None, path: str) -> str:
        kind = infer_kind(mime_type, path)
        started_at = time.perf_counter()

        if kind == "pdf":
            try:
                text = extract_pdf_text(data)
            except Exception as error:  # noqa: BLE001
                raise ExtractionFailed(f"PDF text extraction failed: {error}") from error
        elif kind == "image":
            text = self._ocr_image(data=data, mime_type=_image_mime(mime_type, path))
        else:
            try:
                text = decode_text(data)
            except UnicodeDecodeError as error:
                raise ExtractionFailed(f"File is not valid UTF-8 text: {error}") from error

        logger.info(
            "materials.extract.done",
            extra={
                "duration_ms": round((time.perf_counter() - started_at) * 1000, 1),
                "metrics": {"kind": kind, "chars": len(text)},
            },
        )
        return text

    def _ocr_image(self, *, data: bytes, mime_type: str) -> str:
        try:
            result = run_with_retry(
                operation=lambda: self.ocr_client.extract_text(
                    data=data,
                    mime_type=mime_type,
                    timeout_seconds=self.ocr_timeout_seconds,
                ),
                should_retry=is_retryable_ocr_exception,
                policy=self.retry_policy,
                sleep_fn=self.sleep_fn,
                on_retry=lambda retry_number, delay, error: logger.warning(
                    "materials.ocr.retry",
                    extra={
                        "metrics": {
                            "retry": retry_number,
                            "delay_s": delay,
                            "error": str(error),
                        }
                    },
                ),
            )
        except Exception as error:  # noqa: BLE001
            raise ExtractionFailed(
                f"OCR failed: {build_error_details(error)}"
            ) from error
        # Empty OCR output is a valid result: the image had no readable text.
        return result.text or ""


def _image_mime(mime_type: str | None, path: str) -> str:
    mime = (mime_type or "").strip().lower()
    if mime.startswith("image/"):
        return mime
    guessed, _ = mimetypes.guess_type(path)
    if guessed and guessed.startswith("image/"):
        return guessed
    return "image/png"
