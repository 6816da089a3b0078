from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator, Mapping, Sequence

from examly.pipeline.extraction import DEFAULT_MIME_TYPE, ExtractionStrategy, infer_kind
from examly.storage.blob_store import is_user_path
from examly.storage.db import utc_now
from examly.storage.models import MaterialRecord, MaterialStatus
from examly.storage.repo import StorageRepo
from examly.utils.error_taxonomy import InputError, build_error_details
from examly.utils.logging import clear_log_context, set_log_context
from examly.utils.text import clip_text

logger = logging.getLogger("examly.pipeline.ingestion")

_EXTRACT_ATTEMPTS = 2


@dataclass(frozen=True, slots=True)
class MaterialItemResult:
    id: str
    status: MaterialStatus
    error: str | None


@dataclass(frozen=True, slots=True)
class KickResult:
    ok: bool
    processed_count: int
    items: list[MaterialItemResult]


@dataclass(frozen=True, slots=True)
class MaterialStatusReport:
    items: list[MaterialItemResult]
    total: int
    processed: int
    failed: int

    @property
    def settled(self) -> bool:
        return self.processed + self.failed >= self.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [
                {"id": item.id, "status": item.status, "error": item.error}
                for item in self.items
            ],
            "total": self.total,
            "processed": self.processed,
            "failed": self.failed,
            "settled": self.settled,
        }


class MaterialIngestionOrchestrator:
    """Drives registered materials through extraction in small parallel batches.

    Work only happens inside ``kick``; the client keeps calling it until
    ``status`` reports every item settled.
    """

    def __init__(
        self,
        *,
        repo: StorageRepo,
        extractor: ExtractionStrategy,
        max_files: int = 15,
        max_images: int = 7,
        batch_size: int = 2,
        max_text_chars: int = 120_000,
        lease_seconds: float = 300.0,
        failed_cooldown_seconds: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repo = repo
        self.extractor = extractor
        self.max_files = max_files
        self.max_images = max_images
        self.batch_size = max(1, batch_size)
        self.max_text_chars = max_text_chars
        self.lease_seconds = lease_seconds
        self.failed_cooldown_seconds = failed_cooldown_seconds
        self.clock = clock

    def register_materials(
        self,
        *,
        user_id: str,
        plan_id: str,
        items: Sequence[Mapping[str, Any]],
    ) -> list[MaterialRecord]:
        accepted: list[Mapping[str, Any]] = []
        for item in items:
            file_path = str(item.get("file_path") or "")
            if not is_user_path(file_path, user_id):
                logger.warning(
                    "materials.register.rejected_path",
                    extra={"metrics": {"file_path": file_path}},
                )
                continue
            accepted.append(item)

        if not accepted:
            raise InputError("No valid materials to register", code="INVALID_REQUEST")
        if len(accepted) > self.max_files:
            raise InputError(
                f"At most {self.max_files} files can be attached",
                code="TOO_MANY_FILES",
            )

        records: list[MaterialRecord] = []
        for item in accepted:
            file_path = str(item["file_path"])
            mime_type = str(item.get("mime_type") or DEFAULT_MIME_TYPE)
            records.append(
                self.repo.register_material(
                    user_id=user_id,
                    plan_id=plan_id,
                    file_path=file_path,
                    mime_type=mime_type,
                    kind=infer_kind(mime_type, file_path),
                    original_name=item.get("original_name"),
                    created_at=self.clock(),
                )
            )
        logger.info(
            "materials.register.done",
            extra={"user_id": user_id, "plan_id": plan_id, "metrics": {"count": len(records)}},
        )
        return records

    def kick(self, *, user_id: str, plan_id: str) -> KickResult:
        set_log_context(user_id=user_id, plan_id=plan_id, stage="materials.kick")
        try:
            return self._kick(user_id=user_id, plan_id=plan_id)
        finally:
            clear_log_context(["user_id", "plan_id", "stage"])

    def _kick(self, *, user_id: str, plan_id: str) -> KickResult:
        started_at = time.perf_counter()

        candidates = self.repo.list_claimable_materials(
            user_id=user_id,
            plan_id=plan_id,
            now=self.clock(),
        )
        image_count = sum(1 for item in candidates if item.kind == "image")
        if len(candidates) > self.max_files or image_count > self.max_images:
            raise InputError(
                (
                    f"Too many files to process: {len(candidates)} files, "
                    f"{image_count} images (limits {self.max_files}/{self.max_images})"
                ),
                code="TOO_MANY_FILES",
            )

        logger.info(
            "materials.kick.start",
            extra={"metrics": {"candidates": len(candidates), "images": image_count}},
        )

        results: list[MaterialItemResult] = []
        if candidates:
            with ThreadPoolExecutor(
                max_workers=self.batch_size,
                thread_name_prefix="examly-ingest",
            ) as executor:
                for batch in _batches(candidates, self.batch_size):
                    futures = [
                        executor.submit(self._process_item, material)
                        for material in batch
                    ]
                    results.extend(future.result() for future in futures)

        processed_count = sum(
            1 for item in results if item.status in {"processed", "failed"}
        )
        logger.info(
            "materials.kick.done",
            extra={
                "duration_ms": round((time.perf_counter() - started_at) * 1000, 1),
                "metrics": {
                    "processed_count": processed_count,
                    "failed": sum(1 for item in results if item.status == "failed"),
                },
            },
        )
        return KickResult(ok=True, processed_count=processed_count, items=results)

    def status(self, *, user_id: str, plan_id: str) -> MaterialStatusReport:
        materials = self.repo.list_materials(user_id=user_id, plan_id=plan_id)
        items = [
            MaterialItemResult(id=item.id, status=item.status, error=item.error)
            for item in materials
        ]
        return MaterialStatusReport(
            items=items,
            total=len(items),
            processed=sum(1 for item in items if item.status == "processed"),
            failed=sum(1 for item in items if item.status == "failed"),
        )

    def _process_item(self, material: MaterialRecord) -> MaterialItemResult:
        set_log_context(
            user_id=material.user_id,
            plan_id=material.plan_id,
            material_id=material.id,
            stage="materials.extract",
        )
        try:
            return self._extract_item(material)
        finally:
            clear_log_context(["user_id", "plan_id", "material_id", "stage"])

    def _extract_item(self, material: MaterialRecord) -> MaterialItemResult:
        now = self.clock()
        try:
            claimed = self.repo.claim_material(
                user_id=material.user_id,
                material_id=material.id,
                now=now,
                lease_expires_at=now + timedelta(seconds=self.lease_seconds),
            )
        except Exception as error:  # noqa: BLE001
            details = build_error_details(error)
            logger.error("materials.claim_failed", extra={"metrics": {"error": details}})
            return MaterialItemResult(id=material.id, status=material.status, error=details)

        if not claimed:
            current = self.repo.get_material(
                user_id=material.user_id, material_id=material.id
            )
            logger.info("materials.claim_skipped")
            return MaterialItemResult(
                id=material.id,
                status=current.status if current else material.status,
                error=current.error if current else material.error,
            )

        last_error: Exception | None = None
        for attempt in range(1, _EXTRACT_ATTEMPTS + 1):
            try:
                text = self.extractor.extract_material(material)
            except Exception as error:  # noqa: BLE001
                last_error = error
                logger.warning(
                    "materials.extract.failed",
                    extra={"metrics": {"attempt": attempt, "error": str(error)}},
                )
                continue
            return self._finish_processed(material, text)

        return self._finish_failed(material, last_error)

    def _finish_processed(self, material: MaterialRecord, text: str) -> MaterialItemResult:
        clipped = clip_text(text.strip(), self.max_text_chars) or None
        try:
            self.repo.mark_material_processed(
                user_id=material.user_id,
                material_id=material.id,
                extracted_text=clipped,
                now=self.clock(),
            )
        except Exception as error:  # noqa: BLE001
            details = build_error_details(error)
            logger.error("materials.persist_failed", extra={"metrics": {"error": details}})
            return MaterialItemResult(id=material.id, status="processing", error=details)
        return MaterialItemResult(id=material.id, status="processed", error=None)

    def _finish_failed(
        self, material: MaterialRecord, error: Exception | None
    ) -> MaterialItemResult:
        message = str(error) if error is not None else "extraction failed"
        now = self.clock()
        try:
            self.repo.mark_material_failed(
                user_id=material.user_id,
                material_id=material.id,
                error=message,
                next_attempt_at=now + timedelta(seconds=self.failed_cooldown_seconds),
                now=now,
            )
        except Exception as persist_error:  # noqa: BLE001
            details = build_error_details(persist_error)
            logger.error("materials.persist_failed", extra={"metrics": {"error": details}})
            return MaterialItemResult(
                id=material.id, status="processing", error=f"{message}\n{details}"
            )
        return MaterialItemResult(id=material.id, status="failed", error=message)


def _batches(
    items: Sequence[MaterialRecord], size: int
) -> Iterator[Sequence[MaterialRecord]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]
