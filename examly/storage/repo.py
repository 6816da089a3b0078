from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from examly.storage.db import connection, format_timestamp, init_db, utc_now
from examly.storage.models import (
    GenerationKind,
    GenerationRecord,
    MaterialKind,
    MaterialRecord,
)

# Rows eligible for a kick: fresh uploads, failed rows past their cooldown,
# and processing rows whose lease ran out (crashed worker).
_CLAIMABLE_CLAUSE = """
    (
        status = 'uploaded'
        OR (status = 'failed' AND (next_attempt_at IS NULL OR next_attempt_at <= :now))
        OR (status = 'processing' AND (lease_expires_at IS NULL OR lease_expires_at <= :now))
    )
"""

_MATERIAL_COLUMNS = """
    id, user_id, plan_id, file_path, mime_type, kind, original_name, status,
    extracted_text, error, attempts, lease_expires_at, next_attempt_at,
    created_at, updated_at
"""

_GENERATION_COLUMNS = """
    id, user_id, kind, prompt, language, title, status, payload_json,
    credits_charged, error_code, error_message, input_chars, images_count,
    output_chars, attempts, usage_json, materials_json, created_at, updated_at
"""


class StorageRepo:
    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        init_db(self.db_path)

    def register_material(
        self,
        *,
        user_id: str,
        plan_id: str,
        file_path: str,
        mime_type: str,
        kind: MaterialKind,
        original_name: str | None = None,
        material_id: str | None = None,
        created_at: datetime | None = None,
    ) -> MaterialRecord:
        """Insert an ``uploaded`` row; re-registering the same path is a no-op."""
        timestamp = format_timestamp(created_at or utc_now())
        with connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO materials (
                    id, user_id, plan_id, file_path, mime_type, kind,
                    original_name, status, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, 'uploaded', ?, ?)
                """,
                (
                    material_id or str(uuid4()),
                    user_id,
                    plan_id,
                    file_path,
                    mime_type,
                    kind,
                    original_name,
                    timestamp,
                    timestamp,
                ),
            )
            row = conn.execute(
                f"""
                SELECT {_MATERIAL_COLUMNS} FROM materials
                WHERE user_id = ? AND plan_id = ? AND file_path = ?
                """,
                (user_id, plan_id, file_path),
            ).fetchone()

        if row is None:
            raise RuntimeError("Failed to register material")
        return _row_to_material(row)

    def get_material(self, *, user_id: str, material_id: str) -> MaterialRecord | None:
        with connection(self.db_path) as conn:
            row = conn.execute(
                f"SELECT {_MATERIAL_COLUMNS} FROM materials WHERE user_id = ? AND id = ?",
                (user_id, material_id),
            ).fetchone()
        if row is None:
            return None
        return _row_to_material(row)

    def list_materials(self, *, user_id: str, plan_id: str) -> list[MaterialRecord]:
        with connection(self.db_path) as conn:
            rows = conn.execute(
                f"""
                SELECT {_MATERIAL_COLUMNS} FROM materials
                WHERE user_id = ? AND plan_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (user_id, plan_id),
            ).fetchall()
        return [_row_to_material(row) for row in rows]

    def list_claimable_materials(
        self,
        *,
        user_id: str,
        plan_id: str,
        now: datetime,
    ) -> list[MaterialRecord]:
        with connection(self.db_path) as conn:
            rows = conn.execute(
                f"""
                SELECT {_MATERIAL_COLUMNS} FROM materials
                WHERE user_id = :user_id AND plan_id = :plan_id AND {_CLAIMABLE_CLAUSE}
                ORDER BY created_at ASC, rowid ASC
                """,
                {"user_id": user_id, "plan_id": plan_id, "now": format_timestamp(now)},
            ).fetchall()
        return [_row_to_material(row) for row in rows]

    def claim_material(
        self,
        *,
        user_id: str,
        material_id: str,
        now: datetime,
        lease_expires_at: datetime,
    ) -> bool:
        """Move a claimable row to ``processing``; False when another kick won."""
        with connection(self.db_path) as conn:
            cursor = conn.execute(
                f"""
                UPDATE materials
                SET status = 'processing',
                    attempts = attempts + 1,
                    extracted_text = NULL,
                    lease_expires_at = :lease,
                    updated_at = :now
                WHERE user_id = :user_id AND id = :material_id AND {_CLAIMABLE_CLAUSE}
                """,
                {
                    "user_id": user_id,
                    "material_id": material_id,
                    "now": format_timestamp(now),
                    "lease": format_timestamp(lease_expires_at),
                },
            )
        return cursor.rowcount == 1

    def mark_material_processed(
        self,
        *,
        user_id: str,
        material_id: str,
        extracted_text: str | None,
        now: datetime | None = None,
    ) -> None:
        with connection(self.db_path) as conn:
            conn.execute(
                """
                UPDATE materials
                SET status = 'processed',
                    extracted_text = ?,
                    error = NULL,
                    lease_expires_at = NULL,
                    next_attempt_at = NULL,
                    updated_at = ?
                WHERE user_id = ? AND id = ?
                """,
                (
                    extracted_text or None,
                    format_timestamp(now or utc_now()),
                    user_id,
                    material_id,
                ),
            )

    def mark_material_failed(
        self,
        *,
        user_id: str,
        material_id: str,
        error: str,
        next_attempt_at: datetime | None,
        now: datetime | None = None,
    ) -> None:
        with connection(self.db_path) as conn:
            conn.execute(
                """
                UPDATE materials
                SET status = 'failed',
                    extracted_text = NULL,
                    error = ?,
                    lease_expires_at = NULL,
                    next_attempt_at = ?,
                    updated_at = ?
                WHERE user_id = ? AND id = ?
                """,
                (
                    error or "unknown error",
                    format_timestamp(next_attempt_at) if next_attempt_at else None,
                    format_timestamp(now or utc_now()),
                    user_id,
                    material_id,
                ),
            )

    def begin_generation(
        self,
        *,
        user_id: str,
        kind: GenerationKind,
        prompt: str,
        language: str,
        input_chars: int,
        images_count: int,
        material_ids: list[str],
        generation_id: str | None = None,
    ) -> GenerationRecord:
        """Create the ``processing`` audit row, or reopen an existing one.

        A row already ``done`` keeps its status and charge; only the attempt
        counter moves so the document can be regenerated in place.
        """
        identifier = generation_id or str(uuid4())
        timestamp = format_timestamp(utc_now())
        with connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO generations (
                    id, user_id, kind, prompt, language, status, input_chars,
                    images_count, materials_json, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, 'processing', ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    attempts = generations.attempts + 1,
                    status = CASE
                        WHEN generations.status = 'done' THEN 'done'
                        ELSE 'processing'
                    END,
                    error_code = NULL,
                    error_message = NULL,
                    updated_at = excluded.updated_at
                WHERE generations.user_id = excluded.user_id
                """,
                (
                    identifier,
                    user_id,
                    kind,
                    prompt,
                    language,
                    input_chars,
                    images_count,
                    json.dumps(material_ids),
                    timestamp,
                    timestamp,
                ),
            )

        generation = self.get_generation(user_id=user_id, generation_id=identifier)
        if generation is None:
            raise RuntimeError("Failed to create generation")
        return generation

    def mark_generation_done(
        self,
        *,
        user_id: str,
        generation_id: str,
        title: str,
        payload: dict[str, Any],
        usage: dict[str, Any] | None = None,
    ) -> None:
        payload_json = json.dumps(payload, ensure_ascii=False)
        with connection(self.db_path) as conn:
            conn.execute(
                """
                UPDATE generations
                SET status = 'done',
                    title = ?,
                    payload_json = ?,
                    output_chars = ?,
                    usage_json = ?,
                    error_code = NULL,
                    error_message = NULL,
                    updated_at = ?
                WHERE user_id = ? AND id = ?
                """,
                (
                    title,
                    payload_json,
                    len(payload_json),
                    json.dumps(usage or {}),
                    format_timestamp(utc_now()),
                    user_id,
                    generation_id,
                ),
            )

    def record_generation_charge(
        self,
        *,
        user_id: str,
        generation_id: str,
        credits: int,
    ) -> None:
        with connection(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE generations
                SET credits_charged = ?, updated_at = ?
                WHERE user_id = ? AND id = ? AND status = 'done'
                """,
                (credits, format_timestamp(utc_now()), user_id, generation_id),
            )
        if cursor.rowcount != 1:
            raise RuntimeError(
                f"Generation {generation_id} is not done; charge cannot be recorded"
            )

    def mark_generation_failed(
        self,
        *,
        user_id: str,
        generation_id: str,
        error_code: str,
        error_message: str | None,
    ) -> bool:
        """Fail a generation and zero its charge; a charged ``done`` row is kept."""
        with connection(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE generations
                SET status = 'failed',
                    credits_charged = 0,
                    error_code = ?,
                    error_message = ?,
                    updated_at = ?
                WHERE user_id = ? AND id = ?
                  AND NOT (status = 'done' AND credits_charged > 0)
                """,
                (
                    error_code,
                    error_message,
                    format_timestamp(utc_now()),
                    user_id,
                    generation_id,
                ),
            )
        return cursor.rowcount == 1

    def get_generation(
        self, *, user_id: str, generation_id: str
    ) -> GenerationRecord | None:
        with connection(self.db_path) as conn:
            row = conn.execute(
                f"SELECT {_GENERATION_COLUMNS} FROM generations WHERE user_id = ? AND id = ?",
                (user_id, generation_id),
            ).fetchone()
        if row is None:
            return None
        return _row_to_generation(row)

    def find_generation(self, generation_id: str) -> GenerationRecord | None:
        with connection(self.db_path) as conn:
            row = conn.execute(
                f"SELECT {_GENERATION_COLUMNS} FROM generations WHERE id = ?",
                (generation_id,),
            ).fetchone()
        if row is None:
            return None
        return _row_to_generation(row)

    def list_generations(
        self, *, user_id: str, limit: int = 20
    ) -> list[GenerationRecord]:
        with connection(self.db_path) as conn:
            rows = conn.execute(
                f"""
                SELECT {_GENERATION_COLUMNS} FROM generations
                WHERE user_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (user_id, max(1, int(limit))),
            ).fetchall()
        return [_row_to_generation(row) for row in rows]

    def delete_generations(self, *, user_id: str) -> int:
        with connection(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM generations WHERE user_id = ?", (user_id,)
            )
            conn.execute("DELETE FROM generation_pointer WHERE user_id = ?", (user_id,))
        return cursor.rowcount

    def set_current_generation(self, *, user_id: str, generation_id: str) -> None:
        with connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO generation_pointer (user_id, generation_id, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT (user_id) DO UPDATE SET
                    generation_id = excluded.generation_id,
                    updated_at = excluded.updated_at
                """,
                (user_id, generation_id, format_timestamp(utc_now())),
            )

    def get_current_generation_id(self, *, user_id: str) -> str | None:
        with connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT generation_id FROM generation_pointer WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return str(row["generation_id"])


def _row_to_material(row: sqlite3.Row) -> MaterialRecord:
    return MaterialRecord(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        plan_id=str(row["plan_id"]),
        file_path=str(row["file_path"]),
        mime_type=str(row["mime_type"]),
        kind=row["kind"],
        status=row["status"],
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
        original_name=row["original_name"],
        extracted_text=row["extracted_text"],
        error=row["error"],
        attempts=int(row["attempts"]),
        lease_expires_at=row["lease_expires_at"],
        next_attempt_at=row["next_attempt_at"],
    )


def _row_to_generation(row: sqlite3.Row) -> GenerationRecord:
    return GenerationRecord(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        kind=row["kind"],
        prompt=str(row["prompt"]),
        language=str(row["language"]),
        status=row["status"],
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
        title=row["title"],
        payload=_parse_json_dict(row["payload_json"]),
        credits_charged=int(row["credits_charged"] or 0),
        error_code=row["error_code"],
        error_message=row["error_message"],
        input_chars=int(row["input_chars"] or 0),
        images_count=int(row["images_count"] or 0),
        output_chars=row["output_chars"],
        attempts=int(row["attempts"] or 1),
        usage=_parse_json_dict(row["usage_json"]) or {},
        material_ids=_parse_json_list(row["materials_json"]),
    )


def _parse_json_dict(value: Any) -> dict[str, Any] | None:
    if value is None:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _parse_json_list(value: Any) -> list[str]:
    if value is None:
        return []
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list):
        return []
    return [str(item) for item in parsed]
