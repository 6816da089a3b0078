from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from examly.storage.db import connection, format_timestamp
from examly.storage.repo import StorageRepo
from examly.utils.error_taxonomy import SchemaMismatchError

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _repo(tmp_path: Path) -> StorageRepo:
    return StorageRepo(tmp_path / "examly.sqlite3")


def _register(repo: StorageRepo, name: str = "a.png", *, created_at: datetime = T0):
    return repo.register_material(
        user_id="u1",
        plan_id="p1",
        file_path=f"materials/u1/{name}",
        mime_type="image/png",
        kind="image",
        created_at=created_at,
    )


def test_register_material_is_idempotent_per_path(tmp_path: Path) -> None:
    repo = _repo(tmp_path)

    first = _register(repo)
    second = _register(repo)

    assert first.id == second.id
    assert first.status == "uploaded"
    assert len(repo.list_materials(user_id="u1", plan_id="p1")) == 1


def test_materials_are_listed_in_creation_order(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    later = _register(repo, "b.png", created_at=T0 + timedelta(seconds=5))
    earlier = _register(repo, "a.png", created_at=T0)

    ids = [item.id for item in repo.list_materials(user_id="u1", plan_id="p1")]

    assert ids == [earlier.id, later.id]


def test_claim_is_exclusive_until_lease_expires(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    material = _register(repo)
    lease = T0 + timedelta(minutes=5)

    assert repo.claim_material(user_id="u1", material_id=material.id, now=T0, lease_expires_at=lease)
    assert not repo.claim_material(
        user_id="u1", material_id=material.id, now=T0 + timedelta(minutes=1), lease_expires_at=lease
    )
    assert repo.list_claimable_materials(user_id="u1", plan_id="p1", now=T0) == []

    after_lease = T0 + timedelta(minutes=6)
    claimable = repo.list_claimable_materials(user_id="u1", plan_id="p1", now=after_lease)
    assert [item.id for item in claimable] == [material.id]
    assert repo.claim_material(
        user_id="u1",
        material_id=material.id,
        now=after_lease,
        lease_expires_at=after_lease + timedelta(minutes=5),
    )
    assert repo.get_material(user_id="u1", material_id=material.id).attempts == 2


def test_failed_material_waits_for_cooldown(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    material = _register(repo)
    repo.claim_material(
        user_id="u1", material_id=material.id, now=T0, lease_expires_at=T0 + timedelta(minutes=5)
    )

    repo.mark_material_failed(
        user_id="u1",
        material_id=material.id,
        error="OCR failed",
        next_attempt_at=T0 + timedelta(seconds=30),
        now=T0,
    )

    stored = repo.get_material(user_id="u1", material_id=material.id)
    assert stored.status == "failed"
    assert stored.error == "OCR failed"
    assert repo.list_claimable_materials(user_id="u1", plan_id="p1", now=T0) == []
    assert len(
        repo.list_claimable_materials(user_id="u1", plan_id="p1", now=T0 + timedelta(seconds=31))
    ) == 1


def test_processed_material_stores_text_and_is_never_claimable(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    material = _register(repo)
    repo.claim_material(
        user_id="u1", material_id=material.id, now=T0, lease_expires_at=T0 + timedelta(minutes=5)
    )

    repo.mark_material_processed(user_id="u1", material_id=material.id, extracted_text="", now=T0)

    stored = repo.get_material(user_id="u1", material_id=material.id)
    assert stored.status == "processed"
    assert stored.extracted_text is None
    assert repo.list_claimable_materials(
        user_id="u1", plan_id="p1", now=T0 + timedelta(days=1)
    ) == []


def test_extracted_text_requires_processed_status(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    material = _register(repo)

    with pytest.raises(sqlite3.IntegrityError):
        with connection(repo.db_path) as conn:
            conn.execute(
                "UPDATE materials SET extracted_text = 'x' WHERE id = ?", (material.id,)
            )


def _begin(repo: StorageRepo, generation_id: str = "gen-1"):
    return repo.begin_generation(
        user_id="u1",
        kind="plan",
        prompt="Algebra",
        language="en",
        input_chars=7,
        images_count=0,
        material_ids=["m1"],
        generation_id=generation_id,
    )


def test_generation_lifecycle_and_charge_invariant(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    created = _begin(repo)
    assert created.status == "processing"
    assert created.material_ids == ["m1"]

    with pytest.raises(RuntimeError):
        repo.record_generation_charge(user_id="u1", generation_id="gen-1", credits=1)

    repo.mark_generation_done(
        user_id="u1",
        generation_id="gen-1",
        title="Algebra plan",
        payload={"title": "Algebra plan"},
        usage={"total_tokens": 10},
    )
    repo.record_generation_charge(user_id="u1", generation_id="gen-1", credits=1)

    done = repo.get_generation(user_id="u1", generation_id="gen-1")
    assert done.status == "done"
    assert done.credits_charged == 1
    assert done.payload == {"title": "Algebra plan"}
    assert done.usage == {"total_tokens": 10}
    assert done.output_chars == len('{"title": "Algebra plan"}')

    assert repo.mark_generation_failed(
        user_id="u1", generation_id="gen-1", error_code="OPENAI_TIMEOUT", error_message="x"
    ) is False
    assert repo.get_generation(user_id="u1", generation_id="gen-1").status == "done"


def test_failed_generation_has_zero_charge(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    _begin(repo)
    repo.mark_generation_done(user_id="u1", generation_id="gen-1", title="t", payload={})

    assert repo.mark_generation_failed(
        user_id="u1", generation_id="gen-1", error_code="CREDITS_CHARGE_FAILED", error_message="x"
    )

    failed = repo.get_generation(user_id="u1", generation_id="gen-1")
    assert failed.status == "failed"
    assert failed.credits_charged == 0
    assert failed.error_code == "CREDITS_CHARGE_FAILED"


def test_begin_generation_reopens_without_losing_done_state(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    _begin(repo)
    repo.mark_generation_done(user_id="u1", generation_id="gen-1", title="t", payload={"a": 1})

    reopened = _begin(repo)

    assert reopened.status == "done"
    assert reopened.attempts == 2
    assert reopened.payload == {"a": 1}


def test_begin_generation_does_not_hijack_other_users_row(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    _begin(repo)

    with pytest.raises(RuntimeError):
        repo.begin_generation(
            user_id="u2",
            kind="plan",
            prompt="x",
            language="en",
            input_chars=1,
            images_count=0,
            material_ids=[],
            generation_id="gen-1",
        )


def test_history_pointer_and_delete(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    _begin(repo, "gen-1")
    _begin(repo, "gen-2")
    repo.set_current_generation(user_id="u1", generation_id="gen-2")

    assert [item.id for item in repo.list_generations(user_id="u1")] == ["gen-2", "gen-1"]
    assert repo.get_current_generation_id(user_id="u1") == "gen-2"

    assert repo.delete_generations(user_id="u1") == 2
    assert repo.list_generations(user_id="u1") == []
    assert repo.get_current_generation_id(user_id="u1") is None


def test_missing_column_surfaces_as_schema_mismatch(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    with connection(repo.db_path) as conn:
        conn.execute("ALTER TABLE generations DROP COLUMN usage_json")

    with pytest.raises(SchemaMismatchError):
        _begin(repo)


def test_format_timestamp_is_fixed_width_utc() -> None:
    naive = datetime(2026, 3, 1, 12, 0)

    assert format_timestamp(naive) == "2026-03-01T12:00:00.000000Z"
    assert format_timestamp(T0) == "2026-03-01T12:00:00.000000Z"
