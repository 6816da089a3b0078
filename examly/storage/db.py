from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from examly.utils.error_taxonomy import SchemaMismatchError, is_schema_mismatch_exception

SCHEMA_SQL = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS materials (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    plan_id TEXT NOT NULL,
    file_path TEXT NOT NULL,
    mime_type TEXT NOT NULL,
    kind TEXT NOT NULL CHECK (kind IN ('image', 'pdf', 'file')),
    original_name TEXT,
    status TEXT NOT NULL CHECK (status IN ('uploaded', 'processing', 'processed', 'failed')),
    extracted_text TEXT,
    error TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    lease_expires_at TEXT,
    next_attempt_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, plan_id, file_path),
    CHECK (extracted_text IS NULL OR status = 'processed'),
    CHECK (status != 'failed' OR error IS NOT NULL)
);

CREATE TABLE IF NOT EXISTS generations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    kind TEXT NOT NULL CHECK (kind IN ('plan', 'homework')),
    prompt TEXT NOT NULL,
    language TEXT NOT NULL,
    title TEXT,
    status TEXT NOT NULL CHECK (status IN ('processing', 'done', 'failed')),
    payload_json TEXT,
    credits_charged INTEGER NOT NULL DEFAULT 0 CHECK (credits_charged >= 0),
    error_code TEXT,
    error_message TEXT,
    input_chars INTEGER NOT NULL DEFAULT 0,
    images_count INTEGER NOT NULL DEFAULT 0,
    output_chars INTEGER,
    attempts INTEGER NOT NULL DEFAULT 1,
    usage_json TEXT NOT NULL DEFAULT '{}',
    materials_json TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK (credits_charged = 0 OR status = 'done')
);

CREATE TABLE IF NOT EXISTS generation_pointer (
    user_id TEXT PRIMARY KEY,
    generation_id TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS credit_accounts (
    user_id TEXT PRIMARY KEY,
    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
    starter_granted INTEGER NOT NULL DEFAULT 0 CHECK (starter_granted IN (0, 1)),
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ledger_entries (
    entry_key TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    delta INTEGER NOT NULL,
    reason TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS credit_transactions (
    txn_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    generation_id TEXT NOT NULL,
    amount INTEGER NOT NULL CHECK (amount > 0),
    state TEXT NOT NULL CHECK (
        state IN ('pending', 'committed', 'compensated', 'compensation_failed', 'abandoned')
    ),
    charge_key TEXT NOT NULL,
    refund_key TEXT NOT NULL,
    error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS billing_fulfillments (
    session_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    credits_added INTEGER NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_materials_plan ON materials (user_id, plan_id, created_at);
CREATE INDEX IF NOT EXISTS idx_generations_user ON generations (user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_ledger_entries_user ON ledger_entries (user_id);
CREATE INDEX IF NOT EXISTS idx_credit_txn_generation ON credit_transactions (generation_id);
CREATE INDEX IF NOT EXISTS idx_credit_txn_state ON credit_transactions (state);
CREATE UNIQUE INDEX IF NOT EXISTS uq_credit_txn_active
    ON credit_transactions (generation_id)
    WHERE state IN ('pending', 'committed');
"""


def init_db(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with connection(db_path) as conn:
        conn.executescript(SCHEMA_SQL)


@contextmanager
def connection(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Open a connection that commits on success and rolls back on error.

    Operational errors naming a missing table or column surface as
    ``SchemaMismatchError`` so callers can tell migrations apart from faults.
    """
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA foreign_keys = ON;")
        yield conn
        conn.commit()
    except sqlite3.OperationalError as error:
        conn.rollback()
        if is_schema_mismatch_exception(error):
            raise SchemaMismatchError(str(error)) from error
        raise
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def format_timestamp(value: datetime) -> str:
    """Fixed-width UTC timestamp so stored values sort lexicographically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)
