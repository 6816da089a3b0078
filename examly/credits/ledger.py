from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Protocol

from examly.storage.db import connection, format_timestamp, init_db, utc_now
from examly.utils.error_taxonomy import (
    InsufficientCreditsError,
    LedgerUnavailableError,
    SchemaMismatchError,
)


@dataclass(frozen=True, slots=True)
class LedgerResult:
    applied: bool
    balance: int


class CreditLedger(Protocol):
    def get_balance(self, user_id: str) -> int: ...

    def charge(self, user_id: str, amount: int, *, key: str) -> LedgerResult: ...

    def refund(self, user_id: str, amount: int, *, key: str) -> LedgerResult: ...

    def has_entry(self, key: str) -> bool: ...


class SqliteCreditLedger:
    """Per-user balances mutated only by keyed, atomic SQL statements.

    Every mutation carries an idempotency key recorded in ``ledger_entries``
    inside the same transaction, so replaying a key never moves the balance
    twice.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        init_db(self.db_path)

    def get_balance(self, user_id: str) -> int:
        with self._ledger_errors():
            with connection(self.db_path) as conn:
                return _read_balance(conn, user_id)

    def has_entry(self, key: str) -> bool:
        with self._ledger_errors():
            with connection(self.db_path) as conn:
                row = conn.execute(
                    "SELECT 1 FROM ledger_entries WHERE entry_key = ?", (key,)
                ).fetchone()
        return row is not None

    def charge(self, user_id: str, amount: int, *, key: str) -> LedgerResult:
        _require_positive(amount)
        with self._ledger_errors():
            with connection(self.db_path) as conn:
                conn.execute("BEGIN IMMEDIATE")
                if _entry_exists(conn, key):
                    return LedgerResult(applied=False, balance=_read_balance(conn, user_id))

                cursor = conn.execute(
                    """
                    UPDATE credit_accounts
                    SET balance = balance - ?, updated_at = ?
                    WHERE user_id = ? AND balance >= ?
                    """,
                    (amount, format_timestamp(utc_now()), user_id, amount),
                )
                if cursor.rowcount != 1:
                    raise InsufficientCreditsError(
                        f"Balance below {amount} credits for user {user_id}"
                    )
                _insert_entry(conn, key=key, user_id=user_id, delta=-amount, reason="charge")
                return LedgerResult(applied=True, balance=_read_balance(conn, user_id))

    def refund(self, user_id: str, amount: int, *, key: str) -> LedgerResult:
        return self._credit(user_id, amount, key=key, reason="refund")

    def add_credits(
        self, user_id: str, amount: int, *, key: str, reason: str = "purchase"
    ) -> LedgerResult:
        return self._credit(user_id, amount, key=key, reason=reason)

    def grant_starter_credits(self, user_id: str, amount: int) -> LedgerResult:
        if amount <= 0:
            return LedgerResult(applied=False, balance=self.get_balance(user_id))
        result = self._credit(user_id, amount, key=f"starter:{user_id}", reason="starter")
        if result.applied:
            with self._ledger_errors():
                with connection(self.db_path) as conn:
                    conn.execute(
                        "UPDATE credit_accounts SET starter_granted = 1 WHERE user_id = ?",
                        (user_id,),
                    )
        return result

    def _credit(self, user_id: str, amount: int, *, key: str, reason: str) -> LedgerResult:
        _require_positive(amount)
        with self._ledger_errors():
            with connection(self.db_path) as conn:
                conn.execute("BEGIN IMMEDIATE")
                if _entry_exists(conn, key):
                    return LedgerResult(applied=False, balance=_read_balance(conn, user_id))

                timestamp = format_timestamp(utc_now())
                conn.execute(
                    """
                    INSERT INTO credit_accounts (user_id, balance, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT (user_id) DO UPDATE SET
                        balance = credit_accounts.balance + excluded.balance,
                        updated_at = excluded.updated_at
                    """,
                    (user_id, amount, timestamp),
                )
                _insert_entry(conn, key=key, user_id=user_id, delta=amount, reason=reason)
                return LedgerResult(applied=True, balance=_read_balance(conn, user_id))

    @contextmanager
    def _ledger_errors(self) -> Iterator[None]:
        try:
            yield
        except (sqlite3.Error, SchemaMismatchError) as error:
            raise LedgerUnavailableError(f"Credit ledger unavailable: {error}") from error


def _read_balance(conn: sqlite3.Connection, user_id: str) -> int:
    row = conn.execute(
        "SELECT balance FROM credit_accounts WHERE user_id = ?", (user_id,)
    ).fetchone()
    return int(row["balance"]) if row is not None else 0


def _entry_exists(conn: sqlite3.Connection, key: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM ledger_entries WHERE entry_key = ?", (key,)
    ).fetchone()
    return row is not None


def _insert_entry(
    conn: sqlite3.Connection, *, key: str, user_id: str, delta: int, reason: str
) -> None:
    conn.execute(
        """
        INSERT INTO ledger_entries (entry_key, user_id, delta, reason, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (key, user_id, delta, reason, format_timestamp(utc_now())),
    )


def _require_positive(amount: int) -> None:
    if amount <= 0:
        raise ValueError(f"Credit amount must be positive, got {amount}")
