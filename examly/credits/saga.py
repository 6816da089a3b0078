from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterator
from uuid import uuid4

from examly.credits.ledger import CreditLedger
from examly.storage.db import connection, format_timestamp, init_db, utc_now
from examly.storage.models import CreditTransactionRecord, TransactionState
from examly.storage.repo import StorageRepo
from examly.utils.error_taxonomy import (
    ErrorCode,
    ExamlyError,
    InsufficientCreditsError,
    build_error_details,
)

logger = logging.getLogger("examly.credits.saga")


class DuplicateChargeError(ExamlyError):
    """Another pending or committed charge already exists for the generation."""

    default_code: ErrorCode = "CREDITS_CHARGE_FAILED"


@dataclass(frozen=True, slots=True)
class ReconcileReport:
    committed: int = 0
    compensated: int = 0
    abandoned: int = 0
    failed: int = 0


class ChargeSaga:
    """Charge credits with a logged intent and a refund compensator.

    A transaction row is written as ``pending`` before the ledger is touched.
    It then moves to ``committed`` after the charge, or to ``compensated`` /
    ``abandoned`` / ``compensation_failed`` when something goes wrong.
    ``reconcile_pending`` settles rows a crash left behind.
    """

    def __init__(
        self,
        *,
        db_path: Path | str,
        ledger: CreditLedger,
        repo: StorageRepo,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = Path(db_path)
        self.ledger = ledger
        self.repo = repo
        self.clock = clock
        init_db(self.db_path)

    @contextmanager
    def charge(
        self,
        *,
        user_id: str,
        generation_id: str,
        amount: int,
    ) -> Iterator[CreditTransactionRecord]:
        """Charge ``amount`` and yield; an exception in the body refunds it."""
        txn = self._begin(user_id=user_id, generation_id=generation_id, amount=amount)

        try:
            self.ledger.charge(user_id, amount, key=txn.charge_key)
        except InsufficientCreditsError as error:
            self._safe_set_state(txn.txn_id, "abandoned", error=str(error))
            raise
        except Exception as error:
            # The charge may or may not have landed; compensation checks the key.
            self._compensate(txn, error)
            raise

        try:
            self._set_state(txn.txn_id, "committed")
            logger.info(
                "credits.charged",
                extra={"generation_id": generation_id, "metrics": {"amount": amount}},
            )
            yield txn
        except Exception as error:
            self._compensate(txn, error)
            raise

    def already_charged(self, generation_id: str) -> bool:
        with connection(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT 1 FROM credit_transactions
                WHERE generation_id = ? AND state = 'committed'
                LIMIT 1
                """,
                (generation_id,),
            ).fetchone()
        return row is not None

    def get_transaction(self, txn_id: str) -> CreditTransactionRecord | None:
        with connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM credit_transactions WHERE txn_id = ?", (txn_id,)
            ).fetchone()
        if row is None:
            return None
        return _row_to_transaction(row)

    def list_transactions(self, *, generation_id: str) -> list[CreditTransactionRecord]:
        with connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT * FROM credit_transactions
                WHERE generation_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (generation_id,),
            ).fetchall()
        return [_row_to_transaction(row) for row in rows]

    def reconcile_pending(self, *, older_than_seconds: float = 300.0) -> ReconcileReport:
        """Settle ``pending`` and ``compensation_failed`` rows after a crash.

        A pending charge that reached the ledger is committed when its
        generation is ``done``, otherwise refunded. A charge that never
        reached the ledger is abandoned.
        """
        cutoff = format_timestamp(self.clock() - timedelta(seconds=older_than_seconds))
        with connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT * FROM credit_transactions
                WHERE state IN ('pending', 'compensation_failed') AND updated_at <= ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (cutoff,),
            ).fetchall()

        committed = compensated = abandoned = failed = 0
        for txn in (_row_to_transaction(row) for row in rows):
            try:
                charged = self.ledger.has_entry(txn.charge_key)
                if not charged:
                    self._set_state(txn.txn_id, "abandoned", error=txn.error)
                    abandoned += 1
                    continue

                generation = self.repo.find_generation(txn.generation_id)
                if (
                    txn.state == "pending"
                    and generation is not None
                    and generation.status == "done"
                ):
                    self.repo.record_generation_charge(
                        user_id=txn.user_id,
                        generation_id=txn.generation_id,
                        credits=txn.amount,
                    )
                    self._set_state(txn.txn_id, "committed")
                    committed += 1
                    continue

                self.ledger.refund(txn.user_id, txn.amount, key=txn.refund_key)
                self._set_state(txn.txn_id, "compensated", error=txn.error)
                compensated += 1
            except Exception as error:  # noqa: BLE001
                failed += 1
                logger.error(
                    "credits.reconcile_failed",
                    extra={
                        "generation_id": txn.generation_id,
                        "metrics": {"txn_id": txn.txn_id, "error": build_error_details(error)},
                    },
                )

        report = ReconcileReport(
            committed=committed,
            compensated=compensated,
            abandoned=abandoned,
            failed=failed,
        )
        logger.info("credits.reconcile.done", extra={"metrics": _report_metrics(report)})
        return report

    def _begin(self, *, user_id: str, generation_id: str, amount: int) -> CreditTransactionRecord:
        txn_id = str(uuid4())
        timestamp = format_timestamp(self.clock())
        try:
            with connection(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO credit_transactions (
                        txn_id, user_id, generation_id, amount, state,
                        charge_key, refund_key, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, 'pending', ?, ?, ?, ?)
                    """,
                    (
                        txn_id,
                        user_id,
                        generation_id,
                        amount,
                        f"charge:{txn_id}",
                        f"refund:{txn_id}",
                        timestamp,
                        timestamp,
                    ),
                )
        except sqlite3.IntegrityError as error:
            raise DuplicateChargeError(
                f"Generation {generation_id} already has an active charge"
            ) from error
        txn = self.get_transaction(txn_id)
        if txn is None:
            raise RuntimeError("Failed to record credit transaction")
        return txn

    def _compensate(self, txn: CreditTransactionRecord, error: Exception) -> None:
        reason = build_error_details(error)
        try:
            charged = self.ledger.has_entry(txn.charge_key)
            if not charged:
                self._set_state(txn.txn_id, "abandoned", error=reason)
                return
            self.ledger.refund(txn.user_id, txn.amount, key=txn.refund_key)
            self._set_state(txn.txn_id, "compensated", error=reason)
            logger.info(
                "credits.refunded",
                extra={"generation_id": txn.generation_id, "metrics": {"amount": txn.amount}},
            )
        except Exception as refund_error:  # noqa: BLE001
            # Double fault: the original error still propagates to the caller.
            self._safe_set_state(
                txn.txn_id,
                "compensation_failed",
                error=f"{reason}\nrefund: {build_error_details(refund_error)}",
            )
            logger.error(
                "credits.refund_failed",
                extra={
                    "generation_id": txn.generation_id,
                    "metrics": {
                        "txn_id": txn.txn_id,
                        "amount": txn.amount,
                        "error": build_error_details(refund_error),
                    },
                },
            )

    def _set_state(
        self, txn_id: str, state: TransactionState, *, error: str | None = None
    ) -> None:
        with connection(self.db_path) as conn:
            conn.execute(
                """
                UPDATE credit_transactions
                SET state = ?, error = COALESCE(?, error), updated_at = ?
                WHERE txn_id = ?
                """,
                (state, error, format_timestamp(self.clock()), txn_id),
            )

    def _safe_set_state(
        self, txn_id: str, state: TransactionState, *, error: str | None = None
    ) -> None:
        try:
            self._set_state(txn_id, state, error=error)
        except Exception as persist_error:  # noqa: BLE001
            logger.error(
                "credits.txn_state_failed",
                extra={"metrics": {"txn_id": txn_id, "state": state, "error": str(persist_error)}},
            )


def _report_metrics(report: ReconcileReport) -> dict[str, int]:
    return {
        "committed": report.committed,
        "compensated": report.compensated,
        "abandoned": report.abandoned,
        "failed": report.failed,
    }


def _row_to_transaction(row: sqlite3.Row) -> CreditTransactionRecord:
    return CreditTransactionRecord(
        txn_id=str(row["txn_id"]),
        user_id=str(row["user_id"]),
        generation_id=str(row["generation_id"]),
        amount=int(row["amount"]),
        state=row["state"],
        charge_key=str(row["charge_key"]),
        refund_key=str(row["refund_key"]),
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
        error=row["error"],
    )
