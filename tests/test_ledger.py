from __future__ import annotations

from pathlib import Path

import pytest

from examly.credits.ledger import SqliteCreditLedger
from examly.storage.db import connection
from examly.utils.error_taxonomy import InsufficientCreditsError, LedgerUnavailableError


def _ledger(tmp_path: Path) -> SqliteCreditLedger:
    return SqliteCreditLedger(tmp_path / "examly.sqlite3")


def test_unknown_user_has_zero_balance(tmp_path: Path) -> None:
    assert _ledger(tmp_path).get_balance("nobody") == 0


def test_add_and_charge_credits(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)

    added = ledger.add_credits("u1", 5, key="topup:1")
    charged = ledger.charge("u1", 2, key="charge:1")

    assert added.applied is True
    assert added.balance == 5
    assert charged.applied is True
    assert charged.balance == 3
    assert ledger.has_entry("charge:1") is True
    assert ledger.has_entry("charge:2") is False


def test_replayed_keys_do_not_move_balance(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)
    ledger.add_credits("u1", 5, key="topup:1")
    ledger.charge("u1", 2, key="charge:1")

    assert ledger.add_credits("u1", 5, key="topup:1").applied is False
    replay = ledger.charge("u1", 2, key="charge:1")
    assert replay.applied is False
    assert replay.balance == 3

    ledger.refund("u1", 2, key="refund:1")
    assert ledger.refund("u1", 2, key="refund:1").applied is False
    assert ledger.get_balance("u1") == 5


def test_insufficient_balance_leaves_no_entry(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)
    ledger.add_credits("u1", 1, key="topup:1")

    with pytest.raises(InsufficientCreditsError):
        ledger.charge("u1", 2, key="charge:1")

    assert ledger.get_balance("u1") == 1
    assert ledger.has_entry("charge:1") is False


def test_charge_without_account_is_insufficient(tmp_path: Path) -> None:
    with pytest.raises(InsufficientCreditsError):
        _ledger(tmp_path).charge("ghost", 1, key="charge:1")


@pytest.mark.parametrize("amount", [0, -3])
def test_non_positive_amounts_are_rejected(tmp_path: Path, amount: int) -> None:
    ledger = _ledger(tmp_path)

    with pytest.raises(ValueError):
        ledger.charge("u1", amount, key="k1")
    with pytest.raises(ValueError):
        ledger.refund("u1", amount, key="k2")
    with pytest.raises(ValueError):
        ledger.add_credits("u1", amount, key="k3")


def test_starter_credits_are_granted_once(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)

    first = ledger.grant_starter_credits("u1", 3)
    second = ledger.grant_starter_credits("u1", 3)

    assert first.applied is True
    assert second.applied is False
    assert ledger.get_balance("u1") == 3
    with connection(ledger.db_path) as conn:
        row = conn.execute(
            "SELECT starter_granted FROM credit_accounts WHERE user_id = 'u1'"
        ).fetchone()
    assert row["starter_granted"] == 1


def test_zero_starter_credits_is_a_no_op(tmp_path: Path) -> None:
    result = _ledger(tmp_path).grant_starter_credits("u1", 0)

    assert result.applied is False
    assert result.balance == 0


def test_missing_table_surfaces_as_ledger_unavailable(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)
    with connection(ledger.db_path) as conn:
        conn.execute("DROP TABLE credit_accounts")

    with pytest.raises(LedgerUnavailableError) as excinfo:
        ledger.get_balance("u1")
    assert excinfo.value.code == "SERVER_MISCONFIGURED"
