from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from examly.credits.ledger import SqliteCreditLedger
from examly.storage.db import connection, format_timestamp, utc_now
from examly.utils.error_taxonomy import InputError

logger = logging.getLogger("examly.credits.fulfillment")


class CheckoutSession(BaseModel):
    """The subset of a hosted checkout session that fulfillment relies on."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    payment_status: str = ""
    customer_email: str | None = None
    customer_details: dict[str, Any] | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def email(self) -> str | None:
        if self.customer_email:
            return self.customer_email
        if self.customer_details:
            value = self.customer_details.get("email")
            return str(value) if value else None
        return None


@dataclass(frozen=True, slots=True)
class FulfillmentResult:
    ok: bool
    already: bool
    credits_added: int
    balance: int


class CheckoutFulfillment:
    def __init__(
        self,
        *,
        db_path: Path | str,
        ledger: SqliteCreditLedger,
        credits_per_pack: int = 30,
    ) -> None:
        self.db_path = Path(db_path)
        self.ledger = ledger
        self.credits_per_pack = credits_per_pack

    def fulfill(
        self,
        *,
        session: CheckoutSession | dict[str, Any],
        user_id: str,
        user_email: str | None = None,
    ) -> FulfillmentResult:
        """Add purchased credits once per paid session owned by ``user_id``."""
        if isinstance(session, CheckoutSession):
            checkout = session
        else:
            try:
                checkout = CheckoutSession.model_validate(session)
            except ValidationError as error:
                raise InputError(f"Malformed checkout session: {error}") from error

        if checkout.payment_status != "paid":
            raise InputError(f"Checkout session {checkout.id} is not paid")
        if not _belongs_to(checkout, user_id=user_id, user_email=user_email):
            raise InputError(f"Checkout session {checkout.id} belongs to another user")

        result = self.ledger.add_credits(
            user_id,
            self.credits_per_pack,
            key=f"checkout:{checkout.id}",
            reason="purchase",
        )
        with connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO billing_fulfillments (
                    session_id, user_id, credits_added, created_at
                )
                VALUES (?, ?, ?, ?)
                """,
                (
                    checkout.id,
                    user_id,
                    self.credits_per_pack,
                    format_timestamp(utc_now()),
                ),
            )

        logger.info(
            "billing.fulfilled",
            extra={
                "user_id": user_id,
                "metrics": {"session_id": checkout.id, "already": not result.applied},
            },
        )
        return FulfillmentResult(
            ok=True,
            already=not result.applied,
            credits_added=self.credits_per_pack if result.applied else 0,
            balance=result.balance,
        )


def _belongs_to(session: CheckoutSession, *, user_id: str, user_email: str | None) -> bool:
    if session.metadata.get("user_id") == user_id:
        return True
    email = session.email
    return bool(email and user_email and email.strip().lower() == user_email.strip().lower())
