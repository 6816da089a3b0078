from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

MaterialStatus = Literal["uploaded", "processing", "processed", "failed"]
MaterialKind = Literal["image", "pdf", "file"]
GenerationStatus = Literal["processing", "done", "failed"]
GenerationKind = Literal["plan", "homework"]
TransactionState = Literal[
    "pending",
    "committed",
    "compensated",
    "compensation_failed",
    "abandoned",
]


@dataclass(frozen=True, slots=True)
class MaterialRecord:
    id: str
    user_id: str
    plan_id: str
    file_path: str
    mime_type: str
    kind: MaterialKind
    status: MaterialStatus
    created_at: str
    updated_at: str
    original_name: str | None = None
    extracted_text: str | None = None
    error: str | None = None
    attempts: int = 0
    lease_expires_at: str | None = None
    next_attempt_at: str | None = None


@dataclass(frozen=True, slots=True)
class GenerationRecord:
    id: str
    user_id: str
    kind: GenerationKind
    prompt: str
    language: str
    status: GenerationStatus
    created_at: str
    updated_at: str
    title: str | None = None
    payload: dict[str, Any] | None = None
    credits_charged: int = 0
    error_code: str | None = None
    error_message: str | None = None
    input_chars: int = 0
    images_count: int = 0
    output_chars: int | None = None
    attempts: int = 1
    usage: dict[str, Any] = field(default_factory=dict)
    material_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class CreditTransactionRecord:
    txn_id: str
    user_id: str
    generation_id: str
    amount: int
    state: TransactionState
    charge_key: str
    refund_key: str
    created_at: str
    updated_at: str
    error: str | None = None
