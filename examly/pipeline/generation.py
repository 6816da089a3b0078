from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, Callable, NoReturn, Sequence
from uuid import uuid4

from examly.credits.ledger import CreditLedger
from examly.credits.pricing import Pricing
from examly.credits.saga import ChargeSaga, DuplicateChargeError
from examly.llm_client.base import ImageInput, LLMClient, LLMResult
from examly.pipeline.homework import normalize_homework_solution
from examly.pipeline.normalize import (
    DEFAULT_CHAR_BUDGET,
    normalize_plan_document,
    resolve_language,
)
from examly.pipeline.pack_documents import PackedMaterials, pack_materials
from examly.pipeline.validate_output import validate_output
from examly.prompts.manager import PromptManager, PromptSet
from examly.storage.models import GenerationKind, GenerationRecord
from examly.storage.repo import StorageRepo
from examly.utils.error_taxonomy import (
    ErrorCode,
    GenerationFailedError,
    InputError,
    InsufficientCreditsError,
    LedgerUnavailableError,
    build_error_details,
    classify_llm_error,
    classify_storage_error,
    is_retryable_llm_exception,
)
from examly.utils.logging import clear_log_context, set_log_context
from examly.utils.text import truncate

logger = logging.getLogger("examly.pipeline.generation")

REPAIR_DIRECTIVE = "Return ONLY valid JSON matching the schema strictly. No markdown."
HOMEWORK_TITLE_MAX = 80

# Codes a second model call cannot fix.
_NON_REPAIRABLE_CODES: frozenset[str] = frozenset(
    {"OPENAI_KEY_MISSING", "SERVER_MISCONFIGURED", "PLANS_SCHEMA_MISMATCH"}
)

_PROMPT_NAMES: dict[str, str] = {
    "plan": "study_plan",
    "homework": "homework",
}


@dataclass(frozen=True, slots=True)
class GenerationResult:
    generation_id: str
    kind: GenerationKind
    document: dict[str, Any]
    credits_charged: int
    already_charged: bool
    attempts: int
    usage: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "generation_id": self.generation_id,
            "kind": self.kind,
            "document": self.document,
            "credits_charged": self.credits_charged,
            "already_charged": self.already_charged,
            "attempts": self.attempts,
        }


class GenerationOrchestrator:
    """Prompt in, validated document out, credits charged only after success.

    Every request first lands as a ``processing`` generation row. The model
    is called at most twice (a normal attempt and one stricter repair
    attempt). The normalized document is persisted as ``done`` before the
    charge saga runs, and a charge that cannot be recorded is refunded.
    """

    def __init__(
        self,
        *,
        repo: StorageRepo,
        ledger: CreditLedger,
        saga: ChargeSaga,
        llm_client: LLMClient | None,
        prompt_manager: PromptManager,
        pricing: Pricing,
        model: str = "gpt-4.1",
        max_prompt_chars: int = 150,
        max_homework_prompt_chars: int = 600,
        max_images: int = 7,
        timeout_seconds: float = 30.0,
        max_output_tokens: int = 1400,
        temperature: float = 0.3,
        material_context_max_chars: int = 60_000,
        char_budget: int = DEFAULT_CHAR_BUDGET,
        id_factory: Callable[[], str] = lambda: str(uuid4()),
    ) -> None:
        self.repo = repo
        self.ledger = ledger
        self.saga = saga
        self.llm_client = llm_client
        self.prompt_manager = prompt_manager
        self.pricing = pricing
        self.model = model
        self.max_prompt_chars = max_prompt_chars
        self.max_homework_prompt_chars = max_homework_prompt_chars
        self.max_images = max_images
        self.timeout_seconds = timeout_seconds
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.material_context_max_chars = material_context_max_chars
        self.char_budget = char_budget
        self.id_factory = id_factory

    def generate(
        self,
        *,
        user_id: str,
        prompt: str | None,
        kind: GenerationKind = "plan",
        plan_id: str | None = None,
        images: Sequence[ImageInput] = (),
        generation_id: str | None = None,
        language: str | None = None,
    ) -> GenerationResult:
        started_at = time.perf_counter()
        prompt_text = (prompt or "").strip()
        self._validate_input(
            user_id=user_id,
            prompt=prompt_text,
            kind=kind,
            plan_id=plan_id,
            images=images,
        )
        cost = self.pricing.generation_cost(len(images))
        generation_id = generation_id or self.id_factory()
        set_log_context(user_id=user_id, generation_id=generation_id, stage=f"{kind}.generate")

        try:
            previous = self._owned_generation(user_id=user_id, generation_id=generation_id)
            already_charged = self._already_charged(generation_id)
            if not already_charged:
                self._check_balance(user_id=user_id, cost=cost)

            lang = resolve_language(language, prompt_text)
            packed = self._pack_plan_materials(user_id=user_id, plan_id=plan_id)
            if not prompt_text and not images and not packed.material_ids:
                raise InputError("Prompt is required", code="INVALID_REQUEST")

            try:
                record = self.repo.begin_generation(
                    user_id=user_id,
                    kind=kind,
                    prompt=prompt_text,
                    language=lang,
                    input_chars=len(prompt_text) + len(packed.text),
                    images_count=len(images),
                    material_ids=packed.material_ids,
                    generation_id=generation_id,
                )
            except Exception as error:  # noqa: BLE001
                raise GenerationFailedError(
                    f"Generation row could not be created: {build_error_details(error)}",
                    code=classify_storage_error(error),
                    generation_id=generation_id,
                ) from error

            logger.info(
                f"{kind}.generate.start",
                extra={
                    "metrics": {
                        "cost": cost,
                        "already_charged": already_charged,
                        "images": len(images),
                        "materials": len(packed.material_ids),
                        "materials_truncated": packed.truncated,
                        "regenerate": previous is not None,
                    }
                },
            )

            llm_result = self._call_model(
                user_id=user_id,
                generation_id=generation_id,
                kind=kind,
                prompt=prompt_text,
                language=lang,
                packed=packed,
                images=images,
            )
            document = self._normalize(kind, llm_result.parsed_json, language=lang, prompt=prompt_text)
            title = _document_title(kind, document, prompt=prompt_text)

            try:
                self.repo.mark_generation_done(
                    user_id=user_id,
                    generation_id=generation_id,
                    title=title,
                    payload=document,
                    usage=llm_result.usage_normalized,
                )
            except Exception as error:  # noqa: BLE001
                self._fail(
                    user_id=user_id,
                    generation_id=generation_id,
                    kind=kind,
                    code=classify_storage_error(error),
                    error=error,
                )

            credits_charged = self._charge(
                user_id=user_id,
                generation_id=generation_id,
                kind=kind,
                cost=cost,
                already_charged=already_charged,
                previous=previous,
            )
            self._update_pointer(user_id=user_id, generation_id=generation_id)

            logger.info(
                f"{kind}.generate.done",
                extra={
                    "duration_ms": round((time.perf_counter() - started_at) * 1000, 1),
                    "metrics": {
                        "credits_charged": credits_charged,
                        "attempts": record.attempts,
                        "usage": llm_result.usage_normalized,
                    },
                },
            )
            return GenerationResult(
                generation_id=generation_id,
                kind=kind,
                document=document,
                credits_charged=credits_charged,
                already_charged=already_charged,
                attempts=record.attempts,
                usage=dict(llm_result.usage_normalized),
            )
        finally:
            clear_log_context(["user_id", "generation_id", "stage"])

    def get_generation(self, *, user_id: str, generation_id: str) -> GenerationRecord:
        record = self.repo.get_generation(user_id=user_id, generation_id=generation_id)
        if record is None:
            raise InputError(f"Generation {generation_id} not found", code="NOT_FOUND")
        return record

    def list_history(self, *, user_id: str, limit: int = 20) -> list[GenerationRecord]:
        return self.repo.list_generations(user_id=user_id, limit=limit)

    def clear_history(self, *, user_id: str) -> int:
        deleted = self.repo.delete_generations(user_id=user_id)
        logger.info("history.cleared", extra={"user_id": user_id, "metrics": {"deleted": deleted}})
        return deleted

    def current_generation(self, *, user_id: str) -> GenerationRecord | None:
        generation_id = self.repo.get_current_generation_id(user_id=user_id)
        if generation_id is None:
            return None
        return self.repo.get_generation(user_id=user_id, generation_id=generation_id)

    def _validate_input(
        self,
        *,
        user_id: str,
        prompt: str,
        kind: str,
        plan_id: str | None,
        images: Sequence[ImageInput],
    ) -> None:
        if not user_id:
            raise InputError("User id is required", code="INVALID_REQUEST")
        if kind not in _PROMPT_NAMES:
            raise InputError(f"Unknown generation kind: {kind}", code="INVALID_REQUEST")

        max_chars = self.max_homework_prompt_chars if kind == "homework" else self.max_prompt_chars
        if len(prompt) > max_chars:
            raise InputError(
                f"Prompt has {len(prompt)} characters; the limit is {max_chars}",
                code="PROMPT_TOO_LONG",
            )
        if len(images) > self.max_images:
            raise InputError(
                f"At most {self.max_images} images can be attached",
                code="TOO_MANY_FILES",
            )
        if not prompt and not images and not plan_id:
            raise InputError("Prompt is required", code="INVALID_REQUEST")

    def _owned_generation(self, *, user_id: str, generation_id: str) -> GenerationRecord | None:
        existing = self.repo.find_generation(generation_id)
        if existing is not None and existing.user_id != user_id:
            raise InputError(
                f"Generation id {generation_id} is already in use",
                code="INVALID_REQUEST",
            )
        return existing

    def _already_charged(self, generation_id: str) -> bool:
        try:
            return self.saga.already_charged(generation_id)
        except sqlite3.Error as error:
            raise LedgerUnavailableError(
                f"Credit transactions are unreadable: {error}"
            ) from error

    def _check_balance(self, *, user_id: str, cost: int) -> None:
        # Advisory only; the atomic charge is the real guard.
        balance = self.ledger.get_balance(user_id)
        if balance < cost:
            raise InsufficientCreditsError(
                f"Balance {balance} is below the generation cost {cost}"
            )

    def _pack_plan_materials(self, *, user_id: str, plan_id: str | None) -> PackedMaterials:
        if not plan_id:
            return PackedMaterials(text="", material_ids=[], truncated=False)
        materials = self.repo.list_materials(user_id=user_id, plan_id=plan_id)
        packed = pack_materials(materials, max_chars=self.material_context_max_chars)
        if packed.truncated:
            logger.warning(
                "materials.context_truncated",
                extra={"plan_id": plan_id, "metrics": {"max_chars": self.material_context_max_chars}},
            )
        return packed

    def _call_model(
        self,
        *,
        user_id: str,
        generation_id: str,
        kind: GenerationKind,
        prompt: str,
        language: str,
        packed: PackedMaterials,
        images: Sequence[ImageInput],
    ) -> LLMResult:
        if self.llm_client is None:
            self._fail(
                user_id=user_id,
                generation_id=generation_id,
                kind=kind,
                code="OPENAI_KEY_MISSING",
                error=None,
            )

        try:
            prompt_set = self.prompt_manager.load_latest(_PROMPT_NAMES[kind])
            schema = prompt_set.schema
        except (FileNotFoundError, ValueError) as error:
            self._fail(
                user_id=user_id,
                generation_id=generation_id,
                kind=kind,
                code="SERVER_MISCONFIGURED",
                error=error,
            )

        user_content = build_user_content(
            prompt=prompt or _default_instruction(prompt_set, language),
            language=language,
            materials_text=packed.text,
        )

        last_error: Exception | None = None
        last_code: ErrorCode = "OPENAI_REQUEST_FAILED"
        for attempt in (1, 2):
            repair = attempt > 1
            system_prompt = prompt_set.system_prompt_text
            if repair:
                system_prompt = f"{system_prompt.rstrip()}\n\n{REPAIR_DIRECTIVE}"
            try:
                result = self.llm_client.generate_json(
                    system_prompt=system_prompt,
                    user_content=user_content,
                    json_schema=schema,
                    model=self.model,
                    params={
                        "temperature": 0.0 if repair else self.temperature,
                        "max_output_tokens": self.max_output_tokens,
                        "timeout_seconds": self.timeout_seconds,
                    },
                    run_meta={
                        "generation_id": generation_id,
                        "schema_name": prompt_set.schema_name,
                        "attempt": attempt,
                    },
                    images=images,
                )
                validate_output(parsed_json=result.parsed_json, schema=schema).raise_for_errors()
                return result
            except Exception as error:  # noqa: BLE001
                last_error = error
                last_code = classify_llm_error(error)
                logger.warning(
                    f"{kind}.generate.attempt_failed",
                    extra={
                        "metrics": {
                            "attempt": attempt,
                            "error_code": last_code,
                            "transient": is_retryable_llm_exception(error),
                            "error": str(error),
                        }
                    },
                )
                if last_code in _NON_REPAIRABLE_CODES:
                    break

        self._fail(
            user_id=user_id,
            generation_id=generation_id,
            kind=kind,
            code=last_code,
            error=last_error,
        )

    def _normalize(
        self,
        kind: GenerationKind,
        parsed_json: dict[str, Any],
        *,
        language: str,
        prompt: str,
    ) -> dict[str, Any]:
        if kind == "homework":
            return normalize_homework_solution(parsed_json, language=language, prompt=prompt)
        return normalize_plan_document(
            parsed_json,
            language=language,
            prompt=prompt,
            char_budget=self.char_budget,
        )

    def _charge(
        self,
        *,
        user_id: str,
        generation_id: str,
        kind: GenerationKind,
        cost: int,
        already_charged: bool,
        previous: GenerationRecord | None,
    ) -> int:
        if already_charged:
            logger.info(f"{kind}.charge.skipped", extra={"metrics": {"reason": "already_charged"}})
            return previous.credits_charged if previous is not None else 0

        try:
            with self.saga.charge(user_id=user_id, generation_id=generation_id, amount=cost):
                self.repo.record_generation_charge(
                    user_id=user_id,
                    generation_id=generation_id,
                    credits=cost,
                )
        except DuplicateChargeError:
            # A concurrent request for the same id owns the charge.
            logger.info(f"{kind}.charge.skipped", extra={"metrics": {"reason": "concurrent"}})
            return 0
        except InsufficientCreditsError as error:
            self._fail(
                user_id=user_id,
                generation_id=generation_id,
                kind=kind,
                code="INSUFFICIENT_CREDITS",
                error=error,
            )
        except Exception as error:  # noqa: BLE001
            self._fail(
                user_id=user_id,
                generation_id=generation_id,
                kind=kind,
                code="CREDITS_CHARGE_FAILED",
                error=error,
            )
        return cost

    def _update_pointer(self, *, user_id: str, generation_id: str) -> None:
        try:
            self.repo.set_current_generation(user_id=user_id, generation_id=generation_id)
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "generation.pointer_update_failed",
                extra={"metrics": {"error": build_error_details(error)}},
            )

    def _fail(
        self,
        *,
        user_id: str,
        generation_id: str,
        kind: GenerationKind,
        code: ErrorCode,
        error: Exception | None,
    ) -> NoReturn:
        message = build_error_details(error) if error is not None else None
        persist_error = _safe_mark_failed(
            repo=self.repo,
            user_id=user_id,
            generation_id=generation_id,
            error_code=code,
            error_message=message,
        )
        logger.error(
            f"{kind}.generate.failed",
            extra={
                "metrics": {
                    "error_code": code,
                    "error": message,
                    "persist_error": persist_error,
                }
            },
        )
        raise GenerationFailedError(
            message or "",
            code=code,
            generation_id=generation_id,
        ) from error


def build_user_content(*, prompt: str, language: str, materials_text: str) -> str:
    parts = [f"LANGUAGE: {language}", "REQUEST:", prompt]
    if materials_text:
        parts.extend(["MATERIALS:", materials_text])
    return "\n".join(parts)


def _default_instruction(prompt_set: PromptSet, language: str) -> str:
    instructions = prompt_set.meta.get("default_instruction")
    if isinstance(instructions, dict):
        value = instructions.get(language) or instructions.get("en")
        if value:
            return str(value)
    return "Use the attached material."


def _document_title(kind: GenerationKind, document: dict[str, Any], *, prompt: str) -> str:
    if kind == "plan":
        return str(document.get("title") or "")
    return truncate(prompt, HOMEWORK_TITLE_MAX) or truncate(
        str(document.get("answer") or ""), HOMEWORK_TITLE_MAX
    )


def _safe_mark_failed(
    *,
    repo: StorageRepo,
    user_id: str,
    generation_id: str,
    error_code: str,
    error_message: str | None,
) -> str | None:
    try:
        repo.mark_generation_failed(
            user_id=user_id,
            generation_id=generation_id,
            error_code=error_code,
            error_message=error_message,
        )
        return None
    except Exception as error:  # noqa: BLE001
        return build_error_details(error)
