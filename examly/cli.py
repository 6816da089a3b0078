from __future__ import annotations

import argparse
import json
import logging
import mimetypes
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

from examly.config.settings import Settings, get_settings
from examly.credits.fulfillment import CheckoutFulfillment
from examly.credits.ledger import SqliteCreditLedger
from examly.credits.pricing import Pricing
from examly.credits.saga import ChargeSaga
from examly.llm_client.base import ImageInput, LLMClient
from examly.llm_client.openai_client import OpenAILLMClient
from examly.ocr_client.mistral_ocr import MistralOCRClient
from examly.ocr_client.types import OCRClient
from examly.ocr_client.vision_ocr import OCR_PROMPT_NAME, VisionOCRClient
from examly.pipeline.extraction import ExtractionStrategy
from examly.pipeline.generation import GenerationOrchestrator
from examly.pipeline.ingestion import MaterialIngestionOrchestrator
from examly.prompts.manager import PromptManager
from examly.storage.blob_store import BlobStore, HttpBlobStore, LocalBlobStore
from examly.storage.db import init_db
from examly.storage.repo import StorageRepo
from examly.utils.error_taxonomy import ExamlyError, InputError
from examly.utils.logging import setup_logging

logger = logging.getLogger("examly.cli")


@dataclass(frozen=True, slots=True)
class Services:
    settings: Settings
    repo: StorageRepo
    ledger: SqliteCreditLedger
    saga: ChargeSaga
    pricing: Pricing
    ingestion: MaterialIngestionOrchestrator
    generation: GenerationOrchestrator
    fulfillment: CheckoutFulfillment
    blob_store: BlobStore

    def close(self) -> None:
        self.blob_store.close()


def build_services(
    settings: Settings,
    *,
    llm_client: LLMClient | None = None,
    ocr_client: OCRClient | None = None,
    blob_store: BlobStore | None = None,
) -> Services:
    db_path = settings.resolved_sqlite_path
    init_db(db_path)
    repo = StorageRepo(db_path)
    ledger = SqliteCreditLedger(db_path)
    saga = ChargeSaga(db_path=db_path, ledger=ledger, repo=repo)
    pricing = Pricing.from_config(settings.pricing_config)
    prompt_manager = PromptManager(settings.resolved_prompts_root)

    if llm_client is None and settings.openai_api_key:
        llm_client = OpenAILLMClient(api_key=settings.openai_api_key)
    if ocr_client is None:
        ocr_client = _build_ocr_client(settings, llm_client, prompt_manager)
    if blob_store is None:
        blob_store = _build_blob_store(settings)

    extractor = ExtractionStrategy(
        ocr_client=ocr_client,
        blob_store=blob_store,
        ocr_timeout_seconds=settings.ocr_timeout_seconds,
    )
    ingestion = MaterialIngestionOrchestrator(
        repo=repo,
        extractor=extractor,
        max_files=settings.max_material_files,
        max_images=settings.max_material_images,
        batch_size=settings.ingestion_batch_size,
        max_text_chars=settings.extracted_text_max_chars,
        lease_seconds=settings.processing_lease_seconds,
        failed_cooldown_seconds=settings.failed_retry_cooldown_seconds,
    )
    generation = GenerationOrchestrator(
        repo=repo,
        ledger=ledger,
        saga=saga,
        llm_client=llm_client,
        prompt_manager=prompt_manager,
        pricing=pricing,
        model=settings.openai_model,
        max_prompt_chars=settings.max_prompt_chars,
        max_homework_prompt_chars=settings.max_homework_prompt_chars,
        max_images=min(settings.max_generation_images, pricing.max_images),
        timeout_seconds=settings.llm_timeout_seconds,
        max_output_tokens=settings.llm_max_output_tokens,
        temperature=settings.llm_temperature,
        material_context_max_chars=settings.material_context_max_chars,
        char_budget=settings.document_char_budget,
    )
    return Services(
        settings=settings,
        repo=repo,
        ledger=ledger,
        saga=saga,
        pricing=pricing,
        ingestion=ingestion,
        generation=generation,
        fulfillment=CheckoutFulfillment(
            db_path=db_path,
            ledger=ledger,
            credits_per_pack=pricing.credits_per_pack,
        ),
        blob_store=blob_store,
    )


def _build_ocr_client(
    settings: Settings,
    llm_client: LLMClient | None,
    prompt_manager: PromptManager,
) -> OCRClient:
    if settings.ocr_provider == "mistral":
        return MistralOCRClient(
            api_key=settings.mistral_api_key,
            model=settings.mistral_ocr_model,
        )
    return VisionOCRClient(
        llm_client=llm_client or OpenAILLMClient(api_key=settings.openai_api_key),
        prompt_set=prompt_manager.load_latest(OCR_PROMPT_NAME),
        model=settings.vision_model,
    )


def _build_blob_store(settings: Settings) -> BlobStore:
    if settings.blob_store_url:
        return HttpBlobStore(
            base_url=settings.blob_store_url,
            token=settings.blob_store_token,
            timeout_seconds=settings.ocr_timeout_seconds,
        )
    return LocalBlobStore(settings.resolved_blob_root)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="examly",
        description="Study material ingestion and credit-metered plan generation.",
    )
    parser.add_argument("--log-file", default=None, help="Also write JSON logs to this file.")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-db", help="Create the SQLite schema.")

    register = commands.add_parser("register", help="Register uploaded blob paths.")
    register.add_argument("--user", required=True)
    register.add_argument("--plan", required=True)
    register.add_argument("paths", nargs="+", help="Blob paths under materials/<user>/.")

    kick = commands.add_parser("kick", help="Extract text from pending materials.")
    kick.add_argument("--user", required=True)
    kick.add_argument("--plan", required=True)

    status = commands.add_parser("status", help="Show material processing status.")
    status.add_argument("--user", required=True)
    status.add_argument("--plan", required=True)

    generate = commands.add_parser("generate", help="Generate a study plan or homework solution.")
    generate.add_argument("--user", required=True)
    generate.add_argument("--prompt", default="")
    generate.add_argument("--kind", choices=["plan", "homework"], default="plan")
    generate.add_argument("--plan", default=None, help="Use processed materials of this plan.")
    generate.add_argument("--image", action="append", default=[], help="Inline image file.")
    generate.add_argument("--generation-id", default=None)
    generate.add_argument("--language", choices=["en", "hu"], default=None)

    history = commands.add_parser("history", help="List recent generations.")
    history.add_argument("--user", required=True)
    history.add_argument("--limit", type=int, default=20)

    balance = commands.add_parser("balance", help="Show the credit balance.")
    balance.add_argument("--user", required=True)
    balance.add_argument(
        "--grant-starter",
        action="store_true",
        help="Grant the one-time starter credits first.",
    )

    add_credits = commands.add_parser("add-credits", help="Credit a user account.")
    add_credits.add_argument("--user", required=True)
    add_credits.add_argument("--amount", type=_positive_int, required=True)
    add_credits.add_argument("--key", required=True, help="Idempotency key for this top-up.")

    fulfill = commands.add_parser("fulfill", help="Credit a paid checkout session once.")
    fulfill.add_argument("--user", required=True)
    fulfill.add_argument("--email", default=None, help="Account email for session matching.")
    fulfill.add_argument(
        "--session-file",
        required=True,
        type=Path,
        help="JSON checkout session as returned by the payment provider.",
    )

    reconcile = commands.add_parser("reconcile", help="Settle charges left pending by a crash.")
    reconcile.add_argument("--older-than-seconds", type=float, default=300.0)
    return parser


def run_command(args: argparse.Namespace, services: Services) -> dict[str, Any]:
    if args.command == "init-db":
        return {"ok": True, "sqlite_path": str(services.settings.resolved_sqlite_path)}

    if args.command == "register":
        records = services.ingestion.register_materials(
            user_id=args.user,
            plan_id=args.plan,
            items=[
                {
                    "file_path": path,
                    "mime_type": mimetypes.guess_type(path)[0],
                    "original_name": Path(path).name,
                }
                for path in args.paths
            ],
        )
        return {
            "ok": True,
            "items": [
                {"id": record.id, "kind": record.kind, "status": record.status}
                for record in records
            ],
        }

    if args.command == "kick":
        result = services.ingestion.kick(user_id=args.user, plan_id=args.plan)
        return {
            "ok": result.ok,
            "processed_count": result.processed_count,
            "items": [
                {"id": item.id, "status": item.status, "error": item.error}
                for item in result.items
            ],
        }

    if args.command == "status":
        report = services.ingestion.status(user_id=args.user, plan_id=args.plan)
        return {"ok": True, **report.to_dict()}

    if args.command == "generate":
        images = [_read_image(Path(path)) for path in args.image]
        result = services.generation.generate(
            user_id=args.user,
            prompt=args.prompt,
            kind=args.kind,
            plan_id=args.plan,
            images=images,
            generation_id=args.generation_id,
            language=args.language,
        )
        return {"ok": True, **result.to_dict()}

    if args.command == "history":
        records = services.generation.list_history(user_id=args.user, limit=args.limit)
        return {
            "ok": True,
            "items": [
                {
                    "id": record.id,
                    "kind": record.kind,
                    "title": record.title,
                    "status": record.status,
                    "credits_charged": record.credits_charged,
                    "error_code": record.error_code,
                    "created_at": record.created_at,
                }
                for record in records
            ],
        }

    if args.command == "balance":
        if args.grant_starter:
            services.ledger.grant_starter_credits(args.user, services.settings.starter_credits)
        return {"ok": True, "balance": services.ledger.get_balance(args.user)}

    if args.command == "add-credits":
        result = services.ledger.add_credits(args.user, args.amount, key=args.key)
        return {"ok": True, "applied": result.applied, "balance": result.balance}

    if args.command == "fulfill":
        fulfilled = services.fulfillment.fulfill(
            session=_read_session(args.session_file),
            user_id=args.user,
            user_email=args.email,
        )
        return {
            "ok": fulfilled.ok,
            "already": fulfilled.already,
            "credits_added": fulfilled.credits_added,
            "balance": fulfilled.balance,
        }

    if args.command == "reconcile":
        report = services.saga.reconcile_pending(older_than_seconds=args.older_than_seconds)
        return {
            "ok": True,
            "committed": report.committed,
            "compensated": report.compensated,
            "abandoned": report.abandoned,
            "failed": report.failed,
        }

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    setup_logging(log_file=args.log_file, stream=sys.stderr)

    settings = get_settings()
    try:
        services = build_services(settings)
        try:
            payload = run_command(args, services)
        finally:
            services.close()
    except ExamlyError as error:
        logger.error(
            "cli.command_failed",
            extra={"metrics": {"command": args.command, "error_code": error.code}},
        )
        print(_json_text({"ok": False, "code": error.code, "message": str(error)}), end="")
        return 1
    print(_json_text(payload), end="")
    return 0


def _positive_int(value: str) -> int:
    parsed = int(value)
    if parsed <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value}")
    return parsed


def _read_session(path: Path) -> dict[str, Any]:
    try:
        session = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as error:
        raise InputError(f"Cannot read checkout session {path}: {error}") from error
    if not isinstance(session, dict):
        raise InputError(f"Checkout session {path} must hold a JSON object")
    return session


def _read_image(path: Path) -> ImageInput:
    mime_type = mimetypes.guess_type(path.name)[0] or "image/png"
    return ImageInput(data=path.read_bytes(), mime_type=mime_type)


def _json_text(payload: dict[str, Any]) -> str:
    return f"{json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True)}\n"


if __name__ == "__main__":
    raise SystemExit(main())
