from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

OCRProvider = Literal["openai", "mistral"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="EXAMLY_",
        extra="ignore",
    )

    environment: str = "local"
    sqlite_path: Path = Path("data/examly.sqlite3")
    blob_root: Path = Path("data/blobs")
    blob_store_url: str | None = None

    pricing_config_path: Path = Path("examly/config/pricing.yaml")
    prompts_root: Path = Path("examly/prompts")

    openai_model: str = "gpt-4.1"
    vision_model: str = "gpt-4.1-mini"
    ocr_provider: OCRProvider = "openai"
    mistral_ocr_model: str = "mistral-ocr-latest"

    llm_timeout_seconds: float = Field(default=30.0, gt=0)
    ocr_timeout_seconds: float = Field(default=20.0, gt=0)
    llm_max_output_tokens: int = Field(default=1400, ge=1)
    llm_temperature: float = Field(default=0.3, ge=0.0, le=2.0)

    max_prompt_chars: int = Field(default=150, ge=1)
    max_homework_prompt_chars: int = Field(default=600, ge=1)
    max_generation_images: int = Field(
        default=7,
        ge=0,
        validation_alias=AliasChoices(
            "EXAMLY_MAX_GENERATION_IMAGES",
            "MAX_IMAGES",
        ),
    )

    max_material_files: int = Field(default=15, ge=1)
    max_material_images: int = Field(default=7, ge=0)
    ingestion_batch_size: int = Field(default=2, ge=1)
    extracted_text_max_chars: int = Field(default=120_000, ge=1)
    material_context_max_chars: int = Field(default=60_000, ge=1)
    processing_lease_seconds: float = Field(default=300.0, gt=0)
    failed_retry_cooldown_seconds: float = Field(default=30.0, ge=0)

    document_char_budget: int = Field(default=24_000, ge=16_000)
    starter_credits: int = Field(default=5, ge=0)

    openai_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("EXAMLY_OPENAI_API_KEY", "OPENAI_API_KEY"),
    )
    mistral_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("EXAMLY_MISTRAL_API_KEY", "MISTRAL_API_KEY"),
    )
    blob_store_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("EXAMLY_BLOB_STORE_TOKEN", "BLOB_STORE_TOKEN"),
    )

    @property
    def project_root(self) -> Path:
        return Path(__file__).resolve().parents[2]

    @property
    def resolved_sqlite_path(self) -> Path:
        return self._resolve_path(self.sqlite_path)

    @property
    def resolved_blob_root(self) -> Path:
        return self._resolve_path(self.blob_root)

    @property
    def resolved_pricing_config_path(self) -> Path:
        return self._resolve_path(self.pricing_config_path)

    @property
    def resolved_prompts_root(self) -> Path:
        return self._resolve_path(self.prompts_root)

    def load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open("r", encoding="utf-8") as file:
            data = yaml.safe_load(file) or {}

        if not isinstance(data, dict):
            raise ValueError(f"YAML config must contain object root: {path}")

        return data

    @property
    def pricing_config(self) -> dict[str, Any]:
        return self.load_yaml(self.resolved_pricing_config_path)

    def _resolve_path(self, path: Path) -> Path:
        if path.is_absolute():
            return path
        return (self.project_root / path).resolve()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
