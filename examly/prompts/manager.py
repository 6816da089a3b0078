from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

VERSION_RE = re.compile(r"^v(\d{3})$")
REQUIRED_FILES = ("system_prompt.txt", "schema.json")


@dataclass(frozen=True, slots=True)
class PromptSet:
    """One versioned prompt directory: system prompt, output schema, meta."""

    prompt_name: str
    version: str
    system_prompt_text: str
    schema: dict[str, Any]
    prompt_dir: Path
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def schema_name(self) -> str:
        return str(self.meta.get("schema_name") or self.prompt_name)


class PromptManager:
    """Reads prompt sets laid out as ``<root>/<name>/vNNN/``.

    Loaded sets are cached per manager; prompt files ship with the package
    and do not change while the process runs.
    """

    def __init__(self, prompts_root: Path | str) -> None:
        self.prompts_root = Path(prompts_root)
        self._cache: dict[tuple[str, str], PromptSet] = {}

    def list_prompt_names(self) -> list[str]:
        if not self.prompts_root.is_dir():
            return []
        return sorted(
            child.name
            for child in self.prompts_root.iterdir()
            if child.is_dir() and not child.name.startswith("__") and self.list_versions(child.name)
        )

    def list_versions(self, prompt_name: str) -> list[str]:
        prompt_dir = self.prompts_root / prompt_name
        if not prompt_dir.is_dir():
            return []
        numbered = [
            (int(match.group(1)), child.name)
            for child in prompt_dir.iterdir()
            if child.is_dir() and (match := VERSION_RE.match(child.name))
        ]
        return [name for _, name in sorted(numbered)]

    def load_latest(self, prompt_name: str) -> PromptSet:
        versions = self.list_versions(prompt_name)
        if not versions:
            raise FileNotFoundError(
                f"No versions of prompt {prompt_name!r} under {self.prompts_root}"
            )
        return self.load_prompt_set(prompt_name=prompt_name, version=versions[-1])

    def load_prompt_set(self, *, prompt_name: str, version: str) -> PromptSet:
        if not VERSION_RE.match(version):
            raise ValueError(f"Prompt version must look like v001, got {version!r}")

        cached = self._cache.get((prompt_name, version))
        if cached is not None:
            return cached

        prompt_dir = self.prompts_root / prompt_name / version
        missing = [name for name in REQUIRED_FILES if not (prompt_dir / name).is_file()]
        if missing:
            raise FileNotFoundError(f"{prompt_dir} is missing {', '.join(missing)}")

        prompt_set = PromptSet(
            prompt_name=prompt_name,
            version=version,
            system_prompt_text=(prompt_dir / "system_prompt.txt").read_text(encoding="utf-8"),
            schema=_parse_schema(prompt_dir / "schema.json"),
            prompt_dir=prompt_dir,
            meta=_read_meta(prompt_dir / "meta.yaml"),
        )
        self._cache[(prompt_name, version)] = prompt_set
        return prompt_set


def _parse_schema(path: Path) -> dict[str, Any]:
    try:
        schema = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as error:
        raise ValueError(f"{path} is not valid JSON: {error}") from error
    if not isinstance(schema, dict):
        raise ValueError(f"{path} must hold a JSON object")
    return schema


def _read_meta(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    meta = yaml.safe_load(path.read_text(encoding="utf-8"))
    return meta if isinstance(meta, dict) else {}
