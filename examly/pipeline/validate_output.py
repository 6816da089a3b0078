from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from jsonschema import Draft202012Validator

from examly.utils.error_taxonomy import StructuredOutputError

_MAX_REPORTED_ERRORS = 5


@dataclass(frozen=True, slots=True)
class ValidationResult:
    valid: bool
    schema_errors: list[str]

    def raise_for_errors(self) -> None:
        if self.valid:
            return
        shown = "; ".join(self.schema_errors[:_MAX_REPORTED_ERRORS])
        extra = len(self.schema_errors) - _MAX_REPORTED_ERRORS
        if extra > 0:
            shown = f"{shown}; and {extra} more"
        raise StructuredOutputError(f"Model output failed schema validation: {shown}")


def validate_output(
    *,
    parsed_json: dict[str, Any],
    schema: dict[str, Any],
) -> ValidationResult:
    validator = Draft202012Validator(schema)
    errors = sorted(
        validator.iter_errors(parsed_json),
        key=lambda item: [str(part) for part in item.path],
    )

    messages: list[str] = []
    for error in errors:
        path = "/".join(str(item) for item in error.path)
        if path:
            messages.append(f"{path}: {error.message}")
        else:
            messages.append(error.message)

    return ValidationResult(valid=not messages, schema_errors=messages)
