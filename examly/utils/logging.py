from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from threading import local
from typing import Any, Iterable, TextIO

LOGGER_NAME = "examly"

CONTEXT_FIELDS = (
    "request_id",
    "user_id",
    "plan_id",
    "generation_id",
    "material_id",
    "stage",
)

_log_ctx = local()


def set_log_context(**kwargs: Any) -> None:
    for key, value in kwargs.items():
        setattr(_log_ctx, key, value)


def get_log_context() -> dict[str, Any]:
    return {k: v for k, v in _log_ctx.__dict__.items() if not k.startswith("_")}


def clear_log_context(keys: Iterable[str] | None = None) -> None:
    if keys is None:
        _log_ctx.__dict__.clear()
        return
    for key in keys:
        _log_ctx.__dict__.pop(key, None)


class JsonFormatter(logging.Formatter):
    """One JSON object per line; record extras override thread-local context."""

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_log_context()
        data: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
                "%Y-%m-%dT%H:%M:%SZ"
            ),
            "level": record.levelname,
            "logger": record.name,
        }
        for field_name in CONTEXT_FIELDS:
            value = getattr(record, field_name, None)
            if value is None:
                value = ctx.get(field_name)
            data[field_name] = value
        data["msg"] = record.getMessage()

        if hasattr(record, "duration_ms"):
            data["duration_ms"] = record.duration_ms
        if hasattr(record, "metrics"):
            data["metrics"] = record.metrics
        if record.exc_info:
            data["exc"] = self.formatException(record.exc_info)

        data = {k: v for k, v in data.items() if v is not None}
        return json.dumps(data, ensure_ascii=False, default=str)


def setup_logging(
    level: int = logging.INFO,
    log_file: str | None = None,
    stream: TextIO | None = None,
) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()

    formatter = JsonFormatter()

    stream_handler = logging.StreamHandler(stream or sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
