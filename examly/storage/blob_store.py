from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import Protocol

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from examly.utils.error_taxonomy import InputError

logger = logging.getLogger("examly.storage.blob_store")

MATERIALS_PREFIX = "materials"


class BlobStore(Protocol):
    def upload(self, path: str, data: bytes, *, content_type: str | None = None) -> str: ...

    def download(self, path: str) -> bytes: ...

    def close(self) -> None: ...


def user_prefix(user_id: str) -> str:
    return f"{MATERIALS_PREFIX}/{user_id}/"


def is_user_path(path: str, user_id: str) -> bool:
    """True when ``path`` is a clean relative key under the user's prefix."""
    if not path or not user_id or "\\" in path:
        return False
    pure = PurePosixPath(path)
    if pure.is_absolute() or any(part in {"..", "."} for part in pure.parts):
        return False
    return path.startswith(user_prefix(user_id)) and len(path) > len(
        user_prefix(user_id)
    )


def _normalize_key(path: str) -> str:
    pure = PurePosixPath(path)
    if not path or pure.is_absolute() or ".." in pure.parts:
        raise InputError(f"Invalid blob path: {path!r}")
    return str(pure)


class LocalBlobStore:
    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def upload(self, path: str, data: bytes, *, content_type: str | None = None) -> str:
        key = _normalize_key(path)
        target = self.root / key
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return key

    def download(self, path: str) -> bytes:
        key = _normalize_key(path)
        return (self.root / key).read_bytes()

    def close(self) -> None:
        """Nothing to release for the local filesystem."""


class HttpBlobStore:
    """Object store reached over HTTP: ``PUT``/``GET {base_url}/{path}``."""

    def __init__(
        self,
        *,
        base_url: str,
        token: str | None = None,
        timeout_seconds: float = 20.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.Client(
            headers=headers,
            timeout=timeout_seconds,
            follow_redirects=True,
            transport=transport,
        )

    def upload(self, path: str, data: bytes, *, content_type: str | None = None) -> str:
        key = _normalize_key(path)
        headers = {"Content-Type": content_type} if content_type else {}

        def _do_upload() -> httpx.Response:
            response = self._client.put(f"{self.base_url}/{key}", content=data, headers=headers)
            response.raise_for_status()
            return response

        self._with_retry(_do_upload)
        return key

    def download(self, path: str) -> bytes:
        key = _normalize_key(path)

        def _do_download() -> httpx.Response:
            response = self._client.get(f"{self.base_url}/{key}")
            response.raise_for_status()
            return response

        return self._with_retry(_do_download).content

    def close(self) -> None:
        self._client.close()

    def _with_retry(self, operation):
        wrapped = retry(
            wait=wait_exponential(multiplier=self.backoff_seconds),
            stop=stop_after_attempt(self.max_attempts),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
            reraise=True,
            before_sleep=lambda state: logger.warning(
                "blob.retry",
                extra={"metrics": {"attempt": state.attempt_number}},
            ),
        )(operation)
        return wrapped()
