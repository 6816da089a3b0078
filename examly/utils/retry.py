from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, TypeVar

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_retries: int = 1
    base_delay_seconds: float = 0.2
    max_delay_seconds: float = 2.0

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay_seconds * (2**attempt), self.max_delay_seconds)


OCR_RETRY_POLICY = RetryPolicy(max_retries=1, base_delay_seconds=0.5)


def run_with_retry(
    *,
    operation: Callable[[], T],
    should_retry: Callable[[Exception], bool],
    policy: RetryPolicy = RetryPolicy(),
    sleep_fn: Callable[[float], None] = time.sleep,
    on_retry: Callable[[int, float, Exception], None] | None = None,
) -> T:
    """Run ``operation`` with bounded exponential backoff.

    ``policy.max_retries`` counts retries, so the operation runs at most
    ``max_retries + 1`` times. The last error is re-raised unchanged.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except Exception as error:  # noqa: BLE001
            if attempt >= policy.max_retries or not should_retry(error):
                raise

            delay = policy.delay_for(attempt)
            if on_retry is not None:
                on_retry(attempt + 1, delay, error)
            sleep_fn(delay)
            attempt += 1
