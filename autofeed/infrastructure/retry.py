"""
Bounded retry wrapper for shared-store calls.
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

import redis

from autofeed.config import REDIS_MAX_ATTEMPTS, REDIS_RETRY_BASE_DELAY
from autofeed.errors import TransientStoreError
from autofeed.observability.telemetry import counter, log_event

T = TypeVar("T")

RETRYABLE_STORE_ERRORS: tuple[type[Exception], ...] = (
    redis.ConnectionError,
    redis.TimeoutError,
    ConnectionError,
    TimeoutError,
)


@dataclass
class RetryPolicy:
    """Retry ``func`` on connection/timeout errors, then raise TransientStoreError.

    Any other exception propagates on the first attempt.
    """

    stage: str
    max_attempts: int = REDIS_MAX_ATTEMPTS
    base_delay: float = REDIS_RETRY_BASE_DELAY
    max_delay: float = 1.0
    jitter: float = 0.05
    retry_on: tuple[type[Exception], ...] = RETRYABLE_STORE_ERRORS
    sleep_fn: Callable[[float], None] = time.sleep

    def execute(self, func: Callable[..., T], *args, **kwargs) -> T:
        attempt = 0
        last_error: Exception | None = None

        while attempt < self.max_attempts:
            attempt += 1
            try:
                return func(*args, **kwargs)
            except self.retry_on as exc:
                last_error = exc
                log_event("stage_error", stage=self.stage, error=str(exc), attempt=attempt)

            if attempt >= self.max_attempts:
                break

            self._backoff(attempt)

        counter(f"{self.stage}.store_unavailable")
        raise TransientStoreError(
            f"{self.stage}: shared store unavailable after {attempt} attempts: {last_error}"
        ) from last_error

    def _backoff(self, attempt: int) -> None:
        counter("retry_count")
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        delay += random.uniform(0, self.jitter)
        log_event("retry_scheduled", stage=self.stage, attempt=attempt, delay=round(delay, 3))
        if self.sleep_fn is not None:
            self.sleep_fn(delay)
