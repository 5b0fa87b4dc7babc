"""
Bounded retries for transient store failures.

Only TransientStoreError is retried; every other AppError is terminal for
the invocation and propagates on the first attempt.
"""
from __future__ import annotations

import time
from typing import Callable, Optional, TypeVar

from habitchain.core.errors import TransientStoreError
from habitchain.core.logging import log_event

T = TypeVar("T")

BACKOFF_BASE_SECONDS = 0.05
BACKOFF_CAP_SECONDS = 1.0


def compute_backoff(attempt: int) -> float:
    """Exponential backoff with a hard cap."""
    return min(BACKOFF_BASE_SECONDS * (2 ** attempt), BACKOFF_CAP_SECONDS)


def with_retries(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    operation: str = "store",
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    sleeper = sleep or time.sleep
    attempts = max(1, attempts)
    for attempt in range(attempts):
        try:
            return fn()
        except TransientStoreError as exc:
            if attempt == attempts - 1:
                log_event(
                    "error",
                    "store.retry.exhausted",
                    event_type=operation,
                    error_code=exc.code,
                    extra={"attempts": attempts, "error": exc.message},
                )
                raise
            log_event(
                "warning",
                "store.retry",
                event_type=operation,
                error_code=exc.code,
                extra={"attempt": attempt + 1, "error": exc.message},
            )
            sleeper(compute_backoff(attempt))
    raise TransientStoreError(f"{operation} failed after {attempts} attempts")
