from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from .errors import WriteConflict

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """
    Backoff policy for writes that lose the SQLite write lock to another writer.

    max_attempts includes the first try. The n-th retry waits
    base_delay_seconds * 2**(n-1), capped at max_delay_seconds and scaled by a
    random factor in [1 - jitter_ratio, 1 + jitter_ratio] so that writers that
    collided once do not collide again in lockstep.
    """

    max_attempts: int = 5
    base_delay_seconds: float = 0.05
    max_delay_seconds: float = 2.0
    jitter_ratio: float = 0.25

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("retry delays must be >= 0")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        if not (0.0 <= self.jitter_ratio <= 1.0):
            raise ValueError("jitter_ratio must be between 0 and 1")

    def delay_for(self, failure_attempt: int, *, rng: random.Random | None = None) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        n = max(1, int(failure_attempt))
        delay = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** (n - 1)))
        if delay <= 0 or self.jitter_ratio <= 0:
            return max(0.0, float(delay))
        draw = (rng or random).uniform(1.0 - self.jitter_ratio, 1.0 + self.jitter_ratio)
        return max(0.0, float(delay) * draw)


@dataclass(frozen=True)
class RetryEvent:
    """What the retry loop reports before it sleeps."""

    operation: str
    failure_attempt: int
    next_attempt: int
    max_attempts: int
    delay_seconds: float
    reason: str | None
    error_type: str
    error_message: str
    event_id: str | None


IsRetryableFn = Callable[[BaseException], tuple[bool, str | None]]
OnRetryFn = Callable[[RetryEvent], None]
SleepFn = Callable[[float], None]


def is_retryable_store_exception(exc: BaseException) -> tuple[bool, str | None]:
    # Validation failures are terminal and StoreUnavailable is always surfaced.
    if isinstance(exc, WriteConflict):
        return True, "write_conflict"
    return False, None


def call_with_retries(
    fn: Callable[[], T],
    *,
    cfg: RetryConfig,
    is_retryable: IsRetryableFn = is_retryable_store_exception,
    operation: str,
    on_retry: OnRetryFn | None = None,
    sleep_fn: SleepFn | None = None,
    event_id: str | None = None,
) -> T:
    """
    Run fn() until it succeeds, fails with a non-retryable error, or runs out of
    attempts. The last error is re-raised unchanged.
    """
    op = (operation or "").strip() or "operation"
    sleep = sleep_fn or time.sleep
    attempt = 1

    while True:
        try:
            return fn()
        except Exception as exc:
            retryable, reason = is_retryable(exc)
            if not retryable or attempt >= cfg.max_attempts:
                raise

            delay = cfg.delay_for(attempt)
            if on_retry is not None:
                on_retry(
                    RetryEvent(
                        operation=op,
                        failure_attempt=attempt,
                        next_attempt=attempt + 1,
                        max_attempts=cfg.max_attempts,
                        delay_seconds=delay,
                        reason=reason,
                        error_type=type(exc).__name__,
                        error_message=str(exc).strip(),
                        event_id=event_id,
                    )
                )
            if delay > 0:
                sleep(delay)
            attempt += 1
