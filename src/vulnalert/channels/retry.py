"""Bounded retry with exponential backoff for channel deliveries."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """How many times to retry a failed delivery, and how long to wait."""

    max_retries: int = Field(2, ge=0)
    """Retries after the first attempt. 0 means a single attempt."""

    base_delay_seconds: float = Field(1.0, ge=0)
    backoff_factor: float = Field(2.0, ge=1.0)
    max_delay_seconds: float = Field(30.0, ge=0)

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry *retry_number* (1-based)."""
        delay = self.base_delay_seconds * self.backoff_factor ** (retry_number - 1)
        return min(delay, self.max_delay_seconds)

    def total_delay(self) -> float:
        """Sum of every backoff delay when all retries are used."""
        return sum(self.delay_for(n) for n in range(1, self.max_retries + 1))

    def worst_case_seconds(self, attempt_timeout: float) -> float:
        """Longest time one provider can take: every attempt times out."""
        return (self.max_retries + 1) * attempt_timeout + self.total_delay()


class RetryExhausted(Exception):
    """Raised when every attempt failed. Carries the attempt count."""

    def __init__(self, attempts: int, last_error: Exception) -> None:
        super().__init__(str(last_error))
        self.attempts = attempts
        self.last_error = last_error


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Callable[[int, Exception], None] | None = None,
    deadline: float | None = None,
    attempt_timeout: float = 0.0,
    clock: Callable[[], float] = time.monotonic,
) -> tuple[T, int]:
    """Call *fn* until it succeeds or the policy is exhausted.

    Returns ``(result, attempts)``. Raises ``RetryExhausted`` after the
    last failed attempt; exceptions outside *retry_on* propagate at once.

    With a *deadline* (on the *clock* scale), a retry is only started if
    the backoff delay plus one full *attempt_timeout* still fits before
    it. Otherwise the retries stop early with ``RetryExhausted``.
    """
    attempts = 0
    while True:
        attempts += 1
        try:
            return fn(), attempts
        except retry_on as exc:
            if attempts > policy.max_retries:
                raise RetryExhausted(attempts, exc) from exc
            delay = policy.delay_for(attempts)
            if deadline is not None and clock() + delay + attempt_timeout > deadline:
                raise RetryExhausted(attempts, exc) from exc
            if on_retry is not None:
                on_retry(attempts, exc)
            sleep(delay)
