from __future__ import annotations

import time
from collections.abc import Iterator
from dataclasses import dataclass

from marketplace.config import settings


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded optimistic-concurrency retry. No backoff unless configured."""

    max_attempts: int = 2
    backoff_seconds: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError('Retry policy needs at least one attempt')
        if self.backoff_seconds < 0:
            raise ValueError('Backoff cannot be negative')

    def attempts(self) -> Iterator[int]:
        return iter(range(1, self.max_attempts + 1))

    def can_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def sleep_before(self, attempt: int) -> None:
        if attempt > 1 and self.backoff_seconds:
            time.sleep(self.backoff_seconds)


def order_update_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=settings.order_update_max_attempts)


def credit_reservation_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=settings.credit_reservation_max_attempts)
