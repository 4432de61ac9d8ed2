"""Retry policy for retryable provider failures.

The runner never retries on its own; callers wrap a run (or a provider call)
with ``with_retry`` when they want rate-limit and server errors re-attempted.
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from loguru import logger

from .errors import RetryableProviderError

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: float = 0.1
    retry_on: tuple[type[Exception], ...] = (RetryableProviderError,)

    def delay_for(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        """Backoff before retry number ``attempt`` (1-based), capped at ``max_delay``."""
        delay = min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)
        return delay + delay * self.jitter * rand()

    def should_retry(self, exc: Exception, attempt: int) -> bool:
        return attempt < self.max_attempts and isinstance(exc, self.retry_on)


def with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy | None = None,
    *,
    sleep: Callable[[float], Any] = time.sleep,
) -> T:
    """Call ``fn`` until it succeeds or the policy gives up."""
    policy = policy or RetryPolicy()
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except Exception as exc:
            if not policy.should_retry(exc, attempt):
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "retry.attempt attempt={} max_attempts={} delay={:.2f}s error={}",
                attempt,
                policy.max_attempts,
                delay,
                exc,
            )
            sleep(delay)
