"""Retry policy: exponential backoff with jitter."""

from __future__ import annotations

import random
from dataclasses import dataclass

from ..errors import DeliveryError


@dataclass
class RetryPolicy:
    """
    Decides whether and when a failed request is retried.

    Only retryable errors (network failures, 5xx) are retried. Attempt ``n``
    (0-based) waits ``base_delay * 2**n`` seconds, capped at ``max_delay``,
    scaled by a random factor in ``[1 - jitter, 1 + jitter]``.
    """
    max_retries: int = 3
    base_delay_seconds: float = 3.0
    max_delay_seconds: float = 30.0
    jitter: float = 0.5

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        return (
            isinstance(error, DeliveryError)
            and error.retryable
            and attempt < self.max_retries
        )

    def delay(self, attempt: int) -> float:
        backoff = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** attempt))
        if self.jitter:
            backoff *= random.uniform(1 - self.jitter, 1 + self.jitter)
        return max(0.0, backoff)
