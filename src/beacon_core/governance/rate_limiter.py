"""Bucketed token-bucket rate limiter keyed by arbitrary strings."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field


logger = logging.getLogger(__name__)


@dataclass
class _TokenBucket:
    """Token bucket for a single key."""
    key: str
    capacity: int
    tokens: int

    def consume(self) -> bool:
        """Take one token. Returns True if the bucket was already empty."""
        if self.tokens <= 0:
            return True
        self.tokens -= 1
        return False

    def refill(self, amount: int) -> None:
        self.tokens = min(self.capacity, self.tokens + amount)

    @property
    def is_full(self) -> bool:
        return self.tokens >= self.capacity


@dataclass
class BucketedRateLimiter:
    """
    Token-bucket rate limiter with one bucket per key.

    Buckets are created lazily at full capacity. A periodic refill task adds
    ``refill_rate`` tokens to every tracked bucket each ``refill_interval_seconds``
    and forgets buckets once they are full again, so idle keys cost nothing.

    The refill task is started on first use when an event loop is running;
    ``refill()`` can also be driven manually.
    """
    capacity: int = 10
    refill_rate: int = 1
    refill_interval_seconds: float = 1.0

    _buckets: dict[str, _TokenBucket] = field(default_factory=dict, init=False)
    _refill_task: asyncio.Task | None = field(default=None, init=False)

    # Stats
    _total_consumed: int = field(default=0, init=False)
    _total_limited: int = field(default=0, init=False)

    def consume_rate_limit(self, key: str) -> bool:
        """
        Consume one token for ``key``.

        Returns:
            True if the caller is rate limited, False otherwise.
        """
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = _TokenBucket(key=key, capacity=self.capacity, tokens=self.capacity)
            self._buckets[key] = bucket
            self._ensure_refill_task()

        self._total_consumed += 1
        limited = bucket.consume()
        if limited:
            self._total_limited += 1
            logger.debug(f"Rate limit hit for {key!r}")
        return limited

    def refill(self) -> None:
        """Add one interval's worth of tokens to every bucket."""
        for key in list(self._buckets):
            bucket = self._buckets[key]
            bucket.refill(self.refill_rate)
            if bucket.is_full:
                del self._buckets[key]

    async def refill_loop(self) -> None:
        """Background loop that refills buckets on interval."""
        logger.debug(f"Rate limiter refill started (interval={self.refill_interval_seconds}s)")

        while True:
            try:
                await asyncio.sleep(self.refill_interval_seconds)
                self.refill()
                if not self._buckets:
                    # Nothing left to refill; restarted on next consume
                    break
            except asyncio.CancelledError:
                logger.debug("Rate limiter refill cancelled")
                raise
        self._refill_task = None

    def _ensure_refill_task(self) -> None:
        if self._refill_task is not None and not self._refill_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: refill() must be driven by the caller
            return
        self._refill_task = loop.create_task(self.refill_loop())

    async def stop(self) -> None:
        """Cancel the refill task."""
        task, self._refill_task = self._refill_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def tokens(self, key: str) -> int:
        """Tokens left for ``key`` (capacity if untracked)."""
        bucket = self._buckets.get(key)
        return bucket.tokens if bucket is not None else self.capacity

    @property
    def tracked_keys(self) -> list[str]:
        return list(self._buckets)

    @property
    def stats(self) -> dict:
        """Rate limiter statistics."""
        return {
            "tracked_keys": len(self._buckets),
            "total_consumed": self._total_consumed,
            "total_limited": self._total_limited,
            "limit_rate_percent": round(
                self._total_limited / max(self._total_consumed, 1) * 100, 2
            ),
        }
