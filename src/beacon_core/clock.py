"""Wall clock abstraction so session and flag timing can be driven in tests."""

from __future__ import annotations

import time
from datetime import datetime, timezone


class Clock:
    """Real clock. ``now()`` is epoch milliseconds."""

    def now(self) -> float:
        return time.time() * 1000

    def utcnow(self) -> datetime:
        return datetime.fromtimestamp(self.now() / 1000, tz=timezone.utc)


class ManualClock(Clock):
    """A clock that only moves when told to."""

    def __init__(self, start_ms: float = 1_700_000_000_000):
        self._now = float(start_ms)

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float = 0.0, minutes: float = 0.0, hours: float = 0.0) -> None:
        self._now += (seconds + minutes * 60 + hours * 3600) * 1000

    def set(self, ms: float) -> None:
        self._now = float(ms)
