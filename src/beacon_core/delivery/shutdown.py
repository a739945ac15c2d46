"""Graceful shutdown: flush, then wait for in-flight sends, bounded by a timeout."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

from ..errors import DeliveryError, ShutdownTimeoutError, UndeliveredEventsError


logger = logging.getLogger(__name__)


class ShutdownState(str, Enum):
    IDLE = "idle"
    FLUSHING = "flushing"


@dataclass
class ShutdownCoordinator:
    """
    Single-flight shutdown.

    ``idle -> flushing -> idle``. While flushing, every caller awaits the
    same task and sees the same outcome (the timeout of the first caller
    applies). Once it completes the state returns to idle, so a later call
    flushes whatever was captured since.

    On timeout the drain keeps running in the background; only the callers
    stop waiting. If a batch ran out of retries and was requeued while
    draining, callers get UndeliveredEventsError instead of success.
    """
    flush: Callable[[], Awaitable[None]]
    wait_for_in_flight: Callable[[], Awaitable[None]]

    # Counters used to detect batches requeued while draining
    requeued_batches: Callable[[], int] | None = None
    pending_events: Callable[[], int] | None = None

    _task: asyncio.Task | None = field(default=None, init=False)
    _completed: int = field(default=0, init=False)

    @property
    def state(self) -> ShutdownState:
        return ShutdownState.FLUSHING if self._task is not None else ShutdownState.IDLE

    async def shutdown(self, timeout_seconds: float) -> None:
        """Flush and wait for delivery. Raises ShutdownTimeoutError on timeout."""
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run(timeout_seconds))
            self._task.add_done_callback(self._on_done)
        else:
            logger.warning(
                "shutdown() called while already shutting down, "
                "waiting for the shutdown in progress"
            )
        await asyncio.shield(self._task)

    async def _run(self, timeout_seconds: float) -> None:
        drain = asyncio.ensure_future(self._drain())
        try:
            await asyncio.wait_for(asyncio.shield(drain), timeout_seconds)
        except asyncio.TimeoutError:
            logger.error(f"Timed out after {timeout_seconds}s while shutting down")
            drain.add_done_callback(_log_abandoned)
            raise ShutdownTimeoutError(timeout_seconds) from None

    async def _drain(self) -> None:
        requeued_before = self.requeued_batches() if self.requeued_batches else 0
        cause: DeliveryError | None = None
        try:
            await self.flush()
        except DeliveryError as e:
            # Already reported on the error channel by the pipeline
            logger.error(f"Flush during shutdown failed: {e}")
            cause = e
        await self.wait_for_in_flight()

        # Dropped batches are final; requeued ones would be left behind
        if self.requeued_batches and self.requeued_batches() > requeued_before:
            pending = self.pending_events() if self.pending_events else 0
            logger.error(f"Shutdown finished with {pending} events still queued")
            raise UndeliveredEventsError(pending, cause)

    def _on_done(self, task: asyncio.Task) -> None:
        self._task = None
        self._completed += 1

    @property
    def completed_shutdowns(self) -> int:
        return self._completed


def _log_abandoned(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Abandoned shutdown drain failed: {error}")
    else:
        logger.info("Abandoned shutdown drain finished after the timeout")
