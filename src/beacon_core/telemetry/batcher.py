"""Event queue that groups captured events into batches for delivery."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from .emitter import BatchFlushed, EventBus
from .events import Batch, Event


logger = logging.getLogger(__name__)


@dataclass
class EventQueue:
    """
    Buffers captured events and decides when to flush them.

    A flush happens when the buffer reaches ``flush_at`` events, when the
    single flush timer (armed on the first event after a flush) fires, or
    when ``flush()`` is awaited explicitly.

    Taking events out of the buffer is a synchronous step, so no event is
    ever part of two batches and capture order is kept inside a batch.
    """
    flush_at: int = 20
    flush_interval_seconds: float = 10.0
    max_batch_size: int = 100
    max_queue_size: int = 1000

    # Hands a batch to delivery and returns the task tracking it
    dispatcher: Callable[[Batch], asyncio.Task] | None = None

    bus: EventBus = field(default_factory=EventBus)

    # Internal state
    _buffer: list[Event] = field(default_factory=list, init=False)
    _timer: asyncio.TimerHandle | None = field(default=None, init=False)
    _watchers: set[asyncio.Task] = field(default_factory=set, init=False)
    _last_flush: float = field(default_factory=time.time, init=False)
    _stats: dict = field(default_factory=dict, init=False)

    def __post_init__(self):
        self._stats = {
            "batches_dispatched": 0,
            "events_dispatched": 0,
            "events_dropped": 0,
            "events_requeued": 0,
        }

    def enqueue(self, event: Event) -> None:
        """Add an event, flushing or arming the timer as needed."""
        if len(self._buffer) >= self.max_queue_size:
            self._buffer.pop(0)
            self._stats["events_dropped"] += 1
            logger.info("Queue is full, the oldest event is dropped")

        self._buffer.append(event)

        if len(self._buffer) >= self.flush_at:
            self._flush_background()
        elif self._timer is None and self.flush_interval_seconds:
            self._arm_timer()

    def requeue(self, batch: Batch) -> None:
        """Put a failed batch back at the front of the buffer."""
        self._buffer[:0] = batch.events
        self._stats["events_requeued"] += len(batch)

        overflow = len(self._buffer) - self.max_queue_size
        if overflow > 0:
            del self._buffer[:overflow]
            self._stats["events_dropped"] += overflow
            logger.info(f"Queue is full, dropped {overflow} oldest events on requeue")

        logger.debug(f"Requeued {len(batch)} events at the front of the queue")
        if self._timer is None and self.flush_interval_seconds:
            self._arm_timer()

    async def flush(self) -> None:
        """
        Dispatch everything pending and wait for delivery.

        Raises the first delivery error of the batches dispatched by this call.
        """
        tasks = self._dispatch_pending()
        if not tasks:
            return

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result

    def _dispatch_pending(self) -> list[asyncio.Task]:
        """Move all buffered events into batches and hand them off."""
        self._cancel_timer()
        if not self._buffer:
            return []

        if self.dispatcher is None:
            logger.warning(f"No dispatcher configured, discarding {len(self._buffer)} events")
            self._buffer.clear()
            return []

        pending, self._buffer = self._buffer, []
        self._last_flush = time.time()

        tasks = []
        for start in range(0, len(pending), self.max_batch_size):
            batch = Batch(tuple(pending[start:start + self.max_batch_size]))
            tasks.append(self.dispatcher(batch))
            self._stats["batches_dispatched"] += 1
            self._stats["events_dispatched"] += len(batch)
            self.bus.publish(BatchFlushed(batch.events))

        return tasks

    def _flush_background(self) -> None:
        """Flush without awaiting; failures are already reported by delivery."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, events stay queued until flush()")
            return

        tasks = self._dispatch_pending()
        if not tasks:
            return

        watcher = loop.create_task(self._watch(tasks))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)

    @staticmethod
    async def _watch(tasks: list[asyncio.Task]) -> None:
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning(f"Background flush failed: {result}")

    def _arm_timer(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timer = loop.call_later(self.flush_interval_seconds, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._flush_background()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def close(self) -> None:
        """Disarm the timer. Buffered events are kept."""
        self._cancel_timer()

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    @property
    def buffer_size(self) -> int:
        """Current buffer size."""
        return len(self._buffer)

    @property
    def pending(self) -> list[Event]:
        return list(self._buffer)

    @property
    def stats(self) -> dict:
        """Get queue statistics."""
        return {
            **self._stats,
            "buffer_size": self.buffer_size,
            "seconds_since_flush": time.time() - self._last_flush,
        }
