"""Delivery pipeline: turns a batch into a collector request."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable

from ..errors import (
    DeliveryError,
    NetworkError,
    NonRetryableDeliveryError,
    PayloadTooLargeError,
)
from ..telemetry.emitter import DeliveryFailed, EventBus
from ..telemetry.events import Batch
from .compression import gzip_compress, is_gzip_supported
from .retry import RetryPolicy
from .transport import Transport, TransportResponse


logger = logging.getLogger(__name__)


@dataclass
class DeliveryPipeline:
    """
    Sends batches to ``{host}/batch/``.

    Per batch:
    - one JSON body ``{api_key, batch, sent_at}``, gzipped when the probe
      done at construction succeeded
    - retries for network errors and 5xx, per ``retry_policy``
    - 413 splits the batch in half and sends both halves
    - other 4xx drop the batch

    Permanent failures are published as ``DeliveryFailed`` and raised to
    whoever awaits the send. A batch that exhausted its retries is handed to
    ``on_requeue`` (front of the queue) when ``requeue_on_failure`` is set.
    """
    api_key: str
    host: str
    transport: Transport
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    request_timeout_seconds: float = 10.0
    disable_compression: bool = False
    requeue_on_failure: bool = True
    user_agent: str | None = None

    bus: EventBus = field(default_factory=EventBus)
    on_requeue: Callable[[Batch], None] | None = None

    # Injected so tests don't wait for backoff
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    # Internal state
    _compression: bool = field(default=False, init=False)
    _in_flight: set[asyncio.Task] = field(default_factory=set, init=False)
    _stats: dict = field(default_factory=dict, init=False)

    def __post_init__(self):
        self._compression = not self.disable_compression and is_gzip_supported()
        self._stats = {
            "requests": 0,
            "batches_sent": 0,
            "events_sent": 0,
            "retries": 0,
            "batches_dropped": 0,
            "batches_requeued": 0,
            "batch_splits": 0,
        }

    @property
    def url(self) -> str:
        return f"{self.host}/batch/"

    @property
    def compression_enabled(self) -> bool:
        return self._compression

    def dispatch(self, batch: Batch) -> asyncio.Task:
        """Start sending ``batch`` in the background and track it as in flight."""
        task = asyncio.get_running_loop().create_task(self.send(batch))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def send(self, batch: Batch) -> None:
        """Deliver one batch, splitting on 413."""
        try:
            await self._post_with_retry(batch)
        except PayloadTooLargeError as e:
            if len(batch) <= 1:
                self._fail(e, batch)
                raise
            await self._send_split(batch)
            return
        except DeliveryError as e:
            if e.retryable and self.requeue_on_failure and self.on_requeue is not None:
                logger.warning(
                    f"Giving up on batch of {len(batch)} events after "
                    f"{self.retry_policy.max_retries} retries, requeueing: {e}"
                )
                self.on_requeue(batch)
                self._stats["batches_requeued"] += 1
            else:
                logger.error(f"Dropping batch of {len(batch)} events: {e}")
                self._stats["batches_dropped"] += 1
            self.bus.publish(DeliveryFailed(error=e, events=batch.events))
            raise

        self._stats["batches_sent"] += 1
        self._stats["events_sent"] += len(batch)

    async def _send_split(self, batch: Batch) -> None:
        first, second = batch.split()
        self._stats["batch_splits"] += 1
        logger.warning(
            f"Received 413 when sending batch of size {len(batch)}, "
            f"retrying as {len(first)} + {len(second)}"
        )

        # Sequential so the halves keep their relative order
        error: BaseException | None = None
        for half in (first, second):
            try:
                await self.send(half)
            except DeliveryError as e:
                error = error or e
        if error is not None:
            raise error

    async def _post_with_retry(self, batch: Batch) -> TransportResponse:
        body, headers = self._encode(batch)

        attempt = 0
        while True:
            try:
                return await self._post(body, headers)
            except DeliveryError as e:
                if not self.retry_policy.should_retry(e, attempt):
                    raise
                delay = self.retry_policy.delay(attempt)
                attempt += 1
                self._stats["retries"] += 1
                logger.info(
                    f"Delivery failed ({e}), retrying in {delay:.2f}s "
                    f"(attempt {attempt}/{self.retry_policy.max_retries})"
                )
                await self.sleep(delay)

    async def _post(self, body: bytes | str, headers: dict[str, str]) -> TransportResponse:
        self._stats["requests"] += 1
        try:
            response = await asyncio.wait_for(
                self.transport.send(
                    self.url,
                    method="POST",
                    headers=headers,
                    body=body,
                    timeout=self.request_timeout_seconds,
                ),
                timeout=self.request_timeout_seconds,
            )
        except DeliveryError:
            raise
        except asyncio.TimeoutError as e:
            raise NetworkError(f"Request timed out after {self.request_timeout_seconds}s") from e
        except Exception as e:
            raise NetworkError(f"Request failed: {e}") from e

        return check_response(response)

    def _encode(self, batch: Batch) -> tuple[bytes | str, dict[str, str]]:
        payload = json.dumps({
            "api_key": self.api_key,
            "batch": [event.to_dict() for event in batch.events],
            "sent_at": datetime.now(timezone.utc).isoformat(),
        }, default=str)

        headers = {"Content-Type": "application/json"}
        if self.user_agent:
            headers["User-Agent"] = self.user_agent

        if self._compression:
            headers["Content-Encoding"] = "gzip"
            return gzip_compress(payload), headers
        return payload, headers

    def _fail(self, error: DeliveryError, batch: Batch) -> None:
        logger.error(f"Dropping batch of {len(batch)} events: {error}")
        self._stats["batches_dropped"] += 1
        self.bus.publish(DeliveryFailed(error=error, events=batch.events))

    async def wait_for_in_flight(self) -> None:
        """Wait until every dispatched send has settled."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    @property
    def requeued_batches(self) -> int:
        return self._stats["batches_requeued"]

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def stats(self) -> dict:
        return {
            **self._stats,
            "in_flight": self.in_flight,
            "compression": self._compression,
        }


def check_response(response: TransportResponse) -> TransportResponse:
    """Map an HTTP status to the delivery error taxonomy."""
    status = response.status
    if 200 <= status < 400:
        return response
    if status == 413:
        raise PayloadTooLargeError("Payload too large (413)", status=status)
    if status >= 500:
        raise NetworkError(f"Server error ({status})", status=status)
    raise NonRetryableDeliveryError(f"Request rejected ({status}): {response.text()[:200]}", status=status)
