"""Background poller for feature flag definitions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable
from urllib.parse import quote

from pydantic import ValidationError

from ..delivery.transport import Transport
from ..errors import FlagDefinitionsRequestError, NetworkError
from ..telemetry.emitter import DeliveryFailed, EventBus, FlagsLoaded
from .evaluator import FlagEvaluator
from .models import LocalEvaluationResponse, parse_cohorts, parse_flag_definitions


logger = logging.getLogger(__name__)


# Statuses that mean "stop hammering us", polling backs off on these
BACKOFF_STATUSES = (401, 403, 429)
MAX_BACKOFF_SECONDS = 60.0


@dataclass
class FlagDefinitionPoller:
    """
    Keeps the evaluator's definitions fresh.

    - ``load_feature_flags()`` is single-flight: concurrent callers share
      one request. A failed load clears the slot so the next call retries.
    - Sends ``If-None-Match`` with the last ETag; 304 keeps what we have.
    - 401/403/429 back the polling interval off exponentially (max 60s).
    - 402 means the project is over its quota: all flags are cleared.
    """
    host: str
    api_key: str
    personal_api_key: str
    transport: Transport
    evaluator: FlagEvaluator
    polling_interval_seconds: float = 30.0
    request_timeout_seconds: float = 3.0
    user_agent: str | None = None
    bus: EventBus = field(default_factory=EventBus)

    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    # Internal state
    _etag: str | None = field(default=None, init=False)
    _backoff_count: int = field(default=0, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)
    _load_task: asyncio.Task | None = field(default=None, init=False)
    _poll_task: asyncio.Task | None = field(default=None, init=False)
    _running: bool = field(default=False, init=False)
    _stats: dict = field(default_factory=dict, init=False)

    def __post_init__(self):
        self._stats = {
            "requests": 0,
            "loads": 0,
            "not_modified": 0,
            "errors": 0,
        }

    @property
    def url(self) -> str:
        return f"{self.host}/api/feature_flag/local_evaluation?token={quote(self.api_key)}&send_cohorts"

    @property
    def current_interval(self) -> float:
        """Polling interval, stretched while the server is refusing us."""
        if self._backoff_count == 0:
            return self.polling_interval_seconds
        return min(MAX_BACKOFF_SECONDS, self.polling_interval_seconds * 2 ** self._backoff_count)

    @property
    def running(self) -> bool:
        return self._running

    async def load_feature_flags(self, force_reload: bool = False) -> None:
        """Load definitions unless already loaded (or ``force_reload``)."""
        if self.evaluator.loaded and not force_reload:
            return

        async with self._lock:
            task = self._load_task
            if task is None:
                task = asyncio.get_running_loop().create_task(self._fetch())
                self._load_task = task
                task.add_done_callback(self._clear_load_task)

        await asyncio.shield(task)

    def _clear_load_task(self, task: asyncio.Task) -> None:
        if self._load_task is task:
            self._load_task = None

    async def _fetch(self) -> None:
        headers = {"Authorization": f"Bearer {self.personal_api_key}"}
        if self.user_agent:
            headers["User-Agent"] = self.user_agent
        if self._etag:
            headers["If-None-Match"] = self._etag

        self._stats["requests"] += 1
        try:
            response = await asyncio.wait_for(
                self.transport.send(self.url, method="GET", headers=headers, timeout=self.request_timeout_seconds),
                timeout=self.request_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            error = NetworkError(f"Flag definitions request timed out after {self.request_timeout_seconds}s")
            self._report(error)
            raise error from e
        except NetworkError as e:
            self._report(e)
            raise

        status = response.status

        if status == 304:
            logger.debug("Flag definitions not modified")
            self._stats["not_modified"] += 1
            self._backoff_count = 0
            self._etag = response.header("ETag") or self._etag
            return

        if status in BACKOFF_STATUSES:
            self._backoff_count += 1
            error = FlagDefinitionsRequestError(
                f"Flag definitions request refused ({status}), "
                f"polling every {self.current_interval:.0f}s",
                status=status,
            )
            self._report(error)
            raise error

        if status == 402:
            logger.warning("Feature flags quota exceeded, clearing all flags")
            self.evaluator.clear()
            self._etag = None
            self._report(FlagDefinitionsRequestError("Feature flags quota exceeded (402)", status=status))
            return

        if status != 200:
            error = FlagDefinitionsRequestError(f"Flag definitions request failed ({status})", status=status)
            self._report(error)
            raise error

        try:
            body = LocalEvaluationResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            error = FlagDefinitionsRequestError(f"Invalid flag definitions response: {e}", status=status)
            self._report(error)
            raise error from e

        flags = parse_flag_definitions(body.flags)
        self.evaluator.load(flags, body.group_type_mapping, parse_cohorts(body.cohorts))
        self._etag = response.header("ETag")
        self._backoff_count = 0
        self._stats["loads"] += 1
        logger.info(f"Loaded {len(flags)} feature flag definitions")
        self.bus.publish(FlagsLoaded(count=len(flags)))

    def _report(self, error: Exception) -> None:
        self._stats["errors"] += 1
        logger.error(f"Error loading feature flags: {error}")
        self.bus.publish(DeliveryFailed(error=error))

    def start(self) -> None:
        """Start the background poll loop on the running event loop."""
        if self._poll_task is not None and not self._poll_task.done():
            return
        self._poll_task = asyncio.get_running_loop().create_task(self.poll_loop())

    async def poll_loop(self) -> None:
        """Reload definitions every ``current_interval`` seconds until stopped."""
        self._running = True
        logger.info(f"Starting flag definitions poller (every {self.polling_interval_seconds}s)")

        while self._running:
            try:
                await self.load_feature_flags(force_reload=True)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.debug(f"Flag poll failed: {e}")

            try:
                await self.sleep(self.current_interval)
            except asyncio.CancelledError:
                break

        self._running = False
        logger.info("Flag definitions poller stopped")

    async def stop(self) -> None:
        """Stop polling. An in-progress request is left to finish."""
        self._running = False
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    @property
    def stats(self) -> dict:
        return {
            **self._stats,
            "etag": self._etag,
            "backoff_count": self._backoff_count,
            "interval_seconds": self.current_interval,
            "loaded": self.evaluator.loaded,
        }
