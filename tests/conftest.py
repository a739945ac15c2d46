"""Shared test fixtures.

HTTP is faked with ``httpx.MockTransport``: ``FakeCollector`` records every
request and answers from per-path response queues.
"""

from __future__ import annotations

import gzip
import json

import httpx
import pytest

from beacon_core.clock import ManualClock
from beacon_core.config import ClientConfig, DeliveryConfig, QueueConfig
from beacon_core.delivery.transport import HttpxTransport
from beacon_core.persistence.store import MemoryStore


BATCH_PATH = "/batch/"
FLAGS_PATH = "/flags/"
DEFINITIONS_PATH = "/api/feature_flag/local_evaluation"


class FakeCollector:
    """
    Records requests and replays canned responses.

    ``respond(path, *responses)`` queues responses for a path; each request
    consumes one and the last one keeps repeating. A response may be an
    ``httpx.Response``, a status code, a JSON-able body (200) or an exception
    instance to raise.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self._responses: dict[str, list] = {}

    def respond(self, path: str, *responses) -> None:
        self._responses[path] = list(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._responses.get(request.url.path)
        if not queue:
            return httpx.Response(200, json={})

        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, httpx.Response):
            return response
        if isinstance(response, int):
            return httpx.Response(response)
        return httpx.Response(200, json=response)

    def requests_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def batches(self) -> list[list[dict]]:
        """Decoded ``batch`` arrays of every batch request, in order."""
        return [decode_body(r)["batch"] for r in self.requests_to(BATCH_PATH)]

    def events(self) -> list[dict]:
        return [event for batch in self.batches() for event in batch]


def decode_body(request: httpx.Request) -> dict:
    content = request.content
    if request.headers.get("Content-Encoding") == "gzip":
        content = gzip.decompress(content)
    return json.loads(content)


@pytest.fixture
def collector() -> FakeCollector:
    return FakeCollector()


@pytest.fixture
def transport(collector):
    return HttpxTransport(httpx.AsyncClient(transport=httpx.MockTransport(collector.handler)))


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


async def no_sleep(seconds: float) -> None:
    """Stand-in for asyncio.sleep so retry backoff doesn't slow tests."""
    return None


@pytest.fixture
def config() -> ClientConfig:
    return ClientConfig(
        api_key="phc_test",
        host="https://collector.test",
        personal_api_key=None,
        queue=QueueConfig(flush_at=20, flush_interval_seconds=10.0),
        delivery=DeliveryConfig(max_retries=2, retry_delay_seconds=0.01, disable_compression=True),
    )
