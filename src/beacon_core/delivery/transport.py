"""Transports - how a request reaches the collector."""

from __future__ import annotations

import gzip
import json
import logging
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from ..errors import NetworkError


logger = logging.getLogger(__name__)


@dataclass
class TransportResponse:
    """Status, headers and raw body of a completed request."""
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    content: bytes = b""

    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.content) if self.content else None

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


class Transport(ABC):
    """
    Abstract base class for transports.

    ``send`` returns a response for any HTTP status and raises
    ``NetworkError`` when no response was obtained.
    """

    @abstractmethod
    async def send(
        self,
        url: str,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        body: bytes | str | None = None,
        timeout: float | None = None,
    ) -> TransportResponse:
        ...

    async def close(self) -> None:
        """Release resources (called on client close)."""
        pass


class HttpxTransport(Transport):
    """
    Transport on ``httpx.AsyncClient``.

    Pass an existing client to share a connection pool (or to plug in an
    ``httpx.MockTransport`` in tests); otherwise one is created on first use
    and closed by ``close()``.
    """

    def __init__(self, client: httpx.AsyncClient | None = None, **client_kwargs):
        self._client = client
        self._owns_client = client is None
        self._client_kwargs = client_kwargs

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(**self._client_kwargs)
        return self._client

    async def send(
        self,
        url: str,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        body: bytes | str | None = None,
        timeout: float | None = None,
    ) -> TransportResponse:
        client = self._get_client()
        try:
            response = await client.request(
                method,
                url,
                headers=headers,
                content=body,
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request to {url} timed out") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Request to {url} failed: {e}") from e

        return TransportResponse(
            status=response.status_code,
            headers=dict(response.headers),
            content=response.content,
        )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


@dataclass
class ConsoleTransport(Transport):
    """
    Transport that prints request bodies instead of sending them.

    Useful for development and debugging. Always answers 200.
    """
    # Output destination
    stream: str = "stdout"  # stdout | stderr

    # Output format
    format: str = "json"  # json | pretty

    # Prefix for each line
    prefix: str = "[BEACON] "

    async def send(
        self,
        url: str,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        body: bytes | str | None = None,
        timeout: float | None = None,
    ) -> TransportResponse:
        out = sys.stdout if self.stream == "stdout" else sys.stderr
        print(f"{self.prefix}{method} {url} {self._format_body(headers or {}, body)}", file=out)
        return TransportResponse(status=200, content=b"{}")

    def _format_body(self, headers: dict[str, str], body: bytes | str | None) -> str:
        if body is None:
            return ""
        if isinstance(body, bytes):
            if headers.get("Content-Encoding") == "gzip":
                body = gzip.decompress(body)
            body = body.decode("utf-8")
        if self.format == "pretty":
            return json.dumps(json.loads(body), indent=2, default=str)
        return body
