"""Server-side flag evaluation, used when local evaluation is inconclusive."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..cache.lru import LRUCache
from ..delivery.pipeline import check_response
from ..delivery.transport import Transport
from ..errors import DeliveryError, NetworkError
from .models import FlagValue, parse_payload


logger = logging.getLogger(__name__)


class RemoteFlagDetail(BaseModel):
    model_config = ConfigDict(extra="ignore")

    key: str | None = None
    enabled: bool = False
    variant: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def value(self) -> FlagValue:
        if self.enabled and self.variant:
            return self.variant
        return self.enabled


class RemoteFlagsResponse(BaseModel):
    """
    Body of ``POST /flags/?v=2``.

    v2 responses carry ``flags`` with per-flag detail; older servers answer
    with ``featureFlags`` / ``featureFlagPayloads`` maps.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    flags: dict[str, RemoteFlagDetail] | None = None
    feature_flags: dict[str, FlagValue] | None = Field(default=None, alias="featureFlags")
    feature_flag_payloads: dict[str, Any] | None = Field(default=None, alias="featureFlagPayloads")
    errors_while_computing_flags: bool = Field(default=False, alias="errorsWhileComputingFlags")
    quota_limited: list[str] = Field(default_factory=list, alias="quotaLimited")


@dataclass(frozen=True)
class RemoteFlags:
    values: dict[str, FlagValue]
    payloads: dict[str, Any]
    errors_while_computing: bool = False

    @classmethod
    def from_response(cls, body: RemoteFlagsResponse) -> RemoteFlags:
        if "feature_flags" in body.quota_limited:
            logger.warning("Feature flags quota exceeded, treating all flags as disabled")
            return cls(values={}, payloads={}, errors_while_computing=body.errors_while_computing_flags)

        if body.flags is not None:
            values = {key: detail.value for key, detail in body.flags.items()}
            payloads = {
                key: parse_payload(detail.metadata.get("payload"))
                for key, detail in body.flags.items()
                if detail.metadata.get("payload") is not None
            }
        else:
            values = dict(body.feature_flags or {})
            payloads = {
                key: parse_payload(payload)
                for key, payload in (body.feature_flag_payloads or {}).items()
                if payload is not None
            }
        return cls(values=values, payloads=payloads, errors_while_computing=body.errors_while_computing_flags)


@dataclass
class RemoteFlagsClient:
    """
    Asks the server to evaluate every flag for one user.

    Requests are not retried; a failed request raises and the caller
    falls back to the default value. Responses are cached per user and
    property set for ``cache_ttl_seconds``.
    """
    host: str
    api_key: str
    transport: Transport
    request_timeout_seconds: float = 3.0
    cache_size: int = 1000
    cache_ttl_seconds: float = 60.0
    user_agent: str | None = None

    _cache: LRUCache = field(init=False)
    _stats: dict = field(default_factory=dict, init=False)

    def __post_init__(self):
        self._cache = LRUCache(max_size=self.cache_size, default_ttl_seconds=self.cache_ttl_seconds)
        self._stats = {
            "requests": 0,
            "cache_hits": 0,
            "errors": 0,
        }

    @property
    def url(self) -> str:
        return f"{self.host}/flags/?v=2"

    async def get_flags(
        self,
        distinct_id: str,
        groups: dict[str, str] | None = None,
        person_properties: dict[str, Any] | None = None,
        group_properties: dict[str, dict[str, Any]] | None = None,
    ) -> RemoteFlags:
        body = {
            "token": self.api_key,
            "distinct_id": distinct_id,
            "groups": groups or {},
            "person_properties": person_properties or {},
            "group_properties": group_properties or {},
        }
        cache_key = json.dumps(body, sort_keys=True, default=str)
        cached = self._cache.get(cache_key)
        if cached is not None:
            self._stats["cache_hits"] += 1
            return cached

        headers = {"Content-Type": "application/json"}
        if self.user_agent:
            headers["User-Agent"] = self.user_agent

        self._stats["requests"] += 1
        try:
            response = await asyncio.wait_for(
                self.transport.send(
                    self.url,
                    method="POST",
                    headers=headers,
                    body=json.dumps(body, default=str),
                    timeout=self.request_timeout_seconds,
                ),
                timeout=self.request_timeout_seconds,
            )
            check_response(response)
            result = RemoteFlags.from_response(RemoteFlagsResponse.model_validate(response.json()))
        except asyncio.TimeoutError as e:
            self._stats["errors"] += 1
            raise NetworkError(f"Flags request timed out after {self.request_timeout_seconds}s") from e
        except DeliveryError:
            self._stats["errors"] += 1
            raise
        except (ValueError, ValidationError) as e:
            self._stats["errors"] += 1
            raise NetworkError(f"Invalid flags response: {e}") from e

        if result.errors_while_computing:
            logger.warning(f"Server reported errors while computing flags for {distinct_id}")
        else:
            self._cache.set(cache_key, result)
        return result

    def clear_cache(self) -> None:
        self._cache.clear()

    @property
    def stats(self) -> dict:
        return {
            **self._stats,
            "cache": self._cache.stats,
        }
