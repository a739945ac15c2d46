"""Feature flag facade: local evaluation first, the server when that's not enough."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from ..cache.lru import LRUCache
from ..errors import BeaconError, InconclusiveMatchError, RequiresServerEvaluation
from .evaluator import FlagEvaluator
from .models import FlagDecision, FlagSource, FlagValue
from .poller import FlagDefinitionPoller
from .remote import RemoteFlagsClient


logger = logging.getLogger(__name__)


# Called with (distinct_id, properties, groups) to capture $feature_flag_called
FlagCalledReporter = Callable[[str, dict[str, Any], dict[str, str]], None]


@dataclass
class FeatureFlags:
    """
    Resolves flag decisions for a user.

    Resolution order:
    1. Local evaluation against polled definitions (needs a poller).
    2. Remote evaluation, unless ``only_evaluate_locally`` is set.
    3. ``None`` with source ``default``.

    ``$feature_flag_called`` is reported once per distinct id, flag and value.
    """
    evaluator: FlagEvaluator = field(default_factory=FlagEvaluator)
    poller: FlagDefinitionPoller | None = None
    remote: RemoteFlagsClient | None = None
    only_evaluate_locally: bool = False
    send_feature_flag_events: bool = True
    on_flag_called: FlagCalledReporter | None = None
    reported_cache_size: int = 50_000

    _reported: LRUCache = field(init=False)
    _stats: dict = field(default_factory=dict, init=False)

    def __post_init__(self):
        self._reported = LRUCache(max_size=self.reported_cache_size)
        self._stats = {
            "local": 0,
            "remote": 0,
            "default": 0,
            "called_events": 0,
        }

    async def get_feature_flag_decision(
        self,
        key: str,
        distinct_id: str,
        groups: dict[str, str] | None = None,
        person_properties: dict[str, Any] | None = None,
        group_properties: dict[str, dict[str, Any]] | None = None,
        only_evaluate_locally: bool | None = None,
        send_feature_flag_events: bool | None = None,
    ) -> FlagDecision:
        """Decide ``key`` for ``distinct_id``. Never raises on network errors."""
        groups = groups or {}
        only_local = self.only_evaluate_locally if only_evaluate_locally is None else only_evaluate_locally
        send_events = self.send_feature_flag_events if send_feature_flag_events is None else send_feature_flag_events

        decision = await self._evaluate_locally(key, distinct_id, groups, person_properties, group_properties)

        if decision is None and not only_local and self.remote is not None:
            decision = await self._evaluate_remotely(key, distinct_id, groups, person_properties, group_properties)

        if decision is None:
            decision = FlagDecision(key=key, value=None, source=FlagSource.DEFAULT)

        self._stats[decision.source.value] += 1
        if send_events:
            self._report_called(decision, distinct_id, groups)
        return decision

    async def get_all_flags_and_payloads(
        self,
        distinct_id: str,
        groups: dict[str, str] | None = None,
        person_properties: dict[str, Any] | None = None,
        group_properties: dict[str, dict[str, Any]] | None = None,
        only_evaluate_locally: bool | None = None,
    ) -> tuple[dict[str, FlagValue], dict[str, Any]]:
        only_local = self.only_evaluate_locally if only_evaluate_locally is None else only_evaluate_locally
        await self._ensure_loaded()

        values: dict[str, FlagValue] = {}
        payloads: dict[str, Any] = {}
        fallback = True

        if self.evaluator.loaded:
            local = self.evaluator.evaluate_all(distinct_id, groups, person_properties, group_properties)
            values.update(local.values)
            payloads.update(local.payloads)
            fallback = local.fallback_required

        if fallback and not only_local and self.remote is not None:
            try:
                remote = await self.remote.get_flags(distinct_id, groups, person_properties, group_properties)
            except BeaconError as e:
                logger.warning(f"Remote flag evaluation failed for {distinct_id}: {e}")
            else:
                values.update(remote.values)
                payloads.update(remote.payloads)

        return values, payloads

    async def _evaluate_locally(
        self,
        key: str,
        distinct_id: str,
        groups: dict[str, str],
        person_properties: dict[str, Any] | None,
        group_properties: dict[str, dict[str, Any]] | None,
    ) -> FlagDecision | None:
        await self._ensure_loaded()
        if not self.evaluator.loaded:
            return None

        flag = self.evaluator.get_flag(key)
        if flag is None:
            return None

        try:
            value = self.evaluator.evaluate(flag, distinct_id, groups, person_properties, group_properties)
        except (InconclusiveMatchError, RequiresServerEvaluation) as e:
            logger.debug(f"Can't evaluate {key} locally: {e}")
            return None

        return FlagDecision(key=key, value=value, source=FlagSource.LOCAL, payload=flag.payload_for(value))

    async def _evaluate_remotely(
        self,
        key: str,
        distinct_id: str,
        groups: dict[str, str],
        person_properties: dict[str, Any] | None,
        group_properties: dict[str, dict[str, Any]] | None,
    ) -> FlagDecision | None:
        try:
            remote = await self.remote.get_flags(distinct_id, groups, person_properties, group_properties)
        except BeaconError as e:
            logger.warning(f"Remote flag evaluation failed for {key}: {e}")
            return None

        if key not in remote.values:
            return None
        return FlagDecision(
            key=key,
            value=remote.values[key],
            source=FlagSource.REMOTE,
            payload=remote.payloads.get(key),
        )

    async def _ensure_loaded(self) -> None:
        if self.poller is None or self.evaluator.loaded:
            return
        try:
            await self.poller.load_feature_flags()
        except BeaconError as e:
            logger.debug(f"Flag definitions unavailable: {e}")

    def _report_called(self, decision: FlagDecision, distinct_id: str, groups: dict[str, str]) -> None:
        if self.on_flag_called is None:
            return

        reported_key = (distinct_id, decision.key, str(decision.value))
        if reported_key in self._reported:
            return
        self._reported.set(reported_key, True)

        properties: dict[str, Any] = {
            "$feature_flag": decision.key,
            "$feature_flag_response": decision.value,
            "locally_evaluated": decision.source is FlagSource.LOCAL,
            f"$feature/{decision.key}": decision.value,
        }
        if decision.payload is not None:
            properties["$feature_flag_payload"] = decision.payload

        self._stats["called_events"] += 1
        self.on_flag_called(distinct_id, properties, groups)

    async def reload(self) -> None:
        """Force a fresh definitions load."""
        if self.poller is None:
            logger.warning("Reloading feature flags requires a personal API key")
            return
        await self.poller.load_feature_flags(force_reload=True)

    def start(self) -> None:
        if self.poller is not None:
            self.poller.start()

    async def stop(self) -> None:
        if self.poller is not None:
            await self.poller.stop()

    @property
    def stats(self) -> dict:
        return {
            **self._stats,
            "definitions": len(self.evaluator.flags),
            "poller": self.poller.stats if self.poller else None,
            "remote": self.remote.stats if self.remote else None,
        }
