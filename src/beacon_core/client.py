"""The beacon client: capture, identity, feature flags and delivery in one place."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable

from .clock import Clock
from .config import ClientConfig
from .delivery.pipeline import DeliveryPipeline
from .delivery.retry import RetryPolicy
from .delivery.shutdown import ShutdownCoordinator, ShutdownState
from .delivery.transport import HttpxTransport, Transport
from .flags.evaluator import FlagEvaluator
from .flags.manager import FeatureFlags
from .flags.models import FlagDecision, FlagSource, FlagValue
from .flags.poller import FlagDefinitionPoller
from .flags.remote import RemoteFlagsClient
from .governance.rate_limiter import BucketedRateLimiter
from .identity.lifecycle import IdentityManager
from .identity.session import SessionManager
from .persistence.store import MemoryStore, PersistenceStore
from .telemetry.batcher import EventQueue
from .telemetry.emitter import EVENT_KINDS, EventBus, EventCaptured, Subscription
from .telemetry.events import (
    ALIAS_EVENT,
    FEATURE_FLAG_CALLED_EVENT,
    GROUP_IDENTIFY_EVENT,
    IDENTIFY_EVENT,
    Event,
)


logger = logging.getLogger(__name__)


LIBRARY_NAME = "beacon-python"
LIBRARY_VERSION = "0.1.0"


class BeaconClient:
    """
    Telemetry client.

    Usage:
        async with BeaconClient("phc_project_key") as client:
            client.capture("signed_up", properties={"plan": "pro"})
            if await client.is_feature_enabled("new-onboarding"):
                ...

        # Or with explicit config
        client = BeaconClient(config=ClientConfig.from_yaml("beacon.yaml"))
        ...
        await client.shutdown()

    ``capture`` and friends are synchronous and never raise. Delivery happens
    in the background on the running event loop; ``flush()`` and
    ``shutdown()`` wait for it.
    """

    def __init__(
        self,
        api_key: str | None = None,
        config: ClientConfig | None = None,
        *,
        store: PersistenceStore | None = None,
        transport: Transport | None = None,
        clock: Clock | None = None,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        # ``sleep`` paces retry backoff only; flag polling keeps real time
        self.config = config or ClientConfig()
        if api_key is not None:
            self.config.api_key = api_key
        self.config.validate()

        self._logger = logger or logging.getLogger(__name__)
        self.clock = clock or Clock()
        self.store = store or MemoryStore()
        self.transport = transport or HttpxTransport()
        self.bus = EventBus()
        sleep = sleep or asyncio.sleep
        user_agent = f"{LIBRARY_NAME}/{LIBRARY_VERSION}"

        self.identity = IdentityManager(self.store)
        if self.config.bootstrap is not None:
            self.identity.bootstrap(
                self.config.bootstrap.distinct_id,
                self.config.bootstrap.is_identified_id,
            )

        self.session = SessionManager(
            self.store,
            clock=self.clock,
            idle_timeout_seconds=self.config.session.idle_timeout_seconds,
            max_length_seconds=self.config.session.max_length_seconds,
        )

        rate_limit = self.config.rate_limit
        self.rate_limiter = BucketedRateLimiter(
            capacity=rate_limit.capacity,
            refill_rate=rate_limit.refill_rate,
            refill_interval_seconds=rate_limit.refill_interval_seconds,
        ) if rate_limit.enabled else None

        delivery = self.config.delivery
        self.pipeline = DeliveryPipeline(
            api_key=self.config.api_key,
            host=self.config.host,
            transport=self.transport,
            retry_policy=RetryPolicy(
                max_retries=delivery.max_retries,
                base_delay_seconds=delivery.retry_delay_seconds,
                max_delay_seconds=delivery.max_retry_delay_seconds,
            ),
            request_timeout_seconds=delivery.request_timeout_seconds,
            disable_compression=delivery.disable_compression,
            requeue_on_failure=delivery.requeue_on_failure,
            user_agent=user_agent,
            bus=self.bus,
            sleep=sleep,
        )

        queue = self.config.queue
        self.queue = EventQueue(
            flush_at=queue.flush_at,
            flush_interval_seconds=queue.flush_interval_seconds,
            max_batch_size=queue.max_batch_size,
            max_queue_size=queue.max_queue_size,
            dispatcher=self.pipeline.dispatch,
            bus=self.bus,
        )
        self.pipeline.on_requeue = self.queue.requeue

        self._shutdown = ShutdownCoordinator(
            flush=self.queue.flush,
            wait_for_in_flight=self.pipeline.wait_for_in_flight,
            requeued_batches=lambda: self.pipeline.requeued_batches,
            pending_events=lambda: self.queue.buffer_size,
        )

        flags = self.config.flags
        evaluator = FlagEvaluator(clock=self.clock)
        poller = None
        if self.config.personal_api_key:
            poller = FlagDefinitionPoller(
                host=self.config.host,
                api_key=self.config.api_key,
                personal_api_key=self.config.personal_api_key,
                transport=self.transport,
                evaluator=evaluator,
                polling_interval_seconds=flags.polling_interval_seconds,
                request_timeout_seconds=flags.request_timeout_seconds,
                user_agent=user_agent,
                bus=self.bus,
            )
        self.feature_flags = FeatureFlags(
            evaluator=evaluator,
            poller=poller,
            remote=RemoteFlagsClient(
                host=self.config.host,
                api_key=self.config.api_key,
                transport=self.transport,
                request_timeout_seconds=flags.request_timeout_seconds,
                cache_size=flags.remote_cache_size,
                cache_ttl_seconds=flags.remote_cache_ttl_seconds,
                user_agent=user_agent,
            ),
            only_evaluate_locally=flags.only_evaluate_locally,
            send_feature_flag_events=flags.send_feature_flag_events,
            on_flag_called=self._capture_flag_called,
        )

        self._started = False
        if self.config.debug:
            self.debug(True)

    # Lifecycle

    def start(self) -> None:
        """Start background work (flag polling). Needs a running event loop."""
        if self._started:
            return
        # Raises RuntimeError outside a running loop
        asyncio.get_running_loop()
        self._started = True
        self.feature_flags.start()

    def _ensure_started(self) -> None:
        if self._started:
            return
        try:
            self.start()
        except RuntimeError:
            pass

    async def flush(self) -> None:
        """Send everything queued and wait for delivery."""
        await self.queue.flush()

    async def shutdown(self, timeout_seconds: float | None = None) -> None:
        """
        Flush and wait for all in-flight requests.

        Concurrent calls share one shutdown. Raises ShutdownTimeoutError if
        delivery doesn't finish within ``timeout_seconds``; requests already
        sent are not cancelled. Raises UndeliveredEventsError if batches that
        ran out of retries are still queued; a later ``flush()`` retries them.
        """
        if timeout_seconds is None:
            timeout_seconds = self.config.delivery.shutdown_timeout_seconds
        await self._shutdown.shutdown(timeout_seconds)

    @property
    def shutdown_state(self) -> ShutdownState:
        return self._shutdown.state

    async def close(self) -> None:
        """Shut down, stop background tasks and release the transport."""
        try:
            await self.shutdown()
        finally:
            await self.feature_flags.stop()
            if self.rate_limiter is not None:
                await self.rate_limiter.stop()
            self.queue.close()
            await self.transport.close()
            self._started = False

    async def __aenter__(self) -> BeaconClient:
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # Capture

    def capture(
        self,
        event: str,
        distinct_id: str | None = None,
        properties: dict[str, Any] | None = None,
        groups: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
        event_uuid: str | None = None,
    ) -> str | None:
        """
        Queue an event.

        Returns the event uuid, or None when the event was not queued
        (client disabled, rate limited, or an error, which is logged).
        """
        if self.config.disabled:
            return None

        try:
            if self.rate_limiter is not None and self.rate_limiter.consume_rate_limit(event):
                self._logger.info(f"Skipping {event} event, rate limit reached")
                return None

            event_properties = {
                **self.identity.get_props(),
                **(properties or {}),
                "$session_id": self.session.get_session_id(),
                "$lib": LIBRARY_NAME,
                "$lib_version": LIBRARY_VERSION,
            }
            all_groups = {**self.identity.get_groups(), **(groups or {})}
            if all_groups:
                event_properties["$groups"] = all_groups

            captured = Event.create(
                name=event,
                distinct_id=distinct_id or self.identity.get_distinct_id(),
                library=LIBRARY_NAME,
                library_version=LIBRARY_VERSION,
                properties=event_properties,
                timestamp=timestamp or self.clock.utcnow(),
                event_uuid=event_uuid,
            )
            self.queue.enqueue(captured)
            self.bus.publish(EventCaptured(captured))
            return captured.uuid
        except Exception as e:
            self._logger.error(f"Failed to capture {event}: {e}")
            return None

    def _capture_flag_called(self, distinct_id: str, properties: dict[str, Any], groups: dict[str, str]) -> None:
        self.capture(FEATURE_FLAG_CALLED_EVENT, distinct_id=distinct_id, properties=properties, groups=groups)

    # Identity

    def identify(self, distinct_id: str, properties: dict[str, Any] | None = None) -> None:
        """
        Associate the current user with ``distinct_id``.

        ``properties`` may hold ``$set`` / ``$set_once`` maps; any other keys
        are treated as ``$set``.
        """
        if not distinct_id:
            self._logger.warning("identify() called without a distinct id")
            return

        properties = dict(properties or {})
        set_once = properties.pop("$set_once", None)
        set_props = properties.pop("$set", None)
        properties.pop("$anon_distinct_id", None)
        if set_props is None:
            set_props = properties

        result = self.identity.identify(distinct_id)
        if set_props:
            self.identity.set_person_properties(set_props)

        event_properties: dict[str, Any] = {}
        if set_props:
            event_properties["$set"] = set_props
        if set_once:
            event_properties["$set_once"] = set_once

        if result.changed:
            event_properties["$anon_distinct_id"] = result.previous_distinct_id
            self.capture(IDENTIFY_EVENT, distinct_id=distinct_id, properties=event_properties)
        elif event_properties:
            self.capture("$set", distinct_id=distinct_id, properties=event_properties)

    def alias(self, alias: str, distinct_id: str | None = None) -> None:
        """Link ``alias`` to the current (or given) distinct id."""
        distinct_id = distinct_id or self.identity.get_distinct_id()
        self.capture(
            ALIAS_EVENT,
            distinct_id=distinct_id,
            properties={"distinct_id": distinct_id, "alias": alias},
        )

    def group(self, group_type: str, group_key: str, properties: dict[str, Any] | None = None) -> None:
        """Associate the user with a group, optionally setting group properties."""
        self.identity.set_groups({group_type: group_key})
        if properties:
            self.identity.set_group_properties(group_type, properties)
            self.capture(
                GROUP_IDENTIFY_EVENT,
                properties={
                    "$group_type": group_type,
                    "$group_key": str(group_key),
                    "$group_set": properties,
                },
            )

    def register(self, properties: dict[str, Any]) -> None:
        """Set super properties, sent with every event."""
        self.identity.register(properties)

    def unregister(self, key: str) -> None:
        self.identity.unregister(key)

    def reset(self) -> None:
        """Forget the current user, session, groups and super properties."""
        anonymous_id = self.identity.reset()
        self._logger.debug(f"Reset identity, new anonymous id {anonymous_id}")

    def reset_session_id(self) -> None:
        self.session.reset_session_id()

    def get_distinct_id(self) -> str:
        return self.identity.get_distinct_id()

    def get_anonymous_id(self) -> str:
        return self.identity.get_anonymous_id()

    def get_session_id(self) -> str:
        """Current session id. Counts as activity."""
        return self.session.get_session_id()

    # Feature flags

    async def get_feature_flag_decision(
        self,
        key: str,
        distinct_id: str | None = None,
        groups: dict[str, str] | None = None,
        person_properties: dict[str, Any] | None = None,
        group_properties: dict[str, dict[str, Any]] | None = None,
        only_evaluate_locally: bool | None = None,
        send_feature_flag_events: bool | None = None,
    ) -> FlagDecision:
        """Full decision for ``key``, including where it came from."""
        if self.config.disabled:
            return FlagDecision(key=key, value=None, source=FlagSource.DEFAULT)

        self._ensure_started()
        distinct_id, groups, person_properties, group_properties = self._flag_context(
            distinct_id, groups, person_properties, group_properties
        )
        return await self.feature_flags.get_feature_flag_decision(
            key,
            distinct_id,
            groups=groups,
            person_properties=person_properties,
            group_properties=group_properties,
            only_evaluate_locally=only_evaluate_locally,
            send_feature_flag_events=send_feature_flag_events,
        )

    async def get_feature_flag(self, key: str, distinct_id: str | None = None, **kwargs) -> FlagValue | None:
        """The flag's value: ``True``/``False``, a variant key, or None if unknown."""
        decision = await self.get_feature_flag_decision(key, distinct_id, **kwargs)
        return decision.value

    async def is_feature_enabled(self, key: str, distinct_id: str | None = None, **kwargs) -> bool | None:
        value = await self.get_feature_flag(key, distinct_id, **kwargs)
        return None if value is None else bool(value)

    async def get_feature_flag_payload(
        self,
        key: str,
        distinct_id: str | None = None,
        match_value: FlagValue | None = None,
        **kwargs,
    ) -> Any:
        """
        Payload attached to the flag's value for this user.

        With ``match_value`` the payload for that value is returned from the
        local definition without evaluating the flag.
        """
        if match_value is not None:
            flag = self.feature_flags.evaluator.get_flag(key)
            if flag is not None:
                return flag.payload_for(match_value)

        kwargs.setdefault("send_feature_flag_events", False)
        decision = await self.get_feature_flag_decision(key, distinct_id, **kwargs)
        return decision.payload

    async def get_all_flags(
        self,
        distinct_id: str | None = None,
        groups: dict[str, str] | None = None,
        person_properties: dict[str, Any] | None = None,
        group_properties: dict[str, dict[str, Any]] | None = None,
        only_evaluate_locally: bool | None = None,
    ) -> dict[str, FlagValue]:
        values, _ = await self.get_all_flags_and_payloads(
            distinct_id, groups, person_properties, group_properties, only_evaluate_locally
        )
        return values

    async def get_all_flags_and_payloads(
        self,
        distinct_id: str | None = None,
        groups: dict[str, str] | None = None,
        person_properties: dict[str, Any] | None = None,
        group_properties: dict[str, dict[str, Any]] | None = None,
        only_evaluate_locally: bool | None = None,
    ) -> tuple[dict[str, FlagValue], dict[str, Any]]:
        if self.config.disabled:
            return {}, {}

        self._ensure_started()
        distinct_id, groups, person_properties, group_properties = self._flag_context(
            distinct_id, groups, person_properties, group_properties
        )
        return await self.feature_flags.get_all_flags_and_payloads(
            distinct_id,
            groups=groups,
            person_properties=person_properties,
            group_properties=group_properties,
            only_evaluate_locally=only_evaluate_locally,
        )

    async def reload_feature_flags(self) -> None:
        await self.feature_flags.reload()

    def _flag_context(
        self,
        distinct_id: str | None,
        groups: dict[str, str] | None,
        person_properties: dict[str, Any] | None,
        group_properties: dict[str, dict[str, Any]] | None,
    ) -> tuple[str, dict[str, str], dict[str, Any], dict[str, dict[str, Any]]]:
        """Fill in identity, groups and known properties for flag evaluation."""
        distinct_id = distinct_id or self.identity.get_distinct_id()
        groups = {**self.identity.get_groups(), **(groups or {})}

        all_person_properties = {
            "distinct_id": distinct_id,
            **self.identity.get_person_properties(),
            **(person_properties or {}),
        }

        stored_group_properties = self.identity.get_group_properties()
        all_group_properties = {}
        for group_type, group_key in groups.items():
            all_group_properties[group_type] = {
                "$group_key": group_key,
                **stored_group_properties.get(group_type, {}),
                **(group_properties or {}).get(group_type, {}),
            }
        return distinct_id, groups, all_person_properties, all_group_properties

    # Notifications

    def on(self, event_name: str, listener: Callable[[Any], Any]) -> Subscription:
        """
        Subscribe to client notifications.

        ``event_name`` is one of ``capture``, ``flush``, ``error`` or
        ``flags_loaded``. Returns a subscription; call ``unsubscribe()`` to stop.
        """
        kind = EVENT_KINDS.get(event_name)
        if kind is None:
            raise ValueError(
                f"Unknown event {event_name!r}, expected one of {', '.join(sorted(EVENT_KINDS))}"
            )
        return self.bus.on(kind, listener)

    def debug(self, enabled: bool = True) -> None:
        """Turn debug logging for the beacon_core package on or off."""
        package_logger = logging.getLogger("beacon_core")
        package_logger.setLevel(logging.DEBUG if enabled else logging.NOTSET)
        self.config.debug = enabled

    @property
    def stats(self) -> dict:
        return {
            "queue": self.queue.stats,
            "delivery": self.pipeline.stats,
            "flags": self.feature_flags.stats,
            "rate_limiter": self.rate_limiter.stats if self.rate_limiter else None,
            "bus": self.bus.stats,
            "shutdown_state": self._shutdown.state.value,
        }
