"""Typed in-process event bus for client lifecycle notifications."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from .events import Event


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventCaptured:
    """An event was accepted into the queue."""
    event: Event


@dataclass(frozen=True)
class BatchFlushed:
    """A batch was handed to the delivery pipeline."""
    events: tuple[Event, ...]


@dataclass(frozen=True)
class DeliveryFailed:
    """A batch or request failed permanently, or a background error occurred."""
    error: BaseException
    events: tuple[Event, ...] = ()


@dataclass(frozen=True)
class FlagsLoaded:
    """Feature flag definitions were (re)loaded."""
    count: int


# Public names accepted by BeaconClient.on()
EVENT_KINDS: dict[str, type] = {
    "capture": EventCaptured,
    "flush": BatchFlushed,
    "error": DeliveryFailed,
    "flags_loaded": FlagsLoaded,
}


class Subscription:
    """Handle returned by ``EventBus.on``. Call ``unsubscribe()`` to detach."""

    def __init__(self, bus: EventBus, kind: type, listener: Callable[[Any], Any]):
        self._bus = bus
        self._kind = kind
        self._listener = listener
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._bus._remove(self._kind, self._listener)
            self.active = False

    def __call__(self) -> None:
        self.unsubscribe()


@dataclass
class EventBus:
    """
    Publish/subscribe keyed by payload type.

    Each kind of notification has its own payload class; listeners receive
    an instance of that class. Listener failures are logged and never reach
    the publisher. Coroutine listeners are scheduled as tasks.
    """
    _listeners: dict[type, list[Callable[[Any], Any]]] = field(default_factory=dict, init=False)
    _stats: dict = field(default_factory=dict, init=False)

    def __post_init__(self):
        self._stats = {
            "published": 0,
            "errors": 0,
        }

    def on(self, kind: type, listener: Callable[[Any], Any]) -> Subscription:
        """Register ``listener`` for payloads of type ``kind``."""
        self._listeners.setdefault(kind, []).append(listener)
        return Subscription(self, kind, listener)

    def publish(self, payload: Any) -> None:
        """Deliver ``payload`` to every listener of its type."""
        self._stats["published"] += 1
        for listener in list(self._listeners.get(type(payload), ())):
            try:
                if asyncio.iscoroutinefunction(listener):
                    asyncio.get_running_loop().create_task(listener(payload))
                else:
                    listener(payload)
            except Exception as e:
                logger.error(f"Listener error for {type(payload).__name__}: {e}")
                self._stats["errors"] += 1

    def listener_count(self, kind: type) -> int:
        return len(self._listeners.get(kind, ()))

    def _remove(self, kind: type, listener: Callable[[Any], Any]) -> None:
        listeners = self._listeners.get(kind)
        if listeners and listener in listeners:
            listeners.remove(listener)

    @property
    def stats(self) -> dict:
        """Get bus statistics."""
        return {
            **self._stats,
            "listeners": sum(len(v) for v in self._listeners.values()),
        }
