"""Telemetry system - event capture, queueing and lifecycle notifications."""

from .events import Event, Batch
from .emitter import (
    EventBus,
    Subscription,
    EventCaptured,
    BatchFlushed,
    DeliveryFailed,
    FlagsLoaded,
)
from .batcher import EventQueue

__all__ = [
    "Event",
    "Batch",
    "EventBus",
    "Subscription",
    "EventCaptured",
    "BatchFlushed",
    "DeliveryFailed",
    "FlagsLoaded",
    "EventQueue",
]
