"""Delivery pipeline - compression, retry and graceful shutdown."""

from .transport import Transport, TransportResponse, HttpxTransport, ConsoleTransport
from .retry import RetryPolicy
from .pipeline import DeliveryPipeline, check_response
from .shutdown import ShutdownCoordinator, ShutdownState

__all__ = [
    "Transport",
    "TransportResponse",
    "HttpxTransport",
    "ConsoleTransport",
    "RetryPolicy",
    "DeliveryPipeline",
    "check_response",
    "ShutdownCoordinator",
    "ShutdownState",
]
