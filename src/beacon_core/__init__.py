"""
beacon_core - event capture, delivery and feature flags for telemetry clients.

Usage:
    from beacon_core import BeaconClient

    async with BeaconClient("phc_project_key") as client:
        client.identify("user-123", {"$set": {"email": "a@example.com"}})
        client.capture("report_exported", properties={"format": "csv"})
        variant = await client.get_feature_flag("checkout-redesign")
"""

from .client import BeaconClient, LIBRARY_NAME, LIBRARY_VERSION
from .config import ClientConfig, QueueConfig, DeliveryConfig, SessionConfig, FlagsConfig, RateLimitConfig, BootstrapConfig
from .clock import Clock, ManualClock
from .errors import (
    BeaconError,
    ConfigurationError,
    DeliveryError,
    NetworkError,
    NonRetryableDeliveryError,
    PayloadTooLargeError,
    ShutdownTimeoutError,
    UndeliveredEventsError,
    FlagDefinitionError,
    FlagDefinitionsRequestError,
    InconclusiveMatchError,
    RequiresServerEvaluation,
)
from .delivery import Transport, TransportResponse, HttpxTransport, ConsoleTransport
from .flags import FlagDecision, FlagSource
from .persistence import PersistenceStore, MemoryStore, JsonFileStore
from .telemetry import Event, Subscription

__version__ = LIBRARY_VERSION

__all__ = [
    "BeaconClient",
    "ClientConfig",
    "QueueConfig",
    "DeliveryConfig",
    "SessionConfig",
    "FlagsConfig",
    "RateLimitConfig",
    "BootstrapConfig",
    "Clock",
    "ManualClock",
    "BeaconError",
    "ConfigurationError",
    "DeliveryError",
    "NetworkError",
    "NonRetryableDeliveryError",
    "PayloadTooLargeError",
    "ShutdownTimeoutError",
    "UndeliveredEventsError",
    "FlagDefinitionError",
    "FlagDefinitionsRequestError",
    "InconclusiveMatchError",
    "RequiresServerEvaluation",
    "Transport",
    "TransportResponse",
    "HttpxTransport",
    "ConsoleTransport",
    "FlagDecision",
    "FlagSource",
    "PersistenceStore",
    "MemoryStore",
    "JsonFileStore",
    "Event",
    "Subscription",
    "LIBRARY_NAME",
    "__version__",
]
