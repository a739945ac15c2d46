"""
Exception hierarchy for the beacon client.

Construction-time problems raise immediately. Delivery and flag failures
are raised from the awaited call that caused them and are also published
on the client's error channel.
"""

from __future__ import annotations


class BeaconError(Exception):
    """Base exception for beacon client errors."""
    pass


class ConfigurationError(BeaconError):
    """Invalid client configuration (e.g. missing API key)."""
    pass


class DeliveryError(BeaconError):
    """A batch could not be delivered to the collector."""

    retryable: bool = False

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class NetworkError(DeliveryError):
    """Transport failure or 5xx response. Retried by the pipeline."""

    retryable = True


class NonRetryableDeliveryError(DeliveryError):
    """4xx response. The batch is dropped."""
    pass


class PayloadTooLargeError(NonRetryableDeliveryError):
    """413 response. The pipeline splits the batch before giving up."""
    pass


class ShutdownTimeoutError(BeaconError):
    """Shutdown did not finish within its timeout."""

    def __init__(self, timeout_seconds: float):
        super().__init__(
            f"Timed out after {timeout_seconds}s while shutting down. "
            "Some events may not have been sent."
        )
        self.timeout_seconds = timeout_seconds


class UndeliveredEventsError(DeliveryError):
    """Shutdown finished but failed batches were put back in the queue."""

    def __init__(self, pending: int, cause: DeliveryError | None = None):
        message = f"{pending} events are still queued after shutdown"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message, status=cause.status if cause is not None else None)
        self.pending = pending
        self.cause = cause


class FlagDefinitionError(BeaconError):
    """A feature flag definition could not be parsed."""

    def __init__(self, key: str | None, message: str):
        super().__init__(f"Invalid flag definition {key!r}: {message}")
        self.key = key


class FlagDefinitionsRequestError(BeaconError):
    """The definitions endpoint refused the request (401, 403, 429)."""

    def __init__(self, message: str, status: int):
        super().__init__(message)
        self.status = status


class InconclusiveMatchError(BeaconError):
    """Local evaluation cannot decide with the supplied properties."""
    pass


class RequiresServerEvaluation(BeaconError):
    """The flag needs data only the server has (e.g. a static cohort)."""
    pass
