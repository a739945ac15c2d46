"""
Client configuration.

Can be set via:
- Constructor arguments
- Environment variables (BEACON_*)
- Config file (YAML or JSON), see ``ClientConfig.from_yaml``

Recognised sections and their defaults:

    api_key                          BEACON_API_KEY (required)
    host                             BEACON_HOST or https://us.i.posthog.com
    personal_api_key                 BEACON_PERSONAL_API_KEY (enables local flag evaluation)
    disabled                         False
    debug                            False
    bootstrap                        None  ({distinct_id, is_identified_id})

    queue.flush_at                   20
    queue.flush_interval_seconds     10.0
    queue.max_batch_size             100
    queue.max_queue_size             1000

    delivery.max_retries             3
    delivery.retry_delay_seconds     3.0
    delivery.max_retry_delay_seconds 30.0
    delivery.request_timeout_seconds 10.0
    delivery.disable_compression     False
    delivery.requeue_on_failure      True
    delivery.shutdown_timeout_seconds 30.0

    session.idle_timeout_seconds     1800
    session.max_length_seconds       86400

    flags.polling_interval_seconds   30.0
    flags.request_timeout_seconds    3.0
    flags.only_evaluate_locally      False
    flags.send_feature_flag_events   True
    flags.remote_cache_size          1000
    flags.remote_cache_ttl_seconds   60.0

    rate_limit.enabled               True
    rate_limit.capacity              100
    rate_limit.refill_rate           10
    rate_limit.refill_interval_seconds 1.0
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from .errors import ConfigurationError


DEFAULT_HOST = "https://us.i.posthog.com"


@dataclass
class QueueConfig:
    """Event queue / batching configuration."""
    flush_at: int = 20
    flush_interval_seconds: float = 10.0
    max_batch_size: int = 100
    max_queue_size: int = 1000


@dataclass
class DeliveryConfig:
    """Delivery pipeline configuration."""
    max_retries: int = 3
    retry_delay_seconds: float = 3.0
    max_retry_delay_seconds: float = 30.0
    request_timeout_seconds: float = 10.0
    disable_compression: bool = False

    # Put a batch back at the front of the queue once retries are exhausted
    requeue_on_failure: bool = True

    shutdown_timeout_seconds: float = 30.0


@dataclass
class SessionConfig:
    """Session rotation thresholds."""
    idle_timeout_seconds: float = 30 * 60
    max_length_seconds: float = 24 * 60 * 60


@dataclass
class FlagsConfig:
    """Feature flag configuration."""
    polling_interval_seconds: float = 30.0
    request_timeout_seconds: float = 3.0
    only_evaluate_locally: bool = False
    send_feature_flag_events: bool = True

    # Remote decision cache (0 size = disabled)
    remote_cache_size: int = 1000
    remote_cache_ttl_seconds: float = 60.0


@dataclass
class RateLimitConfig:
    """Per event-name capture limiter."""
    enabled: bool = True
    capacity: int = 100
    refill_rate: int = 10
    refill_interval_seconds: float = 1.0


@dataclass
class BootstrapConfig:
    """Identity to start with when nothing is persisted yet."""
    distinct_id: str | None = None
    is_identified_id: bool = False


@dataclass
class ClientConfig:
    """Main configuration container."""
    api_key: str | None = field(
        default_factory=lambda: os.environ.get("BEACON_API_KEY")
    )
    host: str = field(
        default_factory=lambda: os.environ.get("BEACON_HOST", DEFAULT_HOST)
    )
    personal_api_key: str | None = field(
        default_factory=lambda: os.environ.get("BEACON_PERSONAL_API_KEY")
    )
    disabled: bool = field(
        default_factory=lambda: os.environ.get("BEACON_DISABLED", "false").lower() == "true"
    )
    debug: bool = field(
        default_factory=lambda: os.environ.get("BEACON_DEBUG", "false").lower() == "true"
    )

    queue: QueueConfig = field(default_factory=QueueConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    flags: FlagsConfig = field(default_factory=FlagsConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    bootstrap: BootstrapConfig | None = None

    def __post_init__(self):
        self.host = self.host.rstrip("/")

    def validate(self) -> None:
        """Raise ConfigurationError if the configuration is unusable."""
        if not self.api_key or not self.api_key.strip():
            raise ConfigurationError("You must pass your project API key")
        if not self.host:
            raise ConfigurationError("host must not be empty")
        if self.queue.flush_at < 1:
            raise ConfigurationError("queue.flush_at must be >= 1")
        if self.queue.flush_interval_seconds < 0:
            raise ConfigurationError("queue.flush_interval_seconds must be >= 0")
        if self.queue.max_batch_size < 1:
            raise ConfigurationError("queue.max_batch_size must be >= 1")
        if self.delivery.max_retries < 0:
            raise ConfigurationError("delivery.max_retries must be >= 0")
        if self.rate_limit.enabled and self.rate_limit.capacity < 1:
            raise ConfigurationError("rate_limit.capacity must be >= 1")

        # A batch always holds at least flush_at events
        self.queue.max_batch_size = max(self.queue.flush_at, self.queue.max_batch_size)
        self.queue.max_queue_size = max(self.queue.flush_at, self.queue.max_queue_size)

    @classmethod
    def from_dict(cls, data: dict) -> ClientConfig:
        """Create config from dictionary."""
        top_level = {
            k: v for k, v in data.items()
            if k in ("api_key", "host", "personal_api_key", "disabled", "debug")
        }
        bootstrap_data = data.get("bootstrap")
        return cls(
            **top_level,
            queue=QueueConfig(**data.get("queue", {})),
            delivery=DeliveryConfig(**data.get("delivery", {})),
            session=SessionConfig(**data.get("session", {})),
            flags=FlagsConfig(**data.get("flags", {})),
            rate_limit=RateLimitConfig(**data.get("rate_limit", {})),
            bootstrap=BootstrapConfig(**bootstrap_data) if bootstrap_data else None,
        )

    @classmethod
    def from_yaml(cls, path: str) -> ClientConfig:
        """Load config from YAML file."""
        import yaml
        with open(path, "r") as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data or {})

    @classmethod
    def from_json(cls, path: str) -> ClientConfig:
        """Load config from JSON file."""
        import json
        with open(path, "r") as f:
            data = json.load(f)
        return cls.from_dict(data)
