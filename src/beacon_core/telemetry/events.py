"""Captured event type and its wire representation."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping


# Reserved event names emitted by the lifecycle
IDENTIFY_EVENT = "$identify"
ALIAS_EVENT = "$create_alias"
GROUP_IDENTIFY_EVENT = "$groupidentify"
FEATURE_FLAG_CALLED_EVENT = "$feature_flag_called"


@dataclass(frozen=True, slots=True)
class Event:
    """
    A single captured event.

    Immutable once created: properties are exposed as a read-only mapping.
    """
    name: str
    distinct_id: str
    properties: Mapping[str, Any]
    timestamp: datetime
    uuid: str
    library: str
    library_version: str

    @classmethod
    def create(
        cls,
        name: str,
        distinct_id: str,
        library: str,
        library_version: str,
        properties: Mapping[str, Any] | None = None,
        timestamp: datetime | None = None,
        event_uuid: str | None = None,
    ) -> Event:
        """Factory that stamps missing timestamp and uuid."""
        return cls(
            name=name,
            distinct_id=str(distinct_id),
            properties=MappingProxyType(dict(properties or {})),
            timestamp=timestamp or datetime.now(timezone.utc),
            uuid=event_uuid or str(uuid.uuid4()),
            library=library,
            library_version=library_version,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the batch wire format."""
        return {
            "event": self.name,
            "distinct_id": self.distinct_id,
            "properties": dict(self.properties),
            "timestamp": self.timestamp.isoformat(),
            "uuid": self.uuid,
            "type": "capture",
            "library": self.library,
            "library_version": self.library_version,
        }


@dataclass(frozen=True)
class Batch:
    """An ordered group of events sent in one request."""
    events: tuple[Event, ...]
    batch_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __len__(self) -> int:
        return len(self.events)

    def split(self) -> tuple[Batch, Batch]:
        """Halve the batch, preserving order."""
        middle = max(1, len(self.events) // 2)
        return Batch(self.events[:middle]), Batch(self.events[middle:])
