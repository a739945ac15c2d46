"""
Identity lifecycle: distinct id, anonymous id, groups and super properties.

Rules:
- The anonymous id is generated once and survives ``identify()``.
- ``identify()`` with a new id swaps the distinct id. When the client was
  bootstrapped with an anonymous id, the first identification makes that
  bootstrap id the permanent anonymous id.
- ``reset()`` clears everything and starts over with a fresh anonymous id.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from ..persistence.store import PersistedKey, PersistenceStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    distinct_id: str
    anonymous_id: str
    is_identified: bool


@dataclass(frozen=True)
class IdentifyResult:
    """What ``identify()`` changed."""
    previous_distinct_id: str
    distinct_id: str
    anonymous_id: str
    changed: bool


@dataclass
class IdentityManager:
    """Reads and writes identity state through the persistence store."""
    store: PersistenceStore
    id_factory: Callable[[], str] = lambda: str(uuid.uuid4())

    def bootstrap(self, distinct_id: str | None, is_identified_id: bool = False) -> None:
        """Seed identity. Only applies when nothing is persisted yet."""
        if not distinct_id:
            return
        if self.store.get(PersistedKey.DISTINCT_ID) or self.store.get(PersistedKey.ANONYMOUS_ID):
            return

        if is_identified_id:
            self.store.set(PersistedKey.DISTINCT_ID, distinct_id)
            self.store.set(PersistedKey.IS_IDENTIFIED, True)
        else:
            # An anonymous bootstrap id is the anonymous id from the start
            self.store.set(PersistedKey.DISTINCT_ID, distinct_id)
            self.store.set(PersistedKey.ANONYMOUS_ID, distinct_id)
            self.store.set(PersistedKey.BOOTSTRAP_ID, distinct_id)
        logger.debug(f"Bootstrapped identity with {distinct_id} (identified={is_identified_id})")

    def get_anonymous_id(self) -> str:
        anonymous_id = self.store.get(PersistedKey.ANONYMOUS_ID)
        if not anonymous_id:
            anonymous_id = self.id_factory()
            self.store.set(PersistedKey.ANONYMOUS_ID, anonymous_id)
        return anonymous_id

    def get_distinct_id(self) -> str:
        return self.store.get(PersistedKey.DISTINCT_ID) or self.get_anonymous_id()

    @property
    def is_identified(self) -> bool:
        return bool(self.store.get(PersistedKey.IS_IDENTIFIED))

    def current(self) -> Identity:
        return Identity(
            distinct_id=self.get_distinct_id(),
            anonymous_id=self.get_anonymous_id(),
            is_identified=self.is_identified,
        )

    def identify(self, distinct_id: str) -> IdentifyResult:
        """Switch to ``distinct_id`` if it differs from the current one."""
        bootstrap_id = self.store.get(PersistedKey.BOOTSTRAP_ID)
        previous = self.get_distinct_id()

        if distinct_id == previous:
            return IdentifyResult(
                previous_distinct_id=previous,
                distinct_id=previous,
                anonymous_id=self.get_anonymous_id(),
                changed=False,
            )

        if bootstrap_id and previous == bootstrap_id and not self.is_identified:
            self.store.set(PersistedKey.ANONYMOUS_ID, bootstrap_id)
            self.store.set(PersistedKey.BOOTSTRAP_ID, None)
        anonymous_id = self.get_anonymous_id()

        self.store.set(PersistedKey.DISTINCT_ID, distinct_id)
        self.store.set(PersistedKey.IS_IDENTIFIED, True)
        logger.debug(f"Identified {previous} as {distinct_id}")

        return IdentifyResult(
            previous_distinct_id=previous,
            distinct_id=distinct_id,
            anonymous_id=anonymous_id,
            changed=True,
        )

    def reset(self) -> str:
        """Forget the user. Returns the new anonymous id."""
        self.store.clear()
        anonymous_id = self.get_anonymous_id()
        self.store.set(PersistedKey.DISTINCT_ID, anonymous_id)
        return anonymous_id

    # Groups

    def get_groups(self) -> dict[str, str]:
        return dict(self.store.get(PersistedKey.GROUPS) or {})

    def set_groups(self, groups: dict[str, Any]) -> bool:
        """Merge group associations. Returns True if any changed."""
        existing = self.get_groups()
        changed = any(existing.get(k) != str(v) for k, v in groups.items())
        self.store.set(PersistedKey.GROUPS, {**existing, **{k: str(v) for k, v in groups.items()}})
        return changed

    # Super properties

    def get_props(self) -> dict[str, Any]:
        return dict(self.store.get(PersistedKey.PROPS) or {})

    def register(self, properties: dict[str, Any]) -> None:
        self.store.set(PersistedKey.PROPS, {**self.get_props(), **properties})

    def unregister(self, key: str) -> None:
        props = self.get_props()
        if props.pop(key, None) is not None:
            self.store.set(PersistedKey.PROPS, props)

    # Properties used for local flag evaluation

    def get_person_properties(self) -> dict[str, Any]:
        return dict(self.store.get(PersistedKey.PERSON_PROPERTIES) or {})

    def set_person_properties(self, properties: dict[str, Any]) -> None:
        self.store.set(
            PersistedKey.PERSON_PROPERTIES,
            {**self.get_person_properties(), **properties},
        )

    def get_group_properties(self) -> dict[str, dict[str, Any]]:
        return dict(self.store.get(PersistedKey.GROUP_PROPERTIES) or {})

    def set_group_properties(self, group_type: str, properties: dict[str, Any]) -> None:
        current = self.get_group_properties()
        current[group_type] = {**current.get(group_type, {}), **properties}
        self.store.set(PersistedKey.GROUP_PROPERTIES, current)
