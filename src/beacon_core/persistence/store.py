"""Key/value persistence used for identity, session and flag state."""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Any


logger = logging.getLogger(__name__)


class PersistedKey(str, Enum):
    """Keys the client reads and writes."""
    DISTINCT_ID = "distinct_id"
    ANONYMOUS_ID = "anonymous_id"
    IS_IDENTIFIED = "is_identified"
    BOOTSTRAP_ID = "bootstrap_id"
    SESSION_ID = "session_id"
    SESSION_START = "session_start_timestamp"
    SESSION_LAST = "session_last_timestamp"
    PROPS = "props"
    GROUPS = "groups"
    PERSON_PROPERTIES = "person_properties"
    GROUP_PROPERTIES = "group_properties"


class PersistenceStore(ABC):
    """
    Abstract key/value store.

    Values are JSON-compatible. Setting a key to None removes it.
    Last write wins; no locking is performed.
    """

    @abstractmethod
    def get(self, key: str) -> Any | None:
        ...

    @abstractmethod
    def set(self, key: str, value: Any | None) -> None:
        ...

    def clear(self, keys: list[str] | None = None) -> None:
        """Remove the given keys (all known keys by default)."""
        for key in keys or [k.value for k in PersistedKey]:
            self.set(key, None)


class MemoryStore(PersistenceStore):
    """Process-local store. The default."""

    def __init__(self, initial: dict[str, Any] | None = None):
        self._data: dict[str, Any] = dict(initial or {})

    def get(self, key: str) -> Any | None:
        return self._data.get(_key(key))

    def set(self, key: str, value: Any | None) -> None:
        if value is None:
            self._data.pop(_key(key), None)
        else:
            self._data[_key(key)] = value

    def snapshot(self) -> dict[str, Any]:
        return dict(self._data)


class JsonFileStore(PersistenceStore):
    """
    Store backed by a single JSON file.

    The whole document is rewritten on every set (write to a temp file,
    then rename) so a crash never leaves a half-written file behind.
    """

    def __init__(self, path: str, encoding: str = "utf-8"):
        self.path = path
        self.encoding = encoding
        self._data: dict[str, Any] = self._load()

    def get(self, key: str) -> Any | None:
        return self._data.get(_key(key))

    def set(self, key: str, value: Any | None) -> None:
        if value is None:
            if self._data.pop(_key(key), None) is None:
                return
        else:
            self._data[_key(key)] = value
        self._write()

    def _load(self) -> dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding=self.encoding) as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable persistence file {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self) -> None:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding=self.encoding) as f:
            json.dump(self._data, f, default=str)
        os.replace(tmp_path, self.path)


def _key(key: str) -> str:
    return key.value if isinstance(key, PersistedKey) else key
