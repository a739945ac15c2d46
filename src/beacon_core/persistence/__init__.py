"""Persistence - key/value storage shared by identity, session and flags."""

from .store import PersistenceStore, MemoryStore, JsonFileStore, PersistedKey

__all__ = [
    "PersistenceStore",
    "MemoryStore",
    "JsonFileStore",
    "PersistedKey",
]
