"""Session id lifecycle."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable

from ..clock import Clock
from ..persistence.store import PersistedKey, PersistenceStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Session:
    session_id: str
    started_at: float
    last_activity_at: float


@dataclass
class SessionManager:
    """
    Owns the single active session of a client.

    Every ``get_session_id()`` call counts as activity. The session rotates
    when the gap since the last activity exceeds ``idle_timeout_seconds`` or
    the session is older than ``max_length_seconds``; otherwise only the
    last activity time advances. State lives in the persistence store.
    """
    store: PersistenceStore
    clock: Clock = field(default_factory=Clock)
    idle_timeout_seconds: float = 30 * 60
    max_length_seconds: float = 24 * 60 * 60
    id_factory: Callable[[], str] = lambda: str(uuid.uuid4())

    def get_session_id(self) -> str:
        """Return the active session id, rotating it if expired."""
        session_id = self.store.get(PersistedKey.SESSION_ID)
        last_activity = self.store.get(PersistedKey.SESSION_LAST) or 0
        started_at = self.store.get(PersistedKey.SESSION_START) or 0
        now = self.clock.now()

        gap = now - last_activity
        age = now - started_at

        if (
            not session_id
            or gap > self.idle_timeout_seconds * 1000
            or age > self.max_length_seconds * 1000
        ):
            previous = session_id
            session_id = self.id_factory()
            self.store.set(PersistedKey.SESSION_ID, session_id)
            self.store.set(PersistedKey.SESSION_START, now)
            if previous:
                logger.debug(f"Session {previous} expired (gap={gap:.0f}ms, age={age:.0f}ms), started {session_id}")

        self.store.set(PersistedKey.SESSION_LAST, now)
        return session_id

    def current(self) -> Session | None:
        """The persisted session without touching it."""
        session_id = self.store.get(PersistedKey.SESSION_ID)
        if not session_id:
            return None
        return Session(
            session_id=session_id,
            started_at=self.store.get(PersistedKey.SESSION_START) or 0,
            last_activity_at=self.store.get(PersistedKey.SESSION_LAST) or 0,
        )

    def reset_session_id(self) -> None:
        """Force a new session on the next activity."""
        self.store.set(PersistedKey.SESSION_ID, None)
        self.store.set(PersistedKey.SESSION_LAST, None)
        self.store.set(PersistedKey.SESSION_START, None)
