"""Identity and session lifecycle."""

from .lifecycle import IdentityManager, Identity, IdentifyResult
from .session import SessionManager, Session

__all__ = [
    "IdentityManager",
    "Identity",
    "IdentifyResult",
    "SessionManager",
    "Session",
]
