"""Session-to-identity resolution.

Session validation belongs to the forum's login layer. The chat core only
needs an answer to "which username owns this token?", so it depends on the
small ``IdentityResolver`` interface below.

``SessionStore`` is an in-memory token table used when no external login
layer is plugged in (local runs and tests). A deployment replaces it with
``set_identity_resolver()``.
"""
import logging
import secrets
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class IdentityResolver(ABC):
    """Maps an opaque session token to an authenticated identity."""

    @abstractmethod
    def resolve(self, token: Optional[str]) -> Optional[str]:
        """Return the identity owning *token*, or None if it is unknown."""


class SessionStore(IdentityResolver):
    """In-memory session table.

    Thread-safe: FastAPI may call ``resolve`` from its thread pool while
    the event loop issues or revokes sessions.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, str] = {}
        self._lock = threading.Lock()

    def issue(self, identity: str, token: Optional[str] = None) -> str:
        """Create a session for *identity* and return its token."""
        if not identity:
            raise ValueError("identity must not be empty")
        token = token or secrets.token_urlsafe(24)
        with self._lock:
            self._sessions[token] = identity
        logger.info("[Auth] Session issued for %s", identity)
        return token

    def revoke(self, token: str) -> bool:
        """Drop a session. Returns True if it existed."""
        with self._lock:
            identity = self._sessions.pop(token, None)
        if identity is not None:
            logger.info("[Auth] Session revoked for %s", identity)
        return identity is not None

    def resolve(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        with self._lock:
            return self._sessions.get(token)


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_resolver: IdentityResolver = SessionStore()


def get_identity_resolver() -> IdentityResolver:
    """Return the global IdentityResolver."""
    return _resolver


def set_identity_resolver(resolver: IdentityResolver) -> None:
    """Set (or replace) the global IdentityResolver."""
    global _resolver
    _resolver = resolver
