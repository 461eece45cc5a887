"""Identity resolution for chat connections and history requests."""

from .service import (
    IdentityResolver,
    SessionStore,
    get_identity_resolver,
    set_identity_resolver,
)

__all__ = [
    "IdentityResolver",
    "SessionStore",
    "get_identity_resolver",
    "set_identity_resolver",
]
