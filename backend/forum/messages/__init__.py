"""Chat message persistence."""

from .schemas import StoredMessage
from .service import MessageStore, MessageStoreService

__all__ = [
    "MessageStore",
    "MessageStoreService",
    "StoredMessage",
]
