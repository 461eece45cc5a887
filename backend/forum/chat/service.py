"""ChatService: wires the hub, router, presence notifier and store together.

A module-level singleton is initialised in ``forum/main.py`` during the
application lifespan and read by the HTTP layer through
``get_chat_service()``.
"""
import logging
from typing import List, Optional

from fastapi import WebSocket

from forum.config import ChatSettings
from forum.messages.schemas import StoredMessage
from forum.messages.service import MessageStore

from .hub import ConnectionHub
from .presence import PresenceNotifier, RecencySorter
from .pumps import serve_connection
from .routing import MessageRouter

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_service: Optional["ChatService"] = None


def get_chat_service() -> Optional["ChatService"]:
    """Return the global ChatService, or None if not yet initialised."""
    return _service


def set_chat_service(service: Optional["ChatService"]) -> None:
    """Set (or clear) the global ChatService instance."""
    global _service
    _service = service


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class ChatService:
    """Owns one hub and everything that collaborates with it.

    Args:
        store: Message store for persistence, history and recency ordering.
        settings: Chat tuning; defaults apply when omitted.
    """

    def __init__(
        self, store: Optional[MessageStore], settings: Optional[ChatSettings] = None
    ) -> None:
        self.settings = settings or ChatSettings()
        self.store = store
        self.hub = ConnectionHub()
        self.sorter = RecencySorter(store, timeout=self.settings.sort_timeout_seconds)
        self.presence = PresenceNotifier(self.hub, self.sorter)
        self.hub.set_presence_notifier(self.presence)
        self.router = MessageRouter(
            self.hub,
            store,
            self.presence,
            persist_timeout=self.settings.persist_timeout_seconds,
        )

    async def start(self) -> None:
        self.hub.start()

    async def stop(self) -> None:
        """Let in-flight saves finish, then shut the hub down."""
        await self.router.drain()
        await self.hub.stop()

    async def connect(self, websocket: WebSocket, identity: str) -> None:
        """Serve an accepted WebSocket for *identity* until it closes."""
        await serve_connection(
            websocket,
            identity,
            self.hub,
            self.router,
            queue_size=self.settings.outbound_queue_size,
        )

    def online_users(self) -> List[str]:
        return self.hub.online_users()

    def history(
        self, identity_a: str, identity_b: str, limit: int, offset: int = 0
    ) -> List[StoredMessage]:
        """One page of conversation history, oldest first.

        Blocking: call from a worker thread inside async code.
        """
        if self.store is None:
            return []
        return self.store.history(identity_a, identity_b, limit, offset)
