"""Message router: stamps, persists and delivers inbound chat messages.

Delivery never waits for storage. Each message is saved by a background
task with its own timeout, so a slow or failing database costs durability,
not availability. The task is not tied to the connection that sent the
message: it keeps running if that connection drops.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Coroutine, Optional, Set

from forum.messages.service import MessageStore

from .hub import ConnectionHub
from .presence import PresenceNotifier
from .schemas import ChatMessage

logger = logging.getLogger(__name__)

DEFAULT_PERSIST_TIMEOUT = 3.0


class MessageRouter:
    """Routes one message at a time to the hub.

    Args:
        hub: Connection registry used for delivery.
        store: Message store; None disables persistence.
        presence: Notifier refreshed after direct messages; optional.
        persist_timeout: Seconds allowed for one save.
    """

    def __init__(
        self,
        hub: ConnectionHub,
        store: Optional[MessageStore] = None,
        presence: Optional[PresenceNotifier] = None,
        persist_timeout: float = DEFAULT_PERSIST_TIMEOUT,
    ) -> None:
        self._hub = hub
        self._store = store
        self._presence = presence
        self._persist_timeout = persist_timeout
        # Strong references so background tasks are not garbage collected
        self._pending: Set[asyncio.Task] = set()

    async def route(self, message: ChatMessage) -> int:
        """Stamp, persist and deliver a message.

        Broadcasts go to every live connection, the sender included.
        Direct messages go to the recipient and back to the sender; a
        message to oneself is delivered once.

        Args:
            message: Decoded message with an authenticated sender.

        Returns:
            Number of frames queued.
        """
        message.timestamp = datetime.now(timezone.utc)
        persisted = self._spawn(self._persist(message))
        payload = message.to_wire()

        if message.is_broadcast:
            delivered = self._hub.broadcast(payload)
            logger.debug(
                "[Router] Broadcast from %s queued on %d connections",
                message.from_, delivered,
            )
            return delivered

        delivered = int(self._hub.send_to_identity(message.to, payload))
        if message.from_ != message.to:
            delivered += int(self._hub.send_to_identity(message.from_, payload))
        logger.debug(
            "[Router] Direct message %s -> %s queued %d time(s)",
            message.from_, message.to, delivered,
        )

        if self._presence is not None:
            self._spawn(self._refresh_after(persisted, message.from_, message.to))
        return delivered

    async def drain(self) -> None:
        """Wait for background saves and presence refreshes to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _persist(self, message: ChatMessage) -> bool:
        if self._store is None:
            return False
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._store.save, message),
                timeout=self._persist_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "[Router] Saving message %s -> %s timed out after %.1fs",
                message.from_, message.to, self._persist_timeout,
            )
            return False
        except Exception as e:
            logger.error(
                "[Router] Error saving message %s -> %s: %s",
                message.from_, message.to, e,
            )
            return False
        return True

    async def _refresh_after(
        self, persisted: asyncio.Task, sender: str, recipient: str
    ) -> None:
        # Order reflects this message only once it is stored
        await asyncio.wait({persisted})
        try:
            await self._presence.conversation_updated(sender, recipient)
        except Exception as e:
            logger.error(
                "[Router] Failed to refresh online lists for %s and %s: %s",
                sender, recipient, e,
            )
