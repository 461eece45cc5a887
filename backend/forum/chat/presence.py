"""Online presence: who is online, ordered for each observer.

The online list a user sees puts the people they talked to most recently
first, then everyone else alphabetically. The list is recomputed for each
observer whenever someone joins or leaves, and for both participants after
every direct message.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from forum.messages.service import MessageStore

from .hub import ConnectionHub
from .schemas import BROADCAST_RECIPIENT, MessageType, PresenceMessage

logger = logging.getLogger(__name__)

DEFAULT_SORT_TIMEOUT = 2.0


def order_by_recency(
    candidates: Iterable[str], last_seen: Dict[str, datetime]
) -> List[str]:
    """Order identities by most recent conversation, then alphabetically.

    Args:
        candidates: Identities to order.
        last_seen: Latest conversation time per identity.

    Returns:
        Identities with a conversation (newest first), followed by the rest
        in alphabetical order. Ties on time are broken alphabetically.
    """
    users = list(candidates)
    with_history = sorted(u for u in users if u in last_seen)
    without_history = sorted(u for u in users if u not in last_seen)
    with_history.sort(key=lambda u: last_seen[u], reverse=True)
    return with_history + without_history


class RecencySorter:
    """Orders candidate identities by recency of conversation with a requester.

    Args:
        store: Message store answering the per-counterpart aggregate query.
            Without a store every list is alphabetical.
        timeout: Seconds to wait for the query before falling back.
    """

    def __init__(
        self, store: Optional[MessageStore], timeout: float = DEFAULT_SORT_TIMEOUT
    ) -> None:
        self._store = store
        self._timeout = timeout

    async def sort(self, requester: str, candidates: Iterable[str]) -> List[str]:
        users = list(candidates)
        if not users:
            return []
        if self._store is None:
            return sorted(users)

        try:
            last_seen = await asyncio.wait_for(
                asyncio.to_thread(self._store.last_conversation_timestamps, requester),
                timeout=self._timeout,
            )
            return order_by_recency(users, last_seen)
        except asyncio.TimeoutError:
            logger.warning(
                "[Presence] Timed out fetching conversation times for %s; "
                "falling back to alphabetical",
                requester,
            )
            return sorted(users)
        except Exception as e:
            logger.warning(
                "[Presence] Error ordering online list for %s: %s; "
                "falling back to alphabetical",
                requester, e,
            )
            return sorted(users)


class PresenceNotifier:
    """Pushes personalised online lists through the hub.

    Only enqueues frames; never writes to the message store.
    """

    def __init__(self, hub: ConnectionHub, sorter: RecencySorter) -> None:
        self._hub = hub
        self._sorter = sorter

    async def online_list(self, observer: str) -> List[str]:
        """Everyone online except *observer*, in that observer's order."""
        return await self._sorter.sort(
            observer, self._hub.online_identities(excluding=observer)
        )

    async def user_joined(self, identity: str) -> None:
        """Tell everyone else that *identity* joined; greet the newcomer."""
        observers = sorted(self._hub.online_identities(excluding=identity))
        await self._notify_all(observers, MessageType.USER_JOINED, identity)
        await self._push(identity, MessageType.INITIAL_ONLINE_USERS, identity, to=identity)

    async def user_left(self, identity: str) -> None:
        """Tell everyone still online that *identity* left."""
        observers = sorted(self._hub.online_identities(excluding=identity))
        await self._notify_all(observers, MessageType.USER_LEFT, identity)

    async def conversation_updated(self, sender: str, recipient: str) -> None:
        """Refresh both participants of a direct message."""
        for identity in dict.fromkeys((sender, recipient)):
            await self._push(identity, MessageType.ONLINE_USERS_UPDATE, "", to=identity)

    async def _notify_all(
        self, observers: List[str], event: MessageType, subject: str
    ) -> None:
        results = await asyncio.gather(
            *[self._push(observer, event, subject) for observer in observers],
            return_exceptions=True,
        )
        for observer, result in zip(observers, results):
            if isinstance(result, Exception):
                logger.error(
                    "[Presence] Failed to send %s to %s: %s", event.value, observer, result
                )

    async def _push(
        self,
        observer: str,
        event: MessageType,
        subject: str,
        to: str = BROADCAST_RECIPIENT,
    ) -> bool:
        if not self._hub.is_online(observer):
            return False
        message = PresenceMessage(
            type=event,
            to=to,
            content=subject,
            timestamp=datetime.now(timezone.utc),
            online_users=await self.online_list(observer),
        )
        return self._hub.send_to_identity(observer, message.to_wire())
