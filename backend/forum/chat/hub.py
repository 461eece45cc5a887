"""Connection hub: the registry of live chat connections.

This module owns the only shared mutable state of the chat layer: the set
of live connections and the identity -> connection map used for direct
addressing.

Key features:
    - Single-writer control loop: register/unregister requests are queued
      and applied one at a time by ``ConnectionHub._run()``
    - Bounded per-connection outbound queues (default 256 frames)
    - A full queue marks a dead consumer: the connection is closed and
      removed instead of blocking the sender
    - Idempotent unregister (safe to call from both pumps and the endpoint)
    - Last-writer-wins on duplicate login: the older connection is evicted

Thread Safety:
    This implementation is designed for async/await usage with a single event loop.
    It is NOT thread-safe for concurrent access from multiple threads.
    Sends (``send_to_identity``, ``broadcast``) never await, so their
    check-then-enqueue sequence cannot interleave with the control loop.
"""
import asyncio
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set, Tuple

if TYPE_CHECKING:
    from .presence import PresenceNotifier

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

# Pending outbound frames per connection before it is treated as dead
DEFAULT_QUEUE_SIZE = 256

_REGISTER = "register"
_UNREGISTER = "unregister"

# Queue item that wakes an idle outbound pump after close()
_CLOSED = object()


# =============================================================================
# Connection
# =============================================================================


class Connection:
    """One live WebSocket session belonging to one identity.

    The connection is owned by its inbound/outbound pumps; the hub only
    keeps a reference for routing.

    Attributes:
        identity: Authenticated username, the addressing key.
        websocket: Transport handle (anything with ``send_text``/``close``).
        outbound: Bounded queue of serialized frames waiting to be written.
    """

    def __init__(
        self, identity: str, websocket: Any, queue_size: int = DEFAULT_QUEUE_SIZE
    ) -> None:
        self.identity = identity
        self.websocket = websocket
        self.outbound: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._closed = False
        self._discard_pending = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, payload: str) -> bool:
        """Enqueue a frame without waiting.

        Returns:
            False if the queue is full, True otherwise (a closed connection
            silently drops the frame).
        """
        if self._closed:
            return True
        try:
            self.outbound.put_nowait(payload)
        except asyncio.QueueFull:
            return False
        return True

    def close(self, discard_pending: bool = False) -> None:
        """Close the outbound queue. Safe to call more than once.

        Frames already queued are still handed out by ``next_payload()``
        unless *discard_pending* is set (a consumer that stopped reading).
        """
        if discard_pending:
            self._discard_pending = True
        if self._closed:
            return
        self._closed = True
        try:
            self.outbound.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # The pump is not waiting on an empty queue; it stops once the
            # queue runs dry.
            pass

    async def next_payload(self) -> Optional[str]:
        """Wait for the next frame to write, or None once closed and flushed."""
        if self._closed and (self._discard_pending or self.outbound.empty()):
            return None
        payload = await self.outbound.get()
        if payload is _CLOSED or self._discard_pending:
            return None
        return payload

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<Connection {self.identity!r} {state} pending={self.outbound.qsize()}>"


# =============================================================================
# Connection Hub
# =============================================================================


class ConnectionHub:
    """Registry of live connections with a single-writer control loop.

    ``connections`` and ``identity_connections`` are mutated only inside
    ``_run()``. Everything else reads them.

    Note:
        One hub serves the whole process. The HTTP layer reaches it through
        ``forum.chat.service.get_chat_service()``.
    """

    def __init__(self) -> None:
        """Initialize an empty hub. Call ``start()`` from a running loop."""
        # All live connections
        self.connections: Set[Connection] = set()

        # identity -> its current connection (absent when offline)
        self.identity_connections: Dict[str, Connection] = {}

        # (kind, connection, completion future or None)
        self._commands: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._presence: Optional["PresenceNotifier"] = None

    def set_presence_notifier(self, notifier: Optional["PresenceNotifier"]) -> None:
        """Attach the notifier told about every join and leave."""
        self._presence = notifier

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the control loop on the running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="chat-hub")
        logger.info("[Hub] Control loop started")

    async def stop(self) -> None:
        """Stop the control loop and close every live connection."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        # Release callers still waiting on commands that will never run
        while not self._commands.empty():
            _, connection, done = self._commands.get_nowait()
            self._commands.task_done()
            connection.close()
            if done is not None and not done.done():
                done.set_result(None)

        for connection in list(self.connections):
            connection.close()
        self.connections.clear()
        self.identity_connections.clear()
        logger.info("[Hub] Control loop stopped")

    async def wait_idle(self) -> None:
        """Wait until every submitted register/unregister has been applied."""
        await self._commands.join()

    # =========================================================================
    # Registration (requests to the control loop)
    # =========================================================================

    async def register(self, connection: Connection) -> None:
        """Add a connection and wait until joins have been announced.

        Raises:
            RuntimeError: If the control loop is not running.
        """
        if not self.running:
            raise RuntimeError("ConnectionHub is not running")
        await self._submit(_REGISTER, connection)

    async def unregister(self, connection: Connection) -> None:
        """Remove a connection if present. Repeated calls are no-ops."""
        if not self.running:
            connection.close()
            return
        await self._submit(_UNREGISTER, connection)

    def unregister_nowait(self, connection: Connection) -> None:
        """Close a connection and queue its removal without waiting.

        Usable from cleanup code that may be cancelled at its next await.
        """
        connection.close()
        if self.running:
            self._submit_nowait(_UNREGISTER, connection)

    async def _submit(self, kind: str, connection: Connection) -> None:
        done = asyncio.get_running_loop().create_future()
        self._commands.put_nowait((kind, connection, done))
        await done

    def _submit_nowait(self, kind: str, connection: Connection) -> None:
        self._commands.put_nowait((kind, connection, None))

    async def _run(self) -> None:
        """Control loop: the only writer of the membership structures."""
        while True:
            kind, connection, done = await self._commands.get()
            try:
                if kind == _REGISTER:
                    await self._apply_register(connection)
                else:
                    await self._apply_unregister(connection)
            except Exception:
                logger.exception(
                    "[Hub] Failed to %s connection for %s", kind, connection.identity
                )
            finally:
                self._commands.task_done()
                if done is not None and not done.done():
                    done.set_result(None)

    async def _apply_register(self, connection: Connection) -> None:
        previous = self.identity_connections.get(connection.identity)
        if previous is not None and previous is not connection:
            self.connections.discard(previous)
            previous.close()
            logger.info(
                "[Hub] %s logged in again; evicting previous connection",
                connection.identity,
            )

        self.connections.add(connection)
        self.identity_connections[connection.identity] = connection
        logger.info(
            "[Hub] %s connected (%d online)",
            connection.identity, len(self.identity_connections),
        )

        if self._presence is not None:
            await self._presence.user_joined(connection.identity)

    async def _apply_unregister(self, connection: Connection) -> None:
        if connection not in self.connections:
            connection.close()
            return

        self.connections.discard(connection)
        if self.identity_connections.get(connection.identity) is connection:
            del self.identity_connections[connection.identity]
        connection.close()
        logger.info(
            "[Hub] %s disconnected (%d online)",
            connection.identity, len(self.identity_connections),
        )

        if self._presence is not None and connection.identity not in self.identity_connections:
            await self._presence.user_left(connection.identity)

    # =========================================================================
    # Delivery
    # =========================================================================

    def send_to_identity(self, identity: str, payload: str) -> bool:
        """Enqueue a frame for one identity.

        Offline identities are not an error: the frame is dropped.

        Returns:
            True if the frame was queued.
        """
        connection = self.identity_connections.get(identity)
        if connection is None or connection.closed:
            logger.debug("[Hub] %s is offline; dropping frame", identity)
            return False
        return self._deliver(connection, payload)

    def broadcast(self, payload: str) -> int:
        """Enqueue a frame on every live connection.

        Returns:
            Number of connections the frame was queued on.
        """
        delivered = 0
        for connection in list(self.connections):
            if connection.closed:
                continue
            if self._deliver(connection, payload):
                delivered += 1
        return delivered

    def _deliver(self, connection: Connection, payload: str) -> bool:
        if connection.offer(payload):
            return True

        logger.warning(
            "[Hub] Outbound queue full for %s; dropping connection",
            connection.identity,
        )
        connection.close(discard_pending=True)
        self._submit_nowait(_UNREGISTER, connection)
        return False

    # =========================================================================
    # Queries
    # =========================================================================

    def online_identities(self, excluding: Optional[str] = None) -> Set[str]:
        """Identities with a live connection, minus *excluding*. Unordered."""
        return {
            identity
            for identity, connection in self.identity_connections.items()
            if identity != excluding and not connection.closed
        }

    def online_users(self) -> List[str]:
        """All online identities, alphabetically."""
        return sorted(self.online_identities())

    def is_online(self, identity: str) -> bool:
        connection = self.identity_connections.get(identity)
        return connection is not None and not connection.closed

    def snapshot(self) -> Tuple[int, int]:
        """(live connections, online identities), for logging and health."""
        return (len(self.connections), len(self.identity_connections))
