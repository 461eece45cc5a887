"""Per-connection pumps.

Each accepted WebSocket gets two tasks:

    inbound  - reads frames, decodes them and hands them to the router
    outbound - drains the connection's queue and writes frames in order

The pair lives and dies together. When either task ends (client went away,
write failed, queue closed by the hub) the connection is unregistered, the
other task is cancelled and the transport closed. Cancelling the serving
task itself has the same effect.
"""
import asyncio
import logging

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from .hub import DEFAULT_QUEUE_SIZE, Connection, ConnectionHub
from .routing import MessageRouter
from .schemas import FrameDecodeError, decode_frame

logger = logging.getLogger(__name__)


async def _read_frame(websocket: WebSocket) -> str:
    """Read one text frame; binary frames are decoded as UTF-8.

    Raises:
        WebSocketDisconnect: When the client closes the connection.
    """
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000))
    if message.get("text") is not None:
        return message["text"]
    return (message.get("bytes") or b"").decode("utf-8", errors="replace")


async def inbound_pump(connection: Connection, router: MessageRouter) -> None:
    """Read frames until the transport fails.

    Malformed frames are skipped; the connection stays open.
    """
    while True:
        raw = await _read_frame(connection.websocket)
        try:
            message = decode_frame(raw, connection.identity)
        except FrameDecodeError as e:
            logger.warning("[WS] Dropping frame from %s: %s", connection.identity, e)
            continue
        await router.route(message)


async def outbound_pump(connection: Connection) -> None:
    """Write queued frames until the queue is closed or a write fails."""
    while True:
        payload = await connection.next_payload()
        if payload is None:
            logger.debug("[WS] Outbound queue closed for %s", connection.identity)
            return
        await connection.websocket.send_text(payload)


async def close_transport(websocket: WebSocket) -> None:
    """Close the socket unless it is already closed."""
    if websocket.client_state == WebSocketState.DISCONNECTED:
        return
    if websocket.application_state == WebSocketState.DISCONNECTED:
        return
    try:
        await websocket.close()
    except RuntimeError as e:
        logger.debug("[WS] Close after disconnect ignored: %s", e)


async def serve_connection(
    websocket: WebSocket,
    identity: str,
    hub: ConnectionHub,
    router: MessageRouter,
    queue_size: int = DEFAULT_QUEUE_SIZE,
) -> None:
    """Run an accepted WebSocket until it ends.

    Args:
        websocket: Accepted WebSocket.
        identity: Authenticated owner of the connection.
        hub: Registry to join.
        router: Receives decoded inbound messages.
        queue_size: Outbound queue capacity.
    """
    connection = Connection(identity, websocket, queue_size=queue_size)
    pumps = []
    try:
        await hub.register(connection)
        pumps.append(asyncio.create_task(
            inbound_pump(connection, router), name=f"inbound:{identity}"
        ))
        pumps.append(asyncio.create_task(
            outbound_pump(connection), name=f"outbound:{identity}"
        ))

        done, _ = await asyncio.wait(pumps, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if task.cancelled():
                continue
            exc = task.exception()
            if isinstance(exc, WebSocketDisconnect):
                logger.info("[WS] %s closed the connection (code=%s)", identity, exc.code)
            elif exc is not None:
                logger.warning("[WS] Connection for %s failed: %r", identity, exc)
    finally:
        # Queued before any await; the handler may be cancelled past here
        hub.unregister_nowait(connection)
        for task in pumps:
            task.cancel()
        await asyncio.shield(_release(pumps, websocket))


async def _release(pumps: list, websocket: WebSocket) -> None:
    """Wait for cancelled pumps, then close the transport."""
    await asyncio.gather(*pumps, return_exceptions=True)
    await close_transport(websocket)
