"""Test doubles and polling helpers for chat tests."""
import asyncio
import json
from typing import Callable, List, Optional

from fastapi.websockets import WebSocketState

from forum.chat.hub import Connection


class FakeWebSocket:
    """Minimal stand-in for a Starlette WebSocket used by pump tests."""

    def __init__(self, fail_writes: bool = False) -> None:
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: List[str] = []
        self.fail_writes = fail_writes
        self.close_calls = 0
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED

    def feed(self, text: str) -> None:
        self.incoming.put_nowait({"type": "websocket.receive", "text": text})

    def feed_json(self, data: dict) -> None:
        self.feed(json.dumps(data))

    def disconnect(self, code: int = 1000) -> None:
        self.incoming.put_nowait({"type": "websocket.disconnect", "code": code})

    async def receive(self) -> dict:
        message = await self.incoming.get()
        if message["type"] == "websocket.disconnect":
            self.client_state = WebSocketState.DISCONNECTED
        return message

    async def send_text(self, data: str) -> None:
        if self.fail_writes:
            raise RuntimeError("write failed")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.close_calls += 1
        self.application_state = WebSocketState.DISCONNECTED

    def frames(self, frame_type: Optional[str] = None) -> List[dict]:
        decoded = [json.loads(raw) for raw in self.sent]
        if frame_type is None:
            return decoded
        return [frame for frame in decoded if frame["type"] == frame_type]


def drain_queue(connection: Connection) -> List[dict]:
    """Pop every queued frame off a connection, decoded."""
    frames = []
    while not connection.outbound.empty():
        payload = connection.outbound.get_nowait()
        if isinstance(payload, str):
            frames.append(json.loads(payload))
    return frames


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll *predicate* on the event loop until it is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)
