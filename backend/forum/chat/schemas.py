"""Wire schemas for the chat protocol.

Every WebSocket frame, in either direction, is one JSON object:

    {"type": "chat_message", "from": "alice", "to": "bob",
     "content": "hi", "timestamp": "2026-10-19T12:00:00Z"}

Presence frames (user_joined, user_left, online_users_update,
initial_online_users) come from "system" and additionally carry
``online_users``.
"""
import json
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

# Recipient sentinel meaning "every live connection"
BROADCAST_RECIPIENT = "all"

# Sender used for server-generated presence frames
SYSTEM_SENDER = "system"


class MessageType(str, Enum):
    """Type tag carried by every frame.

    Attributes:
        CHAT_MESSAGE: Text sent by a user, direct or broadcast.
        USER_JOINED: Someone came online; carries the observer's list.
        USER_LEFT: Someone went offline; carries the observer's list.
        ONLINE_USERS_UPDATE: Re-ordered list after a direct message.
        INITIAL_ONLINE_USERS: First list pushed to a new connection.
    """
    CHAT_MESSAGE = "chat_message"
    USER_JOINED = "user_joined"
    USER_LEFT = "user_left"
    ONLINE_USERS_UPDATE = "online_users_update"
    INITIAL_ONLINE_USERS = "initial_online_users"


# Types only the server may emit
PRESENCE_TYPES = frozenset({
    MessageType.USER_JOINED,
    MessageType.USER_LEFT,
    MessageType.ONLINE_USERS_UPDATE,
    MessageType.INITIAL_ONLINE_USERS,
})


class FrameDecodeError(ValueError):
    """Raised when an inbound frame cannot be turned into a ChatMessage."""


class ChatMessage(BaseModel):
    """A routed chat message.

    ``from`` is a Python keyword, so the field is ``from_`` with a wire
    alias. Always serialize with ``to_wire()`` to get the alias.

    Attributes:
        type: Frame type tag.
        from_: Sender identity (wire name "from").
        to: Recipient identity, or "all" for a broadcast.
        content: Message body.
        timestamp: Assigned by the router when the message is received.
    """
    model_config = ConfigDict(populate_by_name=True)

    type: MessageType = Field(default=MessageType.CHAT_MESSAGE, description="Frame type")
    from_: str = Field(default="", alias="from", description="Sender identity")
    to: str = Field(default=BROADCAST_RECIPIENT, description="Recipient identity or 'all'")
    content: str = Field(default="", description="Message body")
    timestamp: Optional[datetime] = Field(default=None, description="Server receipt time")

    @property
    def is_broadcast(self) -> bool:
        return self.to in (BROADCAST_RECIPIENT, "")

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True)


class PresenceMessage(ChatMessage):
    """Presence frame personalised for one observer.

    Attributes:
        online_users: Other online identities, most recent conversation first.
    """
    from_: str = Field(default=SYSTEM_SENDER, alias="from", description="Always 'system'")
    online_users: List[str] = Field(default_factory=list, description="Observer's online list")


class ChatMessageInput(BaseModel):
    """Input schema for a frame sent by a client.

    Clients send this lightweight structure. ``from`` and ``timestamp`` are
    ignored if present; the server fills them in.
    """
    type: MessageType = Field(default=MessageType.CHAT_MESSAGE, description="Frame type")
    to: str = Field(default=BROADCAST_RECIPIENT, description="Recipient identity or 'all'")
    content: str = Field(..., description="Message body")


def decode_frame(raw: str, sender: str) -> ChatMessage:
    """Decode one inbound text frame into a ChatMessage owned by *sender*.

    Args:
        raw: The frame text.
        sender: Authenticated identity of the connection; replaces any
            client-supplied ``from``.

    Returns:
        A ChatMessage with no timestamp yet.

    Raises:
        FrameDecodeError: Invalid JSON, wrong shape, a server-only type,
            or blank content.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise FrameDecodeError(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise FrameDecodeError("frame must be a JSON object")

    try:
        frame = ChatMessageInput.model_validate(data)
    except ValidationError as e:
        raise FrameDecodeError(f"invalid frame: {e.error_count()} error(s)") from e

    if frame.type in PRESENCE_TYPES:
        raise FrameDecodeError(f"clients may not send {frame.type.value} frames")
    if not frame.content.strip():
        raise FrameDecodeError("content is required")

    return ChatMessage(
        type=frame.type,
        from_=sender,
        to=frame.to or BROADCAST_RECIPIENT,
        content=frame.content,
    )
