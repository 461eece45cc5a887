"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws: Real-time chat connection (upgrade entrypoint)
    - GET /chat/online: Online identities, for dashboards
    - GET /chathistory: Paginated conversation with another user

Identity:
    The forum's login layer hands out opaque session tokens. The WebSocket
    carries its token as ``?session_id=``; HTTP requests send it in the
    ``X-Session-ID`` header. Tokens are resolved by the configured
    IdentityResolver; the chat core never sees unauthenticated traffic.

Protocol Message Types (server -> client):
    - chat_message: A direct or broadcast message (also echoed to its sender)
    - initial_online_users: First online list after connecting
    - user_joined / user_left: Presence change, with the observer's list
    - online_users_update: Re-ordered list after a direct message

Client -> server frames are chat_message only:
    {"type": "chat_message", "to": "bob" | "all", "content": "hi"}
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Header, Query, WebSocket
from fastapi.responses import JSONResponse

from forum.auth.service import get_identity_resolver
from forum.config import get_config

from .service import get_chat_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


@router.websocket("/ws")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    session_id: Optional[str] = Query(None, description="Session token issued at login"),
) -> None:
    """WebSocket endpoint for real-time chat.

    Protocol Flow:
        1. Client connects with ?session_id=...
           → Unknown session: connection rejected (close code 1008)
        2. Server registers the connection
           → Client receives: {type: "initial_online_users", online_users: [...]}
           → Others receive: {type: "user_joined", content: <identity>, online_users: [...]}
        3. Client sends: {type: "chat_message", to, content}
           → Recipient (or everyone, for "all") and sender receive the message
        4. On disconnect → Others receive {type: "user_left", ...}

    Args:
        websocket: The WebSocket connection.
        session_id: Session token identifying the user.
    """
    identity = get_identity_resolver().resolve(session_id)
    if identity is None:
        logger.warning("[WS] Rejecting connection with unknown session")
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    service = get_chat_service()
    if service is None:
        logger.error("[WS] Chat service not initialised; rejecting %s", identity)
        await websocket.close(code=1011)  # 1011 = Internal Error
        return

    await websocket.accept()
    logger.info("[WS] Connection accepted for %s", identity)
    await service.connect(websocket, identity)


@router.get("/chat/online")
async def list_online_users() -> JSONResponse:
    """List identities that currently hold an open connection.

    Returns:
        JSON with the alphabetical online_users list and its count.
    """
    service = get_chat_service()
    users = service.online_users() if service is not None else []
    return JSONResponse({"online_users": users, "count": len(users)})


@router.get("/chathistory")
async def get_chat_history(
    user2: str = Query(..., min_length=1, description="The other participant"),
    limit: Optional[int] = Query(None, ge=1, description="Number of messages to return"),
    offset: int = Query(0, ge=0, description="Number of newer messages to skip"),
    x_session_id: Optional[str] = Header(None),
) -> JSONResponse:
    """Get one page of the caller's conversation with ``user2``.

    Pages are counted from the newest message backwards; each page is
    returned oldest first so clients can prepend it.

    Args:
        user2: Identity of the other participant.
        limit: Page size (defaults to chat.history_page_size, capped at
               chat.max_history_page_size).
        offset: How many newer messages to skip.
        x_session_id: Session token of the caller.

    Returns:
        JSON with messages array and hasMore boolean.

    Example:
        GET /chathistory?user2=bob&limit=10&offset=0
    """
    identity = get_identity_resolver().resolve(x_session_id)
    if identity is None:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)

    service = get_chat_service()
    if service is None:
        return JSONResponse({"error": "Chat service unavailable"}, status_code=503)

    chat_settings = get_config().chat
    page_size = min(limit or chat_settings.history_page_size, chat_settings.max_history_page_size)

    # One extra row tells us whether an older page exists
    try:
        messages = await asyncio.to_thread(
            service.history, identity, user2, page_size + 1, offset
        )
    except Exception as e:
        logger.error(f"[History] Failed to load {identity} <-> {user2}: {e}")
        return JSONResponse({"error": "Failed to load chat history"}, status_code=500)

    has_more = len(messages) > page_size
    if has_more:
        messages = messages[1:]

    return JSONResponse({
        "messages": [msg.model_dump(mode="json") for msg in messages],
        "hasMore": has_more,
    })
