"""Realtime Forum Backend Application.

This is the main entry point for the forum's real-time chat service.
Forum CRUD, login and page serving live elsewhere; this service owns the
WebSocket hub that delivers chat messages and presence updates.

Modules:
    - chat: Connection hub, message router, presence and pumps
    - messages: DuckDB-based chat message storage
    - auth: Session token -> identity resolution
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from forum.chat.router import router as chat_router
from forum.chat.service import ChatService, get_chat_service, set_chat_service
from forum.config import get_config
from forum.messages.service import MessageStoreService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# uvicorn.access logs every /chathistory poll and WebSocket upgrade.
for _noisy in (
    "uvicorn.access",
    "duckdb",
    "httpx",
    "httpcore",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in forum.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    store = MessageStoreService.get_instance(db_path=config.storage.db_path)
    service = ChatService(store, config.chat)
    await service.start()
    set_chat_service(service)
    logger.info(
        "Chat service ready: db_path=%s queue_size=%d",
        config.storage.db_path,
        config.chat.outbound_queue_size,
    )

    yield  # Application runs here

    # Shutdown
    set_chat_service(None)
    await service.stop()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Realtime Forum Chat API",
    description="WebSocket chat hub for the realtime forum",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(chat_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object with live connection counts.
    """
    service = get_chat_service()
    if service is None:
        return {"status": "starting", "connections": 0, "online": 0}
    connections, online = service.hub.snapshot()
    return {"status": "ok", "connections": connections, "online": online}
