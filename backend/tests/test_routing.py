"""Tests for the message router: stamping, persistence and delivery."""
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from chat_helpers import drain_queue
from forum.chat.hub import Connection
from forum.chat.schemas import ChatMessage, MessageType
from forum.chat.service import ChatService
from forum.config import ChatSettings
from forum.messages.service import MessageStore, MessageStoreService


@asynccontextmanager
async def chat_service(store=None, **settings):
    service = ChatService(store, ChatSettings(**settings))
    await service.start()
    try:
        yield service
    finally:
        await service.stop()


async def connect(service: ChatService, *names: str) -> dict:
    conns = {}
    for name in names:
        conns[name] = Connection(name, None)
        await service.hub.register(conns[name])
    for conn in conns.values():
        drain_queue(conn)
    return conns


def chat_frames(conn: Connection) -> list:
    return [f for f in drain_queue(conn) if f["type"] == MessageType.CHAT_MESSAGE.value]


@pytest.fixture
def store():
    service = MessageStoreService(db_path=":memory:")
    yield service
    service.close()


class TestDirectMessages:
    @pytest.mark.asyncio
    async def test_online_recipient_gets_message_and_sender_gets_echo(self, store):
        async with chat_service(store) as service:
            conns = await connect(service, "alice", "bob", "carol")

            delivered = await service.router.route(
                ChatMessage(from_="alice", to="bob", content="hi")
            )
            await service.router.drain()

            assert delivered == 2
            alice_chat = chat_frames(conns["alice"])
            bob_chat = chat_frames(conns["bob"])
            assert alice_chat == bob_chat
            assert len(bob_chat) == 1
            assert bob_chat[0]["from"] == "alice"
            assert bob_chat[0]["to"] == "bob"
            assert bob_chat[0]["content"] == "hi"
            assert drain_queue(conns["carol"]) == []

    @pytest.mark.asyncio
    async def test_offline_recipient_only_echoes(self, store):
        async with chat_service(store) as service:
            conns = await connect(service, "alice")

            delivered = await service.router.route(
                ChatMessage(from_="alice", to="bob", content="are you there?")
            )
            await service.router.drain()

            assert delivered == 1
            assert len(chat_frames(conns["alice"])) == 1
            assert store.count() == 1

    @pytest.mark.asyncio
    async def test_message_to_self_delivered_once(self, store):
        async with chat_service(store) as service:
            conns = await connect(service, "alice")

            delivered = await service.router.route(
                ChatMessage(from_="alice", to="alice", content="note to self")
            )
            await service.router.drain()

            assert delivered == 1
            assert len(chat_frames(conns["alice"])) == 1

    @pytest.mark.asyncio
    async def test_timestamp_assigned_by_router(self, store):
        async with chat_service(store) as service:
            conns = await connect(service, "alice", "bob")
            client_time = datetime(2000, 1, 1, tzinfo=timezone.utc)
            message = ChatMessage(from_="alice", to="bob", content="hi", timestamp=client_time)

            before = datetime.now(timezone.utc)
            await service.router.route(message)
            await service.router.drain()

            assert message.timestamp >= before
            frame = chat_frames(conns["bob"])[0]
            assert datetime.fromisoformat(frame["timestamp"].replace("Z", "+00:00")) >= before

    @pytest.mark.asyncio
    async def test_direct_message_refreshes_both_online_lists(self, store):
        async with chat_service(store) as service:
            conns = await connect(service, "alice", "bob", "carol")

            await service.router.route(ChatMessage(from_="alice", to="carol", content="hey"))
            await service.router.drain()

            alice_frames = drain_queue(conns["alice"])
            carol_frames = drain_queue(conns["carol"])
            assert [f["type"] for f in alice_frames] == ["chat_message", "online_users_update"]
            assert alice_frames[1]["online_users"] == ["carol", "bob"]
            assert carol_frames[1]["online_users"] == ["alice", "bob"]
            assert drain_queue(conns["bob"]) == []

    @pytest.mark.asyncio
    async def test_message_is_persisted(self, store):
        async with chat_service(store) as service:
            await connect(service, "alice", "bob")

            await service.router.route(ChatMessage(from_="alice", to="bob", content="hi"))
            await service.router.drain()

            rows = store.history("alice", "bob", limit=10)
            assert len(rows) == 1
            assert rows[0].from_user == "alice"
            assert rows[0].to_user == "bob"
            assert rows[0].body == "hi"


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_broadcast_reaches_everyone_including_sender(self, store):
        async with chat_service(store) as service:
            conns = await connect(service, "alice", "bob", "carol")

            delivered = await service.router.route(
                ChatMessage(from_="alice", to="all", content="hello all")
            )
            await service.router.drain()

            assert delivered == 3
            for conn in conns.values():
                frames = drain_queue(conn)
                assert [f["type"] for f in frames] == ["chat_message"]
                assert frames[0]["content"] == "hello all"

    @pytest.mark.asyncio
    async def test_empty_recipient_is_broadcast(self, store):
        async with chat_service(store) as service:
            conns = await connect(service, "alice", "bob")

            delivered = await service.router.route(ChatMessage(from_="alice", to="", content="x"))

            assert delivered == 2
            assert len(chat_frames(conns["bob"])) == 1


class TestPersistenceFailures:
    @pytest.mark.asyncio
    async def test_save_error_does_not_block_delivery(self, caplog):
        failing = MagicMock(spec=MessageStore)
        failing.save.side_effect = RuntimeError("disk full")
        failing.last_conversation_timestamps.return_value = {}

        async with chat_service(failing) as service:
            conns = await connect(service, "alice", "bob")

            delivered = await service.router.route(
                ChatMessage(from_="alice", to="bob", content="hi")
            )
            await service.router.drain()

            assert delivered == 2
            assert len(chat_frames(conns["bob"])) == 1
            assert "Error saving message alice -> bob" in caplog.text

    @pytest.mark.asyncio
    async def test_slow_save_times_out(self, caplog):
        slow = MagicMock(spec=MessageStore)
        slow.save.side_effect = lambda message: time.sleep(0.3)
        slow.last_conversation_timestamps.return_value = {}

        async with chat_service(slow, persist_timeout_seconds=0.05) as service:
            conns = await connect(service, "alice", "bob")

            await service.router.route(ChatMessage(from_="alice", to="bob", content="hi"))
            await service.router.drain()

            assert len(chat_frames(conns["bob"])) == 1
            assert "timed out" in caplog.text

    @pytest.mark.asyncio
    async def test_no_store_still_routes(self):
        async with chat_service(None) as service:
            conns = await connect(service, "alice", "bob")

            delivered = await service.router.route(
                ChatMessage(from_="alice", to="bob", content="hi")
            )
            await service.router.drain()

            assert delivered == 2
            assert service.history("alice", "bob", 10) == []
