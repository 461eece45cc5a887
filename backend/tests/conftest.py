"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from forum.auth.service import SessionStore, set_identity_resolver
from forum.config import AppSettings, StorageSettings, reset_config, set_config
from forum.main import app
from forum.messages.service import MessageStoreService


@pytest.fixture(autouse=True)
def memory_storage():
    """Point every test at an in-memory DuckDB instead of chat_messages.duckdb."""
    set_config(AppSettings(storage=StorageSettings(db_path=":memory:")))
    MessageStoreService.reset_instance()
    yield
    MessageStoreService.reset_instance()
    reset_config()


@pytest.fixture
def sessions():
    """Provide a fresh SessionStore installed as the identity resolver."""
    store = SessionStore()
    set_identity_resolver(store)
    yield store
    set_identity_resolver(SessionStore())


@pytest.fixture
def api_client():
    """Provide a TestClient with the lifespan running.

    Entering the client runs startup (hub control loop) and makes every
    WebSocket session share one event loop with it.
    """
    with TestClient(app) as client:
        yield client
