"""Shared test fixtures and configuration for backend tests."""
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

from chatsphere.auth import create_access_token
from chatsphere.config import AppConfig, set_config
from chatsphere.main import app
from chatsphere.relay.connection import Connection, ConnectionState
from chatsphere.relay.hub import ChatHub
from chatsphere.relay.schemas import Identity
from chatsphere.storage import MessageStore

TEST_SECRET = "test-secret-key-that-is-long-enough-for-hs256"


class RecordingConnection(Connection):
    """Connection that records delivered events instead of writing to a socket."""

    def __init__(self, connection_id: Optional[str] = None, identity: Optional[Identity] = None):
        super().__init__(websocket=None, connection_id=connection_id)
        self.events: List[dict] = []
        if identity is not None:
            self.identity = identity
            self.state = ConnectionState.ACTIVE

    def deliver(self, event) -> bool:
        if self.state is ConnectionState.DISCONNECTED:
            return False
        self.events.append(event.model_dump(mode="json", by_alias=True))
        return True

    def of_type(self, event_type: str) -> List[dict]:
        return [e for e in self.events if e["type"] == event_type]


def make_connection(user_id: str, display_name: Optional[str] = None, connection_id: Optional[str] = None):
    identity = Identity(user_id=user_id, display_name=display_name or user_id.title())
    return RecordingConnection(connection_id=connection_id or f"c-{user_id}", identity=identity)


def make_token(user_id: str, display_name: Optional[str] = None, expires_minutes: int = 5) -> str:
    return create_access_token(
        user_id,
        TEST_SECRET,
        display_name=display_name,
        expires_minutes=expires_minutes,
    )


@pytest.fixture
def test_config():
    """App config with an in-memory store and a known JWT secret."""
    config = AppConfig()
    config.storage.db_path = ":memory:"
    config.secrets.jwt.secret_key = TEST_SECRET
    return config


@pytest.fixture
def store():
    """Fresh in-memory message store."""
    store = MessageStore(db_path=":memory:")
    yield store
    store.close()


@pytest.fixture
def hub(test_config):
    """Relay hub wired to an in-memory store, installed as the singleton."""
    set_config(test_config)
    ChatHub.reset_instance()
    MessageStore.reset_instance()
    hub = ChatHub.get_instance(test_config)
    yield hub
    ChatHub.reset_instance()
    MessageStore.reset_instance()
    set_config(None)


@pytest.fixture
def api_client(hub):
    """Provide a TestClient for the main FastAPI app.

    Used as a context manager so every WebSocket opened by a test shares one
    event loop with the hub.
    """
    with TestClient(app) as client:
        yield client
