import functools
import json
import os
import sys
from typing import Any, Dict, Generator, List, Optional

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketState

# Add the parent directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import Settings
from core.database import build_engine, build_session_factory, create_db_and_tables
from services.chat_hub import ChatHub
from services.chat_store import ChatStore
from services.connection_registry import ClientConnection, ConnectionListener

MEMORY_DATABASE_URL = "sqlite+aiosqlite://"


class FakeWebSocket:
    """In-memory stand-in for a Starlette WebSocket."""

    def __init__(self, incoming: Optional[List[Dict[str, Any]]] = None, fail_sends=False):
        self.incoming = list(incoming or [])
        self.sent: List[str] = []
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self.application_state = WebSocketState.CONNECTED
        self.fail_sends = fail_sends
        self.on_send = None

    async def send_text(self, data: str):
        if self.fail_sends:
            raise RuntimeError("transport is gone")
        if self.on_send is not None:
            await self.on_send(data)
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = ""):
        self.close_code = code
        self.close_reason = reason
        self.application_state = WebSocketState.DISCONNECTED

    async def receive(self) -> Dict[str, Any]:
        if self.incoming:
            return self.incoming.pop(0)
        return {"type": "websocket.disconnect", "code": 1000}

    def frames(self) -> List[Dict[str, Any]]:
        return [json.loads(data) for data in self.sent]

    def frames_of_type(self, frame_type: str) -> List[Dict[str, Any]]:
        return [frame for frame in self.frames() if frame["type"] == frame_type]


class RecordingListener(ConnectionListener):
    """Registry listener that records membership changes."""

    def __init__(self):
        self.events = []

    async def user_connected(self, user_id: int, replaced: bool) -> None:
        self.events.append(("connected", user_id, replaced))

    async def user_disconnected(self, user_id: int) -> None:
        self.events.append(("disconnected", user_id))


class FakeEmailService:
    """Records verification emails instead of sending them."""

    def __init__(self):
        self.sent = []

    async def send_verification_email(self, recipient: str, token: str) -> bool:
        self.sent.append((recipient, token))
        return True


@pytest.fixture
def make_websocket():
    """Create a fake WebSocket transport."""
    return FakeWebSocket


@pytest.fixture
def recording_listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def fake_email_service() -> FakeEmailService:
    return FakeEmailService()


@pytest.fixture
def make_connection():
    """Create a ClientConnection over a fake transport."""

    def _make(**kwargs) -> ClientConnection:
        return ClientConnection(FakeWebSocket(**kwargs))

    return _make


@pytest.fixture
async def engine():
    """In-memory database with all tables created."""
    engine = build_engine(MEMORY_DATABASE_URL)
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def store(engine) -> ChatStore:
    return ChatStore(build_session_factory(engine))


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings for an isolated app instance."""
    return Settings(
        environment="test",
        log_level="DEBUG",
        database_url=MEMORY_DATABASE_URL,
        heartbeat_interval=3600,
        jwt_secret_key="test-secret-key",
        uploads_dir=str(tmp_path / "uploads"),
        max_upload_mb=1,
        app_url="http://testserver",
    )


@pytest.fixture
async def hub(test_settings) -> ChatHub:
    """A started hub without the periodic heartbeat task."""
    hub = ChatHub(test_settings)
    await hub.startup(start_liveness=False)
    yield hub
    await hub.shutdown()


@pytest.fixture
def test_client(test_settings) -> Generator[TestClient, None, None]:
    """Create a test client for a fresh app with an in-memory database."""
    from main import create_app

    app = create_app(test_settings, configure_logging=False)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def run_async(test_client):
    """Run a coroutine function on the test client's event loop."""

    def _run(func, *args, **kwargs):
        return test_client.portal.call(functools.partial(func, *args, **kwargs))

    return _run


@pytest.fixture
def seed_user(test_client, run_async):
    """Create a user directly in the app's store."""
    store = test_client.app.state.hub.store

    def _seed(email: str, **kwargs):
        return run_async(store.create_user, email, **kwargs)

    return _seed


@pytest.fixture(autouse=True)
def setup_test_environment(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
