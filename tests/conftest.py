"""Shared fixtures for the classpulse test suite."""

import sys
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

# Ensure the project root is on sys.path so 'classpulse' resolves
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from classpulse.connection_hub import ConnectionHub  # noqa: E402
from classpulse.session_registry import SessionRegistry  # noqa: E402
from classpulse.ws_handler import EventCoordinator  # noqa: E402


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def filter_ws_messages(ws_mock, msg_type: str) -> list[dict]:
    """Extract all messages of a given type sent through a mock WebSocket."""
    return [
        c[0][0]
        for c in ws_mock.send_json.call_args_list
        if isinstance(c[0][0], dict) and c[0][0].get("type") == msg_type
    ]


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def hub():
    return ConnectionHub()


@pytest.fixture
def sockets(hub):
    """Factory that registers mock WebSockets with the hub by connection id."""
    created: dict[str, AsyncMock] = {}

    def _connect(*conn_ids: str) -> dict[str, AsyncMock]:
        for conn_id in conn_ids:
            ws = AsyncMock()
            hub.register(conn_id, ws)
            created[conn_id] = ws
        return created

    return _connect


@pytest.fixture
def coordinator(registry, hub, clock):
    return EventCoordinator(registry, hub, throttle_seconds=0.5, clock=clock)


@pytest.fixture
def app():
    """The FastAPI app with a fresh registry, hub and coordinator per test."""
    fresh = EventCoordinator(SessionRegistry(), ConnectionHub())
    with patch("classpulse.server.coordinator", fresh):
        from classpulse.server import app as fastapi_app
        yield fastapi_app


@pytest.fixture
async def client(app):
    """Async HTTP client for testing REST endpoints."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
