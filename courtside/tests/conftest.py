"""
Shared pytest configuration for courtside tests.

Server tests run against a throwaway SQLite database (aiosqlite); set
TEST_DATABASE_URL to point them at PostgreSQL instead.

SAFETY: This module REFUSES to run against any database whose name does not
contain the substring "test".

Client tests use an in-memory socket that records what the client sends and
lets a test push server frames or script acknowledgements.
"""

import os
import json
import asyncio
import tempfile
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from websockets.exceptions import ConnectionClosed

os.environ.setdefault("ENV", "test")


def _resolve_test_database_url() -> str:
    """Build the test database URL with safety checks."""
    url = os.getenv(
        "TEST_DATABASE_URL",
        f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'courtside_test.db')}",
    )

    db_name = url.rsplit("/", 1)[-1].split("?")[0]
    if "test" not in db_name.lower():
        raise RuntimeError(
            f"SAFETY: Refusing to run tests against database '{db_name}'. "
            f"Set TEST_DATABASE_URL to a database whose name contains 'test'."
        )
    return url


TEST_DATABASE_URL = _resolve_test_database_url()
# The application engine is built at import time; point it at the test database
os.environ["DATABASE_URL"] = TEST_DATABASE_URL

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402
from courtside.database.db import Base  # noqa: E402
from courtside.client.config import ClientConfig  # noqa: E402
from courtside.client.connection_manager import ConnectionManager  # noqa: E402


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create a fresh schema for each test and route AsyncSessionLocal to it."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=NullPool)

    async with engine.begin() as conn:
        from courtside.database import models  # noqa: F401

        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    # Code that opens its own sessions (the event router) must hit the test engine
    from courtside.database import db

    test_session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )
    original_async_session_local = db.AsyncSessionLocal
    db.AsyncSessionLocal = test_session_maker

    yield engine

    db.AsyncSessionLocal = original_async_session_local
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine):
    """Test database session; rolled back and closed after the test."""
    async_session_maker = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


@pytest.fixture
def session_factory(test_engine):
    """Session factory bound to the test engine, for components that open their own sessions."""
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


# ---------------------------------------------------------------------------
# Client transport fakes
# ---------------------------------------------------------------------------

_CLOSE = object()


class FakeSocket:
    """
    In-memory stand-in for a client WebSocket.

    ``sent`` holds every raw frame the client wrote. ``reply()`` scripts the
    acknowledgement for a request event; requests without a script are left
    unanswered so the client times out.
    """

    def __init__(self):
        self.sent: List[str] = []
        self.close_code: Optional[int] = None
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()
        self._replies: Dict[str, Any] = {}

    # websocket protocol used by ConnectionManager

    async def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionClosed(None, None)
        self.sent.append(data)
        if data in ("ping", "pong"):
            return
        frame = json.loads(data)
        req_id = frame.get("reqId")
        if req_id is None or frame["event"] not in self._replies:
            return
        reply = self._replies[frame["event"]]
        if callable(reply):
            reply = reply(frame.get("payload") or {})
        ack = {"event": "ack", "reqId": req_id}
        ack.update(reply)
        self._incoming.put_nowait(json.dumps(ack))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if not self.closed:
            self.closed = True
            self.close_code = self.close_code or code
            self._incoming.put_nowait(_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        return item

    # test controls

    def reply(self, event: str, data: Optional[dict] = None, error: Optional[str] = None, handler=None) -> None:
        """Script the ack for a request event: data, an error, or ``handler(payload) -> data``."""
        if handler is not None:
            self._replies[event] = lambda payload: {"success": True, "data": handler(payload)}
        elif error is not None:
            self._replies[event] = {"success": False, "error": error}
        else:
            self._replies[event] = {"success": True, "data": data or {}}

    def push(self, event: str, payload: Optional[dict] = None) -> None:
        """Deliver a server push event."""
        self._incoming.put_nowait(json.dumps({"event": event, "payload": payload or {}}))

    def greet(self, user_id: str = "u1") -> None:
        """Queue the server's ``connected`` greeting that completes the handshake."""
        self.push("connected", {"userId": user_id})

    def push_raw(self, raw: str) -> None:
        self._incoming.put_nowait(raw)

    def server_close(self, code: int = 1006) -> None:
        """Simulate the server dropping the connection."""
        self.closed = True
        self.close_code = code
        self._incoming.put_nowait(_CLOSE)

    def frames(self, event: Optional[str] = None) -> List[dict]:
        """Decoded JSON frames the client sent, optionally filtered by event."""
        decoded = [json.loads(raw) for raw in self.sent if raw not in ("ping", "pong")]
        if event is None:
            return decoded
        return [frame for frame in decoded if frame["event"] == event]


class FakeConnector:
    """Hands out prepared sockets in order; raises OSError once they run out."""

    def __init__(self, sockets: Optional[List[Any]] = None):
        self.sockets = list(sockets or [])
        self.urls: List[str] = []

    async def __call__(self, url: str):
        self.urls.append(url)
        if not self.sockets:
            raise OSError("Connection refused")
        item = self.sockets.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


async def _settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def settle():
    """Let the client's read loop and listener tasks catch up."""
    return _settle


@pytest.fixture
def client_config():
    return ClientConfig(
        ws_url="ws://testserver/api/ws",
        api_url="http://testserver",
        request_timeout=0.5,
        connect_timeout=0.5,
        reconnect_attempts=2,
        reconnect_delay=0.01,
        reconnect_delay_max=0.02,
        reconnect_randomization=0,
        heartbeat_interval=60,
        typing_quiet_period=0.05,
        typing_hard_cap=0.2,
        typing_indicator_ttl=5.0,
    )


@pytest.fixture
def fake_socket():
    return FakeSocket()


@pytest.fixture
def connector(fake_socket):
    return FakeConnector([fake_socket])


@pytest_asyncio.fixture
async def connection(client_config, connector):
    """A ConnectionManager wired to the fake connector, not yet connected."""
    manager = ConnectionManager(client_config, connector=connector)
    yield manager
    await manager.disconnect()


@pytest.fixture
def connect(settle):
    """Connect a manager and deliver the server's ``connected`` greeting."""

    async def _connect(manager: ConnectionManager, socket: FakeSocket, user_id: str = "u1", token: str = "token-1"):
        socket.greet(user_id)
        await manager.connect(token)
        await settle()
        return manager

    return _connect
