import json
from typing import List, Optional

import pytest
from websockets.exceptions import ConnectionClosedOK

from cardrelay.core.auth import build_verifier, mint_token
from cardrelay.core.delivery import Delivery
from cardrelay.core.registry import Connection, ConnectionRegistry
from cardrelay.core.users import UserRecord
from cardrelay.server.relay import Relay

SECRET = "test-secret"


class FakeWebSocket:
    """Records decoded frames; raises like a real socket once closed."""

    def __init__(self):
        self.sent = []
        self.closed = False

    async def send(self, text):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(json.loads(text))

    def of_type(self, type_):
        return [f for f in self.sent if f["type"] == type_]


class MemoryUserDirectory:
    def __init__(self, records):
        self.records: List[UserRecord] = list(records)
        self.broken = False

    async def open(self):
        pass

    async def close(self):
        pass

    def _check(self):
        if self.broken:
            raise RuntimeError("database unavailable")

    async def find_active_by_code(self, code):
        self._check()
        return [r for r in self.records if r.user_code == code and r.active]

    async def find_active_by_id(self, user_id) -> Optional[UserRecord]:
        self._check()
        return next((r for r in self.records if r.user_id == user_id and r.active), None)

    async def resolve_code(self, code):
        self._check()
        return next((r.user_id for r in self.records if r.user_code == code), None)

    async def code_for(self, user_id):
        self._check()
        return next((r.user_code for r in self.records if r.user_id == user_id), None)


@pytest.fixture
def users():
    return MemoryUserDirectory(
        [
            UserRecord(1, "ALICE001", "alice"),
            UserRecord(2, "BOB00002", "bob"),
            UserRecord(3, "CAROL003", "carol"),
            UserRecord(4, "GHOST004", "ghost", active=False),
        ]
    )


@pytest.fixture
def secret():
    return SECRET


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def delivery(registry):
    return Delivery(registry)


@pytest.fixture
def verifier(users):
    return build_verifier(users, SECRET, timeout=1.0)


@pytest.fixture
def relay(registry, delivery, verifier, users):
    return Relay(registry, delivery, verifier, users, lookup_timeout=1.0)


@pytest.fixture
def connect(registry):
    """Admit a fresh unauthenticated connection."""

    def _connect():
        conn = Connection(websocket=FakeWebSocket())
        registry.admit(conn)
        return conn

    return _connect


@pytest.fixture
def login(relay, connect):
    """Admit a connection and authenticate it as ``user_id`` with a signed token."""

    async def _login(user_id):
        conn = connect()
        await relay.dispatch(conn, {"type": "authenticate", "auth_token": mint_token(user_id, SECRET)})
        assert conn.websocket.sent[-1]["type"] == "authenticated"
        conn.websocket.sent.clear()
        return conn

    return _login
