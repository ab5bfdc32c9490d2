from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from . import proto

log = logging.getLogger("cardrelay.core.registry")

_conn_ids = itertools.count(1)


class AlreadyAuthenticated(Exception):
    """The connection is already bound to a different user."""


class UnknownConnection(Exception):
    """The connection was never admitted or has already been removed."""


@dataclass(slots=True, eq=False)
class Connection:
    """Transport handle for one client socket.

    Identity is tracked by the registry, never on the handle itself.
    """

    websocket: Any
    remote: str = "?"
    conn_id: int = field(default_factory=lambda: next(_conn_ids))
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def send(self, frame: Dict[str, Any]) -> None:
        text = proto.encode_frame(frame)
        async with self.send_lock:
            await self.websocket.send(text)


class ConnectionRegistry:
    """Live connections and the user each one is authenticated as.

    Every method is synchronous so each call is atomic on the event loop;
    callers that await between a read and a send must re-check ``is_admitted``.
    """

    def __init__(self) -> None:
        self._connections: Dict[int, Connection] = {}
        self._identities: Dict[int, int] = {}
        self._user_connections: Dict[int, Set[Connection]] = {}

    def admit(self, conn: Connection) -> None:
        self._connections[conn.conn_id] = conn
        log.debug("Admitted connection %s from %s", conn.conn_id, conn.remote)

    def authenticate(self, conn: Connection, user_id: int) -> None:
        if conn.conn_id not in self._connections:
            raise UnknownConnection(conn.conn_id)
        current = self._identities.get(conn.conn_id)
        if current is not None:
            if current != user_id:
                raise AlreadyAuthenticated(conn.conn_id)
            return
        self._identities[conn.conn_id] = user_id
        self._user_connections.setdefault(user_id, set()).add(conn)

    def remove(self, conn: Connection) -> Optional[int]:
        """Forget ``conn``; returns the user it was bound to, if any."""

        self._connections.pop(conn.conn_id, None)
        user_id = self._identities.pop(conn.conn_id, None)
        if user_id is not None:
            conns = self._user_connections.get(user_id)
            if conns is not None:
                conns.discard(conn)
                if not conns:
                    del self._user_connections[user_id]
        return user_id

    def identity_of(self, conn: Connection) -> Optional[int]:
        return self._identities.get(conn.conn_id)

    def is_admitted(self, conn: Connection) -> bool:
        return conn.conn_id in self._connections

    def connections_for(self, user_id: int) -> Set[Connection]:
        return set(self._user_connections.get(user_id, ()))

    def is_online(self, user_id: int) -> bool:
        return user_id in self._user_connections

    def all_connections(self) -> List[Connection]:
        return list(self._connections.values())

    def online_users(self) -> List[int]:
        return sorted(self._user_connections)

    def __len__(self) -> int:
        return len(self._connections)


__all__ = ["Connection", "ConnectionRegistry", "AlreadyAuthenticated", "UnknownConnection"]
