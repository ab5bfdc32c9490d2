from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

import websockets

from .registry import Connection, ConnectionRegistry

log = logging.getLogger("cardrelay.core.delivery")


class Delivery:
    """Pushes frames to live connections; a dead socket never aborts a fan-out."""

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry

    async def send(self, conn: Connection, frame: Dict[str, Any]) -> bool:
        try:
            await conn.send(frame)
        except (websockets.ConnectionClosed, OSError) as exc:
            log.warning("Send of %s to connection %s failed: %s", frame.get("type"), conn.conn_id, exc)
            return False
        return True

    async def to_user(self, user_id: int, frame: Dict[str, Any]) -> int:
        """Send ``frame`` to every live connection of ``user_id``; returns how many got it."""

        targets = self.registry.connections_for(user_id)
        if not targets:
            log.debug("User %s offline, dropping %s", user_id, frame.get("type"))
            return 0
        return await self._fan_out(targets, frame)

    async def broadcast(self, frame: Dict[str, Any], exclude_user_id: Optional[int] = None) -> int:
        targets = [
            conn
            for conn in self.registry.all_connections()
            if exclude_user_id is None or self.registry.identity_of(conn) != exclude_user_id
        ]
        return await self._fan_out(targets, frame)

    async def _fan_out(self, targets: Iterable[Connection], frame: Dict[str, Any]) -> int:
        delivered = 0
        for conn in targets:
            # removed while an earlier send was in flight
            if not self.registry.is_admitted(conn):
                continue
            if await self.send(conn, frame):
                delivered += 1
        return delivered


__all__ = ["Delivery"]
