from __future__ import annotations

import asyncio
import logging
from typing import Optional

import websockets
from websockets.asyncio.server import Server, ServerConnection

from cardrelay.config import RelayConfig
from cardrelay.core.auth import build_verifier
from cardrelay.core.delivery import Delivery
from cardrelay.core.registry import Connection, ConnectionRegistry
from cardrelay.core.store import JsonFileQueue, QueueStore, SqliteQueue
from cardrelay.core.users import SqliteUserDirectory
from cardrelay.server.drain import QueueDrainer
from cardrelay.server.relay import Relay

log = logging.getLogger("cardrelay.server.runtime")


def build_queue(config: RelayConfig) -> QueueStore:
    if config.queue.backend == "sqlite":
        return SqliteQueue(config.db_path, max_items=config.queue.max_items)
    return JsonFileQueue(config.queue.path, max_items=config.queue.max_items)


class ServerRuntime:
    """Chat and battle relay server: websocket listener plus the queue drain task."""

    def __init__(
        self,
        config: RelayConfig,
        *,
        users: Optional[SqliteUserDirectory] = None,
        queue: Optional[QueueStore] = None,
    ) -> None:
        self.cfg = config
        self.users = users or SqliteUserDirectory(config.db_path)
        self.queue = queue or build_queue(config)

        self.registry = ConnectionRegistry()
        self.delivery = Delivery(self.registry)
        verifier = build_verifier(
            self.users,
            config.secret,
            max_age_secs=config.token_max_age_secs,
            timeout=config.lookup_timeout_secs,
        )
        self.relay = Relay(
            self.registry,
            self.delivery,
            verifier,
            self.users,
            lookup_timeout=config.lookup_timeout_secs,
        )
        self.drainer = QueueDrainer(
            self.queue,
            self.users,
            self.delivery,
            interval=config.drain_interval_secs,
            timeout=config.lookup_timeout_secs,
        )

        self._ws_server: Optional[Server] = None
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.cfg.auth_secret is None:
            log.warning("No AUTH_SECRET configured; signed tokens are checked against the default secret")

        await self.users.open()
        await self.queue.open()

        self._ws_server = await websockets.serve(
            self._handle_connection,
            self.cfg.host,
            self.cfg.port,
            ping_interval=self.cfg.ping_interval_secs,
        )
        log.info("Relay listening on ws://%s:%d", self.cfg.host, self.bound_port)

        self._tasks.append(asyncio.create_task(self.drainer.run_forever(), name="queue-drain"))
        log.info("Message queue polling enabled (%.1fs interval)", self.cfg.drain_interval_secs)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None

        await self.queue.close()
        await self.users.close()
        log.info("Relay stopped")

    @property
    def bound_port(self) -> int:
        """Actual listening port (differs from the configured one when that is 0)."""

        if self._ws_server is None:
            return self.cfg.port
        for sock in self._ws_server.sockets:
            return sock.getsockname()[1]
        return self.cfg.port

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        conn = Connection(websocket=websocket, remote=self._fmt_remote(websocket))
        self.registry.admit(conn)
        log.debug("Accepted connection %s from %s", conn.conn_id, conn.remote)
        try:
            async for raw in websocket:
                await self.relay.handle_raw(conn, raw)
        except websockets.ConnectionClosed:
            pass
        finally:
            self.relay.on_close(conn)

    @staticmethod
    def _fmt_remote(websocket: ServerConnection) -> str:
        peer = websocket.remote_address
        if isinstance(peer, tuple):
            return f"{peer[0]}:{peer[1]}"
        return str(peer)


__all__ = ["ServerRuntime", "build_queue"]
