from __future__ import annotations

import abc
import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite
import orjson
from pydantic import BaseModel, Field, ValidationError

"""
Pending-message queue
---------------------
The HTTP side persists a chat message (or a battle notification) and appends
an item here; the relay drains it on a timer and pushes to whoever is online.

Draining is two-phase: ``fetch`` returns a batch without removing it and
``acknowledge`` removes exactly that batch once delivery was attempted, so
items appended while a batch is in flight are kept for the next run.
"""

log = logging.getLogger("cardrelay.core.store")

DEFAULT_MAX_ITEMS = 100

ITEM_CHAT_MESSAGE = "chat_message"
ITEM_NOTIFICATION = "notification"


class QueueError(Exception):
    """The queue backend could not be read or written."""


class QueuedItem(BaseModel):
    type: str
    message: Dict[str, Any] = Field(default_factory=dict)
    timestamp: int = Field(default_factory=lambda: int(time.time()))

    @property
    def sender_code(self) -> Optional[str]:
        return self.message.get("sender_user_code")

    @property
    def recipient_code(self) -> Optional[str]:
        return self.message.get("recipient_user_code")


@dataclass
class Batch:
    items: List[QueuedItem] = field(default_factory=list)
    # backend-specific handle identifying what to remove on acknowledge
    marker: Any = None

    @property
    def empty(self) -> bool:
        return not self.items and not self.marker


class QueueStore(abc.ABC):
    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abc.abstractmethod
    async def fetch(self) -> Batch: ...

    @abc.abstractmethod
    async def acknowledge(self, batch: Batch) -> None: ...

    @abc.abstractmethod
    async def enqueue(self, item: QueuedItem) -> None: ...

    async def drain(self) -> List[QueuedItem]:
        """Fetch and immediately acknowledge everything pending."""

        batch = await self.fetch()
        if not batch.empty:
            await self.acknowledge(batch)
        return batch.items


def _parse_items(entries: List[Any]) -> List[QueuedItem]:
    items: List[QueuedItem] = []
    for entry in entries:
        try:
            items.append(QueuedItem.model_validate(entry))
        except ValidationError:
            log.warning("Skipping malformed queue entry: %r", entry)
    return items


# ---------------------------------------------------------------------------
# JSON file backend
# ---------------------------------------------------------------------------

class JsonFileQueue(QueueStore):
    """Queue kept as a JSON array in a single file.

    Writes go through a temp file and ``os.replace``. Acknowledge removes the
    fetched entries by value, so concurrent appends by other processes survive.
    """

    def __init__(self, path: str | Path, *, max_items: int = DEFAULT_MAX_ITEMS) -> None:
        self.path = Path(path)
        self.max_items = max_items
        self._lock = asyncio.Lock()

    async def fetch(self) -> Batch:
        async with self._lock:
            entries = await asyncio.to_thread(self._read_entries)
        return Batch(items=_parse_items(entries), marker=entries)

    async def acknowledge(self, batch: Batch) -> None:
        if not batch.marker:
            return
        async with self._lock:
            await asyncio.to_thread(self._remove_entries, list(batch.marker))

    async def enqueue(self, item: QueuedItem) -> None:
        async with self._lock:
            await asyncio.to_thread(self._append_entry, item.model_dump())

    # --- blocking helpers, run in a worker thread ---

    def _read_entries(self) -> List[Any]:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise QueueError(f"cannot read {self.path}: {exc}") from exc
        if not raw.strip():
            return []
        try:
            data = orjson.loads(raw)
        except orjson.JSONDecodeError:
            self._quarantine()
            return []
        if not isinstance(data, list):
            self._quarantine()
            return []
        return data

    def _quarantine(self) -> None:
        corrupt = self.path.with_name(self.path.name + ".corrupt")
        log.error("Queue file %s is not a JSON array; moving it to %s", self.path, corrupt)
        try:
            os.replace(self.path, corrupt)
        except OSError as exc:
            raise QueueError(f"cannot move aside {self.path}: {exc}") from exc

    def _write_entries(self, entries: List[Any]) -> None:
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(orjson.dumps(entries, option=orjson.OPT_INDENT_2))
            os.replace(tmp, self.path)
        except OSError as exc:
            raise QueueError(f"cannot write {self.path}: {exc}") from exc

    def _remove_entries(self, fetched: List[Any]) -> None:
        remaining = self._read_entries()
        for entry in fetched:
            try:
                remaining.remove(entry)
            except ValueError:
                pass
        self._write_entries(remaining)

    def _append_entry(self, entry: Dict[str, Any]) -> None:
        entries = self._read_entries()
        entries.append(entry)
        self._write_entries(entries[-self.max_items:])


# ---------------------------------------------------------------------------
# SQLite backend
# ---------------------------------------------------------------------------

SCHEMA = """
CREATE TABLE IF NOT EXISTS pending_messages(
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    type       TEXT    NOT NULL,
    message    TEXT    NOT NULL,
    created_at INTEGER NOT NULL
);
"""


class SqliteQueue(QueueStore):
    """Queue kept in a ``pending_messages`` table; a batch is everything up to its highest id."""

    def __init__(self, path: str | Path, *, max_items: int = DEFAULT_MAX_ITEMS) -> None:
        self.path = Path(path)
        self.max_items = max_items
        self._db: Optional[aiosqlite.Connection] = None

    async def open(self) -> None:
        if self._db is not None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(str(self.path))
            await self._db.executescript(SCHEMA)
            await self._db.commit()
        except (aiosqlite.Error, OSError) as exc:
            raise QueueError(f"cannot open queue at {self.path}: {exc}") from exc

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise QueueError("queue is not open")
        return self._db

    async def fetch(self) -> Batch:
        try:
            cur = await self.db.execute("SELECT id, type, message, created_at FROM pending_messages ORDER BY id")
            rows = await cur.fetchall()
        except aiosqlite.Error as exc:
            raise QueueError(f"cannot read queue: {exc}") from exc
        if not rows:
            return Batch()
        entries = []
        for row_id, type_, message, created_at in rows:
            try:
                entries.append({"type": type_, "message": orjson.loads(message), "timestamp": created_at})
            except orjson.JSONDecodeError:
                log.warning("Skipping queue row %s with undecodable message", row_id)
        return Batch(items=_parse_items(entries), marker=rows[-1][0])

    async def acknowledge(self, batch: Batch) -> None:
        if batch.marker is None:
            return
        try:
            await self.db.execute("DELETE FROM pending_messages WHERE id <= ?", (batch.marker,))
            await self.db.commit()
        except aiosqlite.Error as exc:
            raise QueueError(f"cannot clear queue: {exc}") from exc

    async def enqueue(self, item: QueuedItem) -> None:
        try:
            await self.db.execute(
                "INSERT INTO pending_messages(type, message, created_at) VALUES(?,?,?)",
                (item.type, orjson.dumps(item.message).decode("utf-8"), item.timestamp),
            )
            await self.db.execute(
                """DELETE FROM pending_messages WHERE id NOT IN
                   (SELECT id FROM pending_messages ORDER BY id DESC LIMIT ?)""",
                (self.max_items,),
            )
            await self.db.commit()
        except aiosqlite.Error as exc:
            raise QueueError(f"cannot enqueue: {exc}") from exc


__all__ = [
    "QueueError",
    "QueuedItem",
    "Batch",
    "QueueStore",
    "JsonFileQueue",
    "SqliteQueue",
    "ITEM_CHAT_MESSAGE",
    "ITEM_NOTIFICATION",
]
