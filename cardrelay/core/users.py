from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol

import aiosqlite

log = logging.getLogger("cardrelay.core.users")

SCHEMA = """
CREATE TABLE IF NOT EXISTS users(
    user_id    INTEGER PRIMARY KEY,
    check_code TEXT,
    username   TEXT,
    active     INTEGER NOT NULL DEFAULT 1
);
CREATE INDEX IF NOT EXISTS users_check_code ON users(check_code);
"""


@dataclass(frozen=True, slots=True)
class UserRecord:
    user_id: int
    user_code: Optional[str]
    username: Optional[str] = None
    active: bool = True


class UserDirectory(Protocol):
    """Read-only view of the user store needed by the relay."""

    async def find_active_by_code(self, code: str) -> List[UserRecord]: ...

    async def find_active_by_id(self, user_id: int) -> Optional[UserRecord]: ...

    async def resolve_code(self, code: str) -> Optional[int]: ...

    async def code_for(self, user_id: int) -> Optional[str]: ...


class SqliteUserDirectory:
    """``UserDirectory`` over a local SQLite ``users`` table."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._db: Optional[aiosqlite.Connection] = None

    async def open(self) -> None:
        if self._db is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self.path))
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        log.debug("User directory opened at %s", self.path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("user directory is not open")
        return self._db

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def find_active_by_code(self, code: str) -> List[UserRecord]:
        cur = await self.db.execute(
            "SELECT user_id, check_code, username, active FROM users WHERE check_code = ? AND active = 1",
            (code,),
        )
        rows = await cur.fetchall()
        return [_record(row) for row in rows]

    async def find_active_by_id(self, user_id: int) -> Optional[UserRecord]:
        cur = await self.db.execute(
            "SELECT user_id, check_code, username, active FROM users WHERE user_id = ? AND active = 1",
            (user_id,),
        )
        row = await cur.fetchone()
        return _record(row) if row else None

    async def resolve_code(self, code: str) -> Optional[int]:
        cur = await self.db.execute("SELECT user_id FROM users WHERE check_code = ?", (code,))
        row = await cur.fetchone()
        return int(row[0]) if row else None

    async def code_for(self, user_id: int) -> Optional[str]:
        cur = await self.db.execute("SELECT check_code FROM users WHERE user_id = ?", (user_id,))
        row = await cur.fetchone()
        return row[0] if row else None

    # ------------------------------------------------------------------
    # Seeding (dev tools and tests)
    # ------------------------------------------------------------------

    async def add_user(
        self,
        user_id: int,
        user_code: Optional[str],
        username: Optional[str] = None,
        *,
        active: bool = True,
    ) -> UserRecord:
        await self.db.execute(
            """INSERT INTO users(user_id, check_code, username, active) VALUES(?,?,?,?)
               ON CONFLICT(user_id) DO UPDATE SET check_code=excluded.check_code,
                   username=excluded.username, active=excluded.active""",
            (user_id, user_code, username, int(active)),
        )
        await self.db.commit()
        return UserRecord(user_id=user_id, user_code=user_code, username=username, active=active)


def _record(row) -> UserRecord:
    return UserRecord(user_id=int(row[0]), user_code=row[1], username=row[2], active=bool(row[3]))


__all__ = ["UserRecord", "UserDirectory", "SqliteUserDirectory"]
