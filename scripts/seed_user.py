#!/usr/bin/env python3
import argparse
import asyncio
import os

from cardrelay.config import DEFAULT_SECRET
from cardrelay.core.auth import mint_token
from cardrelay.core.users import SqliteUserDirectory


async def seed(db_path, user_id, code, username, inactive, secret):
    users = SqliteUserDirectory(db_path)
    await users.open()
    try:
        record = await users.add_user(user_id, code, username, active=not inactive)
    finally:
        await users.close()
    state = "inactive" if inactive else "active"
    print(f"Stored {state} user {record.user_id} (code={record.user_code}) in {db_path}")
    print(f"Signed token (valid 24h): {mint_token(record.user_id, secret)}")


def main():
    ap = argparse.ArgumentParser(description="Create or update a user in the relay's SQLite directory")
    ap.add_argument("--user-id", type=int, required=True)
    ap.add_argument("--code", required=True, help="stable external user code")
    ap.add_argument("--username", default=None)
    ap.add_argument("--db", default="cardrelay.db")
    ap.add_argument("--inactive", action="store_true")
    args = ap.parse_args()
    secret = os.getenv("AUTH_SECRET") or DEFAULT_SECRET
    asyncio.run(seed(args.db, args.user_id, args.code, args.username, args.inactive, secret))


if __name__ == "__main__":
    main()
