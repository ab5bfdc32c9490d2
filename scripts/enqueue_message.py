#!/usr/bin/env python3
import argparse
import asyncio
import time

from cardrelay.core.notifier import Notifier
from cardrelay.core.store import JsonFileQueue, SqliteQueue


async def enqueue(queue, sender_code, recipient_code, text):
    await queue.open()
    try:
        item = await Notifier(queue).chat_message(
            {
                "sender_user_code": sender_code,
                "recipient_user_code": recipient_code,
                "message_text": text,
                "sent_at": time.strftime("%Y-%m-%d %H:%M:%S"),
            }
        )
    finally:
        await queue.close()
    print("Queued", item.model_dump())


if __name__ == "__main__":
    ap = argparse.ArgumentParser(description="Push a chat message onto the relay's pending queue")
    ap.add_argument("--from", dest="sender", required=True, help="sender user code")
    ap.add_argument("--to", required=True, help="recipient user code")
    ap.add_argument("--text", required=True)
    ap.add_argument("--queue-file", default="message_queue.json")
    ap.add_argument("--sqlite", default=None, help="use the SQLite queue in this database instead")
    args = ap.parse_args()
    queue = SqliteQueue(args.sqlite) if args.sqlite else JsonFileQueue(args.queue_file)
    asyncio.run(enqueue(queue, args.sender, args.to, args.text))
