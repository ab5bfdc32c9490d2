from __future__ import annotations

import asyncio
import logging
from typing import Optional

from cardrelay.core import proto
from cardrelay.core.delivery import Delivery
from cardrelay.core.store import ITEM_CHAT_MESSAGE, ITEM_NOTIFICATION, QueueError, QueuedItem, QueueStore
from cardrelay.core.users import UserDirectory

log = logging.getLogger("cardrelay.server.drain")

DEFAULT_INTERVAL_SECS = 0.5


class QueueDrainer:
    """Moves queued messages onto live connections.

    Best effort and at most once: an item is acknowledged after one delivery
    attempt whether or not anybody was online to receive it.
    """

    def __init__(
        self,
        queue: QueueStore,
        users: UserDirectory,
        delivery: Delivery,
        *,
        interval: float = DEFAULT_INTERVAL_SECS,
        timeout: Optional[float] = None,
    ) -> None:
        self.queue = queue
        self.users = users
        self.delivery = delivery
        self.interval = interval
        self.timeout = timeout

    async def run_forever(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.run_once()
            except Exception:
                log.exception("Queue drain run failed")

    async def run_once(self) -> int:
        """Process one batch; returns the number of items attempted."""

        try:
            batch = await asyncio.wait_for(self.queue.fetch(), self.timeout)
        except asyncio.TimeoutError:
            log.warning("Reading the queue timed out; skipping this run")
            return 0
        except QueueError as exc:
            log.warning("Reading the queue failed: %s", exc)
            return 0
        if batch.empty:
            return 0

        for item in batch.items:
            try:
                await self._process(item)
            except Exception:
                log.exception("Failed to deliver queued %s item", item.type)

        try:
            await asyncio.wait_for(self.queue.acknowledge(batch), self.timeout)
        except (asyncio.TimeoutError, QueueError) as exc:
            log.error("Clearing %d queued item(s) failed, they may be delivered again: %r", len(batch.items), exc)
        else:
            log.debug("Drained %d queued item(s)", len(batch.items))
        return len(batch.items)

    # ------------------------------------------------------------------
    # Item handling
    # ------------------------------------------------------------------

    async def _process(self, item: QueuedItem) -> None:
        if item.type == ITEM_CHAT_MESSAGE:
            await self._deliver_chat(item)
        elif item.type == ITEM_NOTIFICATION:
            await self._deliver_notification(item)
        else:
            log.warning("Skipping queued item of unknown type %r", item.type)

    async def _deliver_chat(self, item: QueuedItem) -> None:
        frame = proto.queued_chat_frame(item.message)
        recipient_id = await self._resolve(item.recipient_code)
        sender_id = await self._resolve(item.sender_code)

        if recipient_id is not None:
            if await self.delivery.to_user(recipient_id, frame):
                log.info("Delivered queued message to user %s", recipient_id)
            else:
                log.debug("Recipient user %s is not connected", recipient_id)
        else:
            log.warning("Could not resolve recipient from code %r", item.recipient_code)

        # echo to the sender's other devices
        if sender_id is not None:
            await self.delivery.to_user(sender_id, frame)

    async def _deliver_notification(self, item: QueuedItem) -> None:
        event = item.message.get("event")
        if not isinstance(event, dict) or not isinstance(event.get("type"), str):
            log.warning("Skipping notification without a typed event: %r", item.message)
            return
        user_id = await self._resolve(item.recipient_code)
        if user_id is None:
            log.warning("Could not resolve notification recipient from code %r", item.recipient_code)
            return
        await self.delivery.to_user(user_id, event)

    async def _resolve(self, code: Optional[str]) -> Optional[int]:
        if not code:
            return None
        try:
            return await asyncio.wait_for(self.users.resolve_code(code), self.timeout)
        except Exception:
            log.warning("Resolving user code %r failed", code, exc_info=True)
            return None


__all__ = ["QueueDrainer"]
