from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from . import proto
from .store import ITEM_CHAT_MESSAGE, ITEM_NOTIFICATION, QueuedItem, QueueStore

log = logging.getLogger("cardrelay.core.notifier")


class Notifier:
    """Producer side of the pending-message queue.

    Used by the HTTP application after it has persisted something a live
    user should hear about. The relay's drain loop does the actual push.
    """

    def __init__(self, queue: QueueStore) -> None:
        self.queue = queue

    async def chat_message(self, message: Dict[str, Any]) -> QueuedItem:
        """Queue a persisted chat row; it must carry ``sender_user_code`` and ``recipient_user_code``."""

        if not message.get("recipient_user_code"):
            raise ValueError("message is missing recipient_user_code")
        item = QueuedItem(type=ITEM_CHAT_MESSAGE, message=dict(message))
        await self.queue.enqueue(item)
        log.info("Queued chat message %s for %s", message.get("message_id", "?"), message["recipient_user_code"])
        return item

    async def notify_user(self, recipient_user_code: str, event: Dict[str, Any]) -> QueuedItem:
        if not recipient_user_code:
            raise ValueError("recipient_user_code is required")
        if not isinstance(event.get("type"), str):
            raise ValueError("event needs a string type")
        item = QueuedItem(
            type=ITEM_NOTIFICATION,
            message={"recipient_user_code": recipient_user_code, "event": event},
        )
        await self.queue.enqueue(item)
        log.info("Queued %s notification for %s", event["type"], recipient_user_code)
        return item

    # ------------------------------------------------------------------
    # Battle notifications
    # ------------------------------------------------------------------

    async def battle_invitation(
        self, recipient_user_code: str, invitation: Dict[str, Any], sender_user_id: int
    ) -> QueuedItem:
        return await self.notify_user(
            recipient_user_code, proto.battle_invitation_frame(invitation, sender_user_id)
        )

    async def battle_invitation_response(
        self, sender_user_code: str, invitation_id: Any, response: str, responder_user_id: int
    ) -> QueuedItem:
        return await self.notify_user(
            sender_user_code,
            proto.battle_invitation_response_frame(invitation_id, response, responder_user_id),
        )

    async def battle_invitation_cancelled(
        self, recipient_user_code: str, invitation_id: Any, cancelled_by_user_id: int
    ) -> QueuedItem:
        return await self.notify_user(
            recipient_user_code,
            proto.battle_invitation_cancelled_frame(invitation_id, cancelled_by_user_id),
        )

    async def battle_started(
        self, user_code: str, battle_id: Any, opponent_user_id: int, battle_mode: Any = 1
    ) -> QueuedItem:
        return await self.notify_user(
            user_code, proto.battle_started_frame(battle_id, opponent_user_id, battle_mode)
        )

    async def battle_phase_update(
        self,
        user_code: str,
        battle_id: Any,
        phase: Any,
        *,
        player_card: Any = None,
        opponent_card: Any = None,
        phase_winner: Any = None,
    ) -> QueuedItem:
        event = proto.battle_phase_update_frame(
            battle_id,
            phase,
            player_card=player_card,
            opponent_card=opponent_card,
            phase_winner=phase_winner,
        )
        return await self.notify_user(user_code, event)

    async def battle_ended(
        self,
        user_code: str,
        battle_id: Any,
        winner_user_id: Optional[int],
        player_wins: int = 0,
        opponent_wins: int = 0,
    ) -> QueuedItem:
        return await self.notify_user(
            user_code, proto.battle_ended_frame(battle_id, winner_user_id, player_wins, opponent_wins)
        )


__all__ = ["Notifier"]
