from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Type

from cardrelay.core import proto
from cardrelay.core.auth import TokenVerifier
from cardrelay.core.delivery import Delivery
from cardrelay.core.registry import AlreadyAuthenticated, Connection, ConnectionRegistry, UnknownConnection
from cardrelay.core.users import UserDirectory

log = logging.getLogger("cardrelay.server.relay")

Handler = Callable[[Connection, Dict[str, Any]], Awaitable[None]]


class Relay:
    """Dispatches inbound frames for every connection.

    A connection is unauthenticated until one ``authenticate`` succeeds and
    stays bound to that user until it closes. Only ``authenticate`` and
    ``ping`` are accepted before that.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        delivery: Delivery,
        verifier: TokenVerifier,
        users: UserDirectory,
        *,
        lookup_timeout: Optional[float] = None,
    ) -> None:
        self.registry = registry
        self.delivery = delivery
        self.verifier = verifier
        self.users = users
        self.lookup_timeout = lookup_timeout

        self._handlers: Dict[str, Handler] = {
            proto.T_AUTHENTICATE: self._handle_authenticate,
            proto.T_CHAT_MESSAGE: self._handle_chat_message,
            proto.T_TYPING: self._handle_typing,
            proto.T_BATTLE_INVITATION_SENT: self._handle_battle_invitation_sent,
            proto.T_BATTLE_INVITATION_RESPONSE: self._handle_battle_invitation_response,
            proto.T_BATTLE_INVITATION_CANCELLED: self._handle_battle_invitation_cancelled,
            proto.T_BATTLE_STARTED: self._handle_battle_started,
            proto.T_BATTLE_PHASE_UPDATE: self._handle_battle_phase_update,
            proto.T_BATTLE_ENDED: self._handle_battle_ended,
            proto.T_PING: self._handle_ping,
        }

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def handle_raw(self, conn: Connection, raw: str | bytes) -> None:
        try:
            data = proto.decode_frame(raw)
        except proto.ProtocolError as exc:
            await self._send_error(conn, exc.message)
            return
        try:
            await self.dispatch(conn, data)
        except Exception:
            # one bad frame must not tear down the socket
            log.exception("Handling %s on connection %s failed", data["type"], conn.conn_id)

    async def dispatch(self, conn: Connection, data: Dict[str, Any]) -> None:
        handler = self._handlers.get(data["type"])
        if handler is None:
            await self._send_error(conn, proto.E_UNKNOWN_TYPE)
            return
        await handler(conn, data)

    def on_close(self, conn: Connection) -> None:
        user_id = self.registry.remove(conn)
        if user_id is not None:
            log.info("User %s disconnected (connection %s)", user_id, conn.conn_id)
        else:
            log.debug("Connection %s closed", conn.conn_id)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def _handle_authenticate(self, conn: Connection, data: Dict[str, Any]) -> None:
        if self.registry.identity_of(conn) is not None:
            await self._send_auth_error(conn, proto.E_ALREADY_AUTHENTICATED)
            return
        try:
            frame = proto.parse_fields(proto.Authenticate, data)
        except proto.ProtocolError:
            await self._send_auth_error(conn, proto.E_TOKEN_REQUIRED)
            return

        user_id = await self.verifier.verify(frame.auth_token)
        if user_id is None:
            await self._send_auth_error(conn, proto.E_INVALID_TOKEN)
            return

        try:
            self.registry.authenticate(conn, user_id)
        except UnknownConnection:
            log.debug("Connection %s closed while authenticating", conn.conn_id)
            return
        except AlreadyAuthenticated:
            await self._send_auth_error(conn, proto.E_ALREADY_AUTHENTICATED)
            return

        user_code = await self._lookup_code(user_id)
        await self.delivery.send(conn, proto.authenticated_frame(user_id, user_code))
        log.info("User %s (code: %s) authenticated on connection %s", user_id, user_code, conn.conn_id)

    async def _lookup_code(self, user_id: int) -> Optional[str]:
        try:
            return await asyncio.wait_for(self.users.code_for(user_id), self.lookup_timeout)
        except Exception:
            log.warning("Could not look up user code for %s", user_id, exc_info=True)
            return None

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def _handle_chat_message(self, conn: Connection, data: Dict[str, Any]) -> None:
        sender = await self._require_identity(conn)
        if sender is None:
            return
        frame = await self._parse(conn, proto.ChatMessage, data)
        if frame is None:
            return

        envelope = proto.chat_envelope(sender, frame.recipient_user_id, frame.message_text)
        await self.delivery.to_user(frame.recipient_user_id, envelope)
        await self.delivery.send(conn, proto.message_sent_frame(envelope))

    async def _handle_typing(self, conn: Connection, data: Dict[str, Any]) -> None:
        # typing indicators are dropped silently on any problem
        sender = self.registry.identity_of(conn)
        if sender is None:
            return
        try:
            frame = proto.parse_fields(proto.Typing, data)
        except proto.ProtocolError:
            return
        await self.delivery.to_user(frame.recipient_user_id, proto.typing_frame(sender, frame.is_typing))

    # ------------------------------------------------------------------
    # Battles
    # ------------------------------------------------------------------

    async def _handle_battle_invitation_sent(self, conn: Connection, data: Dict[str, Any]) -> None:
        sender = await self._require_identity(conn)
        if sender is None:
            return
        frame = await self._parse(conn, proto.BattleInvitationSent, data)
        if frame is None:
            return

        delivered = await self.delivery.to_user(
            frame.recipient_user_id, proto.battle_invitation_frame(frame.invitation, sender)
        )
        if delivered:
            log.info("Battle invitation sent from user %s to user %s", sender, frame.recipient_user_id)
        else:
            log.info("User %s is offline, invitation stays in the database", frame.recipient_user_id)

    async def _handle_battle_invitation_response(self, conn: Connection, data: Dict[str, Any]) -> None:
        responder = await self._require_identity(conn)
        if responder is None:
            return
        frame = await self._parse(conn, proto.BattleInvitationResponse, data)
        if frame is None:
            return

        event = proto.battle_invitation_response_frame(frame.invitation_id, frame.response, responder)
        if await self.delivery.to_user(frame.sender_user_id, event):
            log.info("Battle invitation %s %s by user %s", frame.invitation_id, frame.response, responder)

    async def _handle_battle_invitation_cancelled(self, conn: Connection, data: Dict[str, Any]) -> None:
        sender = await self._require_identity(conn)
        if sender is None:
            return
        frame = await self._parse(conn, proto.BattleInvitationCancelled, data)
        if frame is None:
            return

        event = proto.battle_invitation_cancelled_frame(frame.invitation_id, sender)
        if await self.delivery.to_user(frame.recipient_user_id, event):
            log.info("Battle invitation %s cancelled by user %s", frame.invitation_id, sender)

    async def _handle_battle_started(self, conn: Connection, data: Dict[str, Any]) -> None:
        sender = await self._require_identity(conn)
        if sender is None:
            return
        frame = await self._parse(conn, proto.BattleStarted, data)
        if frame is None:
            return

        event = proto.battle_started_frame(frame.battle_id, sender, frame.battle_mode)
        if await self.delivery.to_user(frame.opponent_user_id, event):
            log.info("Battle %s started between user %s and user %s", frame.battle_id, sender, frame.opponent_user_id)
        await self.delivery.send(conn, proto.confirmed_frame(proto.T_BATTLE_STARTED, frame.battle_id))

    async def _handle_battle_phase_update(self, conn: Connection, data: Dict[str, Any]) -> None:
        sender = await self._require_identity(conn)
        if sender is None:
            return
        frame = await self._parse(conn, proto.BattlePhaseUpdate, data)
        if frame is None:
            return

        event = proto.battle_phase_update_frame(
            frame.battle_id,
            frame.phase,
            player_card=frame.player_card,
            opponent_card=frame.opponent_card,
            phase_winner=frame.phase_winner,
        )
        await self.delivery.to_user(frame.opponent_user_id, event)
        log.debug("Battle %s phase %s update from user %s", frame.battle_id, frame.phase, sender)

    async def _handle_battle_ended(self, conn: Connection, data: Dict[str, Any]) -> None:
        sender = await self._require_identity(conn)
        if sender is None:
            return
        frame = await self._parse(conn, proto.BattleEnded, data)
        if frame is None:
            return

        event = proto.battle_ended_frame(
            frame.battle_id, frame.winner_user_id, frame.player_wins, frame.opponent_wins
        )
        await self.delivery.to_user(frame.opponent_user_id, event)
        winner = frame.winner_user_id if frame.winner_user_id is not None else "draw"
        log.info("Battle %s ended, winner: %s", frame.battle_id, winner)
        await self.delivery.send(conn, proto.confirmed_frame(proto.T_BATTLE_ENDED, frame.battle_id))

    # ------------------------------------------------------------------
    # Misc
    # ------------------------------------------------------------------

    async def _handle_ping(self, conn: Connection, data: Dict[str, Any]) -> None:
        await self.delivery.send(conn, proto.pong_frame())

    async def _require_identity(self, conn: Connection) -> Optional[int]:
        user_id = self.registry.identity_of(conn)
        if user_id is None:
            await self._send_error(conn, proto.E_NOT_AUTHENTICATED)
        return user_id

    async def _parse(self, conn: Connection, model: Type[proto.FrameT], data: Dict[str, Any]) -> Optional[proto.FrameT]:
        try:
            return proto.parse_fields(model, data)
        except proto.ProtocolError as exc:
            await self._send_error(conn, exc.message)
            return None

    async def _send_error(self, conn: Connection, message: str) -> None:
        await self.delivery.send(conn, proto.error_frame(message))

    async def _send_auth_error(self, conn: Connection, message: str) -> None:
        await self.delivery.send(conn, proto.auth_error_frame(message))


__all__ = ["Relay"]
