from __future__ import annotations

import time
from typing import Annotated, Any, Dict, Literal, Optional, Type, TypeVar

import orjson
from pydantic import AfterValidator, BaseModel, ConfigDict, ValidationError


# ---------------------------------------------------------------------------
# Frame types
# ---------------------------------------------------------------------------

# --- client -> server ---
T_AUTHENTICATE                  = "authenticate"
T_CHAT_MESSAGE                  = "chat_message"
T_TYPING                        = "typing"
T_BATTLE_INVITATION_SENT        = "battle_invitation_sent"
T_BATTLE_INVITATION_RESPONSE    = "battle_invitation_response"
T_BATTLE_INVITATION_CANCELLED   = "battle_invitation_cancelled"
T_BATTLE_STARTED                = "battle_started"
T_BATTLE_PHASE_UPDATE           = "battle_phase_update"
T_BATTLE_ENDED                  = "battle_ended"
T_PING                          = "ping"

# --- server -> client ---
T_AUTHENTICATED                 = "authenticated"
T_AUTH_ERROR                    = "auth_error"
T_ERROR                         = "error"
T_MESSAGE_SENT                  = "message_sent"
T_PONG                          = "pong"
T_BATTLE_INVITATION             = "battle_invitation"

# --- error messages ---
E_INVALID_FORMAT                = "Invalid message format"
E_UNKNOWN_TYPE                  = "Unknown message type"
E_NOT_AUTHENTICATED             = "Not authenticated"
E_MISSING_FIELDS                = "Missing required fields"
E_TOKEN_REQUIRED                = "Auth token required"
E_INVALID_TOKEN                 = "Invalid auth token"
E_ALREADY_AUTHENTICATED         = "Already authenticated"

STATUS_CONFIRMED                = "confirmed"


class ProtocolError(ValueError):
    """A frame that cannot be handled; ``message`` is sent back to the client."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# ---------------------------------------------------------------------------
# Inbound frame models
# ---------------------------------------------------------------------------

def _present(value: Any) -> Any:
    if value is None:
        raise ValueError("value is required")
    return value


# Any JSON value except null
Present = Annotated[Any, AfterValidator(_present)]


class Frame(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str


class Authenticate(Frame):
    auth_token: str


class ChatMessage(Frame):
    recipient_user_id: int
    message_text: str


class Typing(Frame):
    recipient_user_id: int
    is_typing: bool = True


class BattleInvitationSent(Frame):
    recipient_user_id: int
    invitation: Dict[str, Any]


class BattleInvitationResponse(Frame):
    sender_user_id: int
    response: Literal["accepted", "declined"]
    invitation_id: Present


class BattleInvitationCancelled(Frame):
    recipient_user_id: int
    invitation_id: Present


class BattleStarted(Frame):
    opponent_user_id: int
    battle_id: Present
    battle_mode: Any = 1


class BattlePhaseUpdate(Frame):
    opponent_user_id: int
    battle_id: Present
    phase: Present
    player_card: Any = None
    opponent_card: Any = None
    phase_winner: Any = None


class BattleEnded(Frame):
    opponent_user_id: int
    battle_id: Present
    winner_user_id: Optional[int] = None
    player_wins: int = 0
    opponent_wins: int = 0


FrameT = TypeVar("FrameT", bound=Frame)


# ---------------------------------------------------------------------------
# Encoding / decoding
# ---------------------------------------------------------------------------

def decode_frame(raw: str | bytes) -> Dict[str, Any]:
    """Parse a raw text frame into a dict carrying a string ``type``."""

    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise ProtocolError(E_INVALID_FORMAT) from exc
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise ProtocolError(E_INVALID_FORMAT)
    return data


def parse_fields(model: Type[FrameT], data: Dict[str, Any]) -> FrameT:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ProtocolError(E_MISSING_FIELDS) from exc


def encode_frame(frame: Dict[str, Any]) -> str:
    return orjson.dumps(frame).decode("utf-8")


def now_sql() -> str:
    """Local wall-clock time in the ``YYYY-MM-DD HH:MM:SS`` form used by stored messages."""

    return time.strftime("%Y-%m-%d %H:%M:%S")


# ---------------------------------------------------------------------------
# Outbound frames
# ---------------------------------------------------------------------------

def error_frame(message: str) -> Dict[str, Any]:
    return {"type": T_ERROR, "message": message}


def auth_error_frame(message: str) -> Dict[str, Any]:
    return {"type": T_AUTH_ERROR, "message": message}


def authenticated_frame(user_id: int, user_code: Optional[str]) -> Dict[str, Any]:
    return {"type": T_AUTHENTICATED, "user_id": user_id, "user_code": user_code}


def pong_frame() -> Dict[str, Any]:
    return {"type": T_PONG}


def chat_envelope(
    sender_user_id: int,
    recipient_user_id: int,
    message_text: str,
    *,
    sent_at: str | None = None,
) -> Dict[str, Any]:
    return {
        "type": T_CHAT_MESSAGE,
        "sender_user_id": sender_user_id,
        "recipient_user_id": recipient_user_id,
        "message_text": message_text,
        "sent_at": now_sql() if sent_at is None else sent_at,
    }


def message_sent_frame(envelope: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": T_MESSAGE_SENT, "data": envelope}


def typing_frame(user_id: int, is_typing: bool) -> Dict[str, Any]:
    return {"type": T_TYPING, "user_id": user_id, "is_typing": is_typing}


def queued_chat_frame(message: Dict[str, Any]) -> Dict[str, Any]:
    """Frame for a chat message persisted by the HTTP side and picked up from the queue."""

    return {"type": T_CHAT_MESSAGE, "message": message}


def battle_invitation_frame(invitation: Dict[str, Any], sender_user_id: int) -> Dict[str, Any]:
    return {"type": T_BATTLE_INVITATION, "invitation": invitation, "sender_user_id": sender_user_id}


def battle_invitation_response_frame(invitation_id: Any, response: str, responder_user_id: int) -> Dict[str, Any]:
    return {
        "type": T_BATTLE_INVITATION_RESPONSE,
        "invitation_id": invitation_id,
        "response": response,
        "responder_user_id": responder_user_id,
    }


def battle_invitation_cancelled_frame(invitation_id: Any, cancelled_by_user_id: int) -> Dict[str, Any]:
    return {
        "type": T_BATTLE_INVITATION_CANCELLED,
        "invitation_id": invitation_id,
        "cancelled_by_user_id": cancelled_by_user_id,
    }


def battle_started_frame(battle_id: Any, opponent_user_id: int, battle_mode: Any = 1) -> Dict[str, Any]:
    return {
        "type": T_BATTLE_STARTED,
        "battle_id": battle_id,
        "opponent_user_id": opponent_user_id,
        "battle_mode": battle_mode,
    }


def battle_phase_update_frame(
    battle_id: Any,
    phase: Any,
    *,
    player_card: Any = None,
    opponent_card: Any = None,
    phase_winner: Any = None,
) -> Dict[str, Any]:
    return {
        "type": T_BATTLE_PHASE_UPDATE,
        "battle_id": battle_id,
        "phase": phase,
        "player_card": player_card,
        "opponent_card": opponent_card,
        "phase_winner": phase_winner,
    }


def battle_ended_frame(
    battle_id: Any,
    winner_user_id: Optional[int],
    player_wins: int = 0,
    opponent_wins: int = 0,
) -> Dict[str, Any]:
    return {
        "type": T_BATTLE_ENDED,
        "battle_id": battle_id,
        "winner_user_id": winner_user_id,
        "player_wins": player_wins,
        "opponent_wins": opponent_wins,
    }


def confirmed_frame(type_: str, battle_id: Any) -> Dict[str, Any]:
    return {"type": type_, "battle_id": battle_id, "status": STATUS_CONFIRMED}


__all__ = [
    "ProtocolError",
    "Frame",
    "Authenticate",
    "ChatMessage",
    "Typing",
    "BattleInvitationSent",
    "BattleInvitationResponse",
    "BattleInvitationCancelled",
    "BattleStarted",
    "BattlePhaseUpdate",
    "BattleEnded",
    "decode_frame",
    "parse_fields",
    "encode_frame",
    "now_sql",
]
