# tests/test_relay.py
import asyncio

import pytest

from cardrelay.core import proto
from cardrelay.core.auth import mint_token
from cardrelay.server.relay import Relay


# -----------------------------
# Framing
# -----------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("raw", ["not json", "[1, 2]", '{"no_type": 1}', '{"type": 5}'])
async def test_undecodable_frame_gets_format_error(relay, connect, raw):
    conn = connect()
    await relay.handle_raw(conn, raw)
    assert conn.websocket.sent == [{"type": "error", "message": "Invalid message format"}]


@pytest.mark.asyncio
@pytest.mark.parametrize("authenticated", [False, True])
async def test_unknown_type_gets_error(relay, connect, login, authenticated):
    """Only the sender hears about an unknown type, logged in or not."""
    bob = await login(2)
    conn = await login(1) if authenticated else connect()

    await relay.handle_raw(conn, '{"type": "teleport", "recipient_user_id": 2}')

    assert conn.websocket.sent == [{"type": "error", "message": "Unknown message type"}]
    assert bob.websocket.sent == []


@pytest.mark.asyncio
async def test_ping_works_unauthenticated(relay, connect):
    conn = connect()
    await relay.handle_raw(conn, '{"type": "ping"}')
    assert conn.websocket.sent == [{"type": "pong"}]


@pytest.mark.asyncio
async def test_handler_crash_keeps_connection_usable(relay, login, registry, caplog):
    alice = await login(1)

    async def explode(conn, data):
        raise RuntimeError("boom")

    relay._handlers["chat_message"] = explode
    await relay.handle_raw(alice, '{"type": "chat_message", "recipient_user_id": 2, "message_text": "hi"}')
    await relay.handle_raw(alice, '{"type": "ping"}')

    assert alice.websocket.sent == [{"type": "pong"}]
    assert registry.identity_of(alice) == 1
    assert "Handling chat_message" in caplog.text


# -----------------------------
# Authentication
# -----------------------------

@pytest.mark.asyncio
async def test_authenticate_with_user_code(relay, connect, registry):
    conn = connect()
    await relay.dispatch(conn, {"type": "authenticate", "auth_token": "ALICE001"})

    assert conn.websocket.sent == [{"type": "authenticated", "user_id": 1, "user_code": "ALICE001"}]
    assert registry.identity_of(conn) == 1


@pytest.mark.asyncio
async def test_authenticate_with_signed_token(relay, connect, registry, secret):
    conn = connect()
    await relay.dispatch(conn, {"type": "authenticate", "auth_token": mint_token(2, secret)})

    assert conn.websocket.sent[-1]["user_id"] == 2
    assert registry.is_online(2)


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [{}, {"auth_token": None}, {"auth_token": 42}])
async def test_authenticate_without_token(relay, connect, registry, payload):
    conn = connect()
    await relay.dispatch(conn, {"type": "authenticate", **payload})

    assert conn.websocket.sent == [{"type": "auth_error", "message": "Auth token required"}]
    assert registry.identity_of(conn) is None


@pytest.mark.asyncio
@pytest.mark.parametrize("token", ["", "NOBODY", "GHOST004"])
async def test_authenticate_with_bad_token(relay, connect, registry, token):
    conn = connect()
    await relay.dispatch(conn, {"type": "authenticate", "auth_token": token})

    assert conn.websocket.sent == [{"type": "auth_error", "message": "Invalid auth token"}]
    assert registry.identity_of(conn) is None


@pytest.mark.asyncio
async def test_reauthentication_rejected(relay, login, registry):
    """Once bound, a connection keeps its identity even when shown another valid token."""
    conn = await login(1)
    await relay.dispatch(conn, {"type": "authenticate", "auth_token": "BOB00002"})

    assert conn.websocket.sent == [{"type": "auth_error", "message": "Already authenticated"}]
    assert registry.identity_of(conn) == 1
    assert not registry.is_online(2)


@pytest.mark.asyncio
async def test_authenticated_reply_without_user_code(relay, connect, users, registry):
    """A failing code lookup still authenticates, with a null user_code."""
    conn = connect()

    class FlakyCode:
        def __init__(self, inner):
            self.inner = inner

        def __getattr__(self, name):
            return getattr(self.inner, name)

        async def code_for(self, user_id):
            raise RuntimeError("lookup down")

    relay.users = FlakyCode(users)
    await relay.dispatch(conn, {"type": "authenticate", "auth_token": "CAROL003"})

    assert conn.websocket.sent == [{"type": "authenticated", "user_id": 3, "user_code": None}]
    assert registry.is_online(3)


@pytest.mark.asyncio
async def test_connection_closed_during_auth_is_not_registered(registry, delivery, users, connect):
    """Verification finishing after the socket closed must not bring the user online."""
    gate = asyncio.Event()

    class SlowVerifier:
        async def verify(self, credential):
            await gate.wait()
            return 1

    relay = Relay(registry, delivery, SlowVerifier(), users, lookup_timeout=1.0)
    conn = connect()
    task = asyncio.create_task(relay.dispatch(conn, {"type": "authenticate", "auth_token": "ALICE001"}))
    await asyncio.sleep(0)

    relay.on_close(conn)
    gate.set()
    await task

    assert not registry.is_online(1)
    assert conn.websocket.sent == []


@pytest.mark.asyncio
async def test_directory_outage_rejects_auth(relay, connect, users):
    users.broken = True
    conn = connect()
    await relay.dispatch(conn, {"type": "authenticate", "auth_token": "ALICE001"})
    assert conn.websocket.sent == [{"type": "auth_error", "message": "Invalid auth token"}]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "frame",
    [
        {"type": "chat_message", "recipient_user_id": 2, "message_text": "hi"},
        {"type": "battle_invitation_sent", "recipient_user_id": 2, "invitation": {}},
        {"type": "battle_invitation_response", "sender_user_id": 2, "invitation_id": 1, "response": "accepted"},
        {"type": "battle_invitation_cancelled", "recipient_user_id": 2, "invitation_id": 1},
        {"type": "battle_started", "opponent_user_id": 2, "battle_id": 1},
        {"type": "battle_phase_update", "opponent_user_id": 2, "battle_id": 1, "phase": 1},
        {"type": "battle_ended", "opponent_user_id": 2, "battle_id": 1},
    ],
)
async def test_unauthenticated_actions_rejected(relay, connect, login, frame):
    bob = await login(2)
    conn = connect()
    await relay.dispatch(conn, frame)

    assert conn.websocket.sent == [{"type": "error", "message": "Not authenticated"}]
    assert bob.websocket.sent == []


# -----------------------------
# Chat
# -----------------------------

@pytest.mark.asyncio
async def test_chat_reaches_every_recipient_device_and_confirms(relay, login):
    alice = await login(1)
    bob_phone, bob_laptop = await login(2), await login(2)

    await relay.dispatch(alice, {"type": "chat_message", "recipient_user_id": 2, "message_text": "hello"})

    for device in (bob_phone, bob_laptop):
        [msg] = device.websocket.sent
        assert msg["type"] == "chat_message"
        assert msg["sender_user_id"] == 1
        assert msg["recipient_user_id"] == 2
        assert msg["message_text"] == "hello"
        assert isinstance(msg["sent_at"], str)

    [ack] = alice.websocket.sent
    assert ack == {"type": "message_sent", "data": bob_phone.websocket.sent[0]}


@pytest.mark.asyncio
async def test_chat_to_offline_user_still_confirms(relay, login):
    alice = await login(1)
    await relay.dispatch(alice, {"type": "chat_message", "recipient_user_id": 3, "message_text": "hey"})

    [ack] = alice.websocket.sent
    assert ack["type"] == "message_sent"
    assert ack["data"]["recipient_user_id"] == 3


@pytest.mark.asyncio
async def test_sender_identity_comes_from_connection(relay, login):
    alice, bob = await login(1), await login(2)
    await relay.dispatch(
        alice,
        {"type": "chat_message", "recipient_user_id": 2, "message_text": "x", "sender_user_id": 99},
    )
    assert bob.websocket.sent[0]["sender_user_id"] == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "frame",
    [
        {"type": "chat_message", "message_text": "hi"},
        {"type": "chat_message", "recipient_user_id": 2},
        {"type": "chat_message", "recipient_user_id": None, "message_text": "hi"},
        {"type": "chat_message", "recipient_user_id": 2, "message_text": None},
    ],
)
async def test_chat_missing_fields(relay, login, frame):
    alice, bob = await login(1), await login(2)
    await relay.dispatch(alice, frame)

    assert alice.websocket.sent == [{"type": "error", "message": "Missing required fields"}]
    assert bob.websocket.sent == []


@pytest.mark.asyncio
async def test_dead_device_does_not_block_others(relay, login, registry):
    alice = await login(1)
    dead, live = await login(2), await login(2)
    dead.websocket.closed = True

    await relay.dispatch(alice, {"type": "chat_message", "recipient_user_id": 2, "message_text": "ping"})

    assert len(live.websocket.sent) == 1
    assert alice.websocket.of_type("message_sent")


# -----------------------------
# Typing
# -----------------------------

@pytest.mark.asyncio
async def test_typing_forwarded(relay, login):
    alice, bob = await login(1), await login(2)
    await relay.dispatch(alice, {"type": "typing", "recipient_user_id": 2, "is_typing": False})

    assert bob.websocket.sent == [{"type": "typing", "user_id": 1, "is_typing": False}]
    assert alice.websocket.sent == []


@pytest.mark.asyncio
async def test_typing_defaults_to_true(relay, login):
    alice, bob = await login(1), await login(2)
    await relay.dispatch(alice, {"type": "typing", "recipient_user_id": 2})
    assert bob.websocket.sent == [{"type": "typing", "user_id": 1, "is_typing": True}]


@pytest.mark.asyncio
async def test_typing_failures_are_silent(relay, connect, login):
    anon = connect()
    alice = await login(1)

    await relay.dispatch(anon, {"type": "typing", "recipient_user_id": 1})
    await relay.dispatch(alice, {"type": "typing"})

    assert anon.websocket.sent == []
    assert alice.websocket.sent == []


@pytest.mark.asyncio
@pytest.mark.parametrize("recipient", [99, 3])
async def test_typing_to_unknown_or_offline_user_is_silent(relay, login, recipient):
    alice = await login(1)
    await relay.dispatch(alice, {"type": "typing", "recipient_user_id": recipient})
    assert alice.websocket.sent == []


@pytest.mark.asyncio
async def test_typing_with_non_boolean_flag_is_dropped(relay, login):
    alice, bob = await login(1), await login(2)
    await relay.dispatch(alice, {"type": "typing", "recipient_user_id": 2, "is_typing": "maybe"})

    assert bob.websocket.sent == []
    assert alice.websocket.sent == []


# -----------------------------
# Battles
# -----------------------------

@pytest.mark.asyncio
async def test_battle_invitation_sent(relay, login):
    alice, bob = await login(1), await login(2)
    invitation = {"id": 10, "mode": "ranked"}
    await relay.dispatch(alice, {"type": "battle_invitation_sent", "recipient_user_id": 2, "invitation": invitation})

    assert bob.websocket.sent == [{"type": "battle_invitation", "invitation": invitation, "sender_user_id": 1}]
    assert alice.websocket.sent == []


@pytest.mark.asyncio
async def test_battle_invitation_to_offline_user_is_silent(relay, login):
    alice = await login(1)
    await relay.dispatch(alice, {"type": "battle_invitation_sent", "recipient_user_id": 3, "invitation": {"id": 1}})
    assert alice.websocket.sent == []


@pytest.mark.asyncio
async def test_battle_invitation_response(relay, login):
    alice, bob = await login(1), await login(2)
    await relay.dispatch(
        bob,
        {"type": "battle_invitation_response", "sender_user_id": 1, "invitation_id": 10, "response": "declined"},
    )
    assert alice.websocket.sent == [
        {"type": "battle_invitation_response", "invitation_id": 10, "response": "declined", "responder_user_id": 2}
    ]


@pytest.mark.asyncio
async def test_battle_invitation_response_rejects_unknown_answer(relay, login):
    alice, bob = await login(1), await login(2)
    await relay.dispatch(
        bob,
        {"type": "battle_invitation_response", "sender_user_id": 1, "invitation_id": 10, "response": "maybe"},
    )
    assert bob.websocket.sent == [{"type": "error", "message": "Missing required fields"}]
    assert alice.websocket.sent == []


@pytest.mark.asyncio
async def test_battle_invitation_cancelled(relay, login):
    alice, bob = await login(1), await login(2)
    await relay.dispatch(alice, {"type": "battle_invitation_cancelled", "recipient_user_id": 2, "invitation_id": 10})
    assert bob.websocket.sent == [{"type": "battle_invitation_cancelled", "invitation_id": 10, "cancelled_by_user_id": 1}]


@pytest.mark.asyncio
async def test_battle_started_notifies_opponent_and_confirms(relay, login):
    alice, bob = await login(1), await login(2)
    await relay.dispatch(alice, {"type": "battle_started", "opponent_user_id": 2, "battle_id": 77, "battle_mode": 3})

    assert bob.websocket.sent == [{"type": "battle_started", "battle_id": 77, "opponent_user_id": 1, "battle_mode": 3}]
    assert alice.websocket.sent == [{"type": "battle_started", "battle_id": 77, "status": "confirmed"}]


@pytest.mark.asyncio
async def test_battle_started_default_mode_and_offline_opponent(relay, login):
    alice = await login(1)
    await relay.dispatch(alice, {"type": "battle_started", "opponent_user_id": 3, "battle_id": 5})
    assert alice.websocket.sent == [{"type": "battle_started", "battle_id": 5, "status": "confirmed"}]


@pytest.mark.asyncio
async def test_battle_phase_update(relay, login):
    alice, bob = await login(1), await login(2)
    await relay.dispatch(
        alice,
        {"type": "battle_phase_update", "opponent_user_id": 2, "battle_id": 7, "phase": 2, "player_card": {"id": 4}},
    )
    assert bob.websocket.sent == [
        {
            "type": "battle_phase_update",
            "battle_id": 7,
            "phase": 2,
            "player_card": {"id": 4},
            "opponent_card": None,
            "phase_winner": None,
        }
    ]
    assert alice.websocket.sent == []


@pytest.mark.asyncio
async def test_battle_phase_update_requires_phase(relay, login):
    alice = await login(1)
    await relay.dispatch(alice, {"type": "battle_phase_update", "opponent_user_id": 2, "battle_id": 7})
    assert alice.websocket.sent == [{"type": "error", "message": "Missing required fields"}]


@pytest.mark.asyncio
async def test_battle_ended_as_draw(relay, login):
    alice, bob = await login(1), await login(2)
    await relay.dispatch(
        alice,
        {"type": "battle_ended", "opponent_user_id": 2, "battle_id": 7, "winner_user_id": None, "player_wins": 2, "opponent_wins": 2},
    )
    assert bob.websocket.sent == [
        {"type": "battle_ended", "battle_id": 7, "winner_user_id": None, "player_wins": 2, "opponent_wins": 2}
    ]
    assert alice.websocket.sent == [{"type": "battle_ended", "battle_id": 7, "status": "confirmed"}]


@pytest.mark.asyncio
async def test_battle_ended_defaults(relay, login):
    alice, bob = await login(1), await login(2)
    await relay.dispatch(alice, {"type": "battle_ended", "opponent_user_id": 2, "battle_id": 7, "winner_user_id": 1})
    assert bob.websocket.sent[0]["player_wins"] == 0
    assert bob.websocket.sent[0]["opponent_wins"] == 0
    assert bob.websocket.sent[0]["winner_user_id"] == 1


# -----------------------------
# Disconnect
# -----------------------------

@pytest.mark.asyncio
async def test_close_takes_user_offline(relay, login, registry):
    alice = await login(1)
    relay.on_close(alice)

    assert not registry.is_online(1)
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_messages_after_close_are_not_delivered(relay, login):
    alice, bob = await login(1), await login(2)
    relay.on_close(bob)
    await relay.dispatch(alice, {"type": "chat_message", "recipient_user_id": 2, "message_text": "gone?"})

    assert bob.websocket.sent == []
    assert alice.websocket.of_type(proto.T_MESSAGE_SENT)
