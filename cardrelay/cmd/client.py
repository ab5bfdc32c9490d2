from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from typing import Any, Dict, Optional

import websockets
from websockets.asyncio.client import ClientConnection

from cardrelay.core import proto

log = logging.getLogger("cardrelay.cmd.client")

HELP = "Commands: /msg <user_id> <text>, /typing <user_id> [off], /ping, /quit"


class ClientApp:
    """Line-oriented client for poking at a running relay."""

    def __init__(self, server_url: str, token: str) -> None:
        self.server_url = server_url
        self.token = token
        self.ws: Optional[ClientConnection] = None
        self.user_id: Optional[int] = None
        self.stop_event = asyncio.Event()

    async def run(self) -> None:
        async with websockets.connect(self.server_url) as ws:
            self.ws = ws
            await self._send_frame(proto.T_AUTHENTICATE, auth_token=self.token)
            receiver = asyncio.create_task(self._rx_loop())
            try:
                await self._command_loop()
            finally:
                self.stop_event.set()
                receiver.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await receiver

    async def _command_loop(self) -> None:
        loop = asyncio.get_running_loop()
        print(f"Relay client ready. {HELP}")
        while not self.stop_event.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if line:
                await self._handle_command(line)

    async def _handle_command(self, line: str) -> None:
        parts = line.split()
        cmd = parts[0]
        if cmd == "/msg" and len(parts) >= 3 and parts[1].isdigit():
            text = line.split(" ", 2)[2]
            await self._send_frame(proto.T_CHAT_MESSAGE, recipient_user_id=int(parts[1]), message_text=text)
        elif cmd == "/typing" and len(parts) >= 2 and parts[1].isdigit():
            is_typing = not (len(parts) > 2 and parts[2] == "off")
            await self._send_frame(proto.T_TYPING, recipient_user_id=int(parts[1]), is_typing=is_typing)
        elif cmd == "/ping":
            await self._send_frame(proto.T_PING)
        elif cmd in {"/quit", "/exit"}:
            self.stop_event.set()
        else:
            print(HELP)

    async def _rx_loop(self) -> None:
        assert self.ws is not None
        try:
            async for raw in self.ws:
                try:
                    frame = proto.decode_frame(raw)
                except proto.ProtocolError:
                    log.warning("Dropped invalid frame: %s", raw)
                    continue
                self._handle_incoming(frame)
        except websockets.ConnectionClosed:
            pass
        finally:
            self.stop_event.set()

    def _handle_incoming(self, frame: Dict[str, Any]) -> None:
        typ = frame["type"]
        if typ == proto.T_AUTHENTICATED:
            self.user_id = frame.get("user_id")
            print(f"authenticated as user {self.user_id} (code {frame.get('user_code')})")
        elif typ in {proto.T_AUTH_ERROR, proto.T_ERROR}:
            print(f"{typ}: {frame.get('message')}")
        elif typ == proto.T_CHAT_MESSAGE:
            message = frame.get("message")
            if isinstance(message, dict):
                sender = message.get("sender_username") or message.get("sender_user_code")
                text = message.get("message_text")
            else:
                sender, text = frame.get("sender_user_id"), frame.get("message_text")
            print(f"[{sender}] {text}")
        elif typ == proto.T_TYPING:
            state = "is typing" if frame.get("is_typing") else "stopped typing"
            print(f"user {frame.get('user_id')} {state}")
        elif typ == proto.T_PONG:
            print("pong")
        else:
            print(f"{typ}: {frame}")

    async def _send_frame(self, type_: str, **fields: Any) -> None:
        assert self.ws is not None
        await self.ws.send(proto.encode_frame({"type": type_, **fields}))


async def _main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Relay debug client")
    parser.add_argument("--server", required=True, help="ws://host:port of the relay")
    parser.add_argument("--token", required=True, help="User code or signed user_id:timestamp:signature token")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    app = ClientApp(args.server, args.token)
    await app.run()


def main(argv: list[str] | None = None) -> None:
    asyncio.run(_main(argv))


if __name__ == "__main__":
    main()
