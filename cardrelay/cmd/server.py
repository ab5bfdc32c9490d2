from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from cardrelay.config import ConfigError, RelayConfig, load_config
from cardrelay.server.runtime import ServerRuntime

log = logging.getLogger("cardrelay.cmd.server")


async def _run(config: RelayConfig) -> None:
    runtime = ServerRuntime(config)
    await runtime.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        pass

    log.info("Server running. Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    finally:
        await runtime.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Chat and battle notification relay")
    parser.add_argument("--config", default=None, help="Path to server YAML config")
    parser.add_argument("--log-level", default=None, help="Overrides log_level from the config")
    args = parser.parse_args(argv)

    try:
        config = load_config(Path(args.config) if args.config else None)
    except ConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(2)

    level = (args.log_level or config.log_level).upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    asyncio.run(_run(config))


if __name__ == "__main__":
    main()
