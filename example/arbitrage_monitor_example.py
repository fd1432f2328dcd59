"""
Cross-DEX arbitrage monitor example.

This script:
- Loads config.toml (or $ARB_CONFIG_PATH)
- Samples both venues every `refresh_rate` seconds
- Logs and stores every opportunity above the profit threshold
"""

import asyncio
import logging
import os
import signal

from dex_arb_monitor.arbitrage.bot import run_arbitrage_monitor
from dex_arb_monitor.arbitrage.config import load_config

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


async def main() -> None:
    config = load_config(os.getenv("ARB_CONFIG_PATH", "config.toml"))

    stop_event = asyncio.Event()

    def _handle_sigint(signum, frame):
        """
        Handle Ctrl+C (SIGINT).

        First Ctrl+C:
            - Set stop_event so the monitor exits after the current cycle.
        Second Ctrl+C:
            - Raise KeyboardInterrupt to force exit.
        """
        if not stop_event.is_set():
            print("\n\n✅ Stopping arbitrage monitor gracefully...")
            stop_event.set()
        else:
            print("\n\n⛔ Force exit.")
            raise KeyboardInterrupt()

    signal.signal(signal.SIGINT, _handle_sigint)

    await run_arbitrage_monitor(config=config, stop_event=stop_event)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n\n✅ Stopped arbitrage monitor")
