# scripts/run_monitor.py
"""
CLI entrypoint to run the arbitrage monitor example.

Usage:
    python scripts/run_monitor.py
or:
    ARB_CONFIG_PATH=./config.toml python scripts/run_monitor.py
"""

import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
EXAMPLE = ROOT / "example"

for p in (SRC, EXAMPLE):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))

from arbitrage_monitor_example import main  # type: ignore


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n\n✅ Stopped arbitrage monitor")
