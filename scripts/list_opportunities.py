# scripts/list_opportunities.py
"""
Print opportunities recorded by the monitor.

Usage:
    python scripts/list_opportunities.py [path/to/arbitrage.db] [--recent N]
"""

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from dex_arb_monitor.arbitrage.store import OpportunityStore


def main(argv: list[str]) -> int:
    args = list(argv)
    recent = None
    if "--recent" in args:
        i = args.index("--recent")
        recent = int(args[i + 1])
        del args[i : i + 2]

    store = OpportunityStore(args[0] if args else "arbitrage.db")
    rows = store.list_recent(recent) if recent is not None else store.list_all()

    print(f"{'id':>6}  {'buy_dex':<16} {'sell_dex':<16} {'profit':>16}  timestamp")
    for opp in rows:
        print(
            f"{opp.id:>6}  {opp.buy_venue:<16} {opp.sell_venue:<16} "
            f"{str(opp.net_profit):>16}  {opp.timestamp.isoformat()}"
        )
    print(f"\ntotal={store.count()}")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
