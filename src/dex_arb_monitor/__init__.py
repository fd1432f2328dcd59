from __future__ import annotations

"""
Root package for the dex_arb_monitor library.

Re-exports the main monitor types for convenience.
"""

from .arbitrage import (
    ArbitrageEvaluator,
    MonitorConfig,
    Opportunity,
    OpportunityStore,
    PollingScheduler,
    load_config,
    run_arbitrage_monitor,
)

__all__ = [
    "ArbitrageEvaluator",
    "MonitorConfig",
    "Opportunity",
    "OpportunityStore",
    "PollingScheduler",
    "load_config",
    "run_arbitrage_monitor",
]
