# src/dex_arb_monitor/arbitrage/__init__.py
from __future__ import annotations

"""
Cross-venue arbitrage monitoring.

Public API:
- PriceOracleClient / RouterPriceOracle / Quote
- ArbitrageEvaluator / Opportunity
- OpportunityStore
- PollingScheduler / run_arbitrage_monitor
- MonitorConfig / load_config (for monitor config)
"""

from .arbitrage_detector import ArbitrageEvaluator, Opportunity
from .bot import PollingScheduler, configure_monitor_logging, run_arbitrage_monitor
from .config import (
    AssetPair,
    EvaluationThresholds,
    MonitorConfig,
    RouterProtocol,
    Token,
    Venue,
    load_config,
)
from .oracle import PriceOracleClient, Quote, RouterPriceOracle
from .store import OpportunityStore

__all__ = [
    "ArbitrageEvaluator",
    "Opportunity",
    "PollingScheduler",
    "configure_monitor_logging",
    "run_arbitrage_monitor",
    "AssetPair",
    "EvaluationThresholds",
    "MonitorConfig",
    "RouterProtocol",
    "Token",
    "Venue",
    "load_config",
    "PriceOracleClient",
    "Quote",
    "RouterPriceOracle",
    "OpportunityStore",
]
