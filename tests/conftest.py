"""
Pytest configuration and fixtures for the monitor tests.
"""

import logging
import sys
from decimal import Decimal
from pathlib import Path

import pytest

# Ensure "src" is on sys.path so that "dex_arb_monitor" can be imported
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from dex_arb_monitor.arbitrage.config import (  # noqa: E402
    AssetPair,
    EvaluationThresholds,
    MonitorConfig,
    Token,
    Venue,
)

ALPHA_ROUTER = "0xa5E0829CaCEd8fFDD4De3c43696c57F7D7A678ff"
BETA_ROUTER = "0x1b02dA8Cb0d097eB8D57A175b88c7D8b47997506"
WETH = "0x7ceB23fD6bC0adD59E62ac25578270cFf1b9f619"
USDC = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"


@pytest.fixture
def thresholds() -> EvaluationThresholds:
    return EvaluationThresholds(
        min_profit=Decimal("10.0"),
        gas_cost=Decimal("5.0"),
        trade_size=Decimal("1"),
    )


@pytest.fixture
def monitor_config(tmp_path, thresholds) -> MonitorConfig:
    """Two-venue WETH/USDC config with a fast interval for loop tests."""
    return MonitorConfig(
        rpc_url="http://127.0.0.1:8545",
        venues=(
            Venue(name="Alpha", router_address=ALPHA_ROUTER),
            Venue(name="Beta", router_address=BETA_ROUTER),
        ),
        pair=AssetPair(
            base=Token(symbol="WETH", address=WETH, decimals=18),
            quote=Token(symbol="USDC", address=USDC, decimals=6),
        ),
        thresholds=thresholds,
        poll_interval_sec=0.2,
        oracle_timeout_sec=0.1,
        db_path=tmp_path / "arbitrage.db",
    ).validate()


@pytest.fixture(autouse=True)
def _propagate_package_logs():
    # configure_monitor_logging() detaches the package logger from root,
    # which would hide records from caplog
    pkg = logging.getLogger("dex_arb_monitor")
    old = pkg.propagate
    pkg.propagate = True
    yield
    pkg.propagate = old
