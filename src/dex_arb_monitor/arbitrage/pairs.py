# src/dex_arb_monitor/arbitrage/pairs.py

from __future__ import annotations

from decimal import Decimal
from typing import List

from web3 import Web3

from .config import AssetPair, Token


def to_base_units(amount: Decimal, token: Token) -> int:
    """
    Convert a human amount to the token's integer base units.
    Raises ValueError when the amount has more precision than the token.
    """
    scaled = amount.scaleb(token.decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(
            f"{amount} {token.symbol} has more than {token.decimals} decimals"
        )
    return int(scaled)


def from_base_units(raw: int, token: Token) -> Decimal:
    """Exact conversion: no binary float on the way."""
    return Decimal(int(raw)).scaleb(-token.decimals)


def swap_path(pair: AssetPair) -> List[str]:
    # Sell base -> receive quote
    return [
        Web3.to_checksum_address(pair.base.address),
        Web3.to_checksum_address(pair.quote.address),
    ]
