from __future__ import annotations

import json
from pathlib import Path
from typing import Any, List, Optional

from web3 import Web3

from dex_arb_monitor.arbitrage.config import RouterProtocol, Venue

# Minimal read-only ABIs. A full router ABI json can be supplied instead.
V2_ROUTER_ABI: List[Any] = [
    {
        "name": "getAmountsOut",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "path", "type": "address[]"},
        ],
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
    },
]

V3_QUOTER_ABI: List[Any] = [
    {
        "name": "quoteExactInputSingle",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "tokenIn", "type": "address"},
            {"name": "tokenOut", "type": "address"},
            {"name": "fee", "type": "uint24"},
            {"name": "amountIn", "type": "uint256"},
            {"name": "sqrtPriceLimitX96", "type": "uint160"},
        ],
        "outputs": [{"name": "amountOut", "type": "uint256"}],
    },
]


def load_abi_json(path: Path) -> List[Any]:
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(raw, dict) and "abi" in raw:
        raw = raw["abi"]
    if not isinstance(raw, list):
        raise TypeError(f"ABI json must be a list or {{'abi': list}}: {path}")
    return raw


def router_contract(web3: Web3, venue: Venue, abi_path: Optional[Path] = None) -> Any:
    """
    Build the read-only contract used to quote on `venue`.
    abi_path only applies to V2 routers.
    """
    address = Web3.to_checksum_address(venue.router_address)
    if venue.protocol == RouterProtocol.V3:
        return web3.eth.contract(address=address, abi=V3_QUOTER_ABI)

    abi = load_abi_json(abi_path) if abi_path is not None else V2_ROUTER_ABI
    return web3.eth.contract(address=address, abi=abi)


def call_amount_out(contract: Any, venue: Venue, amount_in: int, path: List[str]) -> Any:
    """
    Blocking eth_call returning the raw decoded output:
      v2: uint256[] (last element is the output amount)
      v3: uint256
    """
    if venue.protocol == RouterProtocol.V3:
        token_in, token_out = path[0], path[-1]
        return contract.functions.quoteExactInputSingle(
            token_in, token_out, int(venue.fee_tier), int(amount_in), 0
        ).call()
    return contract.functions.getAmountsOut(int(amount_in), list(path)).call()


def extract_amount_out(raw: Any, venue: Venue) -> int:
    """Raise ValueError/TypeError when the decoded output has the wrong shape."""
    if venue.protocol == RouterProtocol.V3:
        if isinstance(raw, (list, tuple)):
            # QuoterV2 returns (amountOut, sqrtPriceX96After, ticksCrossed, gasEstimate)
            raw = raw[0]
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise TypeError(f"expected uint256, got {type(raw).__name__}")
        return raw

    if not isinstance(raw, (list, tuple)) or len(raw) < 2:
        raise ValueError(f"expected uint256[] with >= 2 entries, got {raw!r}")
    out = raw[-1]
    if isinstance(out, bool) or not isinstance(out, int):
        raise TypeError(f"expected uint256, got {type(out).__name__}")
    return out
