"""
Price oracle clients: sample one venue for one trade size.

A quote is the output amount (quote asset) returned by a venue for a fixed
input amount of the base asset. Clients keep no state between calls; every
failure is raised as an OracleFailure subclass so the scheduler can skip the
cycle without stopping.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from functools import partial
from typing import Any, Callable, Dict, Optional

from eth_abi.exceptions import DecodingError
from requests.exceptions import RequestException
from web3 import Web3
from web3 import exceptions as w3_exceptions

from .config import MonitorConfig, Venue
from .dex.routers.amm_quoter import call_amount_out, extract_amount_out, router_contract
from .errors import Malformed, OracleFailure, Reverted, Unreachable
from .pairs import from_base_units, swap_path, to_base_units

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Quote:
    """
    One sample of one venue.

    Attributes:
        venue: venue name
        input_amount: base-asset amount sold (human units)
        output_amount: quote-asset amount received (human units)
        timestamp: when the sample was taken (UTC)
    """

    venue: str
    input_amount: Decimal
    output_amount: Decimal
    timestamp: datetime

    def __str__(self) -> str:
        return f"{self.venue}: {self.input_amount} -> {self.output_amount} @ {self.timestamp.isoformat()}"


class PriceOracleClient(abc.ABC):
    """
    Abstract base class for price oracle clients.

    Implementations must raise Unreachable / Malformed / Reverted instead of
    returning sentinel values.
    """

    def __init__(self, venues: Dict[str, Venue]) -> None:
        self._venues = dict(venues)

    def _check_request(self, venue: str, input_amount: Decimal) -> Venue:
        if venue not in self._venues:
            raise ValueError(f"Venue is not configured: {venue}")
        if input_amount <= 0:
            raise ValueError(f"input_amount must be > 0, got {input_amount}")
        return self._venues[venue]

    @abc.abstractmethod
    async def quote(self, venue: str, input_amount: Decimal) -> Quote:
        """Return the output amount for `input_amount` of base on `venue`."""
        raise NotImplementedError


_RPC_ERROR = getattr(w3_exceptions, "Web3RPCError", None)


def classify_call_error(venue: str, exc: BaseException) -> OracleFailure:
    """
    Map web3 / transport exceptions to the oracle failure taxonomy.
    """
    if isinstance(exc, OracleFailure):
        return exc

    if isinstance(exc, w3_exceptions.ContractLogicError):
        return Reverted(venue, str(exc), cause=exc)

    if isinstance(exc, (w3_exceptions.BadFunctionCallOutput, DecodingError)):
        return Malformed(venue, str(exc), cause=exc)

    if isinstance(exc, (RequestException, ConnectionError, asyncio.TimeoutError)):
        return Unreachable(venue, str(exc) or type(exc).__name__, cause=exc)

    if _RPC_ERROR is not None and isinstance(exc, _RPC_ERROR):
        return _classify_rpc_message(venue, str(exc), exc)

    if isinstance(exc, ValueError) and exc.args and isinstance(exc.args[0], dict):
        # web3 v6 raises JSON-RPC error objects as ValueError({...})
        return _classify_rpc_message(venue, str(exc.args[0].get("message", exc.args[0])), exc)

    if isinstance(exc, (ValueError, TypeError)):
        return Malformed(venue, str(exc), cause=exc)

    return Unreachable(venue, f"{type(exc).__name__}: {exc}", cause=exc)


def _classify_rpc_message(venue: str, message: str, exc: BaseException) -> OracleFailure:
    if "revert" in message.lower():
        return Reverted(venue, message, cause=exc)
    return Unreachable(venue, message, cause=exc)


class RouterPriceOracle(PriceOracleClient):
    """
    Quotes venues through read-only router / quoter calls (eth_call).

    The web3 call is blocking, so it runs in the default executor and is
    bounded by `timeout_sec`.
    """

    def __init__(
        self,
        web3: Web3,
        config: MonitorConfig,
        clock: Clock = utc_now,
        timeout_sec: Optional[float] = None,
    ) -> None:
        super().__init__({v.name: v for v in config.venues})
        self._pair = config.pair
        self._path = swap_path(config.pair)
        self._timeout = float(timeout_sec if timeout_sec is not None else config.oracle_timeout_sec)
        self._clock = clock
        self._contracts: Dict[str, Any] = {
            v.name: router_contract(web3, v, config.router_abi_path) for v in config.venues
        }

        logger.info(
            "Oracle ready pair=%s venues=%s timeout=%.2fs",
            self._pair.symbol,
            ",".join(self._venues),
            self._timeout,
        )

    def _quote_sync(self, venue: Venue, amount_in: int) -> int:
        raw = call_amount_out(self._contracts[venue.name], venue, amount_in, self._path)
        try:
            return extract_amount_out(raw, venue)
        except (TypeError, ValueError, IndexError) as exc:
            raise Malformed(venue.name, str(exc), cause=exc) from exc

    async def quote(self, venue: str, input_amount: Decimal) -> Quote:
        v = self._check_request(venue, input_amount)
        amount_in = to_base_units(input_amount, self._pair.base)

        loop = asyncio.get_running_loop()
        try:
            amount_out = await asyncio.wait_for(
                loop.run_in_executor(None, partial(self._quote_sync, v, amount_in)),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise Unreachable(venue, f"timed out after {self._timeout:.2f}s", cause=exc) from exc
        except OracleFailure:
            raise
        except Exception as exc:
            raise classify_call_error(venue, exc) from exc

        if amount_out <= 0:
            raise Reverted(venue, "zero output amount (no liquidity)")

        q = Quote(
            venue=venue,
            input_amount=input_amount,
            output_amount=from_base_units(amount_out, self._pair.quote),
            timestamp=self._clock(),
        )
        logger.debug("quote %s raw_out=%s", q, amount_out)
        return q
