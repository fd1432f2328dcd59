"""
Cross-Venue Arbitrage Evaluator

Compares quotes sampled from two venues for the same input amount and
decides whether the spread pays for the transaction cost.

Arbitrage Strategy:
- Buy on the venue that returns less quote asset (cheaper base)
- Sell on the venue that returns more quote asset
- Net profit = (high output - low output) - estimated gas cost
- Only report when net profit > minimum threshold (strict)

All arithmetic is Decimal so repeated comparisons are reproducible.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from .config import EvaluationThresholds
from .errors import IncomparableQuotes
from .oracle import Clock, Quote, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Opportunity:
    """
    A detected, threshold-qualifying price divergence.

    Attributes:
        buy_venue: venue with the lower output (buy base here)
        sell_venue: venue with the higher output (sell base here)
        net_profit: gross spread minus gas cost, in the quote asset
        timestamp: evaluation time (UTC)
        id: store-assigned identifier, None until persisted
    """

    buy_venue: str
    sell_venue: str
    net_profit: Decimal
    timestamp: datetime
    id: Optional[int] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.buy_venue == self.sell_venue:
            raise ValueError(f"buy and sell venue must differ: {self.buy_venue}")

    def __str__(self) -> str:
        return (
            f"Arbitrage opportunity: buy on {self.buy_venue} → sell on {self.sell_venue} "
            f"net_profit={self.net_profit} at {self.timestamp.isoformat()}"
        )


class ArbitrageEvaluator:
    """
    Stateless evaluator. The only injected dependency is the clock used to
    stamp opportunities.
    """

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock

    def evaluate(
        self,
        quote_a: Quote,
        quote_b: Quote,
        thresholds: EvaluationThresholds,
    ) -> Optional[Opportunity]:
        """
        Evaluate one pair of quotes from the same poll cycle.

        Raises:
            IncomparableQuotes: input amounts differ or both quotes come
                from the same venue.

        Returns:
            Opportunity if net profit > thresholds.min_profit, None otherwise
        """
        if quote_a.venue == quote_b.venue:
            raise IncomparableQuotes(f"both quotes come from venue {quote_a.venue}")

        if quote_a.input_amount != quote_b.input_amount:
            raise IncomparableQuotes(
                f"input amounts differ: {quote_a.venue}={quote_a.input_amount} "
                f"{quote_b.venue}={quote_b.input_amount}"
            )

        if quote_a.output_amount == quote_b.output_amount:
            logger.info(
                "Prices equal on %s and %s (%s) -> no arbitrage",
                quote_a.venue,
                quote_b.venue,
                quote_a.output_amount,
            )
            return None

        if quote_a.output_amount > quote_b.output_amount:
            sell, buy = quote_a, quote_b
        else:
            sell, buy = quote_b, quote_a

        gross = sell.output_amount - buy.output_amount
        net = gross - thresholds.gas_cost

        logger.info(
            "spread buy=%s sell=%s gross=%s gas=%s net=%s min=%s",
            buy.venue,
            sell.venue,
            gross,
            thresholds.gas_cost,
            net,
            thresholds.min_profit,
        )

        if not net > thresholds.min_profit:
            logger.info("Profit too small, skipping (net=%s <= min=%s)", net, thresholds.min_profit)
            return None

        return Opportunity(
            buy_venue=buy.venue,
            sell_venue=sell.venue,
            net_profit=net,
            timestamp=self._clock(),
        )

    def best_opportunity(
        self,
        quotes: Iterable[Quote],
        thresholds: EvaluationThresholds,
    ) -> Optional[Opportunity]:
        """
        Evaluate every pair of quotes from one cycle and keep the most
        profitable opportunity. With two quotes this is `evaluate`.
        """
        best: Optional[Opportunity] = None
        for a, b in itertools.combinations(list(quotes), 2):
            opp = self.evaluate(a, b, thresholds)
            if opp is None:
                continue
            if best is None or opp.net_profit > best.net_profit:
                best = opp
        return best
