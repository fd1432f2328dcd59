# src/dex_arb_monitor/arbitrage/state.py
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .arbitrage_detector import Opportunity


@dataclass
class CycleFailure:
    """One cycle-local failure, kept for the shutdown summary."""

    cycle: int
    kind: str
    venue: Optional[str]
    message: str
    at: datetime


@dataclass
class MonitorState:
    """
    In-memory run state of the scheduler.

    Notes:
      - `unpersisted` holds opportunities whose store write failed, so an
        operator can reconcile them manually.
      - `recent_failures` is bounded by `max_failures_kept`.
    """

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    cycles_run: int = 0
    cycles_skipped: int = 0
    opportunities_detected: int = 0
    opportunities_persisted: int = 0

    failures_by_kind: Counter = field(default_factory=Counter)
    recent_failures: List[CycleFailure] = field(default_factory=list)
    max_failures_kept: int = 100

    unpersisted: List[Opportunity] = field(default_factory=list)
    last_opportunity: Optional[Opportunity] = None

    def record_failure(self, cycle: int, kind: str, venue: Optional[str], message: str) -> None:
        self.failures_by_kind[kind] += 1
        self.recent_failures.append(
            CycleFailure(cycle=cycle, kind=kind, venue=venue, message=message, at=datetime.now(timezone.utc))
        )
        if len(self.recent_failures) > self.max_failures_kept:
            del self.recent_failures[: len(self.recent_failures) - self.max_failures_kept]

    def record_detected(self, opp: Opportunity) -> None:
        self.opportunities_detected += 1
        self.last_opportunity = opp

    def record_persisted(self, opp: Opportunity) -> None:
        self.opportunities_persisted += 1
        self.last_opportunity = opp

    def record_unpersisted(self, opp: Opportunity) -> None:
        self.unpersisted.append(opp)

    def summary(self) -> Dict[str, object]:
        return {
            "cycles_run": self.cycles_run,
            "cycles_skipped": self.cycles_skipped,
            "opportunities_detected": self.opportunities_detected,
            "opportunities_persisted": self.opportunities_persisted,
            "unpersisted": len(self.unpersisted),
            "failures": dict(self.failures_by_kind),
        }
