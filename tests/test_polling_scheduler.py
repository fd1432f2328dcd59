import asyncio
import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

import pytest

from dex_arb_monitor.arbitrage.arbitrage_detector import ArbitrageEvaluator, Opportunity
from dex_arb_monitor.arbitrage.bot import CycleState, PollingScheduler
from dex_arb_monitor.arbitrage.config import EvaluationThresholds
from dex_arb_monitor.arbitrage.errors import Unreachable, WriteFailure
from dex_arb_monitor.arbitrage.oracle import PriceOracleClient, Quote
from dex_arb_monitor.arbitrage.store import OpportunityStore

FIXED_NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

SCENARIO = {"Alpha": Decimal("4147.445571"), "Beta": Decimal("4097.557421")}


class ScriptedOracle(PriceOracleClient):
    """
    Returns fixed outputs per venue; a venue mapped to an exception raises it.
    Tracks concurrent calls to detect overlapping cycles.
    """

    def __init__(self, outputs: Dict[str, object], delay: float = 0.0) -> None:
        super().__init__({name: None for name in outputs})
        self.outputs = outputs
        self.delay = delay
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def quote(self, venue: str, input_amount: Decimal) -> Quote:
        self._check_request(venue, input_amount)
        self.calls.append(venue)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            out = self.outputs[venue]
            if isinstance(out, BaseException):
                raise out
            return Quote(venue=venue, input_amount=input_amount, output_amount=out, timestamp=FIXED_NOW)
        finally:
            self.in_flight -= 1


class RecordingStore:
    def __init__(self, fail_first: int = 0) -> None:
        self.fail_first = fail_first
        self.attempts = 0
        self.saved: List[Opportunity] = []

    def append(self, opp: Opportunity) -> Opportunity:
        self.attempts += 1
        if self.attempts <= self.fail_first:
            raise WriteFailure("disk full")
        stored = replace(opp, id=len(self.saved) + 1)
        self.saved.append(stored)
        return stored


def _scheduler(config, outputs, store, delay: float = 0.0, thresholds: Optional[EvaluationThresholds] = None):
    if thresholds is not None:
        config = replace(config, thresholds=thresholds)
    oracle = ScriptedOracle(outputs, delay=delay)
    sched = PollingScheduler(
        config=config,
        oracle=oracle,
        store=store,
        evaluator=ArbitrageEvaluator(clock=lambda: FIXED_NOW),
    )
    return sched, oracle


def test_cycle_records_opportunity_in_sqlite(monitor_config) -> None:
    store = OpportunityStore(monitor_config.db_path)
    sched, oracle = _scheduler(monitor_config, SCENARIO, store)

    result = asyncio.run(sched.run_cycle())

    assert sorted(oracle.calls) == ["Alpha", "Beta"]
    assert result is not None and result.id is not None
    (row,) = list(store.list_all())
    assert (row.buy_venue, row.sell_venue) == ("Beta", "Alpha")
    assert row.net_profit == Decimal("44.88815")
    assert row.timestamp == FIXED_NOW
    assert sched.state.opportunities_persisted == 1
    assert sched.cycle_state == CycleState.IDLE


def test_operator_line_is_logged(monitor_config, caplog) -> None:
    caplog.set_level(logging.INFO)
    sched, _ = _scheduler(monitor_config, SCENARIO, RecordingStore())

    asyncio.run(sched.run_cycle())

    assert "Arbitrage Opportunity: Buy on Beta → Sell on Alpha net_profit=44.88815" in caplog.text


def test_below_threshold_writes_nothing(monitor_config) -> None:
    store = RecordingStore()
    high = EvaluationThresholds(min_profit=Decimal("50.0"), gas_cost=Decimal("5.0"), trade_size=Decimal("1"))
    sched, _ = _scheduler(monitor_config, SCENARIO, store, thresholds=high)

    assert asyncio.run(sched.run_cycle()) is None
    assert store.attempts == 0
    assert sched.state.opportunities_detected == 0


def test_unreachable_venue_skips_cycle(monitor_config, caplog) -> None:
    caplog.set_level(logging.INFO)
    store = RecordingStore()
    outputs = {"Alpha": Unreachable("Alpha", "timed out after 0.10s"), "Beta": SCENARIO["Beta"]}
    sched, oracle = _scheduler(monitor_config, outputs, store)

    assert asyncio.run(sched.run_cycle()) is None

    assert oracle.calls.count("Beta") == 1
    assert store.attempts == 0
    assert sched.state.cycles_skipped == 1
    assert sched.state.failures_by_kind["Unreachable"] == 1
    assert "venue=Alpha kind=Unreachable" in caplog.text
    assert sched.cycle_state == CycleState.IDLE


def test_write_failure_does_not_stop_detection(monitor_config, caplog) -> None:
    caplog.set_level(logging.INFO)
    store = RecordingStore(fail_first=1)
    sched, _ = _scheduler(monitor_config, SCENARIO, store)

    async def _two_cycles():
        first = await sched.run_cycle()
        second = await sched.run_cycle()
        return first, second

    first, second = asyncio.run(_two_cycles())

    assert first is not None and first.id is None
    assert second is not None and second.id == 1
    assert sched.state.unpersisted == [first]
    assert sched.state.opportunities_detected == 2
    assert sched.state.opportunities_persisted == 1
    assert caplog.text.count("Arbitrage Opportunity: Buy on Beta") == 2
    assert "kind=WriteFailure" in caplog.text


def test_run_stops_after_max_cycles(monitor_config) -> None:
    store = RecordingStore()
    sched, oracle = _scheduler(replace(monitor_config, poll_interval_sec=0.01), SCENARIO, store)

    state = asyncio.run(sched.run(max_cycles=3))

    assert state.cycles_run == 3
    assert len(store.saved) == 3
    assert len(oracle.calls) == 6


def test_stop_event_ends_loop(monitor_config) -> None:
    sched, _ = _scheduler(monitor_config, SCENARIO, RecordingStore())

    async def _main():
        stop = asyncio.Event()
        task = asyncio.create_task(sched.run(stop_event=stop))
        await asyncio.sleep(0.05)
        stop.set()
        return await asyncio.wait_for(task, timeout=1.0)

    state = asyncio.run(_main())
    assert state.cycles_run == 1


def test_slow_cycles_never_overlap(monitor_config) -> None:
    # each oracle call outlasts the interval
    config = replace(monitor_config, poll_interval_sec=0.02, oracle_timeout_sec=0.01)
    sched, oracle = _scheduler(config, SCENARIO, RecordingStore(), delay=0.05)

    state = asyncio.run(sched.run(max_cycles=3))

    assert state.cycles_run == 3
    # the two venues of one cycle run together, never those of two cycles
    assert oracle.max_in_flight == 2


class _FixedRouterWeb3:
    """eth.contract(...).functions.getAmountsOut(...).call() -> fixed amounts per router."""

    def __init__(self, outputs: Dict[str, int]) -> None:
        outer = self

        class _Eth:
            def contract(self, address, abi):
                out = outer.outputs[address.lower()]

                class _Fn:
                    def getAmountsOut(self, amount_in, path):
                        class _Call:
                            def call(self):
                                return [amount_in, out]

                        return _Call()

                class _Contract:
                    functions = _Fn()

                return _Contract()

        self.outputs = {k.lower(): v for k, v in outputs.items()}
        self.eth = _Eth()


def test_run_arbitrage_monitor_end_to_end(monitor_config, caplog) -> None:
    from conftest import ALPHA_ROUTER, BETA_ROUTER
    from dex_arb_monitor.arbitrage.bot import run_arbitrage_monitor

    caplog.set_level(logging.INFO)
    w3 = _FixedRouterWeb3({ALPHA_ROUTER: 4_147_445_571, BETA_ROUTER: 4_097_557_421})

    async def _main():
        # propagate is reset by configure_monitor_logging; restore it for caplog
        task = asyncio.create_task(run_arbitrage_monitor(monitor_config, web3=w3, max_cycles=2))
        await asyncio.sleep(0)
        logging.getLogger("dex_arb_monitor").propagate = True
        return await task

    state = asyncio.run(_main())

    assert state.cycles_run == 2
    assert state.opportunities_persisted == 2
    rows = list(OpportunityStore(monitor_config.db_path).list_all())
    assert [(r.buy_venue, r.sell_venue) for r in rows] == [("Beta", "Alpha")] * 2
    assert "final_summary cycles=2" in caplog.text


class SlowStore(OpportunityStore):
    def __init__(self, db_path, delay: float) -> None:
        super().__init__(db_path)
        self.delay = delay

    def append(self, opp: Opportunity) -> Opportunity:
        time.sleep(self.delay)
        return super().append(opp)


def test_cancelled_cycle_still_accounts_for_the_write(monitor_config, caplog) -> None:
    caplog.set_level(logging.INFO)
    store = SlowStore(monitor_config.db_path, delay=0.3)
    sched, _ = _scheduler(monitor_config, SCENARIO, store)

    async def _main():
        task = asyncio.create_task(sched.run_cycle())
        await asyncio.sleep(0.1)
        assert sched.cycle_state == CycleState.RECORDING
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await sched.wait_pending_writes()

    asyncio.run(_main())

    (row,) = list(store.list_all())
    assert row.id == 1
    assert str(row.net_profit) == "44.888150"
    assert sched.state.opportunities_persisted == 1
    assert sched.state.unpersisted == []
    assert "opportunity saved id=1" in caplog.text
    assert sched.cycle_state == CycleState.IDLE


def test_three_venues_with_one_failure_still_compares_the_rest(monitor_config, caplog) -> None:
    caplog.set_level(logging.INFO)
    store = RecordingStore()
    outputs = dict(SCENARIO, Gamma=Unreachable("Gamma", "connection refused"))
    oracle = ScriptedOracle(outputs)
    sched = PollingScheduler(
        config=monitor_config,
        oracle=oracle,
        store=store,
        evaluator=ArbitrageEvaluator(clock=lambda: FIXED_NOW),
        venues=["Alpha", "Beta", "Gamma"],
    )

    result = asyncio.run(sched.run_cycle())

    assert sorted(oracle.calls) == ["Alpha", "Beta", "Gamma"]
    assert result is not None
    assert (result.buy_venue, result.sell_venue) == ("Beta", "Alpha")
    assert result.net_profit == Decimal("44.88815")
    assert len(store.saved) == 1
    assert sched.state.cycles_skipped == 0
    assert sched.state.failures_by_kind["Unreachable"] == 1
    assert "venue=Gamma kind=Unreachable" in caplog.text


def test_three_venues_with_two_failures_skip_the_cycle(monitor_config) -> None:
    store = RecordingStore()
    outputs = {
        "Alpha": SCENARIO["Alpha"],
        "Beta": Unreachable("Beta", "connection refused"),
        "Gamma": Unreachable("Gamma", "connection refused"),
    }
    sched = PollingScheduler(
        config=monitor_config,
        oracle=ScriptedOracle(outputs),
        store=store,
        venues=["Alpha", "Beta", "Gamma"],
    )

    assert asyncio.run(sched.run_cycle()) is None
    assert store.attempts == 0
    assert sched.state.cycles_skipped == 1
