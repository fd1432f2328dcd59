from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Sequence, Set

from web3 import Web3

from .arbitrage_detector import ArbitrageEvaluator, Opportunity
from .config import MonitorConfig
from .dex.web3_compat import make_web3
from .errors import IncomparableQuotes, OracleFailure, StoreFailure
from .oracle import PriceOracleClient, Quote, RouterPriceOracle
from .state import MonitorState
from .store import OpportunityStore

logger = logging.getLogger(__name__)

_LOGGING_CONFIGURED = False


def _dedupe_logger_handlers(l: logging.Logger) -> None:
    """
    Remove duplicated handlers (common cause of double logs).
    Dedupe key: (handler type, stream id if StreamHandler else handler id)
    """
    seen: set[tuple] = set()
    new_handlers: list[logging.Handler] = []
    for h in list(l.handlers):
        stream = getattr(h, "stream", None)
        key = (type(h), id(stream) if stream is not None else id(h))
        if key in seen:
            continue
        seen.add(key)
        new_handlers.append(h)
    l.handlers = new_handlers


def configure_monitor_logging(level: int = logging.INFO) -> None:
    """
    Configure logging so that:
      - only the 'dex_arb_monitor' package logger owns a StreamHandler
      - all child loggers propagate to it (no per-module handlers)
      - duplicated handlers on root/package are removed
    """
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    root = logging.getLogger()
    _dedupe_logger_handlers(root)

    pkg = logging.getLogger("dex_arb_monitor")
    _dedupe_logger_handlers(pkg)

    if not pkg.handlers:
        h = logging.StreamHandler()
        h.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        pkg.addHandler(h)

    pkg.setLevel(level)
    pkg.propagate = False

    for name, obj in logging.root.manager.loggerDict.items():
        if not isinstance(obj, logging.Logger):
            continue
        if name.startswith("dex_arb_monitor") and name != "dex_arb_monitor":
            obj.handlers = []
            obj.propagate = True
            obj.setLevel(level)

    _LOGGING_CONFIGURED = True


class CycleState(str, Enum):
    IDLE = "IDLE"
    POLLING = "POLLING"
    EVALUATING = "EVALUATING"
    RECORDING = "RECORDING"


class PollingScheduler:
    """
    Drives the poll loop: oracle calls (fork-join) -> evaluator -> store.

    Every failure is cycle-local. Cycles never overlap; if a cycle overruns
    the interval the next one starts immediately.
    """

    def __init__(
        self,
        config: MonitorConfig,
        oracle: PriceOracleClient,
        store: OpportunityStore,
        evaluator: Optional[ArbitrageEvaluator] = None,
        state: Optional[MonitorState] = None,
        venues: Optional[Sequence[str]] = None,
    ) -> None:
        self._config = config
        self._oracle = oracle
        self._store = store
        self._evaluator = evaluator or ArbitrageEvaluator()
        self.state = state or MonitorState()
        self._venues: List[str] = list(venues or [v.name for v in config.venues])
        self._store_lock = asyncio.Lock()
        self._pending_writes: Set["asyncio.Future[Opportunity]"] = set()
        self.cycle_state = CycleState.IDLE

    def _enter(self, new_state: CycleState) -> None:
        logger.debug("state %s -> %s", self.cycle_state.value, new_state.value)
        self.cycle_state = new_state

    async def _poll(self, cycle: int) -> Optional[List[Quote]]:
        trade_size = self._config.thresholds.trade_size
        results = await asyncio.gather(
            *(self._oracle.quote(venue, trade_size) for venue in self._venues),
            return_exceptions=True,
        )

        quotes: List[Quote] = []
        for venue, res in zip(self._venues, results):
            if isinstance(res, Quote):
                logger.info(
                    "cycle=%s venue=%s %s %s -> %s %s",
                    cycle,
                    venue,
                    res.input_amount,
                    self._config.pair.base.symbol,
                    res.output_amount,
                    self._config.pair.quote.symbol,
                )
                quotes.append(res)
                continue

            if not isinstance(res, Exception):
                # CancelledError / KeyboardInterrupt from a child
                raise res

            kind = res.kind if isinstance(res, OracleFailure) else type(res).__name__
            logger.warning(
                "cycle=%s venue=%s kind=%s at=%s error=%s",
                cycle,
                venue,
                kind,
                datetime.now(timezone.utc).isoformat(),
                res,
                exc_info=None if isinstance(res, OracleFailure) else res,
            )
            self.state.record_failure(cycle, kind, venue, str(res))

        if len(quotes) < 2:
            logger.warning(
                "cycle=%s skipped: %s/%s quotes available, no comparison",
                cycle,
                len(quotes),
                len(self._venues),
            )
            self.state.cycles_skipped += 1
            return None
        return quotes

    async def _append(self, opp: Opportunity) -> Opportunity:
        async with self._store_lock:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self._store.append, opp)

    async def _record(self, cycle: int, opp: Opportunity) -> Optional[Opportunity]:
        # Operator line first: the opportunity is reported even if the write fails
        logger.info(
            "Arbitrage Opportunity: Buy on %s → Sell on %s net_profit=%s %s",
            opp.buy_venue,
            opp.sell_venue,
            opp.net_profit,
            self._config.pair.quote.symbol,
        )
        self.state.record_detected(opp)

        write = asyncio.ensure_future(self._append(opp))
        self._pending_writes.add(write)
        write.add_done_callback(self._pending_writes.discard)
        try:
            stored = await asyncio.shield(write)
        except asyncio.CancelledError:
            # The write keeps running; account for it once it settles
            write.add_done_callback(lambda fut: self._settle_write(cycle, opp, fut))
            raise
        except StoreFailure as exc:
            self._write_failed(cycle, opp, exc)
            return None

        self._write_done(cycle, stored)
        return stored

    def _write_done(self, cycle: int, stored: Opportunity) -> None:
        self.state.record_persisted(stored)
        logger.info("cycle=%s opportunity saved id=%s", cycle, stored.id)

    def _write_failed(self, cycle: int, opp: Opportunity, exc: BaseException) -> None:
        kind = exc.kind if isinstance(exc, StoreFailure) else type(exc).__name__
        logger.error(
            "cycle=%s kind=%s store write failed, opportunity kept for reconciliation: %s | %s",
            cycle,
            kind,
            opp,
            exc,
        )
        self.state.record_failure(cycle, kind, None, str(exc))
        self.state.record_unpersisted(opp)

    def _settle_write(self, cycle: int, opp: Opportunity, fut: "asyncio.Future[Opportunity]") -> None:
        if fut.cancelled():
            # the executor thread may still commit; the row cannot be confirmed
            logger.warning("cycle=%s store write abandoned, result unknown: %s", cycle, opp)
            self.state.record_unpersisted(opp)
            return
        exc = fut.exception()
        if exc is not None:
            self._write_failed(cycle, opp, exc)
            return
        self._write_done(cycle, fut.result())

    async def wait_pending_writes(self) -> None:
        """Wait for store writes still running after their cycle was cancelled."""
        while self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    async def run_cycle(self) -> Optional[Opportunity]:
        """
        Run one poll cycle. Returns the detected opportunity (with id when
        it was persisted) or None.
        """
        self.state.cycles_run += 1
        cycle = self.state.cycles_run

        try:
            self._enter(CycleState.POLLING)
            logger.info("cycle=%s checking prices pair=%s", cycle, self._config.pair.symbol)
            quotes = await self._poll(cycle)
            if quotes is None:
                return None

            self._enter(CycleState.EVALUATING)
            try:
                opp = self._evaluator.best_opportunity(quotes, self._config.thresholds)
            except IncomparableQuotes as exc:
                logger.warning("cycle=%s kind=%s %s", cycle, exc.kind, exc)
                self.state.record_failure(cycle, exc.kind, None, str(exc))
                self.state.cycles_skipped += 1
                return None

            if opp is None:
                return None

            self._enter(CycleState.RECORDING)
            stored = await self._record(cycle, opp)
            return stored or opp
        finally:
            self._enter(CycleState.IDLE)

    async def run(
        self,
        stop_event: Optional[asyncio.Event] = None,
        max_cycles: Optional[int] = None,
    ) -> MonitorState:
        """
        Poll until stop_event is set (or max_cycles cycles have run).
        """
        stop = stop_event or asyncio.Event()
        loop = asyncio.get_running_loop()
        interval = float(self._config.poll_interval_sec)
        done = 0

        try:
            while not stop.is_set():
                started = loop.time()
                await self.run_cycle()
                done += 1

                if max_cycles is not None and done >= max_cycles:
                    break

                remaining = interval - (loop.time() - started)
                if remaining <= 0:
                    logger.debug("cycle overran interval by %.3fs, starting next cycle now", -remaining)
                    continue

                try:
                    await asyncio.wait_for(stop.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.wait_pending_writes()

        if stop.is_set():
            logger.info("Stop event set. Exiting poll loop.")
        return self.state


def log_summary(state: MonitorState) -> None:
    s = state.summary()
    logger.info(
        "final_summary cycles=%s skipped=%s detected=%s persisted=%s unpersisted=%s failures=%s",
        s["cycles_run"],
        s["cycles_skipped"],
        s["opportunities_detected"],
        s["opportunities_persisted"],
        s["unpersisted"],
        s["failures"],
    )
    for opp in state.unpersisted:
        logger.warning("unpersisted %s", opp)


async def run_arbitrage_monitor(
    config: MonitorConfig,
    stop_event: Optional[asyncio.Event] = None,
    web3: Optional[Web3] = None,
    max_cycles: Optional[int] = None,
) -> MonitorState:
    configure_monitor_logging()

    logger.info(
        "Starting arbitrage monitor pair=%s venues=%s interval=%ss min_profit=%s gas=%s trade_size=%s",
        config.pair.symbol,
        ",".join(v.name for v in config.venues),
        config.poll_interval_sec,
        config.thresholds.min_profit,
        config.thresholds.gas_cost,
        config.thresholds.trade_size,
    )

    w3 = web3 or make_web3(config.rpc_url, config.oracle_timeout_sec)
    oracle = RouterPriceOracle(w3, config)

    store = OpportunityStore(config.db_path)
    try:
        store.initialize()
    except StoreFailure as exc:
        # Detection keeps running; each append retries the store
        logger.error("Opportunity store unavailable at startup: %s", exc)

    scheduler = PollingScheduler(config=config, oracle=oracle, store=store)
    try:
        await scheduler.run(stop_event=stop_event, max_cycles=max_cycles)
    finally:
        log_summary(scheduler.state)
    return scheduler.state
