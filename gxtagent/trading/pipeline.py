"""
Pipeline: drives bars -> signal -> gate -> sizing -> broker -> tracker -> ledger
once per tick per symbol.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from gxtagent.core.bar_store import BarStore
from gxtagent.core.broker import Broker
from gxtagent.core.clock import to_utc, utc_now
from gxtagent.core.config import AgentConfig
from gxtagent.core.errors import (
    BrokerError, BrokerRejected, BrokerTimeout, InvariantViolation, SizingError, StoreError,
    TradeStateError,
)
from gxtagent.core.types import (
    Action, Bar, Checklist, Decision, ExitReason, GateResult, PipelineResult,
    ReconciliationReport, SignalSnapshot, TickFailure, Trade, TradeStatus,
)
from gxtagent.strategy.decision_gate import DecisionGate
from gxtagent.strategy.signal_engine import SignalEngine
from .ledger import AccountLedger
from .position_tracker import PositionTracker
from .risk_manager import RiskManager

logger = logging.getLogger(__name__)


class Pipeline:
    """
    Orchestrates one decision tick per symbol.

    Ticks for different symbols may run concurrently. Ticks for the same
    symbol are serialized by a per-symbol lock held across the whole
    open/close decision. A tick may be cancelled by stop() only before it
    issues a broker mutation; after that it runs to completion.
    """

    def __init__(
        self,
        config: AgentConfig,
        bar_store: BarStore,
        broker: Broker,
        store=None,
        engine: Optional[SignalEngine] = None,
        gate: Optional[DecisionGate] = None,
        risk_manager: Optional[RiskManager] = None,
        tracker: Optional[PositionTracker] = None,
        ledger: Optional[AccountLedger] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            config: Agent configuration
            bar_store: Source of bars
            broker: Execution broker (wrap in RetryingBroker for live use)
            store: Opened SqliteStore for audit records, or None
            engine, gate, risk_manager, tracker, ledger: Components (built from config if omitted)
            clock: Returns the current time
        """
        self.config = config
        self.bar_store = bar_store
        self.broker = broker
        self.store = store
        self.engine = engine or SignalEngine.from_agent_config(config)
        self.gate = gate or DecisionGate.from_config(config)
        self.risk_manager = risk_manager or RiskManager.from_config(config)
        self.tracker = tracker or PositionTracker(store)
        self.ledger = ledger or AccountLedger(
            self.tracker,
            initial_cash=config.initial_cash,
            trading_timezone=config.trading_timezone,
            store=store,
        )
        self.clock = clock

        self._results: Dict[str, PipelineResult] = {}
        self._marks: Dict[str, float] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()
        self._stop = threading.Event()
        self._unresolved_entries: Set[str] = set()

    # ------------------------------------------------------------------ state

    @contextmanager
    def _symbol_lock(self, symbol: str):
        with self._guard:
            lock = self._locks.setdefault(symbol, threading.Lock())
        with lock:
            yield

    def _now(self) -> datetime:
        return to_utc(self.clock())

    @property
    def results(self) -> Dict[str, PipelineResult]:
        """Latest result per symbol."""
        with self._guard:
            return dict(self._results)

    @property
    def marks(self) -> Dict[str, float]:
        with self._guard:
            return dict(self._marks)

    def stop(self) -> None:
        """Ask in-flight and future ticks to stop before any new broker mutation."""
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def rehydrate(self) -> None:
        """Load persisted trades into the tracker."""
        if self.store is not None:
            self.tracker.rehydrate(self.store.load_trades())

    # ------------------------------------------------------------------ ticks

    def run_tick(self, symbol: str) -> PipelineResult:
        """Run one tick for a symbol and store its result."""
        with self._symbol_lock(symbol):
            result = self._tick(symbol)
            result.completed_at = self._now()
            with self._guard:
                self._results[symbol] = result
            return result

    def run_all(
        self,
        symbols: Optional[List[str]] = None,
        max_workers: int = 4,
    ) -> Dict[str, PipelineResult]:
        """
        Run one tick for each symbol concurrently.

        Unexpected errors for a symbol are logged and do not stop the others.
        Invariant violations are re-raised once all ticks have finished.
        """
        symbols = symbols or self.config.symbols
        results: Dict[str, PipelineResult] = {}
        violation: Optional[InvariantViolation] = None

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tick") as pool:
            futures = {pool.submit(self.run_tick, s): s for s in symbols}
            for future, symbol in futures.items():
                try:
                    results[symbol] = future.result()
                except InvariantViolation as e:
                    logger.error(f"{symbol}: invariant violation: {e}", exc_info=True)
                    violation = violation or e
                except Exception as e:
                    logger.error(f"{symbol}: tick failed: {e}", exc_info=True)

        if violation is not None:
            raise violation
        return results

    def _signal(self, symbol: str, bars: List[Bar], now: datetime) -> SignalSnapshot:
        if not bars:
            snapshot = self.engine.neutral(symbol, bars, "no bars")
            return replace(snapshot, timestamp=now)

        stale_after = self.config.stale_after_seconds
        if stale_after and (now - bars[-1].timestamp).total_seconds() > stale_after:
            return self.engine.neutral(symbol, bars, "stale bars")

        return self.engine.compute(symbol, bars)

    def _tick(self, symbol: str) -> PipelineResult:
        now = self._now()
        bars = self.bar_store.latest(symbol, self.config.timeframe, self.config.lookback)
        snapshot = self._signal(symbol, bars, now)

        if bars:
            with self._guard:
                self._marks[symbol] = bars[-1].close

        self._record_signal(snapshot)

        open_trade = self.tracker.open_trade(symbol)
        exit_bar = self._exit_bar(open_trade, bars) if open_trade is not None else None

        verdict = self.gate.evaluate(
            snapshot, open_trade, self.tracker.open_count(), bar=exit_bar
        )

        if verdict.decision is Decision.OPEN_CANDIDATE:
            return self._open(symbol, snapshot, verdict, now)
        if verdict.decision is Decision.CLOSE_CANDIDATE:
            return self._close(open_trade, snapshot, verdict, now)

        logger.debug(f"{symbol}: {verdict.reason}")
        action = Action.HELD if open_trade is not None else Action.NO_OP
        return PipelineResult(symbol, snapshot, verdict, action, trade=open_trade)

    def _exit_bar(self, trade: Trade, bars: List[Bar]) -> Optional[Bar]:
        """
        First bar after the entry bar that crossed the stop or target, else the
        latest bar after it. Bars from earlier ticks are checked again so a
        crossing whose close failed is retried.
        """
        after = [b for b in bars if b.timestamp > trade.entry_bar_at]
        for bar in after:
            if self.gate.crossed_levels(trade, bar) is not None:
                return bar
        return after[-1] if after else None

    def _record_signal(self, snapshot: SignalSnapshot) -> None:
        if self.store is None:
            return
        try:
            self.store.insert_signal_snapshot(snapshot)
        except StoreError:
            logger.error(f"Failed to record signal snapshot for {snapshot.symbol}", exc_info=True)

    def _open(
        self,
        symbol: str,
        snapshot: SignalSnapshot,
        verdict: GateResult,
        now: datetime,
    ) -> PipelineResult:
        def result(action=Action.NO_OP, trade=None, failure=None) -> PipelineResult:
            return PipelineResult(symbol, snapshot, verdict, action, trade=trade, failure=failure)

        if self.stopping:
            return result(failure=TickFailure("cancelled", "shutdown before entry"))

        if symbol in self._unresolved_entries:
            if not self._flat_at_broker(symbol):
                logger.warning(f"{symbol}: earlier entry order may have filled; waiting for reconciliation")
                return result(failure=TickFailure("broker", "earlier entry order outcome unknown"))
            self._unresolved_entries.discard(symbol)

        if not self.tracker.reserve(symbol, self.config.max_open_positions):
            logger.debug(f"{symbol}: no free position slot")
            return result()

        try:
            equity = self.ledger.equity(self.marks)
            cash = self.ledger.available_cash()
            try:
                sizing = self.risk_manager.size_for(snapshot, snapshot.price, equity, cash)
            except SizingError as e:
                logger.warning(f"{symbol}: sizing failed: {e}")
                return result(failure=TickFailure("sizing", str(e)))

            if self.stopping:
                return result(failure=TickFailure("cancelled", "shutdown before entry"))

            try:
                fill = self.broker.open_position(
                    symbol, sizing.side, sizing.quantity,
                    sizing.stop_loss, sizing.take_profit,
                    reference_price=snapshot.price,
                )
            except BrokerTimeout as e:
                logger.error(f"{symbol}: entry order timed out: {e}")
                self._unresolved_entries.add(symbol)
                return result(failure=TickFailure("broker", str(e)))
            except BrokerError as e:
                logger.error(f"{symbol}: entry order failed: {e}")
                return result(failure=TickFailure("broker", str(e)))

            checklist = Checklist(
                score=snapshot.score,
                confidence=snapshot.confidence,
                bias=snapshot.bias,
                signals=snapshot.signals,
                entry_reference_price=snapshot.price,
                equity=equity,
                cash=cash,
                risk_fraction=self.risk_manager.risk_fraction,
                reward_risk=self.risk_manager.reward_risk,
                stop_distance=sizing.stop_distance,
                stop_source=sizing.stop_source,
                binding_constraint=sizing.binding_constraint,
                bar_timestamp=snapshot.timestamp,
            )

            try:
                trade = self.tracker.open(fill, sizing, snapshot.confidence, checklist, opened_at=now)
            except StoreError as e:
                return result(
                    Action.OPENED, self.tracker.open_trade(symbol),
                    TickFailure("persistence", str(e)),
                )
            return result(Action.OPENED, trade)
        finally:
            self.tracker.release(symbol)

    def _close(
        self,
        trade: Trade,
        snapshot: SignalSnapshot,
        verdict: GateResult,
        now: datetime,
    ) -> PipelineResult:
        symbol = trade.symbol

        if self.stopping:
            return PipelineResult(
                symbol, snapshot, verdict, Action.HELD, trade=trade,
                failure=TickFailure("cancelled", "shutdown before exit"),
            )

        try:
            exit_price = self.broker.close_position(trade.id, verdict.exit_price, symbol=symbol).price
        except BrokerRejected as e:
            if not self._flat_at_broker(symbol):
                logger.error(f"{symbol}: exit order rejected: {e}")
                return PipelineResult(
                    symbol, snapshot, verdict, Action.HELD, trade=trade,
                    failure=TickFailure("broker", str(e)),
                )
            # Bracket leg already closed the position at the broker
            exit_price = verdict.exit_price
            logger.warning(
                f"{symbol}: no position at broker, settling trade {trade.id} at {exit_price:.2f}"
            )
        except BrokerError as e:
            logger.error(f"{symbol}: exit order failed: {e}")
            return PipelineResult(
                symbol, snapshot, verdict, Action.HELD, trade=trade,
                failure=TickFailure("broker", str(e)),
            )

        failure = None
        reason = verdict.exit_reason or ExitReason.MANUAL
        try:
            closed = self.tracker.close(trade.id, exit_price, now, reason)
        except StoreError as e:
            closed = next(t for t in reversed(self.tracker.closed_trades()) if t.id == trade.id)
            failure = TickFailure("persistence", str(e))

        account = None
        try:
            account = self.ledger.record(now, self.marks)
        except StoreError as e:
            logger.error(f"{symbol}: account snapshot not recorded: {e}")
            failure = failure or TickFailure("persistence", str(e))

        return PipelineResult(
            symbol, snapshot, verdict, Action.CLOSED,
            trade=closed, account=account, failure=failure,
        )

    def _flat_at_broker(self, symbol: str) -> bool:
        try:
            positions = self.broker.open_positions()
        except BrokerError as e:
            logger.error(f"{symbol}: cannot check broker positions: {e}")
            return False
        return not positions.get(symbol)

    # ------------------------------------------------------------------ overrides

    def close_manual(self, symbol: str, price: Optional[float] = None) -> PipelineResult:
        """
        Close a symbol's open trade immediately.

        Args:
            symbol: Symbol to close
            price: Exit price (defaults to the latest mark)

        Raises:
            TradeStateError: No open trade on the symbol
        """
        with self._symbol_lock(symbol):
            trade = self.tracker.open_trade(symbol)
            if trade is None:
                raise TradeStateError(f"No open trade for {symbol}")

            now = self._now()
            price = price if price is not None else self.marks.get(symbol, trade.entry_price)
            previous = self.results.get(symbol)
            snapshot = previous.snapshot if previous else self.engine.neutral(symbol, [], "manual")
            if snapshot.timestamp is None:
                snapshot = replace(snapshot, timestamp=now)

            verdict = GateResult(
                Decision.CLOSE_CANDIDATE, "manual override",
                exit_price=price, exit_reason=ExitReason.MANUAL,
            )
            result = self._close(trade, snapshot, verdict, now)
            result.completed_at = self._now()
            with self._guard:
                self._results[symbol] = result
            return result

    def record_snapshot(self, timestamp: Optional[datetime] = None):
        """Append an account snapshot outside of a close (periodic snapshots)."""
        return self.ledger.record(to_utc(timestamp) or self._now(), self.marks)

    # ------------------------------------------------------------------ reconciliation

    def reconcile(self) -> ReconciliationReport:
        """
        Compare broker-reported positions with tracked and persisted trades.

        Raises:
            BrokerError: Broker positions could not be fetched
        """
        broker_positions = self.broker.open_positions()
        tracked = {t.symbol for t in self.tracker.open_trades()}

        report = ReconciliationReport(broker_positions=broker_positions)
        report.missing_in_tracker = sorted(
            s for s, qty in broker_positions.items() if qty and s not in tracked
        )
        report.missing_at_broker = sorted(s for s in tracked if s not in broker_positions)

        unpersisted = set(self.tracker.unpersisted)
        if self.store is not None:
            persisted_open = {t.id for t in self.store.load_trades(status=TradeStatus.OPEN)}
            unpersisted |= {t.id for t in self.tracker.open_trades() if t.id not in persisted_open}
        report.unpersisted = sorted(unpersisted)

        if report.is_consistent:
            logger.info("Reconciliation: broker and tracker agree")
        else:
            logger.warning(
                f"Reconciliation mismatch: missing_in_tracker={report.missing_in_tracker} "
                f"missing_at_broker={report.missing_at_broker} unpersisted={report.unpersisted}"
            )
        return report
