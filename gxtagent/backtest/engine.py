"""
Backtesting engine.
Replays historical bars one at a time through the live pipeline with a paper broker.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

import pandas as pd

from gxtagent.core.bar_store import BarStore
from gxtagent.core.broker import PaperBroker
from gxtagent.core.clock import to_utc
from gxtagent.core.config import AgentConfig
from gxtagent.core.types import AccountSnapshot, Action, Bar, PipelineResult, Trade
from gxtagent.metrics.calculator import MetricsCalculator
from gxtagent.storage import SqliteStore
from gxtagent.trading.pipeline import Pipeline

logger = logging.getLogger(__name__)


class ReplayClock:
    """Clock pinned to the bar being replayed."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = to_utc(start)

    def __call__(self) -> datetime:
        return self.now


@dataclass
class BacktestResult:
    """Backtest output: closed trades, account snapshots and metrics."""
    config: AgentConfig
    trades: List[Trade]
    snapshots: List[AccountSnapshot]
    metrics: Dict[str, Any]
    actions: List[PipelineResult] = field(default_factory=list)

    @property
    def equity_curve(self) -> pd.Series:
        return pd.Series(
            {s.timestamp: s.equity for s in self.snapshots},
            name="equity",
            dtype=float,
        )


class BacktestEngine:
    """
    Event-driven backtesting engine.

    Bars are appended to an in-memory store one timestamp at a time and a
    pipeline tick runs for every symbol with a bar at that timestamp. Ticks
    run sequentially so a replay of the same bars always gives the same trades.
    """

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        slippage_pct: float = 0.0,
        close_at_end: bool = True,
    ):
        """
        Args:
            config: Agent configuration (defaults used if omitted)
            slippage_pct: Adverse slippage applied by the paper broker
            close_at_end: Close trades still open after the last bar at its close
        """
        self.config = config or AgentConfig()
        self.slippage_pct = slippage_pct
        self.close_at_end = close_at_end
        self.pipeline: Optional[Pipeline] = None

    def run(self, bars: List[Bar]) -> BacktestResult:
        """
        Run a backtest over historical bars.

        Args:
            bars: Bars for one or more symbols of a single timeframe. Naive
                timestamps are taken as UTC.

        Returns:
            BacktestResult with trades, snapshots and metrics
        """
        if not bars:
            raise ValueError("No bars provided for backtest")

        timeframes = {b.timeframe for b in bars}
        if len(timeframes) > 1:
            raise ValueError(f"Backtest bars must share one timeframe, got {sorted(timeframes)}")

        symbols = sorted({b.symbol for b in bars})
        config = self.config.with_overrides(
            symbols=symbols,
            timeframe=timeframes.pop(),
            stale_after_seconds=0,
        )

        by_time: Dict[datetime, List[Bar]] = {}
        for bar in (replace(b, timestamp=to_utc(b.timestamp)) for b in bars):
            by_time.setdefault(bar.timestamp, []).append(bar)
        timestamps = sorted(by_time)

        logger.info(
            f"Starting backtest: {symbols} with {len(bars)} bars "
            f"from {timestamps[0]} to {timestamps[-1]}"
        )

        clock = ReplayClock(timestamps[0])
        actions: List[PipelineResult] = []

        with SqliteStore(":memory:") as store:
            bar_store = BarStore(store)
            pipeline = Pipeline(
                config,
                bar_store,
                PaperBroker(slippage_pct=self.slippage_pct),
                store=store,
                clock=clock,
            )
            self.pipeline = pipeline

            for ts in timestamps:
                clock.now = ts
                batch = sorted(by_time[ts], key=lambda b: b.symbol)
                bar_store.append(batch)
                for bar in batch:
                    result = pipeline.run_tick(bar.symbol)
                    if result.action in (Action.OPENED, Action.CLOSED):
                        actions.append(result)
                pipeline.record_snapshot(ts)

            if self.close_at_end:
                for trade in pipeline.tracker.open_trades():
                    actions.append(pipeline.close_manual(trade.symbol))
                pipeline.record_snapshot(timestamps[-1])

            trades = pipeline.tracker.closed_trades()
            snapshots = pipeline.ledger.snapshots

        metrics = MetricsCalculator().calculate_all(trades, snapshots, config.initial_cash)

        logger.info(
            f"Backtest complete: {len(trades)} trades, "
            f"Return: {metrics.get('total_return_pct', 0):.2f}%"
        )
        return BacktestResult(config, trades, snapshots, metrics, actions)


def run_backtest(
    bars: List[Bar],
    config: Optional[AgentConfig] = None,
    slippage_pct: float = 0.0,
) -> BacktestResult:
    """Convenience function to run a backtest."""
    return BacktestEngine(config, slippage_pct=slippage_pct).run(bars)
