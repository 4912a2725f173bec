"""
Performance metrics over closed trades and account snapshots.
Computes win rate, profit factor, R-multiple statistics and drawdown.
"""

import logging
from typing import Any, Dict, List

import numpy as np
import pandas as pd

from gxtagent.core.types import AccountSnapshot, Trade, TradeStatus

logger = logging.getLogger(__name__)


class MetricsCalculator:
    """
    Calculates trading performance metrics.

    Supports:
    - Win rate and profit factor
    - Average win/loss and average/expectancy R
    - Max drawdown of the equity series
    - Consecutive wins/losses and exit reason breakdown
    """

    def calculate_all(
        self,
        trades: List[Trade],
        snapshots: List[AccountSnapshot],
        initial_cash: float,
    ) -> Dict[str, Any]:
        """
        Calculate all metrics.

        Args:
            trades: Trades (open trades are ignored)
            snapshots: Account snapshots, oldest first
            initial_cash: Starting cash

        Returns:
            Dict of metric name to value
        """
        closed = [t for t in trades if t.status is TradeStatus.CLOSED]
        closed.sort(key=lambda t: t.closed_at)

        metrics: Dict[str, Any] = {
            "total_trades": len(closed),
            "initial_cash": initial_cash,
        }

        final_equity = snapshots[-1].equity if snapshots else initial_cash
        metrics["final_equity"] = final_equity
        metrics["total_return_pct"] = (final_equity - initial_cash) / initial_cash * 100

        equity = self.equity_series(snapshots, initial_cash)
        metrics["max_drawdown_pct"] = self.calculate_max_drawdown(equity)

        if not closed:
            metrics.update({
                "total_pnl": 0.0,
                "win_rate": 0.0,
                "profit_factor": 0.0,
                "avg_win": 0.0,
                "avg_loss": 0.0,
                "avg_r": 0.0,
                "expectancy_r": 0.0,
            })
            return metrics

        metrics.update(self._calculate_trade_metrics(closed))
        return metrics

    def _calculate_trade_metrics(self, trades: List[Trade]) -> Dict[str, Any]:
        """Calculate metrics based on individual closed trades."""
        metrics: Dict[str, Any] = {}

        winners = [t for t in trades if t.is_winner]
        losers = [t for t in trades if not t.is_winner]

        metrics["win_rate"] = len(winners) / len(trades) * 100

        metrics["total_pnl"] = float(sum(t.pnl for t in trades))
        gross_profit = float(sum(t.pnl for t in winners))
        gross_loss = abs(float(sum(t.pnl for t in losers)))
        metrics["gross_profit"] = gross_profit
        metrics["gross_loss"] = gross_loss

        if gross_loss > 0:
            metrics["profit_factor"] = gross_profit / gross_loss
        else:
            metrics["profit_factor"] = float("inf") if gross_profit > 0 else 0.0

        metrics["avg_win"] = float(np.mean([t.pnl for t in winners])) if winners else 0.0
        metrics["avg_loss"] = float(np.mean([t.pnl for t in losers])) if losers else 0.0

        r_values = np.array([t.r_multiple for t in trades], dtype=float)
        metrics["avg_r"] = float(r_values.mean())
        metrics["best_r"] = float(r_values.max())
        metrics["worst_r"] = float(r_values.min())

        # Expectancy in R: win% * avg winning R + loss% * avg losing R
        win_r = r_values[r_values > 0]
        loss_r = r_values[r_values <= 0]
        win_pct = len(win_r) / len(r_values)
        metrics["expectancy_r"] = float(
            win_pct * (win_r.mean() if len(win_r) else 0.0)
            + (1 - win_pct) * (loss_r.mean() if len(loss_r) else 0.0)
        )

        metrics["max_consecutive_wins"] = self._max_consecutive(trades, winner=True)
        metrics["max_consecutive_losses"] = self._max_consecutive(trades, winner=False)

        exit_reasons: Dict[str, int] = {}
        for t in trades:
            reason = t.exit_reason.value if t.exit_reason is not None else "unknown"
            exit_reasons[reason] = exit_reasons.get(reason, 0) + 1
        metrics["exit_reasons"] = exit_reasons

        return metrics

    @staticmethod
    def equity_series(snapshots: List[AccountSnapshot], initial_cash: float) -> pd.Series:
        """Equity over time, starting from initial cash."""
        values = [initial_cash] + [s.equity for s in snapshots]
        return pd.Series(values, name="equity", dtype=float)

    def calculate_max_drawdown(self, equity_curve: pd.Series) -> float:
        """
        Calculate maximum drawdown percentage.

        Returns:
            Max drawdown as positive percentage
        """
        if len(equity_curve) < 2:
            return 0.0

        running_max = equity_curve.expanding().max()
        drawdown = (equity_curve - running_max) / running_max * 100
        return float(abs(drawdown.min()))

    def _max_consecutive(self, trades: List[Trade], winner: bool) -> int:
        """Calculate maximum consecutive wins or losses."""
        max_streak = 0
        current_streak = 0

        for trade in trades:
            if trade.is_winner == winner:
                current_streak += 1
                max_streak = max(max_streak, current_streak)
            else:
                current_streak = 0

        return max_streak
