"""
Console reports for backtest results.
"""

import logging
from typing import List

from gxtagent.core.types import Trade

logger = logging.getLogger(__name__)


class Reporter:
    """Prints backtest summaries and trade lists."""

    def print_summary(self, result) -> None:
        """
        Print a formatted summary of backtest results.

        Args:
            result: BacktestResult to summarize
        """
        metrics = result.metrics
        config = result.config
        snapshots = result.snapshots

        print("\n" + "=" * 60)
        print("BACKTEST RESULTS")
        print("=" * 60)

        print(f"\nSymbols: {', '.join(config.symbols)}")
        print(f"Timeframe: {config.timeframe}")
        if snapshots:
            print(
                f"Period: {snapshots[0].timestamp.strftime('%Y-%m-%d')} to "
                f"{snapshots[-1].timestamp.strftime('%Y-%m-%d')}"
            )
        print(f"Initial Cash: ${metrics.get('initial_cash', 0):,.2f}")

        print("\n--- PERFORMANCE ---")
        print(f"Final Equity: ${metrics.get('final_equity', 0):,.2f}")
        print(f"Total Return: {metrics.get('total_return_pct', 0):.2f}%")
        print(f"Total PnL: ${metrics.get('total_pnl', 0):,.2f}")
        print(f"Max Drawdown: {metrics.get('max_drawdown_pct', 0):.2f}%")

        print("\n--- TRADE STATISTICS ---")
        print(f"Total Trades: {metrics.get('total_trades', 0)}")
        print(f"Win Rate: {metrics.get('win_rate', 0):.1f}%")
        print(f"Profit Factor: {metrics.get('profit_factor', 0):.2f}")
        print(f"Avg Win: ${metrics.get('avg_win', 0):,.2f}")
        print(f"Avg Loss: ${metrics.get('avg_loss', 0):,.2f}")

        print("\n--- R-MULTIPLES ---")
        print(f"Avg R: {metrics.get('avg_r', 0):.2f}")
        print(f"Expectancy: {metrics.get('expectancy_r', 0):.2f}R")
        print(f"Best / Worst: {metrics.get('best_r', 0):.2f}R / {metrics.get('worst_r', 0):.2f}R")

        print("\n--- STREAKS ---")
        print(f"Max Consecutive Wins: {metrics.get('max_consecutive_wins', 0)}")
        print(f"Max Consecutive Losses: {metrics.get('max_consecutive_losses', 0)}")

        exit_reasons = metrics.get("exit_reasons", {})
        if exit_reasons:
            print("\n--- EXIT REASONS ---")
            for reason, count in sorted(exit_reasons.items(), key=lambda x: -x[1]):
                pct = count / metrics.get("total_trades", 1) * 100
                print(f"{reason}: {count} ({pct:.1f}%)")

        print("\n" + "=" * 60 + "\n")

    def print_trades(self, trades: List[Trade], limit: int = 20) -> None:
        """
        Print trade-by-trade details.

        Args:
            trades: Closed trades to display
            limit: Maximum number of trades to show
        """
        print("\n" + "-" * 92)
        print("TRADE DETAILS (most recent)")
        print("-" * 92)

        header = (
            f"{'Symbol':<8} {'Side':<6} {'Entry':<17} {'Exit':<17} "
            f"{'Entry$':>9} {'Exit$':>9} {'PnL':>10} {'R':>6} {'Reason':<15}"
        )
        print(header)
        print("-" * 92)

        recent_trades = trades[-limit:] if len(trades) > limit else trades

        for trade in recent_trades:
            reason = trade.exit_reason.value if trade.exit_reason else ""
            row = (
                f"{trade.symbol:<8} {trade.side.value:<6} "
                f"{trade.opened_at.strftime('%Y-%m-%d %H:%M'):<17} "
                f"{trade.closed_at.strftime('%Y-%m-%d %H:%M'):<17} "
                f"{trade.entry_price:>9.2f} {trade.exit_price:>9.2f} "
                f"{trade.pnl:>10.2f} {trade.r_multiple:>6.2f} {reason:<15}"
            )
            print(row)

        print("-" * 92)
        print(f"Showing {len(recent_trades)} of {len(trades)} trades\n")
