#!/usr/bin/env python3
"""
Replay stored bars through the trading pipeline.

Usage:
    python scripts/run_backtest.py --symbols SPY --timeframe 15Min
    python scripts/run_backtest.py --symbols SPY,QQQ --start 2024-01-01 --show-trades
"""

import argparse
import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytz

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from gxtagent.backtest.engine import BacktestEngine
from gxtagent.core.config import AgentConfig
from gxtagent.metrics.reporter import Reporter
from gxtagent.storage import SqliteStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def parse_date(raw: str) -> datetime:
    return pytz.UTC.localize(datetime.strptime(raw, "%Y-%m-%d"))


def main():
    parser = argparse.ArgumentParser(
        description="Backtest the trading pipeline on stored bars"
    )
    parser.add_argument(
        "--symbols",
        type=str,
        default="SPY",
        help="Comma-separated list of symbols"
    )
    parser.add_argument(
        "--timeframe",
        type=str,
        default="15Min",
        help="Timeframe for bars"
    )
    parser.add_argument("--start", type=str, help="Start date (YYYY-MM-DD)")
    parser.add_argument("--end", type=str, help="End date (YYYY-MM-DD)")
    parser.add_argument(
        "--days",
        type=int,
        default=180,
        help="Days of history (if start not specified)"
    )
    parser.add_argument("--capital", type=float, default=100000, help="Initial cash")
    parser.add_argument("--slippage", type=float, default=0.0, help="Slippage fraction per fill")
    parser.add_argument("--db", type=str, default=None, help="Database holding the bars")
    parser.add_argument(
        "--show-trades",
        action="store_true",
        help="Show individual trades"
    )

    # Strategy parameters
    parser.add_argument("--min-confidence", type=float, default=None)
    parser.add_argument("--min-score", type=float, default=None)
    parser.add_argument("--risk-fraction", type=float, default=None)
    parser.add_argument("--reward-risk", type=float, default=None)

    args = parser.parse_args()

    end_date = parse_date(args.end) if args.end else datetime.now(pytz.UTC)
    start_date = parse_date(args.start) if args.start else end_date - timedelta(days=args.days)

    config = AgentConfig.from_env()
    overrides = {"initial_cash": args.capital}
    for name in ("min_confidence", "min_score", "risk_fraction", "reward_risk"):
        value = getattr(args, name)
        if value is not None:
            overrides[name] = value
    config = config.with_overrides(**overrides)

    symbols = [s.strip().upper() for s in args.symbols.split(",")]
    bars = []
    with SqliteStore(args.db or config.db_path) as store:
        for symbol in symbols:
            series = store.bars_between(symbol, args.timeframe, start_date, end_date)
            if not series:
                logger.warning(f"No stored bars for {symbol} {args.timeframe}")
            bars.extend(series)

    if not bars:
        logger.error("No data available; run scripts/download_data.py first")
        return

    logger.info(f"Running backtest with {len(bars)} bars")
    result = BacktestEngine(config, slippage_pct=args.slippage).run(bars)

    reporter = Reporter()
    reporter.print_summary(result)
    if args.show_trades:
        reporter.print_trades(result.trades)


if __name__ == "__main__":
    main()
