#!/usr/bin/env python3
"""
Download historical bars into the agent database.

Usage:
    python scripts/download_data.py --symbols SPY,QQQ,AAPL --timeframe 15Min
    python scripts/download_data.py --symbols SPY --timeframe 1Day --days 365
"""

import argparse
import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytz

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from gxtagent.core.alpaca_broker import AlpacaBarFeed, TIMEFRAME_MAP
from gxtagent.core.bar_store import BarStore
from gxtagent.core.config import AgentConfig
from gxtagent.storage import SqliteStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(
        description="Download historical bars into the agent database"
    )
    parser.add_argument(
        "--symbols",
        type=str,
        required=True,
        help="Comma-separated list of symbols (e.g., SPY,QQQ,AAPL)"
    )
    parser.add_argument(
        "--timeframe",
        type=str,
        default="15Min",
        choices=list(TIMEFRAME_MAP),
        help="Timeframe for bars"
    )
    parser.add_argument(
        "--days",
        type=int,
        default=365,
        help="Number of days of history to download"
    )
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="Database path (default: DB_PATH or gxt-agent.db)"
    )

    args = parser.parse_args()

    symbols = [s.strip().upper() for s in args.symbols.split(",")]
    db_path = args.db or AgentConfig.from_env().db_path

    end_date = datetime.now(pytz.UTC)
    start_date = end_date - timedelta(days=args.days)

    logger.info(f"Downloading data for: {', '.join(symbols)}")
    logger.info(f"Timeframe: {args.timeframe}")
    logger.info(f"Date range: {start_date.date()} to {end_date.date()}")

    feed = AlpacaBarFeed()
    results = {}

    with SqliteStore(db_path) as store:
        bar_store = BarStore(store)
        for symbol in symbols:
            try:
                bars = feed.fetch(
                    symbol, args.timeframe, start=start_date, end=end_date, limit=1_000_000
                )
                results[symbol] = bar_store.append(bars)
            except Exception as e:
                logger.error(f"Failed to download {symbol}: {e}")
                results[symbol] = 0

        stored = {
            s: len(store.bars_between(s, args.timeframe)) for s in symbols
        }

    # Print results
    print("\n" + "=" * 50)
    print("DOWNLOAD RESULTS")
    print("=" * 50)

    total_bars = 0
    for symbol, count in results.items():
        status = "OK" if count > 0 else "NO NEW BARS"
        print(f"  {symbol}: {count:,} new bars, {stored[symbol]:,} stored [{status}]")
        total_bars += count

    print("-" * 50)
    print(f"  Total: {total_bars:,} new bars in {db_path}")
    print("=" * 50 + "\n")


if __name__ == "__main__":
    main()
