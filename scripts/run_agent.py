#!/usr/bin/env python3
"""
Trading agent loop.

Runs one trader thread per configured symbol. Each thread syncs new bars
into the store and runs a pipeline tick; the main thread records periodic
account snapshots and logs status.

Usage:
    python scripts/run_agent.py                      # Symbols from GXT_SYMBOLS
    python scripts/run_agent.py --symbols SPY AAPL   # Override symbols
    python scripts/run_agent.py --dry-run            # Live bars, paper fills
"""

import argparse
import logging
import signal
import sys
import threading
import time
from pathlib import Path
from typing import List

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from gxtagent.core.alpaca_broker import AlpacaBarFeed, AlpacaBroker, is_crypto
from gxtagent.core.bar_store import BarStore
from gxtagent.core.broker import PaperBroker, RetryingBroker
from gxtagent.core.config import AgentConfig
from gxtagent.core.errors import BrokerError, DataError, InvariantViolation
from gxtagent.core.state import AgentState
from gxtagent.storage import SqliteStore
from gxtagent.trading.pipeline import Pipeline

Path("data/logs").mkdir(parents=True, exist_ok=True)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler("data/logs/agent.log"),
    ]
)
logger = logging.getLogger(__name__)


class SymbolTrader:
    """Tick loop for a single symbol."""

    def __init__(
        self,
        symbol: str,
        pipeline: Pipeline,
        bar_store: BarStore,
        feed: AlpacaBarFeed,
        market_clock: AlpacaBroker,
        state: AgentState,
    ):
        self.symbol = symbol
        self.pipeline = pipeline
        self.bar_store = bar_store
        self.feed = feed
        self.market_clock = market_clock
        self.state = state
        self.logger = logging.getLogger(f"trader.{symbol.replace('/', '_')}")

    def run_iteration(self):
        """Sync bars and run one pipeline tick."""
        config = self.pipeline.config

        if not is_crypto(self.symbol) and not self.market_clock.is_market_open():
            self.logger.debug("Market closed")
            return

        try:
            self.bar_store.sync(self.feed, self.symbol, config.timeframe, limit=config.lookback)
        except DataError as e:
            self.logger.warning(f"Bar sync failed, using stored bars: {e}")

        result = self.pipeline.run_tick(self.symbol)
        self.state.mark_run(result.completed_at)

        snap = result.snapshot
        self.logger.info(
            f"score={snap.score:+.1f} conf={snap.confidence:.2f} bias={snap.bias.value} "
            f"-> {result.gate.decision.value} / {result.action.value}"
        )
        if result.failed:
            self.logger.warning(f"{result.failure.kind}: {result.failure.message}")


class Agent:
    """Runs symbol traders in parallel over a shared pipeline."""

    def __init__(self, config: AgentConfig, dry_run: bool = False):
        self.config = config
        self.dry_run = dry_run
        self.running = False

        self.store = SqliteStore(config.db_path).open()
        self.bar_store = BarStore(self.store)
        self.feed = AlpacaBarFeed()
        self.alpaca = AlpacaBroker(paper=config.paper, fill_timeout=config.broker_timeout / 2)

        execution = PaperBroker() if dry_run else self.alpaca
        self.broker = RetryingBroker.from_config(execution, config)

        self.pipeline = Pipeline(config, self.bar_store, self.broker, store=self.store)
        self.state = AgentState(self.pipeline, self.store)

        self.traders: List[SymbolTrader] = [
            SymbolTrader(s, self.pipeline, self.bar_store, self.feed, self.alpaca, self.state)
            for s in config.symbols
        ]
        self.threads: List[threading.Thread] = []

    def run_trader_loop(self, trader: SymbolTrader):
        """Run loop for a single trader."""
        interval = self.config.tick_seconds
        trader.logger.info(f"Started - ticking every {interval}s")

        while self.running:
            try:
                trader.run_iteration()
            except InvariantViolation as e:
                trader.logger.critical(f"Invariant violated, stopping agent: {e}", exc_info=True)
                self.shutdown()
                break
            except Exception as e:
                trader.logger.error(f"Error: {e}", exc_info=True)
            time.sleep(interval)

        trader.logger.info("Stopped")

    def log_status(self):
        """Log overall status."""
        health = self.state.health()
        latest = self.pipeline.ledger.latest
        equity = f"${latest.equity:,.2f}" if latest else "n/a"
        logger.info(
            f"STATUS: Equity={equity} OpenPositions={health['open_positions']} "
            f"LastRun={health['last_run_at']}"
        )

    def startup(self):
        """Rehydrate trades and reconcile with the broker before trading."""
        self.pipeline.rehydrate()
        try:
            report = self.pipeline.reconcile()
        except BrokerError as e:
            logger.error(f"Reconciliation failed: {e}")
            return
        if not report.is_consistent:
            logger.warning("Starting with unreconciled positions; review before trusting P&L")

    def run(self):
        """Run all traders in parallel."""
        self.running = True
        self.state.is_running = True

        logger.info("=" * 70)
        logger.info("TRADING AGENT STARTED")
        logger.info("=" * 70)
        logger.info(f"Symbols: {', '.join(self.config.symbols)} ({self.config.timeframe})")
        logger.info(f"Database: {self.config.db_path}")
        logger.info(f"Dry run: {self.dry_run}  Paper: {self.config.paper}")
        logger.info("=" * 70)

        self.startup()
        self.pipeline.record_snapshot()

        signal.signal(signal.SIGINT, self._handle_shutdown)
        signal.signal(signal.SIGTERM, self._handle_shutdown)

        for trader in self.traders:
            thread = threading.Thread(
                target=self.run_trader_loop,
                args=(trader,),
                name=f"trader-{trader.symbol}",
                daemon=True,
            )
            thread.start()
            self.threads.append(thread)

        # Main loop - periodic account snapshots and reconciliation
        while self.running:
            time.sleep(self.config.snapshot_seconds)
            if self.running:
                try:
                    self.pipeline.record_snapshot()
                    self.pipeline.reconcile()
                except Exception as e:
                    logger.error(f"Periodic snapshot or reconciliation failed: {e}", exc_info=True)
                self.log_status()

        for thread in self.threads:
            thread.join(timeout=self.config.broker_timeout + 5)

        self.broker.shutdown()
        self.store.close()
        self.state.is_running = False
        logger.info("Trading agent stopped")

    def shutdown(self):
        self.running = False
        self.pipeline.stop()

    def _handle_shutdown(self, signum, frame):
        """Handle shutdown signal."""
        logger.info("Shutdown signal received")
        self.shutdown()


def main():
    parser = argparse.ArgumentParser(description="Run the trading agent")
    parser.add_argument(
        "--symbols", nargs="+",
        help="Symbols to trade (default: GXT_SYMBOLS)"
    )
    parser.add_argument(
        "--timeframe",
        help="Bar timeframe (default: GXT_TIMEFRAME)"
    )
    parser.add_argument(
        "--env-file",
        help="Path to a .env file"
    )
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Fill orders with the paper broker instead of Alpaca"
    )

    args = parser.parse_args()

    config = AgentConfig.from_env(args.env_file)
    overrides = {}
    if args.symbols:
        overrides["symbols"] = args.symbols
    if args.timeframe:
        overrides["timeframe"] = args.timeframe
    if overrides:
        config = config.with_overrides(**overrides)

    agent = Agent(config, dry_run=args.dry_run)
    agent.run()


if __name__ == "__main__":
    main()
