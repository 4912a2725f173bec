"""
Bar store: append-only, time-ordered OHLCV bars per (symbol, timeframe).
Backed by the SQLite store, optionally synced from a raw bar feed.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Protocol

import pandas as pd

from .clock import to_utc
from .types import Bar

logger = logging.getLogger(__name__)


class BarFeed(Protocol):
    """Raw bar transport (e.g. AlpacaBarFeed)."""

    def fetch(
        self,
        symbol: str,
        timeframe: str = ...,
        start: Optional[datetime] = ...,
        end: Optional[datetime] = ...,
        limit: int = ...,
    ) -> List[Bar]:
        ...


class BarStore:
    """
    Append-only bar storage.

    Bars at or before the last stored timestamp for their series are
    dropped on append, so stored bars are never rewritten and stay ordered.
    """

    def __init__(self, store):
        """
        Args:
            store: Opened SqliteStore
        """
        self.store = store
        self._last_ts: Dict[tuple, Optional[datetime]] = {}

    def _last_timestamp(self, symbol: str, timeframe: str) -> Optional[datetime]:
        key = (symbol, timeframe)
        if key not in self._last_ts:
            self._last_ts[key] = self.store.last_bar_timestamp(symbol, timeframe)
        return self._last_ts[key]

    def append(self, bars: List[Bar]) -> int:
        """
        Append new bars. Naive timestamps are taken as UTC.

        Args:
            bars: Bars for any series, in any order

        Returns:
            Number of bars stored
        """
        accepted: List[Bar] = []
        newest: Dict[tuple, datetime] = {}
        normalized = [replace(b, timestamp=to_utc(b.timestamp)) for b in bars]
        for bar in sorted(normalized, key=lambda b: (b.symbol, b.timeframe, b.timestamp)):
            key = (bar.symbol, bar.timeframe)
            last = newest.get(key) or self._last_timestamp(bar.symbol, bar.timeframe)
            if last is not None and bar.timestamp <= last:
                continue
            accepted.append(bar)
            newest[key] = bar.timestamp

        skipped = len(bars) - len(accepted)
        if skipped:
            logger.debug(f"Skipped {skipped} bars already stored")

        stored = self.store.insert_bars(accepted)
        # Only advance once the write has gone through
        self._last_ts.update(newest)
        return stored

    def latest(self, symbol: str, timeframe: str, lookback: int) -> List[Bar]:
        """
        Most recent bars, oldest first. May return fewer than requested.
        """
        return self.store.latest_bars(symbol, timeframe, lookback)

    def sync(self, feed: BarFeed, symbol: str, timeframe: str, limit: int = 200) -> int:
        """
        Pull bars newer than the last stored one from a feed.

        Returns:
            Number of new bars stored
        """
        start = self._last_timestamp(symbol, timeframe)
        bars = feed.fetch(symbol, timeframe, start=start, limit=limit)
        stored = self.append(bars)
        if stored:
            logger.info(f"Stored {stored} new bars for {symbol} {timeframe}")
        return stored

    def to_dataframe(self, symbol: str, timeframe: str, lookback: int) -> pd.DataFrame:
        """Latest bars as a DataFrame indexed by timestamp."""
        bars = self.latest(symbol, timeframe, lookback)
        if not bars:
            return pd.DataFrame(columns=["open", "high", "low", "close", "volume"])
        df = pd.DataFrame(
            {
                "timestamp": [b.timestamp for b in bars],
                "open": [b.open for b in bars],
                "high": [b.high for b in bars],
                "low": [b.low for b in bars],
                "close": [b.close for b in bars],
                "volume": [b.volume for b in bars],
            }
        )
        return df.set_index("timestamp")
