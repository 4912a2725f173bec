"""
SQLite persistence for bars, trades, signal snapshots and account snapshots.

One store object is opened at startup, handed to the components that need it,
and closed at shutdown.
"""

import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from gxtagent.core.errors import StoreError
from gxtagent.core.types import AccountSnapshot, Bar, SignalSnapshot, Trade, TradeStatus
from . import records

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS trades (
    id TEXT PRIMARY KEY,
    symbol TEXT NOT NULL,
    side TEXT NOT NULL,
    qty REAL NOT NULL,
    entry_price REAL NOT NULL,
    exit_price REAL,
    stop_loss REAL NOT NULL,
    take_profit REAL NOT NULL,
    status TEXT NOT NULL DEFAULT 'open',
    pnl REAL,
    r_multiple REAL,
    confidence REAL NOT NULL,
    opened_at TEXT NOT NULL,
    closed_at TEXT,
    checklist_snapshot TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS account_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    cash REAL NOT NULL,
    equity REAL NOT NULL,
    day_pnl REAL NOT NULL,
    total_pnl REAL NOT NULL,
    timestamp TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS signal_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    signals TEXT NOT NULL,
    score REAL NOT NULL,
    confidence REAL NOT NULL,
    bias TEXT NOT NULL,
    should_trade INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS bars (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol TEXT NOT NULL,
    timeframe TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    open REAL NOT NULL,
    high REAL NOT NULL,
    low REAL NOT NULL,
    close REAL NOT NULL,
    volume REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_bars_series ON bars (symbol, timeframe, timestamp);
CREATE INDEX IF NOT EXISTS idx_trades_status ON trades (status, symbol);
"""


class SqliteStore:
    """
    Thread-safe SQLite store.

    Usage:
        with SqliteStore("gxt-agent.db") as store:
            store.insert_trade(trade)
    """

    def __init__(self, path: str = "gxt-agent.db"):
        """
        Args:
            path: Database file path, or ":memory:" for an in-memory database
        """
        self.path = path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------ lifecycle

    def open(self) -> "SqliteStore":
        if self._conn is not None:
            return self
        try:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA foreign_keys = ON")
            conn.executescript(SCHEMA)
            conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open database {self.path}: {e}") from e

        self._conn = conn
        logger.info(f"Database initialized: {self.path}")
        return self

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.info(f"Database closed: {self.path}")

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def __enter__(self) -> "SqliteStore":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------ helpers

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreError("Store is not open")
        return self._conn

    def _write(self, sql: str, params) -> int:
        with self._lock:
            conn = self._connection()
            try:
                cur = conn.execute(sql, params)
                conn.commit()
                return cur.lastrowid
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreError(f"Write failed: {e}") from e

    def _read(self, sql: str, params=()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self._connection().execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StoreError(f"Read failed: {e}") from e

    # ------------------------------------------------------------------ bars

    def insert_bars(self, bars: List[Bar]) -> int:
        if not bars:
            return 0
        with self._lock:
            conn = self._connection()
            try:
                conn.executemany(
                    """
                    INSERT INTO bars (symbol, timeframe, timestamp, open, high, low, close, volume)
                    VALUES (:symbol, :timeframe, :timestamp, :open, :high, :low, :close, :volume)
                    """,
                    [records.bar_params(b) for b in bars],
                )
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreError(f"Bar insert failed: {e}") from e
        return len(bars)

    def latest_bars(self, symbol: str, timeframe: str, limit: int) -> List[Bar]:
        """Most recent `limit` bars, oldest first."""
        rows = self._read(
            """
            SELECT * FROM (
                SELECT * FROM bars WHERE symbol = ? AND timeframe = ?
                ORDER BY timestamp DESC LIMIT ?
            ) ORDER BY timestamp ASC
            """,
            (symbol, timeframe, limit),
        )
        return [records.decode_bar_row(r) for r in rows]

    def bars_between(
        self,
        symbol: str,
        timeframe: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Bar]:
        """Bars with start <= timestamp <= end, oldest first. Open bounds when None."""
        sql = "SELECT * FROM bars WHERE symbol = ? AND timeframe = ?"
        params: list = [symbol, timeframe]
        if start is not None:
            sql += " AND timestamp >= ?"
            params.append(records.encode_time(start))
        if end is not None:
            sql += " AND timestamp <= ?"
            params.append(records.encode_time(end))
        rows = self._read(sql + " ORDER BY timestamp ASC", params)
        return [records.decode_bar_row(r) for r in rows]

    def last_bar_timestamp(self, symbol: str, timeframe: str) -> Optional[datetime]:
        rows = self._read(
            "SELECT MAX(timestamp) AS ts FROM bars WHERE symbol = ? AND timeframe = ?",
            (symbol, timeframe),
        )
        return records.decode_time(rows[0]["ts"]) if rows else None

    # ------------------------------------------------------------------ trades

    def insert_trade(self, trade: Trade) -> None:
        self._write(
            """
            INSERT INTO trades (
                id, symbol, side, qty, entry_price, exit_price, stop_loss, take_profit,
                status, pnl, r_multiple, confidence, opened_at, closed_at, checklist_snapshot
            ) VALUES (
                :id, :symbol, :side, :qty, :entry_price, :exit_price, :stop_loss, :take_profit,
                :status, :pnl, :r_multiple, :confidence, :opened_at, :closed_at, :checklist_snapshot
            )
            """,
            records.trade_params(trade),
        )

    def update_trade(self, trade: Trade) -> None:
        """Persist the close fields of a trade. Entry fields are never rewritten."""
        params = records.trade_params(trade)
        self._write(
            """
            UPDATE trades SET exit_price = :exit_price, status = :status, pnl = :pnl,
                r_multiple = :r_multiple, closed_at = :closed_at
            WHERE id = :id
            """,
            params,
        )

    def load_trades(
        self,
        status: Optional[TradeStatus] = None,
        symbol: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Trade]:
        sql = "SELECT * FROM trades WHERE 1 = 1"
        params: list = []
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        if symbol is not None:
            sql += " AND symbol = ?"
            params.append(symbol)
        sql += " ORDER BY opened_at DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [records.decode_trade_row(r) for r in self._read(sql, params)]

    # ------------------------------------------------------------------ account

    def insert_account_snapshot(self, snapshot: AccountSnapshot) -> int:
        return self._write(
            """
            INSERT INTO account_snapshots (cash, equity, day_pnl, total_pnl, timestamp)
            VALUES (:cash, :equity, :day_pnl, :total_pnl, :timestamp)
            """,
            records.account_params(snapshot),
        )

    def load_account_snapshots(self, limit: int = 100) -> List[AccountSnapshot]:
        """Most recent snapshots, oldest first."""
        rows = self._read(
            """
            SELECT * FROM (
                SELECT * FROM account_snapshots ORDER BY id DESC LIMIT ?
            ) ORDER BY id ASC
            """,
            (limit,),
        )
        return [records.decode_account_row(r) for r in rows]

    # ------------------------------------------------------------------ signals

    def insert_signal_snapshot(self, snapshot: SignalSnapshot) -> int:
        return self._write(
            """
            INSERT INTO signal_snapshots (symbol, timestamp, signals, score, confidence, bias, should_trade)
            VALUES (:symbol, :timestamp, :signals, :score, :confidence, :bias, :should_trade)
            """,
            records.signal_params(snapshot),
        )

    def load_signal_snapshots(
        self,
        symbol: Optional[str] = None,
        limit: int = 100,
    ) -> List[SignalSnapshot]:
        """Most recent signal snapshots, newest first."""
        if symbol is None:
            rows = self._read(
                "SELECT * FROM signal_snapshots ORDER BY id DESC LIMIT ?", (limit,)
            )
        else:
            rows = self._read(
                "SELECT * FROM signal_snapshots WHERE symbol = ? ORDER BY id DESC LIMIT ?",
                (symbol, limit),
            )
        return [records.decode_signal_row(r) for r in rows]
