"""Tests for SQLite persistence and the bar store."""

import sqlite3
from dataclasses import replace
from datetime import datetime, timedelta

import pytest
import pytz

from gxtagent.core.bar_store import BarStore
from gxtagent.core.errors import StoreError
from gxtagent.core.types import (
    AccountSnapshot, Bar, Bias, Checklist, IndicatorVote, SignalSnapshot,
    SizingConstraint, Trade, TradeSide, TradeStatus,
)
from gxtagent.storage import SqliteStore

START = datetime(2024, 1, 2, 14, 30, tzinfo=pytz.UTC)


def make_bars(n: int, symbol: str = "SPY", start: datetime = START) -> list:
    return [
        Bar(symbol, "15Min", start + timedelta(minutes=15 * i), 100 + i, 101 + i, 99 + i, 100.5 + i, 500)
        for i in range(n)
    ]


class FlakyBarWrites(SqliteStore):
    """In-memory store whose first bar write fails."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures = 1

    def insert_bars(self, bars):
        if self.failures:
            self.failures -= 1
            raise StoreError("database is locked")
        return super().insert_bars(bars)


def make_trade(trade_id: str = "t1", symbol: str = "SPY") -> Trade:
    checklist = Checklist(
        score=62.5, confidence=0.8, bias=Bias.BULLISH,
        signals={"rsi": 61.2, "rsi_vote": 1.0}, entry_reference_price=100.0,
        equity=10000.0, cash=9000.0, risk_fraction=0.01, reward_risk=3.0,
        stop_distance=2.0, stop_source="percent", binding_constraint=SizingConstraint.CASH,
    )
    return Trade(
        id=trade_id, symbol=symbol, side=TradeSide.LONG, quantity=10, entry_price=100.0,
        stop_loss=98.0, take_profit=106.0, confidence=0.8, opened_at=START,
        checklist=checklist,
    )


@pytest.fixture
def store():
    with SqliteStore(":memory:") as s:
        yield s


class TestSqliteStore:
    """Tests for SqliteStore class."""

    def test_trade_round_trip(self, store):
        trade = make_trade()
        store.insert_trade(trade)

        loaded = store.load_trades()[0]

        assert loaded == trade
        assert loaded.checklist.binding_constraint is SizingConstraint.CASH
        assert loaded.checklist.signals["rsi"] == 61.2

    def test_checklist_keeps_entry_bar_timestamp(self, store):
        trade = make_trade()
        trade = replace(trade, checklist=replace(trade.checklist, bar_timestamp=START - timedelta(minutes=15)))
        store.insert_trade(trade)

        loaded = store.load_trades()[0]

        assert loaded.checklist.bar_timestamp == START - timedelta(minutes=15)
        assert loaded.entry_bar_at == START - timedelta(minutes=15)

    def test_update_trade_close_fields(self, store):
        trade = make_trade()
        store.insert_trade(trade)
        closed = replace(
            trade, status=TradeStatus.CLOSED, exit_price=106.0, pnl=60.0,
            r_multiple=3.0, closed_at=START + timedelta(hours=1),
        )
        store.update_trade(closed)

        loaded = store.load_trades(status=TradeStatus.CLOSED)
        assert len(loaded) == 1
        assert loaded[0].pnl == 60.0
        assert loaded[0].r_multiple == 3.0
        assert store.load_trades(status=TradeStatus.OPEN) == []

    def test_duplicate_trade_id_fails(self, store):
        store.insert_trade(make_trade())
        with pytest.raises(StoreError):
            store.insert_trade(make_trade())

    def test_signal_snapshot_round_trip(self, store):
        snapshot = SignalSnapshot(
            symbol="SPY", timestamp=START,
            votes=(IndicatorVote("rsi", 61.2, 1, 0.2), IndicatorVote("macd", -0.1, -1, 0.2)),
            score=0.0, confidence=0.0, bias=Bias.NEUTRAL, should_trade=False,
            structural_low=97.0, price=100.5,
        )
        store.insert_signal_snapshot(snapshot)

        assert store.load_signal_snapshots("SPY") == [snapshot]
        assert store.load_signal_snapshots("QQQ") == []

    def test_should_trade_stored_as_integer(self, store):
        snapshot = SignalSnapshot("SPY", START, (), 50.0, 0.8, Bias.BULLISH, True)
        store.insert_signal_snapshot(snapshot)

        row = store._read("SELECT should_trade, bias FROM signal_snapshots")[0]
        assert row["should_trade"] == 1
        assert row["bias"] == "bullish"

    def test_unknown_signal_version_fails(self, store):
        store._write(
            "INSERT INTO signal_snapshots (symbol, timestamp, signals, score, confidence, bias, should_trade) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            ("SPY", START.isoformat(), '{"version": 99, "votes": []}', 0.0, 0.0, "neutral", 0),
        )
        with pytest.raises(StoreError):
            store.load_signal_snapshots()

    def test_account_snapshots_ordered(self, store):
        for i in range(3):
            store.insert_account_snapshot(
                AccountSnapshot(1000.0 + i, 1000.0 + i, 0.0, float(i), START + timedelta(hours=i))
            )

        loaded = store.load_account_snapshots(limit=2)

        assert [s.total_pnl for s in loaded] == [1.0, 2.0]
        assert all(s.id is not None for s in loaded)

    def test_latest_bars_oldest_first(self, store):
        store.insert_bars(make_bars(10))

        latest = store.latest_bars("SPY", "15Min", 3)

        assert [b.open for b in latest] == [107, 108, 109]
        assert store.last_bar_timestamp("SPY", "15Min") == latest[-1].timestamp
        assert store.last_bar_timestamp("QQQ", "15Min") is None

    def test_timestamps_normalized_to_utc(self, store):
        eastern = pytz.timezone("America/New_York")
        bars = make_bars(2, start=eastern.localize(datetime(2024, 1, 2, 9, 30)))
        store.insert_bars(bars)

        loaded = store.latest_bars("SPY", "15Min", 5)

        assert loaded[0].timestamp == bars[0].timestamp
        assert loaded[0].timestamp.utcoffset() == timedelta(0)

    def test_closed_store_raises(self):
        s = SqliteStore(":memory:")
        with pytest.raises(StoreError):
            s.load_trades()

    def test_schema_matches_record_layout(self, store):
        columns = {r["name"] for r in store._read("PRAGMA table_info(trades)")}
        assert columns == {
            "id", "symbol", "side", "qty", "entry_price", "exit_price", "stop_loss",
            "take_profit", "status", "pnl", "r_multiple", "confidence", "opened_at",
            "closed_at", "checklist_snapshot",
        }

    def test_file_database(self, tmp_path):
        path = tmp_path / "db" / "agent.db"
        with SqliteStore(str(path)) as s:
            s.insert_trade(make_trade())

        with SqliteStore(str(path)) as s:
            assert len(s.load_trades()) == 1

        conn = sqlite3.connect(str(path))
        assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
        conn.close()


class TestBarStore:
    """Tests for BarStore class."""

    def test_append_skips_stored_bars(self, store):
        bar_store = BarStore(store)
        bars = make_bars(5)

        assert bar_store.append(bars[:3]) == 3
        assert bar_store.append(bars) == 2
        assert len(bar_store.latest("SPY", "15Min", 100)) == 5

    def test_sync_pulls_newer_bars(self, store):
        bars = make_bars(6)

        class FakeFeed:
            def __init__(self):
                self.starts = []

            def fetch(self, symbol, timeframe, start=None, end=None, limit=200):
                self.starts.append(start)
                return [b for b in bars if start is None or b.timestamp > start]

        feed = FakeFeed()
        bar_store = BarStore(store)
        bar_store.append(bars[:4])

        assert bar_store.sync(feed, "SPY", "15Min") == 2
        assert feed.starts == [bars[3].timestamp]

    def test_to_dataframe(self, store):
        bar_store = BarStore(store)
        bar_store.append(make_bars(4))

        df = bar_store.to_dataframe("SPY", "15Min", 10)

        assert list(df.columns) == ["open", "high", "low", "close", "volume"]
        assert len(df) == 4

    def test_failed_write_can_be_retried(self):
        with FlakyBarWrites(":memory:") as flaky:
            bar_store = BarStore(flaky)
            bars = make_bars(3)

            with pytest.raises(StoreError):
                bar_store.append(bars)

            assert bar_store.append(bars) == 3
            assert len(bar_store.latest("SPY", "15Min", 10)) == 3

    def test_naive_timestamps_taken_as_utc(self, store):
        bar_store = BarStore(store)
        naive = [replace(b, timestamp=b.timestamp.replace(tzinfo=None)) for b in make_bars(3)]

        assert bar_store.append(naive) == 3
        assert bar_store.append(make_bars(4)) == 1
        assert bar_store.latest("SPY", "15Min", 10)[0].timestamp == START
