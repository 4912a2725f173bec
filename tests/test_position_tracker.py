"""Tests for the trade state machine."""

import threading
from datetime import datetime, timedelta

import pytest
import pytz

from gxtagent.core.errors import StoreError, TradeStateError
from gxtagent.core.types import (
    Bias, Checklist, ExitReason, Fill, SizingConstraint, SizingResult, TradeSide,
    TradeStatus,
)
from gxtagent.storage import SqliteStore
from gxtagent.trading.position_tracker import PositionTracker, compute_pnl, compute_r_multiple

OPENED = datetime(2024, 1, 2, 15, 0, tzinfo=pytz.UTC)
CLOSED = OPENED + timedelta(hours=2)


def make_checklist(price: float = 100.0) -> Checklist:
    return Checklist(
        score=60.0, confidence=0.8, bias=Bias.BULLISH, signals={"rsi": 61.0},
        entry_reference_price=price, equity=10000.0, cash=10000.0,
        risk_fraction=0.01, reward_risk=3.0, stop_distance=2.0,
        stop_source="percent", binding_constraint=SizingConstraint.RISK,
    )


def open_trade(
    tracker: PositionTracker,
    symbol: str = "SPY",
    side: TradeSide = TradeSide.LONG,
    entry: float = 100.0,
    stop: float = 98.0,
    target: float = 106.0,
    qty: float = 10,
    order_id: str = "t1",
):
    fill = Fill(order_id, symbol, side, qty, entry, OPENED)
    sizing = SizingResult(
        side=side, entry_price=entry, stop_loss=stop, take_profit=target,
        quantity=qty, stop_distance=abs(entry - stop), stop_source="percent",
        risk_quantity=qty, cash_quantity=qty, binding_constraint=SizingConstraint.RISK,
    )
    return tracker.open(fill, sizing, 0.8, make_checklist(entry), opened_at=OPENED)


class FailingStore:
    """Store whose writes always fail."""

    def insert_trade(self, trade):
        raise StoreError("disk full")

    def update_trade(self, trade):
        raise StoreError("disk full")


class TestArithmetic:
    """Tests for pnl and R-multiple formulas."""

    def test_long_pnl(self):
        assert compute_pnl(TradeSide.LONG, 100.0, 106.0, 10) == 60.0

    def test_short_pnl(self):
        assert compute_pnl(TradeSide.SHORT, 50.0, 52.0, 5) == -10.0

    def test_r_multiple(self):
        assert compute_r_multiple(60.0, 100.0, 98.0, 10) == pytest.approx(3.0)

    def test_zero_risk(self):
        with pytest.raises(TradeStateError):
            compute_r_multiple(10.0, 100.0, 100.0, 10)


class TestPositionTracker:
    """Tests for PositionTracker class."""

    def test_open_sets_levels_and_id(self):
        tracker = PositionTracker()
        trade = open_trade(tracker)

        assert trade.id == "t1"
        assert trade.status is TradeStatus.OPEN
        assert trade.stop_loss == 98.0
        assert trade.take_profit == 106.0
        assert trade.pnl is None
        assert trade.r_multiple is None
        assert tracker.open_trade("SPY") == trade
        assert tracker.open_count() == 1

    def test_close_long_take_profit(self):
        """Long 10 @ 100, stop 98, exit 106: pnl 60, R 3.0."""
        tracker = PositionTracker()
        open_trade(tracker)

        closed = tracker.close("t1", 106.0, CLOSED, ExitReason.TAKE_PROFIT)

        assert closed.status is TradeStatus.CLOSED
        assert closed.pnl == pytest.approx(60.0)
        assert closed.r_multiple == pytest.approx(3.0)
        assert closed.exit_price == 106.0
        assert closed.closed_at == CLOSED
        assert closed.exit_reason is ExitReason.TAKE_PROFIT
        assert tracker.open_trade("SPY") is None
        assert tracker.closed_trades() == [closed]

    def test_close_short_stop_loss(self):
        """Short 5 @ 50, stop 52, exit 52: pnl -10, R -1.0."""
        tracker = PositionTracker()
        open_trade(tracker, side=TradeSide.SHORT, entry=50.0, stop=52.0, target=44.0, qty=5)

        closed = tracker.close("t1", 52.0, CLOSED, ExitReason.STOP_LOSS)

        assert closed.pnl == pytest.approx(-10.0)
        assert closed.r_multiple == pytest.approx(-1.0)

    def test_r_multiple_matches_formula(self):
        tracker = PositionTracker()
        open_trade(tracker, entry=100.0, stop=97.0, qty=4)
        closed = tracker.close("t1", 101.5, CLOSED)

        assert closed.r_multiple == pytest.approx(closed.pnl / (abs(100.0 - 97.0) * 4))

    def test_close_twice_raises(self):
        """A closed trade is terminal and its pnl never changes."""
        tracker = PositionTracker()
        open_trade(tracker)
        closed = tracker.close("t1", 106.0, CLOSED)

        with pytest.raises(TradeStateError):
            tracker.close("t1", 90.0, CLOSED + timedelta(hours=1))

        assert tracker.closed_trades()[0].pnl == closed.pnl

    def test_close_unknown_raises(self):
        with pytest.raises(TradeStateError):
            PositionTracker().close("missing", 1.0, CLOSED)

    def test_one_open_trade_per_symbol(self):
        tracker = PositionTracker()
        open_trade(tracker)

        with pytest.raises(TradeStateError):
            open_trade(tracker, order_id="t2")

        assert tracker.open_count() == 1

    def test_reopen_after_close(self):
        tracker = PositionTracker()
        open_trade(tracker)
        tracker.close("t1", 99.0, CLOSED)

        second = open_trade(tracker, order_id="t2")

        assert tracker.open_trade("SPY") == second
        assert len(tracker.closed_trades()) == 1

    def test_reserve_respects_limit(self):
        tracker = PositionTracker()
        open_trade(tracker)

        assert tracker.reserve("QQQ", max_open=2) is True
        assert tracker.reserve("AAPL", max_open=2) is False

        tracker.release("QQQ")
        assert tracker.reserve("AAPL", max_open=2) is True

    def test_reserve_rejects_open_symbol(self):
        tracker = PositionTracker()
        open_trade(tracker)
        with pytest.raises(TradeStateError):
            tracker.reserve("SPY", max_open=5)

    def test_concurrent_reservations(self):
        """Concurrent claims never exceed the limit."""
        tracker = PositionTracker()
        granted = []
        barrier = threading.Barrier(8)

        def claim(symbol):
            barrier.wait()
            if tracker.reserve(symbol, max_open=3):
                granted.append(symbol)

        threads = [threading.Thread(target=claim, args=(f"S{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(granted) == 3

    def test_persistence_failure_keeps_trade_and_marks_unpersisted(self):
        tracker = PositionTracker(store=FailingStore())

        with pytest.raises(StoreError):
            open_trade(tracker)

        assert tracker.open_trade("SPY") is not None
        assert tracker.unpersisted == {"t1"}

    def test_persists_open_and_close(self):
        with SqliteStore(":memory:") as store:
            tracker = PositionTracker(store)
            open_trade(tracker)
            assert store.load_trades(status=TradeStatus.OPEN)[0].id == "t1"

            tracker.close("t1", 106.0, CLOSED, ExitReason.TAKE_PROFIT)
            stored = store.load_trades()[0]

        assert stored.status is TradeStatus.CLOSED
        assert stored.pnl == pytest.approx(60.0)
        assert stored.r_multiple == pytest.approx(3.0)
        assert stored.closed_at == CLOSED

    def test_rehydrate(self):
        with SqliteStore(":memory:") as store:
            first = PositionTracker(store)
            open_trade(first)
            open_trade(first, symbol="QQQ", order_id="t2")
            first.close("t2", 101.0, CLOSED)

            second = PositionTracker(store)
            second.rehydrate(store.load_trades())

        assert second.open_trade("SPY").id == "t1"
        assert [t.id for t in second.closed_trades()] == ["t2"]
