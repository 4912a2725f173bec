"""Tests for core types."""

import pytest
from dataclasses import FrozenInstanceError
from datetime import datetime

import pytz

from gxtagent.core.types import (
    Bar, Bias, Checklist, IndicatorVote, ReconciliationReport, SignalSnapshot,
    SizingConstraint, Trade, TradeSide, TradeStatus,
)


def make_checklist() -> Checklist:
    return Checklist(
        score=60.0,
        confidence=0.8,
        bias=Bias.BULLISH,
        signals={"rsi": 62.0},
        entry_reference_price=100.0,
        equity=10000.0,
        cash=10000.0,
        risk_fraction=0.01,
        reward_risk=4.0,
        stop_distance=2.0,
        stop_source="percent",
        binding_constraint=SizingConstraint.RISK,
    )


class TestBar:
    """Tests for Bar dataclass."""

    def test_range(self):
        """Test high-low range."""
        bar = Bar("SPY", "15Min", datetime(2024, 1, 2, tzinfo=pytz.UTC), 100, 105, 99, 104, 1000)
        assert bar.range == 6

    def test_immutable(self):
        """Stored bars cannot be modified."""
        bar = Bar("SPY", "15Min", datetime(2024, 1, 2, tzinfo=pytz.UTC), 100, 105, 99, 104, 1000)
        with pytest.raises(FrozenInstanceError):
            bar.close = 1.0


class TestTradeSide:
    """Tests for TradeSide enum."""

    def test_direction(self):
        assert TradeSide.LONG.direction == 1
        assert TradeSide.SHORT.direction == -1

    def test_from_bias(self):
        assert TradeSide.from_bias(Bias.BULLISH) is TradeSide.LONG
        assert TradeSide.from_bias(Bias.BEARISH) is TradeSide.SHORT

    def test_neutral_has_no_side(self):
        with pytest.raises(ValueError):
            TradeSide.from_bias(Bias.NEUTRAL)


class TestSignalSnapshot:
    """Tests for SignalSnapshot dataclass."""

    def test_signals_flattening(self):
        """Votes and structural levels appear in the flat signal map."""
        snapshot = SignalSnapshot(
            symbol="SPY",
            timestamp=datetime(2024, 1, 2, tzinfo=pytz.UTC),
            votes=(IndicatorVote("rsi", 62.0, 1, 0.2),),
            score=20.0,
            confidence=1.0,
            bias=Bias.BULLISH,
            should_trade=False,
            structural_low=97.5,
        )

        assert snapshot.signals == {"rsi": 62.0, "rsi_vote": 1.0, "structural_low": 97.5}

    def test_structural_stop(self):
        snapshot = SignalSnapshot(
            "SPY", None, (), 0.0, 0.0, Bias.NEUTRAL, False,
            structural_low=95.0, structural_high=105.0,
        )
        assert snapshot.structural_stop(TradeSide.LONG) == 95.0
        assert snapshot.structural_stop(TradeSide.SHORT) == 105.0


class TestTrade:
    """Tests for Trade dataclass."""

    def test_open_trade_has_no_close_fields(self):
        """pnl, r_multiple, exit price and close time are unset while open."""
        trade = Trade(
            id="t1", symbol="SPY", side=TradeSide.LONG, quantity=10,
            entry_price=100.0, stop_loss=98.0, take_profit=106.0, confidence=0.8,
            opened_at=datetime(2024, 1, 2, tzinfo=pytz.UTC), checklist=make_checklist(),
        )

        assert trade.is_open
        assert trade.status is TradeStatus.OPEN
        assert trade.pnl is None
        assert trade.r_multiple is None
        assert trade.exit_price is None
        assert trade.closed_at is None
        assert trade.initial_risk == 20.0

    def test_unrealized_pnl_short(self):
        trade = Trade(
            id="t2", symbol="SPY", side=TradeSide.SHORT, quantity=5,
            entry_price=50.0, stop_loss=52.0, take_profit=44.0, confidence=0.8,
            opened_at=datetime(2024, 1, 2, tzinfo=pytz.UTC), checklist=make_checklist(),
        )
        assert trade.unrealized_pnl(48.0) == 10.0
        assert trade.unrealized_pnl(53.0) == -15.0


class TestReconciliationReport:
    """Tests for ReconciliationReport."""

    def test_consistent(self):
        assert ReconciliationReport(broker_positions={"SPY": 10}).is_consistent

    def test_inconsistent(self):
        report = ReconciliationReport(missing_at_broker=["SPY"])
        assert not report.is_consistent
