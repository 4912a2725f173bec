"""Tests for position sizing."""

from datetime import datetime

import pytest
import pytz

from gxtagent.core.errors import SizingError
from gxtagent.core.types import Bias, SignalSnapshot, SizingConstraint, TradeSide
from gxtagent.trading.risk_manager import RiskManager, round_down


class TestRoundDown:
    """Tests for lot rounding."""

    def test_whole_units(self):
        assert round_down(50.9, 1.0) == 50.0

    def test_fractional_lots(self):
        assert round_down(0.7512, 0.25) == 0.75
        assert round_down(1.23456, 0.001) == pytest.approx(1.234)

    def test_exact_multiple_is_kept(self):
        """Float noise does not drop a whole lot."""
        assert round_down(0.3, 0.1) == pytest.approx(0.3)

    def test_non_positive(self):
        assert round_down(-1.0, 1.0) == 0.0


class TestRiskManager:
    """Tests for RiskManager class."""

    def test_fixed_fractional_long(self):
        """10000 equity, 1% risk, 2-point stop gives 50 units."""
        rm = RiskManager(risk_fraction=0.01, stop_pct=0.02, reward_risk=2.0)
        sizing = rm.size(TradeSide.LONG, price=100.0, equity=10000.0)

        assert sizing.stop_distance == pytest.approx(2.0)
        assert sizing.stop_loss == pytest.approx(98.0)
        assert sizing.take_profit == pytest.approx(104.0)
        assert sizing.quantity == 50
        assert sizing.stop_source == "percent"
        assert sizing.binding_constraint is SizingConstraint.RISK

    def test_short_levels(self):
        rm = RiskManager(stop_pct=0.04, reward_risk=3.0)
        sizing = rm.size(TradeSide.SHORT, price=50.0, equity=10000.0)

        assert sizing.stop_loss == pytest.approx(52.0)
        assert sizing.take_profit == pytest.approx(44.0)

    def test_structural_stop(self):
        rm = RiskManager()
        sizing = rm.size(TradeSide.LONG, 100.0, 10000.0, structural_level=95.0)

        assert sizing.stop_source == "structural"
        assert sizing.stop_loss == pytest.approx(95.0)
        assert sizing.quantity == 20

    def test_structural_stop_on_wrong_side_falls_back(self):
        rm = RiskManager()
        sizing = rm.size(TradeSide.LONG, 100.0, 10000.0, structural_level=101.0)

        assert sizing.stop_source == "percent"
        assert sizing.stop_loss == pytest.approx(98.0)

    def test_structural_stop_disabled(self):
        rm = RiskManager(use_structural_stop=False)
        sizing = rm.size(TradeSide.LONG, 100.0, 10000.0, structural_level=95.0)
        assert sizing.stop_source == "percent"

    def test_cash_cap_binds(self):
        """Risk sizing asks for 50 units but cash only pays for 30."""
        rm = RiskManager()
        sizing = rm.size(TradeSide.LONG, 100.0, 10000.0, cash=3050.0)

        assert sizing.risk_quantity == 50
        assert sizing.cash_quantity == 30
        assert sizing.quantity == 30
        assert sizing.binding_constraint is SizingConstraint.CASH

    def test_zero_quantity_fails(self):
        rm = RiskManager()
        with pytest.raises(SizingError):
            rm.size(TradeSide.LONG, 100.0, equity=50.0)

    def test_no_cash_fails(self):
        rm = RiskManager()
        with pytest.raises(SizingError):
            rm.size(TradeSide.LONG, 100.0, 10000.0, cash=0.0)

    def test_zero_stop_distance_fails(self):
        rm = RiskManager(stop_pct=0.0)
        with pytest.raises(SizingError):
            rm.size(TradeSide.LONG, 100.0, 10000.0)

    def test_invalid_price_fails(self):
        with pytest.raises(SizingError):
            RiskManager().size(TradeSide.LONG, 0.0, 10000.0)

    def test_size_for_uses_snapshot_bias(self):
        snapshot = SignalSnapshot(
            "SPY", datetime(2024, 1, 2, tzinfo=pytz.UTC), (), -60.0, 0.8,
            Bias.BEARISH, True, structural_low=90.0, structural_high=104.0, price=100.0,
        )
        sizing = RiskManager().size_for(snapshot, 100.0, 10000.0)

        assert sizing.side is TradeSide.SHORT
        assert sizing.stop_loss == pytest.approx(104.0)
        assert sizing.quantity == 25
