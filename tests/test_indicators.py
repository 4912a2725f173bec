"""Tests for indicator formulas."""

import numpy as np
import pandas as pd
import pytest

from gxtagent.analysis import indicators


class TestIndicators:
    """Tests for the pure indicator functions."""

    def test_ema_first_value_is_seed(self):
        series = pd.Series([10.0, 20.0, 30.0])
        out = indicators.ema(series, span=3)

        assert out.iloc[0] == 10.0
        # alpha = 2 / (3 + 1) = 0.5
        assert out.iloc[1] == pytest.approx(15.0)
        assert out.iloc[2] == pytest.approx(22.5)

    def test_rsi_rising_series(self):
        """No losses gives RSI 100."""
        close = pd.Series(np.arange(1.0, 31.0))
        assert indicators.rsi(close, 14).iloc[-1] == 100.0

    def test_rsi_falling_series(self):
        """No gains gives RSI 0."""
        close = pd.Series(np.arange(30.0, 0.0, -1.0))
        assert indicators.rsi(close, 14).iloc[-1] == pytest.approx(0.0)

    def test_rsi_flat_series(self):
        close = pd.Series([50.0] * 30)
        assert indicators.rsi(close, 14).iloc[-1] == 50.0

    def test_macd_histogram_accelerating_rise(self):
        close = pd.Series([100 + 0.05 * i ** 2 for i in range(60)])
        assert indicators.macd_histogram(close).iloc[-1] > 0

    def test_rate_of_change(self):
        close = pd.Series([100.0, 101.0, 110.0])
        assert indicators.rate_of_change(close, 2).iloc[-1] == pytest.approx(10.0)

    def test_sign_vote(self):
        assert indicators.sign_vote(0.5, 0.25) == 1
        assert indicators.sign_vote(-0.5, 0.25) == -1
        assert indicators.sign_vote(0.1, 0.25) == 0
        assert indicators.sign_vote(float("nan")) == 0

    def test_band_vote(self):
        assert indicators.band_vote(60, 45, 55) == 1
        assert indicators.band_vote(40, 45, 55) == -1
        assert indicators.band_vote(50, 45, 55) == 0
