"""
Technical indicator formulas over close/volume series.
All functions are pure and operate on pandas Series.
"""

import numpy as np
import pandas as pd


def ema(series: pd.Series, span: int) -> pd.Series:
    """Exponential moving average (recursive form, no warm-up NaNs)."""
    return series.ewm(span=span, adjust=False).mean()


def rsi(close: pd.Series, period: int = 14) -> pd.Series:
    """
    Relative Strength Index using Wilder smoothing.

    Returns 100 when there are no losses and 50 on a flat series.
    """
    delta = close.diff().fillna(0.0)
    gains = delta.clip(lower=0.0)
    losses = -delta.clip(upper=0.0)

    avg_gain = gains.ewm(alpha=1.0 / period, adjust=False).mean()
    avg_loss = losses.ewm(alpha=1.0 / period, adjust=False).mean()

    with np.errstate(divide="ignore", invalid="ignore"):
        rs = avg_gain / avg_loss
        out = 100.0 - (100.0 / (1.0 + rs))

    out = out.where(avg_loss > 0, 100.0)
    out = out.where((avg_loss > 0) | (avg_gain > 0), 50.0)
    return out


def macd_histogram(
    close: pd.Series,
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> pd.Series:
    """MACD line minus its signal line."""
    macd_line = ema(close, fast) - ema(close, slow)
    signal_line = ema(macd_line, signal)
    return macd_line - signal_line


def rate_of_change(close: pd.Series, period: int = 10) -> pd.Series:
    """Percent change over `period` bars."""
    return (close / close.shift(period) - 1.0) * 100.0


def sign_vote(value: float, threshold: float = 0.0) -> int:
    """+1 above threshold, -1 below -threshold, otherwise 0."""
    if not np.isfinite(value):
        return 0
    if value > threshold:
        return 1
    if value < -threshold:
        return -1
    return 0


def band_vote(value: float, lower: float, upper: float) -> int:
    """+1 above upper, -1 below lower, otherwise 0."""
    if not np.isfinite(value):
        return 0
    if value > upper:
        return 1
    if value < lower:
        return -1
    return 0
