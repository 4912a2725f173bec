"""Backtesting: bar-by-bar replay through the trading pipeline."""

from .engine import BacktestEngine, BacktestResult, run_backtest

__all__ = ["BacktestEngine", "BacktestResult", "run_backtest"]
