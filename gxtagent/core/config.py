"""
Agent configuration.
Defaults for every threshold, overridable from environment variables (.env supported).
"""

import os
import logging
from dataclasses import dataclass, field, replace
from typing import List, Optional

from dotenv import load_dotenv

from .errors import ConfigError

logger = logging.getLogger(__name__)

TIE_BREAK_POLICIES = ("stop_loss", "take_profit")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class AgentConfig:
    """
    Configuration for the signal engine, decision gate, risk manager and pipeline.

    Attributes:
        symbols: Symbols traded each tick
        timeframe: Bar timeframe (1Min, 5Min, 15Min, 30Min, 1Hour, 4Hour, 1Day)
        lookback: Bars requested from the bar store per tick
        db_path: SQLite database path
        api_port: Port of the read-only HTTP boundary
        min_confidence: Minimum confidence for should-trade and entry
        min_score: Minimum |score| for should-trade and entry
        neutral_band: |score| at or below this is neutral bias
        max_open_positions: Maximum concurrent open trades across the book
        risk_fraction: Fraction of equity risked per trade
        stop_pct: Stop distance as a fraction of price
        reward_risk: Take-profit distance as a multiple of stop distance
        use_structural_stop: Prefer swing levels over stop_pct when available
        lot_size: Minimum tradable unit; quantities are rounded down to it
        initial_cash: Starting cash of the account ledger
        tie_break: Which exit wins when stop and target are both crossed
        close_on_reversal: Close on an opposite-bias should-trade signal
        trading_timezone: Timezone defining the trading day for day P&L
        stale_after_seconds: Latest bar older than this degrades the signal to neutral (0 disables)
        tick_seconds: Seconds between ticks in the agent loop
        snapshot_seconds: Seconds between periodic account snapshots
        broker_timeout: Seconds before a broker call is abandoned
        broker_max_attempts: Attempts per broker call (including the first)
        broker_backoff_base: First retry delay in seconds
        broker_backoff_cap: Maximum retry delay in seconds
        paper: Use the broker's paper environment
    """

    symbols: List[str] = field(default_factory=lambda: ["SPY"])
    timeframe: str = "15Min"
    lookback: int = 200
    db_path: str = "gxt-agent.db"
    api_port: int = 3377

    min_confidence: float = 0.6
    min_score: float = 40.0
    neutral_band: float = 10.0
    max_open_positions: int = 3

    risk_fraction: float = 0.01
    stop_pct: float = 0.02
    reward_risk: float = 2.0
    use_structural_stop: bool = True
    lot_size: float = 1.0
    initial_cash: float = 100000.0

    tie_break: str = "stop_loss"
    close_on_reversal: bool = True
    trading_timezone: str = "America/New_York"

    stale_after_seconds: int = 0
    tick_seconds: int = 60
    snapshot_seconds: int = 900
    broker_timeout: float = 10.0
    broker_max_attempts: int = 3
    broker_backoff_base: float = 0.5
    broker_backoff_cap: float = 5.0
    paper: bool = True

    def validate(self) -> "AgentConfig":
        """Raise ConfigError on out-of-range values. Returns self."""
        if not self.symbols:
            raise ConfigError("At least one symbol is required")
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ConfigError(f"min_confidence must be in [0, 1], got {self.min_confidence}")
        if self.min_score < 0:
            raise ConfigError(f"min_score must be >= 0, got {self.min_score}")
        if self.neutral_band < 0:
            raise ConfigError(f"neutral_band must be >= 0, got {self.neutral_band}")
        if self.max_open_positions < 1:
            raise ConfigError("max_open_positions must be >= 1")
        if not 0.0 < self.risk_fraction <= 1.0:
            raise ConfigError(f"risk_fraction must be in (0, 1], got {self.risk_fraction}")
        if not 0.0 < self.stop_pct < 1.0:
            raise ConfigError(f"stop_pct must be in (0, 1), got {self.stop_pct}")
        if self.reward_risk <= 0:
            raise ConfigError(f"reward_risk must be > 0, got {self.reward_risk}")
        if self.lot_size <= 0:
            raise ConfigError(f"lot_size must be > 0, got {self.lot_size}")
        if self.tie_break not in TIE_BREAK_POLICIES:
            raise ConfigError(
                f"tie_break must be one of {TIE_BREAK_POLICIES}, got {self.tie_break!r}"
            )
        if self.broker_max_attempts < 1:
            raise ConfigError("broker_max_attempts must be >= 1")
        if self.broker_timeout <= 0:
            raise ConfigError("broker_timeout must be > 0")
        return self

    def with_overrides(self, **overrides) -> "AgentConfig":
        """Return a validated copy with the given fields replaced."""
        return replace(self, **overrides).validate()

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "AgentConfig":
        """
        Build configuration from environment variables.

        Args:
            env_file: Optional .env path (defaults to python-dotenv's search)

        Returns:
            Validated AgentConfig
        """
        load_dotenv(env_file)
        defaults = cls()

        symbols_raw = os.getenv("GXT_SYMBOLS")
        symbols = (
            [s.strip() for s in symbols_raw.split(",") if s.strip()]
            if symbols_raw else defaults.symbols
        )

        config = cls(
            symbols=symbols,
            timeframe=os.getenv("GXT_TIMEFRAME", defaults.timeframe),
            lookback=_env_int("GXT_LOOKBACK", defaults.lookback),
            db_path=os.getenv("DB_PATH", defaults.db_path),
            api_port=_env_int("GXT_API_PORT", defaults.api_port),
            min_confidence=_env_float("GXT_MIN_CONFIDENCE", defaults.min_confidence),
            min_score=_env_float("GXT_MIN_SCORE", defaults.min_score),
            neutral_band=_env_float("GXT_NEUTRAL_BAND", defaults.neutral_band),
            max_open_positions=_env_int("GXT_MAX_OPEN_POSITIONS", defaults.max_open_positions),
            risk_fraction=_env_float("GXT_RISK_FRACTION", defaults.risk_fraction),
            stop_pct=_env_float("GXT_STOP_PCT", defaults.stop_pct),
            reward_risk=_env_float("GXT_REWARD_RISK", defaults.reward_risk),
            use_structural_stop=_env_bool("GXT_STRUCTURAL_STOP", defaults.use_structural_stop),
            lot_size=_env_float("GXT_LOT_SIZE", defaults.lot_size),
            initial_cash=_env_float("GXT_INITIAL_CASH", defaults.initial_cash),
            tie_break=os.getenv("GXT_TIE_BREAK", defaults.tie_break),
            close_on_reversal=_env_bool("GXT_CLOSE_ON_REVERSAL", defaults.close_on_reversal),
            trading_timezone=os.getenv("GXT_TRADING_TZ", defaults.trading_timezone),
            stale_after_seconds=_env_int("GXT_STALE_AFTER_SECONDS", defaults.stale_after_seconds),
            tick_seconds=_env_int("GXT_TICK_SECONDS", defaults.tick_seconds),
            snapshot_seconds=_env_int("GXT_SNAPSHOT_SECONDS", defaults.snapshot_seconds),
            broker_timeout=_env_float("GXT_BROKER_TIMEOUT", defaults.broker_timeout),
            broker_max_attempts=_env_int("GXT_BROKER_MAX_ATTEMPTS", defaults.broker_max_attempts),
            broker_backoff_base=_env_float("GXT_BROKER_BACKOFF", defaults.broker_backoff_base),
            broker_backoff_cap=_env_float("GXT_BROKER_BACKOFF_CAP", defaults.broker_backoff_cap),
            paper=_env_bool("GXT_PAPER", defaults.paper),
        )

        logger.info(
            f"Config loaded: symbols={config.symbols} timeframe={config.timeframe} "
            f"db={config.db_path}"
        )
        return config.validate()
