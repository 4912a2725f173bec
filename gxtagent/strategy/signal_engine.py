"""
Signal engine: turns a bar window into a scored, directional SignalSnapshot.
"""

import logging
import math
from typing import Any, Dict, List, Optional

import pandas as pd

from gxtagent.analysis import indicators
from gxtagent.analysis.trend_detector import SwingStructure, TrendDetector
from gxtagent.core.types import Bar, Bias, IndicatorVote, SignalSnapshot

logger = logging.getLogger(__name__)


class SignalEngine:
    """
    Combines independent indicator votes into a score, confidence and bias.

    Indicators (each votes -1, 0 or +1):
    1. ema_trend: fast EMA above/below slow EMA
    2. rsi: RSI above the bullish band / below the bearish band
    3. macd: sign of the MACD histogram
    4. momentum: rate of change beyond a threshold
    5. structure: higher highs + higher lows / lower highs + lower lows

    score = 100 * sum(weight * vote) / sum(weight), so it lies in [-100, 100].
    confidence = fraction of all indicators voting with the sign of score.

    compute() depends only on the bars passed in: the same bars always
    produce the same snapshot, stamped with the last bar's timestamp.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize signal engine.

        Args:
            config: Engine configuration with keys:
                - ema_fast / ema_slow: EMA spans (default: 9 / 21)
                - rsi_period: RSI period (default: 14)
                - rsi_upper / rsi_lower: RSI vote bands (default: 55 / 45)
                - macd_fast / macd_slow / macd_signal: MACD spans (default: 12 / 26 / 9)
                - roc_period: Momentum lookback (default: 10)
                - roc_threshold: Momentum dead zone in percent (default: 0.25)
                - swing_lookback: Swing detection order (default: 3)
                - weights: Per-indicator weights
                - min_score: Minimum |score| for should_trade (default: 40)
                - min_confidence: Minimum confidence for should_trade (default: 0.6)
                - neutral_band: |score| at or below this is neutral (default: 10)
        """
        default_config = {
            "ema_fast": 9,
            "ema_slow": 21,
            "rsi_period": 14,
            "rsi_upper": 55.0,
            "rsi_lower": 45.0,
            "macd_fast": 12,
            "macd_slow": 26,
            "macd_signal": 9,
            "roc_period": 10,
            "roc_threshold": 0.25,
            "swing_lookback": 3,
            "weights": {
                "ema_trend": 0.25,
                "rsi": 0.20,
                "macd": 0.20,
                "momentum": 0.15,
                "structure": 0.20,
            },
            "min_score": 40.0,
            "min_confidence": 0.6,
            "neutral_band": 10.0,
        }

        if config:
            default_config.update(config)

        self.config = default_config
        self.trend_detector = TrendDetector(lookback=self.config["swing_lookback"])

    @classmethod
    def from_agent_config(cls, agent_config) -> "SignalEngine":
        return cls({
            "min_score": agent_config.min_score,
            "min_confidence": agent_config.min_confidence,
            "neutral_band": agent_config.neutral_band,
        })

    @property
    def required_bars(self) -> int:
        """Longest lookback across all indicators."""
        c = self.config
        return max(
            c["ema_slow"],
            c["rsi_period"] + 1,
            c["macd_slow"] + c["macd_signal"],
            c["roc_period"] + 1,
            self.trend_detector.required_bars,
        )

    def neutral(self, symbol: str, bars: List[Bar], reason: str) -> SignalSnapshot:
        """Neutral, no-trade snapshot used when data is insufficient or unusable."""
        logger.debug(f"Neutral signal for {symbol}: {reason}")
        last = bars[-1] if bars else None
        return SignalSnapshot(
            symbol=symbol,
            timestamp=last.timestamp if last else None,
            votes=(),
            score=0.0,
            confidence=0.0,
            bias=Bias.NEUTRAL,
            should_trade=False,
            price=last.close if last else None,
        )

    def compute(self, symbol: str, bars: List[Bar]) -> SignalSnapshot:
        """
        Compute the signal snapshot for a bar window.

        Args:
            symbol: Symbol the bars belong to
            bars: Bars, oldest first

        Returns:
            SignalSnapshot (neutral when history is short or prices are invalid)
        """
        if len(bars) < self.required_bars:
            return self.neutral(
                symbol, bars, f"insufficient history ({len(bars)} < {self.required_bars})"
            )

        close = pd.Series([b.close for b in bars], dtype=float)
        if not all(math.isfinite(p) and p > 0 for p in close):
            return self.neutral(symbol, bars, "non-finite or non-positive prices")

        structure = self.trend_detector.analyze(bars)
        votes = self._votes(close, structure)

        total_weight = sum(v.weight for v in votes)
        raw = sum(v.contribution for v in votes)
        score = round(100.0 * raw / total_weight, 10) if total_weight > 0 else 0.0

        confidence = self._confidence(votes, score)
        bias = self._bias(score)
        should_trade = (
            bias is not Bias.NEUTRAL
            and abs(score) >= self.config["min_score"]
            and confidence >= self.config["min_confidence"]
        )

        return SignalSnapshot(
            symbol=symbol,
            timestamp=bars[-1].timestamp,
            votes=tuple(votes),
            score=score,
            confidence=confidence,
            bias=bias,
            should_trade=should_trade,
            structural_low=structure.last_swing_low,
            structural_high=structure.last_swing_high,
            price=bars[-1].close,
        )

    def _votes(self, close: pd.Series, structure: SwingStructure) -> List[IndicatorVote]:
        c = self.config
        w = c["weights"]

        fast = indicators.ema(close, c["ema_fast"]).iloc[-1]
        slow = indicators.ema(close, c["ema_slow"]).iloc[-1]
        ema_gap = (fast - slow) / slow * 100.0

        rsi_value = indicators.rsi(close, c["rsi_period"]).iloc[-1]

        hist = indicators.macd_histogram(
            close, c["macd_fast"], c["macd_slow"], c["macd_signal"]
        ).iloc[-1]

        roc = indicators.rate_of_change(close, c["roc_period"]).iloc[-1]

        return [
            IndicatorVote("ema_trend", float(ema_gap), indicators.sign_vote(ema_gap), w["ema_trend"]),
            IndicatorVote(
                "rsi", float(rsi_value),
                indicators.band_vote(rsi_value, c["rsi_lower"], c["rsi_upper"]), w["rsi"],
            ),
            IndicatorVote("macd", float(hist), indicators.sign_vote(hist), w["macd"]),
            IndicatorVote(
                "momentum", float(roc),
                indicators.sign_vote(roc, c["roc_threshold"]), w["momentum"],
            ),
            IndicatorVote(
                "structure", float(structure.strength),
                structure.vote, w["structure"],
            ),
        ]

    @staticmethod
    def _confidence(votes: List[IndicatorVote], score: float) -> float:
        if not votes or score == 0:
            return 0.0
        direction = 1 if score > 0 else -1
        agreeing = sum(1 for v in votes if v.vote == direction)
        return min(1.0, max(0.0, agreeing / len(votes)))

    def _bias(self, score: float) -> Bias:
        band = self.config["neutral_band"]
        if score > band:
            return Bias.BULLISH
        if score < -band:
            return Bias.BEARISH
        return Bias.NEUTRAL
