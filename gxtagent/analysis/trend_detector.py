"""
Swing structure detection using swing highs and lows.
Classifies recent market structure and exposes the latest swing levels.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from scipy.signal import argrelextrema

from gxtagent.core.types import Bar

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SwingStructure:
    """
    Result of swing analysis over a bar window.

    vote: +1 for higher highs and higher lows, -1 for lower highs and
    lower lows, 0 otherwise.
    """
    vote: int
    strength: float
    last_swing_low: Optional[float]
    last_swing_high: Optional[float]
    swing_lows: List[Tuple[int, float]]
    swing_highs: List[Tuple[int, float]]


class TrendDetector:
    """
    Detects market structure using swing high/low analysis.

    Uses scipy's argrelextrema to find local maxima (swing highs) and
    local minima (swing lows), then compares the most recent swings.
    """

    def __init__(
        self,
        lookback: int = 3,
        min_swings: int = 2,
    ):
        """
        Initialize trend detector.

        Args:
            lookback: Order parameter for argrelextrema (how many bars on each
                     side to compare for determining local extrema)
            min_swings: Minimum number of swing points required on each side
        """
        self.lookback = lookback
        self.min_swings = min_swings

    @property
    def required_bars(self) -> int:
        """Bars needed for min_swings extrema on each side."""
        return (2 * self.lookback + 1) * self.min_swings

    def find_swing_highs(self, highs: np.ndarray) -> np.ndarray:
        """Indices of swing highs (local maxima)."""
        return argrelextrema(highs, np.greater_equal, order=self.lookback)[0]

    def find_swing_lows(self, lows: np.ndarray) -> np.ndarray:
        """Indices of swing lows (local minima)."""
        return argrelextrema(lows, np.less_equal, order=self.lookback)[0]

    @staticmethod
    def _collapse(points: List[Tuple[int, float]]) -> List[Tuple[int, float]]:
        # Flat tops/bottoms produce runs of adjacent extrema; keep one per run
        out: List[Tuple[int, float]] = []
        for idx, price in points:
            if out and idx - out[-1][0] <= 1 and price == out[-1][1]:
                continue
            out.append((idx, price))
        return out

    def _calculate_strength(
        self,
        swing_points: List[Tuple[int, float]],
        direction: int,
    ) -> float:
        """
        Fraction of consecutive swing pairs moving in `direction`.

        Returns value between 0 and 1, where 1 is a perfect trend.
        """
        if len(swing_points) < 2:
            return 0.0

        consistent = 0
        total = len(swing_points) - 1
        for i in range(1, len(swing_points)):
            change = swing_points[i][1] - swing_points[i - 1][1]
            if change * direction > 0:
                consistent += 1

        return consistent / total

    def analyze(self, bars: List[Bar]) -> SwingStructure:
        """
        Analyze swing structure of a bar window.

        Args:
            bars: Bars, oldest first

        Returns:
            SwingStructure (vote 0 when there are too few swings)
        """
        if len(bars) < self.required_bars:
            return SwingStructure(0, 0.0, None, None, [], [])

        highs = np.array([b.high for b in bars], dtype=float)
        lows = np.array([b.low for b in bars], dtype=float)

        swing_highs = self._collapse(
            [(int(i), float(highs[i])) for i in self.find_swing_highs(highs)]
        )
        swing_lows = self._collapse(
            [(int(i), float(lows[i])) for i in self.find_swing_lows(lows)]
        )

        last_low = swing_lows[-1][1] if swing_lows else None
        last_high = swing_highs[-1][1] if swing_highs else None

        if len(swing_highs) < self.min_swings or len(swing_lows) < self.min_swings:
            return SwingStructure(0, 0.0, last_low, last_high, swing_lows, swing_highs)

        higher_high = swing_highs[-1][1] > swing_highs[-2][1]
        higher_low = swing_lows[-1][1] > swing_lows[-2][1]
        lower_high = swing_highs[-1][1] < swing_highs[-2][1]
        lower_low = swing_lows[-1][1] < swing_lows[-2][1]

        if higher_high and higher_low:
            vote = 1
        elif lower_high and lower_low:
            vote = -1
        else:
            vote = 0

        strength = 0.0
        if vote != 0:
            strength = (
                self._calculate_strength(swing_lows, vote)
                + self._calculate_strength(swing_highs, vote)
            ) / 2

        return SwingStructure(vote, strength, last_low, last_high, swing_lows, swing_highs)
