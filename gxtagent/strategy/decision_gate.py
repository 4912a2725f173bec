"""
Decision gate: decides whether a signal snapshot leads to an entry, an exit, or nothing.
"""

import logging
from typing import Optional

from gxtagent.core.types import (
    Bar, Bias, Decision, ExitReason, GateResult, SignalSnapshot, Trade, TradeSide,
)

logger = logging.getLogger(__name__)


class DecisionGate:
    """
    Applies thresholds and the single-position-per-symbol policy.

    With a trade open on the symbol only exit conditions are evaluated:
    stop-loss, take-profit (against the latest bar's range) and, if enabled,
    an opposite-bias should-trade signal. With no trade open, an entry needs
    should_trade, confidence and |score| at or above the minimums, and a free
    slot under the book-wide position limit.
    """

    def __init__(
        self,
        min_confidence: float = 0.6,
        min_score: float = 40.0,
        max_open_positions: int = 3,
        tie_break: str = "stop_loss",
        close_on_reversal: bool = True,
    ):
        """
        Args:
            min_confidence: Minimum snapshot confidence for an entry
            min_score: Minimum |score| for an entry
            max_open_positions: Book-wide open position limit
            tie_break: "stop_loss" or "take_profit"; wins when both levels are crossed
            close_on_reversal: Treat an opposite-bias should-trade signal as a close signal
        """
        self.min_confidence = min_confidence
        self.min_score = min_score
        self.max_open_positions = max_open_positions
        self.tie_break = tie_break
        self.close_on_reversal = close_on_reversal

    @classmethod
    def from_config(cls, config) -> "DecisionGate":
        return cls(
            min_confidence=config.min_confidence,
            min_score=config.min_score,
            max_open_positions=config.max_open_positions,
            tie_break=config.tie_break,
            close_on_reversal=config.close_on_reversal,
        )

    def evaluate(
        self,
        snapshot: SignalSnapshot,
        open_trade: Optional[Trade],
        open_positions: int,
        bar: Optional[Bar] = None,
    ) -> GateResult:
        """
        Decide what to do with a snapshot.

        Args:
            snapshot: Latest signal snapshot for the symbol
            open_trade: Open trade on the symbol, if any
            open_positions: Open trades across all symbols
            bar: Bar whose high/low is the exit evaluation window

        Returns:
            GateResult
        """
        if open_trade is not None:
            return self.evaluate_exit(open_trade, snapshot, bar)
        return self.evaluate_entry(snapshot, open_positions)

    def evaluate_entry(self, snapshot: SignalSnapshot, open_positions: int) -> GateResult:
        if not snapshot.should_trade:
            return GateResult(Decision.NO_OP, "signal below trade threshold")
        if snapshot.bias is Bias.NEUTRAL:
            return GateResult(Decision.NO_OP, "neutral bias")
        if snapshot.confidence < self.min_confidence:
            return GateResult(
                Decision.NO_OP,
                f"confidence {snapshot.confidence:.2f} < {self.min_confidence:.2f}",
            )
        if abs(snapshot.score) < self.min_score:
            return GateResult(
                Decision.NO_OP, f"|score| {abs(snapshot.score):.1f} < {self.min_score:.1f}"
            )
        if open_positions >= self.max_open_positions:
            return GateResult(
                Decision.NO_OP,
                f"max open positions reached ({open_positions}/{self.max_open_positions})",
            )
        return GateResult(Decision.OPEN_CANDIDATE, f"{snapshot.bias.value} entry")

    def evaluate_exit(
        self,
        trade: Trade,
        snapshot: SignalSnapshot,
        bar: Optional[Bar] = None,
    ) -> GateResult:
        """Exit check for an open trade. Stop and target are judged on the bar's range."""
        if bar is not None:
            crossed = self.crossed_levels(trade, bar)
            if crossed is not None:
                reason, price = crossed
                return GateResult(
                    Decision.CLOSE_CANDIDATE, f"{reason.value} crossed",
                    exit_price=price, exit_reason=reason,
                )

        if self.close_on_reversal and snapshot.should_trade and snapshot.price is not None:
            against = (
                (trade.side is TradeSide.LONG and snapshot.bias is Bias.BEARISH)
                or (trade.side is TradeSide.SHORT and snapshot.bias is Bias.BULLISH)
            )
            if against:
                return GateResult(
                    Decision.CLOSE_CANDIDATE, f"{snapshot.bias.value} reversal",
                    exit_price=snapshot.price, exit_reason=ExitReason.SIGNAL_REVERSAL,
                )

        return GateResult(Decision.NO_OP, "holding")

    def crossed_levels(self, trade: Trade, bar: Bar):
        """
        Return (ExitReason, price) if the bar crossed a protective level.

        When both stop-loss and take-profit fall inside the bar, the tie-break
        policy decides which one is used.
        """
        if trade.side is TradeSide.LONG:
            stop_hit = bar.low <= trade.stop_loss
            target_hit = bar.high >= trade.take_profit
        else:
            stop_hit = bar.high >= trade.stop_loss
            target_hit = bar.low <= trade.take_profit

        if stop_hit and target_hit:
            logger.info(
                f"{trade.symbol}: stop and target both crossed, resolving by {self.tie_break}"
            )
            if self.tie_break == "take_profit":
                return ExitReason.TAKE_PROFIT, trade.take_profit
            return ExitReason.STOP_LOSS, trade.stop_loss
        if stop_hit:
            return ExitReason.STOP_LOSS, trade.stop_loss
        if target_hit:
            return ExitReason.TAKE_PROFIT, trade.take_profit
        return None
