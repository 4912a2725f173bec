"""
Risk manager: stop-loss, take-profit and position size for an entry.
"""

import logging
import math
from typing import Optional

from gxtagent.core.errors import SizingError
from gxtagent.core.types import SignalSnapshot, SizingConstraint, SizingResult, TradeSide

logger = logging.getLogger(__name__)


def round_down(quantity: float, lot_size: float) -> float:
    """Round a quantity down to a whole number of lots."""
    if quantity <= 0:
        return 0.0
    lots = math.floor(round(quantity / lot_size, 9))
    return round(lots * lot_size, 10)


class RiskManager:
    """
    Sizes positions by fixed-fractional risk, capped by available cash.

    stop distance = price * stop_pct, or the distance to a structural swing
    level when one is supplied and lies on the protective side of price.
    quantity = equity * risk_fraction / stop distance, rounded down to the lot
    size, then capped by the quantity available cash can pay for. The smaller
    of the two is used and reported as the binding constraint.
    """

    def __init__(
        self,
        risk_fraction: float = 0.01,
        stop_pct: float = 0.02,
        reward_risk: float = 2.0,
        lot_size: float = 1.0,
        use_structural_stop: bool = True,
    ):
        """
        Args:
            risk_fraction: Fraction of equity risked per trade
            stop_pct: Default stop distance as a fraction of price
            reward_risk: Take-profit distance as a multiple of the stop distance
            lot_size: Minimum tradable unit
            use_structural_stop: Use swing levels from the signal when available
        """
        self.risk_fraction = risk_fraction
        self.stop_pct = stop_pct
        self.reward_risk = reward_risk
        self.lot_size = lot_size
        self.use_structural_stop = use_structural_stop

    @classmethod
    def from_config(cls, config) -> "RiskManager":
        return cls(
            risk_fraction=config.risk_fraction,
            stop_pct=config.stop_pct,
            reward_risk=config.reward_risk,
            lot_size=config.lot_size,
            use_structural_stop=config.use_structural_stop,
        )

    def stop_distance(
        self,
        side: TradeSide,
        price: float,
        structural_level: Optional[float] = None,
    ):
        """
        Return (distance, source). Source is "structural" or "percent".
        """
        if self.use_structural_stop and structural_level is not None:
            distance = (price - structural_level) * side.direction
            if distance > 0:
                return distance, "structural"
            logger.debug(
                f"Structural level {structural_level} not protective for "
                f"{side.value} @ {price}, using percent stop"
            )
        return price * self.stop_pct, "percent"

    def size(
        self,
        side: TradeSide,
        price: float,
        equity: float,
        cash: Optional[float] = None,
        structural_level: Optional[float] = None,
    ) -> SizingResult:
        """
        Compute stop-loss, take-profit and quantity.

        Args:
            side: Trade side
            price: Current (entry reference) price
            equity: Account equity
            cash: Cash available for new positions (None disables the cash cap)
            structural_level: Optional swing level to place the stop at

        Returns:
            SizingResult

        Raises:
            SizingError: Stop distance <= 0 or quantity rounds to zero
        """
        if price <= 0 or not math.isfinite(price):
            raise SizingError(f"Invalid price {price}")

        distance, source = self.stop_distance(side, price, structural_level)
        if not distance > 0:
            raise SizingError(f"Non-positive stop distance {distance}")

        stop_loss = price - distance * side.direction
        take_profit = price + distance * self.reward_risk * side.direction

        risk_qty = round_down(equity * self.risk_fraction / distance, self.lot_size)

        if cash is None:
            cash_qty = math.inf
        else:
            cash_qty = round_down(max(0.0, cash) / price, self.lot_size)

        if cash_qty < risk_qty:
            quantity, binding = cash_qty, SizingConstraint.CASH
        else:
            quantity, binding = risk_qty, SizingConstraint.RISK

        if quantity <= 0:
            raise SizingError(
                f"Quantity rounds to zero (risk qty {risk_qty}, cash qty {cash_qty}, "
                f"lot {self.lot_size})"
            )

        return SizingResult(
            side=side,
            entry_price=price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            quantity=quantity,
            stop_distance=distance,
            stop_source=source,
            risk_quantity=risk_qty,
            cash_quantity=cash_qty,
            binding_constraint=binding,
        )

    def size_for(
        self,
        snapshot: SignalSnapshot,
        price: float,
        equity: float,
        cash: Optional[float] = None,
    ) -> SizingResult:
        """Size an entry in the direction of the snapshot's bias."""
        side = TradeSide.from_bias(snapshot.bias)
        return self.size(
            side, price, equity, cash=cash,
            structural_level=snapshot.structural_stop(side),
        )
