"""
Core data types for the trading agent.
Defines bars, signal snapshots, trades, account snapshots and pipeline results.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union


class Bias(Enum):
    """Directional lean derived from a signal score."""
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class TradeSide(Enum):
    """Side of a trade."""
    LONG = "long"
    SHORT = "short"

    @property
    def direction(self) -> int:
        """+1 for long, -1 for short."""
        return 1 if self is TradeSide.LONG else -1

    @classmethod
    def from_bias(cls, bias: Bias) -> "TradeSide":
        if bias is Bias.BULLISH:
            return cls.LONG
        if bias is Bias.BEARISH:
            return cls.SHORT
        raise ValueError("Neutral bias has no trade side")


class TradeStatus(Enum):
    """Trade lifecycle state. Closed is terminal."""
    OPEN = "open"
    CLOSED = "closed"


class Decision(Enum):
    """Output of the decision gate."""
    NO_OP = "no_op"
    OPEN_CANDIDATE = "open_candidate"
    CLOSE_CANDIDATE = "close_candidate"


class Action(Enum):
    """What a pipeline tick actually did."""
    NO_OP = "no_op"
    OPENED = "opened"
    CLOSED = "closed"
    HELD = "held"


class ExitReason(Enum):
    """Reason a trade was closed."""
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    SIGNAL_REVERSAL = "signal_reversal"
    MANUAL = "manual"


class SizingConstraint(Enum):
    """Which limit determined the position quantity."""
    RISK = "risk"
    CASH = "cash"


@dataclass(frozen=True)
class Bar:
    """OHLCV bar. Immutable once stored."""
    symbol: str
    timeframe: str
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float

    @property
    def range(self) -> float:
        return self.high - self.low


SignalValue = Union[float, str]


@dataclass(frozen=True)
class IndicatorVote:
    """
    A single indicator's contribution to the aggregate score.

    vote is -1 (bearish), 0 (no opinion) or +1 (bullish).
    """
    name: str
    value: float
    vote: int
    weight: float

    @property
    def contribution(self) -> float:
        return self.vote * self.weight


@dataclass(frozen=True)
class SignalSnapshot:
    """Signal engine output for one symbol at one tick."""
    symbol: str
    timestamp: datetime
    votes: Tuple[IndicatorVote, ...]
    score: float
    confidence: float
    bias: Bias
    should_trade: bool
    structural_low: Optional[float] = None
    structural_high: Optional[float] = None
    price: Optional[float] = None

    @property
    def signals(self) -> Dict[str, SignalValue]:
        """Flat name -> value mapping for the audit log."""
        out: Dict[str, SignalValue] = {}
        for v in self.votes:
            out[v.name] = v.value
            out[f"{v.name}_vote"] = float(v.vote)
        if self.structural_low is not None:
            out["structural_low"] = self.structural_low
        if self.structural_high is not None:
            out["structural_high"] = self.structural_high
        return out

    def structural_stop(self, side: "TradeSide") -> Optional[float]:
        """Swing level protecting a position on the given side, if known."""
        if side is TradeSide.LONG:
            return self.structural_low
        return self.structural_high


@dataclass(frozen=True)
class Checklist:
    """
    Audit record of the decision inputs captured when a trade is opened.

    Serialized with a version tag at the persistence boundary. bar_timestamp
    is the timestamp of the bar the entry was decided on; exits are judged on
    the bars after it.
    """
    score: float
    confidence: float
    bias: Bias
    signals: Dict[str, SignalValue]
    entry_reference_price: float
    equity: float
    cash: float
    risk_fraction: float
    reward_risk: float
    stop_distance: float
    stop_source: str  # "percent" or "structural"
    binding_constraint: SizingConstraint
    bar_timestamp: Optional[datetime] = None
    version: int = 1


@dataclass(frozen=True)
class SizingResult:
    """Risk manager output."""
    side: TradeSide
    entry_price: float
    stop_loss: float
    take_profit: float
    quantity: float
    stop_distance: float
    stop_source: str
    risk_quantity: float
    cash_quantity: float
    binding_constraint: SizingConstraint

    @property
    def risk_amount(self) -> float:
        return self.stop_distance * self.quantity


@dataclass(frozen=True)
class Fill:
    """Broker confirmation of an open or close."""
    order_id: str
    symbol: str
    side: TradeSide
    quantity: float
    price: float
    timestamp: datetime


@dataclass(frozen=True)
class Trade:
    """
    A position through its lifecycle.

    stop_loss and take_profit are fixed at creation. exit_price, pnl,
    r_multiple and closed_at are all set exactly when status is CLOSED.
    """
    id: str
    symbol: str
    side: TradeSide
    quantity: float
    entry_price: float
    stop_loss: float
    take_profit: float
    confidence: float
    opened_at: datetime
    checklist: Checklist
    status: TradeStatus = TradeStatus.OPEN
    exit_price: Optional[float] = None
    pnl: Optional[float] = None
    r_multiple: Optional[float] = None
    closed_at: Optional[datetime] = None
    exit_reason: Optional[ExitReason] = None

    @property
    def is_open(self) -> bool:
        return self.status is TradeStatus.OPEN

    @property
    def entry_bar_at(self) -> datetime:
        """Timestamp of the entry bar; stop and target are judged on later bars."""
        return self.checklist.bar_timestamp or self.opened_at

    @property
    def initial_risk(self) -> float:
        """Dollar risk at entry: |entry - stop| * qty."""
        return abs(self.entry_price - self.stop_loss) * self.quantity

    def unrealized_pnl(self, price: float) -> float:
        if not self.is_open:
            return 0.0
        return (price - self.entry_price) * self.quantity * self.side.direction

    @property
    def is_winner(self) -> bool:
        return self.pnl is not None and self.pnl > 0


@dataclass(frozen=True)
class AccountSnapshot:
    """Append-only ledger entry."""
    cash: float
    equity: float
    day_pnl: float
    total_pnl: float
    timestamp: datetime
    id: Optional[int] = None


@dataclass(frozen=True)
class GateResult:
    """Decision gate verdict, with exit details for close candidates."""
    decision: Decision
    reason: str
    exit_price: Optional[float] = None
    exit_reason: Optional[ExitReason] = None


@dataclass(frozen=True)
class TickFailure:
    """A recorded, non-fatal failure of a pipeline tick."""
    kind: str  # "sizing", "broker", "persistence", "cancelled"
    message: str


@dataclass
class PipelineResult:
    """Per-tick summary for a symbol. Latest one per symbol is kept in memory."""
    symbol: str
    snapshot: SignalSnapshot
    gate: GateResult
    action: Action
    trade: Optional[Trade] = None
    account: Optional[AccountSnapshot] = None
    failure: Optional[TickFailure] = None
    completed_at: Optional[datetime] = None

    @property
    def failed(self) -> bool:
        return self.failure is not None


@dataclass
class ReconciliationReport:
    """Differences between broker-reported and locally tracked positions."""
    broker_positions: Dict[str, float] = field(default_factory=dict)
    missing_in_tracker: List[str] = field(default_factory=list)
    missing_at_broker: List[str] = field(default_factory=list)
    unpersisted: List[str] = field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not (self.missing_in_tracker or self.missing_at_broker or self.unpersisted)
