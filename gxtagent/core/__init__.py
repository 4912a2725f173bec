"""Core components: types, configuration, errors, broker integration and bar storage."""

from .types import (
    Bar,
    IndicatorVote,
    SignalSnapshot,
    Checklist,
    SizingResult,
    Fill,
    Trade,
    AccountSnapshot,
    GateResult,
    TickFailure,
    PipelineResult,
    ReconciliationReport,
    Bias,
    TradeSide,
    TradeStatus,
    Decision,
    Action,
    ExitReason,
    SizingConstraint,
)

__all__ = [
    "Bar",
    "IndicatorVote",
    "SignalSnapshot",
    "Checklist",
    "SizingResult",
    "Fill",
    "Trade",
    "AccountSnapshot",
    "GateResult",
    "TickFailure",
    "PipelineResult",
    "ReconciliationReport",
    "Bias",
    "TradeSide",
    "TradeStatus",
    "Decision",
    "Action",
    "ExitReason",
    "SizingConstraint",
]
