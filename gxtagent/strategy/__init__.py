"""Strategy components: signal engine and decision gate."""

from .signal_engine import SignalEngine
from .decision_gate import DecisionGate

__all__ = ["SignalEngine", "DecisionGate"]
