"""Trading components: sizing, position tracking, account ledger and the pipeline."""

from .risk_manager import RiskManager
from .position_tracker import PositionTracker
from .ledger import AccountLedger
from .pipeline import Pipeline

__all__ = ["RiskManager", "PositionTracker", "AccountLedger", "Pipeline"]
