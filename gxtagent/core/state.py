"""
Read-only agent state exposed to the HTTP boundary.
"""

import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from gxtagent.metrics.calculator import MetricsCalculator
from .types import PipelineResult


class AgentState:
    """
    Running flag, last run time and query helpers over the pipeline and store.

    Issues no trading decisions.
    """

    def __init__(self, pipeline, store=None):
        self.pipeline = pipeline
        self.store = store
        self.is_running = False
        self.last_run_at: Optional[datetime] = None
        self._lock = threading.Lock()

    def mark_run(self, at: datetime) -> None:
        with self._lock:
            self.last_run_at = at

    @property
    def last_results(self) -> Dict[str, PipelineResult]:
        return self.pipeline.results

    def health(self) -> Dict[str, Any]:
        with self._lock:
            last_run = self.last_run_at.isoformat() if self.last_run_at else None
        return {
            "status": "ok",
            "running": self.is_running,
            "last_run_at": last_run,
            "symbols": list(self.pipeline.config.symbols),
            "open_positions": self.pipeline.tracker.open_count(),
        }

    def result_summary(self, symbol: str) -> Optional[Dict[str, Any]]:
        """Latest pipeline result for a symbol as plain values."""
        result = self.last_results.get(symbol)
        if result is None:
            return None
        snap = result.snapshot
        return {
            "symbol": symbol,
            "timestamp": snap.timestamp.isoformat() if snap.timestamp else None,
            "score": snap.score,
            "confidence": snap.confidence,
            "bias": snap.bias.value,
            "should_trade": snap.should_trade,
            "signals": snap.signals,
            "decision": result.gate.decision.value,
            "reason": result.gate.reason,
            "action": result.action.value,
            "trade_id": result.trade.id if result.trade else None,
            "failure": (
                {"kind": result.failure.kind, "message": result.failure.message}
                if result.failure else None
            ),
        }

    def trades(self, limit: int = 100) -> List:
        if self.store is None:
            return self.pipeline.tracker.closed_trades()[-limit:]
        return self.store.load_trades(limit=limit)

    def account_history(self, limit: int = 100) -> List:
        if self.store is None:
            return self.pipeline.ledger.snapshots[-limit:]
        return self.store.load_account_snapshots(limit=limit)

    def signal_history(self, symbol: Optional[str] = None, limit: int = 100) -> List:
        if self.store is None:
            return []
        return self.store.load_signal_snapshots(symbol=symbol, limit=limit)

    def performance(self) -> Dict[str, Any]:
        ledger = self.pipeline.ledger
        return MetricsCalculator().calculate_all(
            self.pipeline.tracker.closed_trades(),
            ledger.snapshots,
            ledger.initial_cash,
        )
