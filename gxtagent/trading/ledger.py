"""
Account ledger: append-only account snapshots built from realized and unrealized P&L.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

import pytz

from gxtagent.core.types import AccountSnapshot
from .position_tracker import PositionTracker

logger = logging.getLogger(__name__)


class AccountLedger:
    """
    Sole creator of AccountSnapshot records.

    cash = initial cash + cumulative realized P&L
    equity = cash + unrealized P&L of open trades at the supplied marks
    day_pnl = realized P&L of trades closed on the snapshot's trading day
    total_pnl = cumulative realized P&L

    Snapshots are appended, never rewritten, and their timestamps never
    go backwards.
    """

    def __init__(
        self,
        tracker: PositionTracker,
        initial_cash: float = 100000.0,
        trading_timezone: str = "America/New_York",
        store=None,
    ):
        """
        Args:
            tracker: Position tracker whose trades feed the ledger
            initial_cash: Starting cash
            trading_timezone: Timezone whose calendar date defines a trading day
            store: Opened SqliteStore, or None for in-memory only
        """
        self.tracker = tracker
        self.initial_cash = initial_cash
        self.tz = pytz.timezone(trading_timezone)
        self.store = store
        self._snapshots: List[AccountSnapshot] = []

    @property
    def snapshots(self) -> List[AccountSnapshot]:
        with self.tracker.lock:
            return list(self._snapshots)

    @property
    def latest(self) -> Optional[AccountSnapshot]:
        with self.tracker.lock:
            return self._snapshots[-1] if self._snapshots else None

    def _trading_day(self, ts: datetime):
        if ts.tzinfo is None:
            ts = pytz.UTC.localize(ts)
        return ts.astimezone(self.tz).date()

    def realized_pnl(self) -> float:
        return sum(t.pnl for t in self.tracker.closed_trades())

    def cash(self) -> float:
        return self.initial_cash + self.realized_pnl()

    def unrealized_pnl(self, marks: Optional[Dict[str, float]] = None) -> float:
        marks = marks or {}
        return sum(
            t.unrealized_pnl(marks.get(t.symbol, t.entry_price))
            for t in self.tracker.open_trades()
        )

    def equity(self, marks: Optional[Dict[str, float]] = None) -> float:
        with self.tracker.lock:
            return self.cash() + self.unrealized_pnl(marks)

    def available_cash(self) -> float:
        """Cash not committed to the notional of open trades."""
        with self.tracker.lock:
            committed = sum(t.entry_price * t.quantity for t in self.tracker.open_trades())
            return self.cash() - committed

    def day_pnl(self, as_of: datetime) -> float:
        day = self._trading_day(as_of)
        return sum(
            t.pnl for t in self.tracker.closed_trades()
            if t.closed_at is not None and self._trading_day(t.closed_at) == day
        )

    def record(
        self,
        timestamp: datetime,
        marks: Optional[Dict[str, float]] = None,
    ) -> AccountSnapshot:
        """
        Append a snapshot of the account.

        Args:
            timestamp: Snapshot time (clamped to the previous snapshot's time if earlier)
            marks: Latest price per symbol for unrealized P&L

        Returns:
            The appended AccountSnapshot

        Raises:
            StoreError: Snapshot could not be persisted; nothing is appended
        """
        with self.tracker.lock:
            if self._snapshots and timestamp < self._snapshots[-1].timestamp:
                timestamp = self._snapshots[-1].timestamp

            total = self.realized_pnl()
            cash = self.initial_cash + total
            snapshot = AccountSnapshot(
                cash=cash,
                equity=cash + self.unrealized_pnl(marks),
                day_pnl=self.day_pnl(timestamp),
                total_pnl=total,
                timestamp=timestamp,
            )

            if self.store is not None:
                snapshot_id = self.store.insert_account_snapshot(snapshot)
                snapshot = AccountSnapshot(
                    cash=snapshot.cash,
                    equity=snapshot.equity,
                    day_pnl=snapshot.day_pnl,
                    total_pnl=snapshot.total_pnl,
                    timestamp=snapshot.timestamp,
                    id=snapshot_id,
                )

            self._snapshots.append(snapshot)

        logger.debug(
            f"Account snapshot: cash={snapshot.cash:.2f} equity={snapshot.equity:.2f} "
            f"day={snapshot.day_pnl:.2f} total={snapshot.total_pnl:.2f}"
        )
        return snapshot
