"""
Position tracking: the open -> closed trade state machine and its P&L arithmetic.
"""

import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Set

from gxtagent.core.errors import StoreError, TradeStateError
from gxtagent.core.types import (
    Checklist, ExitReason, Fill, SizingResult, Trade, TradeSide, TradeStatus,
)

logger = logging.getLogger(__name__)


def compute_pnl(side: TradeSide, entry_price: float, exit_price: float, quantity: float) -> float:
    """(exit - entry) * qty, sign-flipped for shorts."""
    return (exit_price - entry_price) * quantity * side.direction


def compute_r_multiple(pnl: float, entry_price: float, stop_loss: float, quantity: float) -> float:
    """P&L as a multiple of the initial dollar risk |entry - stop| * qty."""
    risk = abs(entry_price - stop_loss) * quantity
    if risk == 0:
        raise TradeStateError("Trade has zero initial risk; R-multiple undefined")
    return pnl / risk


class PositionTracker:
    """
    Sole owner of Trade mutation.

    Maintains:
    - Open trades (at most one per symbol)
    - Closed trades (terminal, never modified again)
    - Entry slot reservations, so concurrent ticks cannot exceed the book limit

    All state changes happen under `lock`, which the account ledger also
    takes so snapshots never interleave with a close.
    """

    def __init__(self, store=None):
        """
        Args:
            store: Opened SqliteStore, or None to keep trades in memory only
        """
        self.store = store
        self.lock = threading.RLock()
        self._open: Dict[str, Trade] = {}
        self._closed: List[Trade] = []
        self._closed_ids: Set[str] = set()
        self._reserved: Set[str] = set()
        self._unpersisted: Set[str] = set()

    # ------------------------------------------------------------------ queries

    def open_trade(self, symbol: str) -> Optional[Trade]:
        with self.lock:
            return self._open.get(symbol)

    def open_trades(self) -> List[Trade]:
        with self.lock:
            return list(self._open.values())

    def open_count(self) -> int:
        with self.lock:
            return len(self._open)

    def closed_trades(self) -> List[Trade]:
        with self.lock:
            return list(self._closed)

    def has_position(self, symbol: str) -> bool:
        with self.lock:
            return symbol in self._open

    @property
    def unpersisted(self) -> Set[str]:
        """Ids of trades whose latest state failed to reach the store."""
        with self.lock:
            return set(self._unpersisted)

    # ------------------------------------------------------------------ reservations

    def reserve(self, symbol: str, max_open: int) -> bool:
        """
        Claim an entry slot for a symbol.

        Returns False when open trades plus pending reservations already
        reach max_open.

        Raises:
            TradeStateError: Symbol already has an open trade or a reservation
        """
        with self.lock:
            if symbol in self._open:
                raise TradeStateError(f"{symbol} already has an open trade")
            if symbol in self._reserved:
                raise TradeStateError(f"{symbol} already has a pending entry")
            if len(self._open) + len(self._reserved) >= max_open:
                return False
            self._reserved.add(symbol)
            return True

    def release(self, symbol: str) -> None:
        with self.lock:
            self._reserved.discard(symbol)

    # ------------------------------------------------------------------ transitions

    def open(
        self,
        fill: Fill,
        sizing: SizingResult,
        confidence: float,
        checklist: Checklist,
        opened_at: Optional[datetime] = None,
    ) -> Trade:
        """
        Record a filled entry as an open trade.

        Args:
            fill: Broker fill (order id becomes the trade id)
            sizing: Risk manager output; stop-loss and take-profit come from here
            confidence: Confidence of the triggering snapshot
            checklist: Decision inputs for audit
            opened_at: Open time (defaults to the fill timestamp)

        Returns:
            The open Trade

        Raises:
            TradeStateError: Symbol already has an open trade
            StoreError: Trade is tracked in memory but could not be persisted
        """
        with self.lock:
            if fill.symbol in self._open:
                raise TradeStateError(f"{fill.symbol} already has an open trade")

            trade = Trade(
                id=fill.order_id,
                symbol=fill.symbol,
                side=sizing.side,
                quantity=fill.quantity,
                entry_price=fill.price,
                stop_loss=sizing.stop_loss,
                take_profit=sizing.take_profit,
                confidence=confidence,
                opened_at=opened_at or fill.timestamp,
                checklist=checklist,
            )
            self._open[trade.symbol] = trade
            self._reserved.discard(trade.symbol)

            logger.info(
                f"ENTRY: {trade.symbol} {trade.side.value} {trade.quantity} @ {trade.entry_price:.2f} "
                f"SL={trade.stop_loss:.2f} TP={trade.take_profit:.2f} id={trade.id}"
            )

            self._persist(trade, insert=True)
            return trade

    def close(
        self,
        trade_id: str,
        exit_price: float,
        closed_at: datetime,
        reason: ExitReason = ExitReason.MANUAL,
    ) -> Trade:
        """
        Close an open trade. Terminal: a closed trade cannot be closed again.

        Returns:
            The closed Trade with pnl and r_multiple set

        Raises:
            TradeStateError: Trade unknown or already closed
            StoreError: Trade is closed in memory but could not be persisted
        """
        with self.lock:
            if trade_id in self._closed_ids:
                raise TradeStateError(f"Trade {trade_id} is already closed")

            trade = next((t for t in self._open.values() if t.id == trade_id), None)
            if trade is None:
                raise TradeStateError(f"Unknown trade {trade_id}")

            pnl = compute_pnl(trade.side, trade.entry_price, exit_price, trade.quantity)
            r_multiple = compute_r_multiple(pnl, trade.entry_price, trade.stop_loss, trade.quantity)

            closed = replace(
                trade,
                status=TradeStatus.CLOSED,
                exit_price=exit_price,
                pnl=pnl,
                r_multiple=r_multiple,
                closed_at=closed_at,
                exit_reason=reason,
            )

            del self._open[trade.symbol]
            self._closed.append(closed)
            self._closed_ids.add(closed.id)

            logger.info(
                f"EXIT: {closed.symbol} {closed.quantity} @ {exit_price:.2f} "
                f"PnL: {pnl:.2f} R: {r_multiple:.2f} Reason: {reason.value}"
            )

            self._persist(closed, insert=False)
            return closed

    def _persist(self, trade: Trade, insert: bool) -> None:
        if self.store is None:
            return
        try:
            if insert:
                self.store.insert_trade(trade)
            else:
                self.store.update_trade(trade)
        except StoreError:
            self._unpersisted.add(trade.id)
            logger.error(f"Failed to persist trade {trade.id} ({trade.symbol})", exc_info=True)
            raise
        self._unpersisted.discard(trade.id)

    # ------------------------------------------------------------------ startup

    def rehydrate(self, trades: List[Trade]) -> None:
        """
        Load previously persisted trades (e.g. on startup).

        Raises:
            TradeStateError: Two open trades share a symbol
        """
        with self.lock:
            for trade in trades:
                if trade.status is TradeStatus.OPEN:
                    if trade.symbol in self._open:
                        raise TradeStateError(
                            f"Persisted state has two open trades for {trade.symbol}"
                        )
                    self._open[trade.symbol] = trade
                elif trade.id not in self._closed_ids:
                    self._closed.append(trade)
                    self._closed_ids.add(trade.id)
            self._closed.sort(key=lambda t: t.closed_at)
        logger.info(
            f"Rehydrated {len(self._open)} open and {len(self._closed)} closed trades"
        )
