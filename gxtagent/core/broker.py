"""
Broker interface, an in-process paper broker, and a retry/timeout wrapper.

The core only talks to brokers through the Broker interface. Real execution
lives in alpaca_broker.py.
"""

import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime
from typing import Callable, Dict, List, Optional, TypeVar

import pytz

from .errors import BrokerError, BrokerRejected, BrokerTimeout
from .types import Fill, TradeSide

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Broker(ABC):
    """Abstract order execution collaborator."""

    @abstractmethod
    def open_position(
        self,
        symbol: str,
        side: TradeSide,
        quantity: float,
        stop_loss: float,
        take_profit: float,
        reference_price: Optional[float] = None,
    ) -> Fill:
        """
        Open a position with attached stop-loss and take-profit.

        Args:
            symbol: Symbol to trade
            side: LONG or SHORT
            quantity: Quantity (> 0)
            stop_loss: Protective stop price
            take_profit: Profit target price
            reference_price: Price the decision was made at (simulated brokers fill here)

        Returns:
            Fill confirmation; its order_id becomes the trade id

        Raises:
            BrokerRejected: Order refused
            BrokerError: Transport or other failure
        """

    @abstractmethod
    def close_position(
        self,
        trade_id: str,
        exit_price: float,
        symbol: Optional[str] = None,
    ) -> Fill:
        """
        Close the position opened under trade_id.

        Returns:
            Fill confirmation with the realized exit price
        """

    @abstractmethod
    def open_positions(self) -> Dict[str, float]:
        """Currently open positions as symbol -> signed quantity."""


class PaperBroker(Broker):
    """
    Simulated broker filling at the supplied price.

    Used for backtests and tests. Failures can be injected with
    fail_next(), which makes the next N calls raise the given error.
    """

    def __init__(self, slippage_pct: float = 0.0):
        """
        Args:
            slippage_pct: Adverse slippage applied to fills, as a fraction of price
        """
        self.slippage_pct = slippage_pct
        self._positions: Dict[str, Dict] = {}
        self._failures: List[BrokerError] = []
        self._lock = threading.Lock()
        self.calls = 0

    def fail_next(self, error: BrokerError, times: int = 1) -> None:
        """Make the next `times` calls raise `error`."""
        with self._lock:
            self._failures.extend([error] * times)

    def _maybe_fail(self) -> None:
        self.calls += 1
        if self._failures:
            raise self._failures.pop(0)

    def _slipped(self, price: float, side: TradeSide, opening: bool) -> float:
        # Adverse: buying costs more, selling receives less
        buying = (side is TradeSide.LONG) == opening
        factor = 1 + self.slippage_pct if buying else 1 - self.slippage_pct
        return price * factor

    def open_position(
        self,
        symbol: str,
        side: TradeSide,
        quantity: float,
        stop_loss: float,
        take_profit: float,
        reference_price: Optional[float] = None,
    ) -> Fill:
        with self._lock:
            self._maybe_fail()
            if reference_price is None:
                raise BrokerRejected("Paper broker needs a reference price to fill")
            if quantity <= 0:
                raise BrokerRejected(f"Invalid quantity {quantity}")
            if symbol in self._positions:
                raise BrokerRejected(f"Position already open for {symbol}")

            order_id = uuid.uuid4().hex
            price = self._slipped(reference_price, side, opening=True)
            self._positions[symbol] = {
                "trade_id": order_id,
                "side": side,
                "quantity": quantity,
                "price": price,
            }

        logger.debug(f"Paper fill: {symbol} {side.value} {quantity} @ {price:.4f}")
        return Fill(
            order_id=order_id,
            symbol=symbol,
            side=side,
            quantity=quantity,
            price=price,
            timestamp=datetime.now(pytz.UTC),
        )

    def close_position(
        self,
        trade_id: str,
        exit_price: float,
        symbol: Optional[str] = None,
    ) -> Fill:
        with self._lock:
            self._maybe_fail()
            match = next(
                (s for s, p in self._positions.items() if p["trade_id"] == trade_id),
                None,
            )
            if match is None:
                raise BrokerRejected(f"No open position for trade {trade_id}")

            pos = self._positions.pop(match)
            price = self._slipped(exit_price, pos["side"], opening=False)

        logger.debug(f"Paper close: {match} {pos['quantity']} @ {price:.4f}")
        return Fill(
            order_id=trade_id,
            symbol=match,
            side=pos["side"],
            quantity=pos["quantity"],
            price=price,
            timestamp=datetime.now(pytz.UTC),
        )

    def open_positions(self) -> Dict[str, float]:
        with self._lock:
            return {
                s: p["quantity"] * p["side"].direction
                for s, p in self._positions.items()
            }


class RetryingBroker(Broker):
    """
    Wraps a broker with a per-call timeout and bounded exponential backoff.

    Rejections are final and never retried. Reads are retried on timeouts and
    on broker or connectivity errors up to max_attempts. Order placement and
    closes are not resent after a timeout, and are resent after other errors
    only when the broker shows the previous attempt had no effect.
    """

    def __init__(
        self,
        broker: Broker,
        timeout: float = 10.0,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_cap: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.broker = broker
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="broker")

    @classmethod
    def from_config(cls, broker: Broker, config) -> "RetryingBroker":
        return cls(
            broker,
            timeout=config.broker_timeout,
            max_attempts=config.broker_max_attempts,
            backoff_base=config.broker_backoff_base,
            backoff_cap=config.broker_backoff_cap,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based): base * 2**(attempt-1), capped."""
        return min(self.backoff_cap, self.backoff_base * (2 ** (attempt - 1)))

    def _call(
        self,
        label: str,
        fn: Callable[[], T],
        mutation: bool = False,
        may_resend: Optional[Callable[[], bool]] = None,
    ) -> T:
        """
        Run fn with a timeout and bounded retries.

        For mutations (order placement and closes) a timed-out attempt is never
        sent again, since it may still complete at the broker. Other failures
        are resent only when may_resend() confirms the previous attempt left
        no trace at the broker.
        """
        last_error: Optional[Exception] = None
        attempts = 0

        for attempt in range(self.max_attempts):
            if attempt > 0:
                if mutation and not (may_resend and may_resend()):
                    logger.error(f"{label} not resent: outcome of the previous attempt is unknown")
                    break
                delay = self.backoff_delay(attempt)
                logger.info(
                    f"Waiting {delay}s before retry {attempt + 1}/{self.max_attempts} of {label}"
                )
                self._sleep(delay)

            attempts += 1
            future = self._executor.submit(fn)
            try:
                return future.result(timeout=self.timeout)
            except FutureTimeout:
                last_error = BrokerTimeout(f"{label} timed out after {self.timeout}s")
                if mutation:
                    logger.error(f"{label} timed out; it may still complete at the broker")
                    raise last_error
            except BrokerRejected:
                logger.warning(f"{label} rejected by broker")
                raise
            except (BrokerError, ConnectionError, OSError) as e:
                last_error = e

            logger.warning(
                f"Attempt {attempt + 1}/{self.max_attempts}: {label} failed: {last_error}"
            )

        logger.error(f"{label} failed after {attempts} attempts")
        if isinstance(last_error, BrokerError):
            raise last_error
        raise BrokerError(f"{label} failed: {last_error}") from last_error

    def _positions_now(self) -> Optional[Dict[str, float]]:
        """Broker positions, or None if they cannot be read within the timeout."""
        try:
            return self._executor.submit(self.broker.open_positions).result(timeout=self.timeout)
        except FutureTimeout:
            return None
        except (BrokerError, ConnectionError, OSError) as e:
            logger.warning(f"Cannot read broker positions: {e}")
            return None

    def open_position(
        self,
        symbol: str,
        side: TradeSide,
        quantity: float,
        stop_loss: float,
        take_profit: float,
        reference_price: Optional[float] = None,
    ) -> Fill:
        def nothing_opened() -> bool:
            positions = self._positions_now()
            return positions is not None and not positions.get(symbol)

        return self._call(
            f"open_position({symbol})",
            lambda: self.broker.open_position(
                symbol, side, quantity, stop_loss, take_profit, reference_price
            ),
            mutation=True,
            may_resend=nothing_opened,
        )

    def close_position(
        self,
        trade_id: str,
        exit_price: float,
        symbol: Optional[str] = None,
    ) -> Fill:
        def still_open() -> bool:
            if symbol is None:
                return False
            positions = self._positions_now()
            return positions is not None and bool(positions.get(symbol))

        return self._call(
            f"close_position({trade_id})",
            lambda: self.broker.close_position(trade_id, exit_price, symbol),
            mutation=True,
            may_resend=still_open,
        )

    def open_positions(self) -> Dict[str, float]:
        return self._call("open_positions", self.broker.open_positions)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
