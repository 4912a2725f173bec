"""Tests for the paper broker and the retry wrapper."""

import threading
import time

import pytest

from gxtagent.core.broker import PaperBroker, RetryingBroker
from gxtagent.core.config import AgentConfig
from gxtagent.core.errors import BrokerError, BrokerRejected, BrokerTimeout
from gxtagent.core.types import TradeSide


class TestPaperBroker:
    """Tests for PaperBroker class."""

    def test_open_and_close(self):
        broker = PaperBroker()
        fill = broker.open_position("SPY", TradeSide.LONG, 10, 98.0, 106.0, reference_price=100.0)

        assert fill.price == 100.0
        assert fill.quantity == 10
        assert broker.open_positions() == {"SPY": 10}

        exit_fill = broker.close_position(fill.order_id, 106.0)

        assert exit_fill.price == 106.0
        assert exit_fill.symbol == "SPY"
        assert broker.open_positions() == {}

    def test_short_position_is_negative(self):
        broker = PaperBroker()
        broker.open_position("SPY", TradeSide.SHORT, 5, 52.0, 44.0, reference_price=50.0)
        assert broker.open_positions() == {"SPY": -5}

    def test_slippage_is_adverse(self):
        broker = PaperBroker(slippage_pct=0.01)
        long_fill = broker.open_position("SPY", TradeSide.LONG, 1, 90, 120, reference_price=100.0)
        short_fill = broker.open_position("QQQ", TradeSide.SHORT, 1, 110, 80, reference_price=100.0)

        assert long_fill.price == pytest.approx(101.0)
        assert short_fill.price == pytest.approx(99.0)
        assert broker.close_position(long_fill.order_id, 100.0).price == pytest.approx(99.0)

    def test_rejects_duplicate_symbol(self):
        broker = PaperBroker()
        broker.open_position("SPY", TradeSide.LONG, 1, 98, 106, reference_price=100.0)
        with pytest.raises(BrokerRejected):
            broker.open_position("SPY", TradeSide.LONG, 1, 98, 106, reference_price=100.0)

    def test_rejects_missing_price_and_quantity(self):
        broker = PaperBroker()
        with pytest.raises(BrokerRejected):
            broker.open_position("SPY", TradeSide.LONG, 1, 98, 106)
        with pytest.raises(BrokerRejected):
            broker.open_position("SPY", TradeSide.LONG, 0, 98, 106, reference_price=100.0)

    def test_close_unknown(self):
        with pytest.raises(BrokerRejected):
            PaperBroker().close_position("nope", 1.0)

    def test_injected_failure(self):
        broker = PaperBroker()
        broker.fail_next(BrokerError("down"))

        with pytest.raises(BrokerError):
            broker.open_position("SPY", TradeSide.LONG, 1, 98, 106, reference_price=100.0)
        broker.open_position("SPY", TradeSide.LONG, 1, 98, 106, reference_price=100.0)
        assert broker.calls == 2


class SlowBroker(PaperBroker):
    """Blocks open_position until released."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def open_position(self, *args, **kwargs):
        self.release.wait(5)
        return super().open_position(*args, **kwargs)


class SlowVenue(PaperBroker):
    """Counts every order it receives and takes `delay` seconds to fill each."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay
        self.orders = 0

    def open_position(self, *args, **kwargs):
        self.orders += 1
        time.sleep(self.delay)
        return super().open_position(*args, **kwargs)


class DroppedReplyVenue(PaperBroker):
    """Executes the request, then loses the reply."""

    def __init__(self):
        super().__init__()
        self.orders = 0
        self.closes = 0

    def open_position(self, *args, **kwargs):
        self.orders += 1
        super().open_position(*args, **kwargs)
        raise BrokerError("connection reset")

    def close_position(self, *args, **kwargs):
        self.closes += 1
        super().close_position(*args, **kwargs)
        raise BrokerError("connection reset")


class TestRetryingBroker:
    """Tests for RetryingBroker class."""

    def test_backoff_delay(self):
        broker = RetryingBroker(PaperBroker(), backoff_base=0.5, backoff_cap=3.0)

        assert broker.backoff_delay(1) == 0.5
        assert broker.backoff_delay(2) == 1.0
        assert broker.backoff_delay(3) == 2.0
        assert broker.backoff_delay(4) == 3.0
        broker.shutdown()

    def test_retries_transient_errors(self):
        inner = PaperBroker()
        inner.fail_next(BrokerError("502"), times=2)
        delays = []
        broker = RetryingBroker(inner, max_attempts=3, sleep=delays.append)

        fill = broker.open_position("SPY", TradeSide.LONG, 1, 98, 106, reference_price=100.0)

        assert fill.symbol == "SPY"
        assert inner.calls == 3
        assert delays == [0.5, 1.0]
        broker.shutdown()

    def test_gives_up_after_max_attempts(self):
        inner = PaperBroker()
        inner.fail_next(BrokerError("502"), times=5)
        broker = RetryingBroker(inner, max_attempts=3, sleep=lambda s: None)

        with pytest.raises(BrokerError):
            broker.open_position("SPY", TradeSide.LONG, 1, 98, 106, reference_price=100.0)

        assert inner.calls == 3
        broker.shutdown()

    def test_rejection_is_not_retried(self):
        inner = PaperBroker()
        broker = RetryingBroker(inner, max_attempts=3, sleep=lambda s: None)

        with pytest.raises(BrokerRejected):
            broker.close_position("missing", 1.0)

        assert inner.calls == 1
        broker.shutdown()

    def test_timeout(self):
        inner = SlowBroker()
        broker = RetryingBroker(inner, timeout=0.05, max_attempts=1, sleep=lambda s: None)

        with pytest.raises(BrokerTimeout):
            broker.open_position("SPY", TradeSide.LONG, 1, 98, 106, reference_price=100.0)

        inner.release.set()
        broker.shutdown()

    def test_from_config(self):
        config = AgentConfig(broker_timeout=2.0, broker_max_attempts=5)
        broker = RetryingBroker.from_config(PaperBroker(), config)

        assert broker.timeout == 2.0
        assert broker.max_attempts == 5
        broker.shutdown()

    def test_timed_out_order_is_not_resent(self):
        venue = SlowVenue(delay=0.2)
        broker = RetryingBroker(venue, timeout=0.05, max_attempts=3, sleep=lambda s: None)

        with pytest.raises(BrokerTimeout):
            broker.open_position("SPY", TradeSide.LONG, 1, 98, 106, reference_price=100.0)

        broker.shutdown()
        assert venue.orders == 1
        assert venue.open_positions() == {"SPY": 1}

    def test_order_is_not_resent_when_position_exists(self):
        """A lost reply after the order executed must not place a second order."""
        venue = DroppedReplyVenue()
        broker = RetryingBroker(venue, max_attempts=3, sleep=lambda s: None)

        with pytest.raises(BrokerError):
            broker.open_position("SPY", TradeSide.LONG, 1, 98, 106, reference_price=100.0)

        assert venue.orders == 1
        assert venue.open_positions() == {"SPY": 1}
        broker.shutdown()

    def test_close_is_not_resent_once_flat(self):
        venue = DroppedReplyVenue()
        fill = PaperBroker.open_position(venue, "SPY", TradeSide.LONG, 1, 98, 106, reference_price=100.0)
        broker = RetryingBroker(venue, max_attempts=3, sleep=lambda s: None)

        with pytest.raises(BrokerError):
            broker.close_position(fill.order_id, 105.0, symbol="SPY")

        assert venue.closes == 1
        assert venue.open_positions() == {}
        broker.shutdown()

    def test_close_is_resent_while_position_open(self):
        inner = PaperBroker()
        fill = inner.open_position("SPY", TradeSide.LONG, 1, 98, 106, reference_price=100.0)
        inner.fail_next(BrokerError("502"))
        broker = RetryingBroker(inner, max_attempts=3, sleep=lambda s: None)

        exit_fill = broker.close_position(fill.order_id, 105.0, symbol="SPY")

        assert exit_fill.price == 105.0
        assert inner.calls == 3
        broker.shutdown()
