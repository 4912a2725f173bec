"""
Alpaca broker integration using the alpaca-py SDK.
Executes bracket orders for trades and fetches raw OHLCV bars.
"""

import os
import logging
import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytz
from dotenv import load_dotenv

from alpaca.common.exceptions import APIError
from alpaca.trading.client import TradingClient
from alpaca.trading.requests import MarketOrderRequest, TakeProfitRequest, StopLossRequest
from alpaca.trading.enums import AssetClass, OrderSide as AlpacaOrderSide, OrderClass, TimeInForce
from alpaca.data.historical import StockHistoricalDataClient, CryptoHistoricalDataClient
from alpaca.data.requests import StockBarsRequest, CryptoBarsRequest
from alpaca.data.timeframe import TimeFrame, TimeFrameUnit
from alpaca.data.enums import DataFeed

from .broker import Broker
from .errors import BrokerError, BrokerRejected, ConfigError, DataError
from .types import Bar, Fill, TradeSide

load_dotenv()
logger = logging.getLogger(__name__)


# Timeframe mapping for alpaca-py
TIMEFRAME_MAP = {
    "1Min": TimeFrame(1, TimeFrameUnit.Minute),
    "5Min": TimeFrame(5, TimeFrameUnit.Minute),
    "15Min": TimeFrame(15, TimeFrameUnit.Minute),
    "30Min": TimeFrame(30, TimeFrameUnit.Minute),
    "1Hour": TimeFrame(1, TimeFrameUnit.Hour),
    "4Hour": TimeFrame(4, TimeFrameUnit.Hour),
    "1Day": TimeFrame(1, TimeFrameUnit.Day),
}


def _credentials(api_key: Optional[str], secret_key: Optional[str]):
    api_key = api_key or os.getenv("ALPACA_API_KEY")
    secret_key = secret_key or os.getenv("ALPACA_SECRET_KEY")
    if not api_key or not secret_key:
        raise ConfigError(
            "Alpaca API credentials required. Set ALPACA_API_KEY and "
            "ALPACA_SECRET_KEY environment variables or pass directly."
        )
    return api_key, secret_key


def is_crypto(symbol: str) -> bool:
    """Crypto pairs contain a slash (BTC/USD)."""
    return "/" in symbol


def _agent_symbol(position) -> str:
    # Alpaca reports crypto positions without the slash (BTCUSD)
    symbol = position.symbol
    if getattr(position, "asset_class", None) == AssetClass.CRYPTO and "/" not in symbol:
        return f"{symbol[:-3]}/{symbol[-3:]}"
    return symbol


class AlpacaBroker(Broker):
    """Alpaca execution for paper and live trading."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        paper: bool = True,
        fill_timeout: float = 5.0,
        poll_interval: float = 0.5,
        sleep=time.sleep,
    ):
        """
        Initialize Alpaca trading connection.

        Args:
            api_key: Alpaca API key (defaults to ALPACA_API_KEY env var)
            secret_key: Alpaca secret key (defaults to ALPACA_SECRET_KEY env var)
            paper: Use paper trading (default True)
            fill_timeout: Seconds to poll a submitted order for its fill price
            poll_interval: Seconds between order polls
            sleep: Sleep function (replaced in tests)
        """
        api_key, secret_key = _credentials(api_key, secret_key)
        self.trading_client = TradingClient(
            api_key=api_key,
            secret_key=secret_key,
            paper=paper,
        )
        self.paper = paper
        self.fill_timeout = fill_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        # order id -> symbol, so closes can be addressed by trade id
        self._trade_symbols: Dict[str, str] = {}
        logger.info(f"Alpaca broker initialized (paper={paper})")

    def open_position(
        self,
        symbol: str,
        side: TradeSide,
        quantity: float,
        stop_loss: float,
        take_profit: float,
        reference_price: Optional[float] = None,
    ) -> Fill:
        alpaca_side = AlpacaOrderSide.BUY if side is TradeSide.LONG else AlpacaOrderSide.SELL

        request = MarketOrderRequest(
            symbol=symbol,
            qty=quantity,
            side=alpaca_side,
            time_in_force=TimeInForce.GTC if is_crypto(symbol) else TimeInForce.DAY,
            order_class=OrderClass.BRACKET,
            take_profit=TakeProfitRequest(limit_price=round(take_profit, 2)),
            stop_loss=StopLossRequest(stop_price=round(stop_loss, 2)),
        )

        try:
            order = self.trading_client.submit_order(request)
        except APIError as e:
            status = getattr(e, "status_code", None)
            if status is not None and 400 <= status < 500:
                raise BrokerRejected(f"Order rejected for {symbol}: {e}") from e
            raise BrokerError(f"Error submitting order for {symbol}: {e}") from e

        order_id = str(order.id)
        self._trade_symbols[order_id] = symbol
        fill_price = self._await_fill(order)
        if fill_price is None:
            fill_price = self._position_entry_price(symbol)
        if fill_price is None:
            logger.warning(f"No fill price for {symbol} order {order_id}; using reference price")
            fill_price = float(reference_price or 0.0)

        logger.info(
            f"Order submitted: {symbol} {side.value} {quantity} "
            f"SL={stop_loss:.2f} TP={take_profit:.2f} ID={order_id}"
        )

        return Fill(
            order_id=order_id,
            symbol=symbol,
            side=side,
            quantity=float(order.qty or quantity),
            price=fill_price,
            timestamp=order.submitted_at or datetime.now(pytz.UTC),
        )

    def close_position(
        self,
        trade_id: str,
        exit_price: float,
        symbol: Optional[str] = None,
    ) -> Fill:
        symbol = symbol or self._trade_symbols.get(trade_id)
        if symbol is None:
            raise BrokerRejected(f"Unknown trade {trade_id}; pass symbol explicitly")

        try:
            order = self.trading_client.close_position(symbol.replace("/", ""))
        except APIError as e:
            status = getattr(e, "status_code", None)
            if status == 404:
                raise BrokerRejected(f"No open position for {symbol}: {e}") from e
            raise BrokerError(f"Error closing position {symbol}: {e}") from e

        self._trade_symbols.pop(trade_id, None)
        price = self._await_fill(order)
        logger.info(f"Position closed: {symbol} (trade {trade_id})")

        qty = float(getattr(order, "qty", 0) or 0)
        side = TradeSide.SHORT if getattr(order, "side", None) == AlpacaOrderSide.BUY else TradeSide.LONG
        return Fill(
            order_id=trade_id,
            symbol=symbol,
            side=side,
            quantity=qty,
            price=exit_price if price is None else price,
            timestamp=datetime.now(pytz.UTC),
        )

    def open_positions(self) -> Dict[str, float]:
        try:
            positions = self.trading_client.get_all_positions()
        except APIError as e:
            raise BrokerError(f"Error getting positions: {e}") from e
        return {_agent_symbol(pos): float(pos.qty) for pos in positions}

    def _await_fill(self, order) -> Optional[float]:
        """
        Poll an order until it reports an average fill price.

        Returns:
            The fill price, or None if the order has not filled within fill_timeout
        """
        polls = max(1, int(self.fill_timeout / self.poll_interval)) if self.poll_interval else 1
        for _ in range(polls):
            price = getattr(order, "filled_avg_price", None)
            if price is not None:
                return float(price)
            order_id = getattr(order, "id", None)
            if order_id is None:
                return None
            self._sleep(self.poll_interval)
            try:
                order = self.trading_client.get_order_by_id(order_id)
            except APIError as e:
                logger.warning(f"Could not poll order {order_id}: {e}")
                return None
        price = getattr(order, "filled_avg_price", None)
        return float(price) if price is not None else None

    def _position_entry_price(self, symbol: str) -> Optional[float]:
        try:
            position = self.trading_client.get_open_position(symbol.replace("/", ""))
        except APIError as e:
            logger.warning(f"Could not read position for {symbol}: {e}")
            return None
        price = getattr(position, "avg_entry_price", None)
        return float(price) if price is not None else None

    def is_market_open(self) -> bool:
        """Check if the market is currently open."""
        try:
            return self.trading_client.get_clock().is_open
        except APIError as e:
            logger.error(f"Error checking market status: {e}")
            return False


class AlpacaBarFeed:
    """Raw bar transport from Alpaca market data."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        secret_key: Optional[str] = None,
    ):
        api_key, secret_key = _credentials(api_key, secret_key)
        self.data_client = StockHistoricalDataClient(api_key=api_key, secret_key=secret_key)
        self.crypto_client = CryptoHistoricalDataClient(api_key=api_key, secret_key=secret_key)

    def fetch(
        self,
        symbol: str,
        timeframe: str = "15Min",
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 200,
    ) -> List[Bar]:
        """
        Fetch bars, oldest first.

        Args:
            symbol: Stock or crypto symbol
            timeframe: Timeframe string (1Min ... 1Day)
            start: Start datetime (default: estimated from limit)
            end: End datetime (default: now)
            limit: Maximum number of bars returned

        Returns:
            List of Bar objects (empty if nothing available)

        Raises:
            DataError: Market data request failed
        """
        tf = TIMEFRAME_MAP.get(timeframe)
        if tf is None:
            raise ConfigError(f"Invalid timeframe: {timeframe}")

        if end is None:
            end = datetime.now(pytz.UTC)
        if start is None:
            if "Min" in timeframe:
                start = end - timedelta(minutes=int(timeframe.replace("Min", "")) * limit * 2)
            elif "Hour" in timeframe:
                start = end - timedelta(hours=int(timeframe.replace("Hour", "")) * limit * 2)
            else:
                start = end - timedelta(days=limit * 2)

        try:
            if is_crypto(symbol):
                request = CryptoBarsRequest(
                    symbol_or_symbols=symbol, timeframe=tf, start=start, end=end
                )
                result = self.crypto_client.get_crypto_bars(request)
            else:
                # IEX feed (free tier)
                request = StockBarsRequest(
                    symbol_or_symbols=symbol, timeframe=tf, start=start, end=end,
                    feed=DataFeed.IEX,
                )
                result = self.data_client.get_stock_bars(request)
        except APIError as e:
            raise DataError(f"Error getting bars for {symbol}: {e}") from e

        raw = result.data.get(symbol, [])
        bars = [
            Bar(
                symbol=symbol,
                timeframe=timeframe,
                timestamp=b.timestamp,
                open=float(b.open),
                high=float(b.high),
                low=float(b.low),
                close=float(b.close),
                volume=float(b.volume),
            )
            for b in raw
        ]
        return bars[-limit:]
