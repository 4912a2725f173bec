"""
Row codecs for the persistence boundary.

Core code works with typed dataclasses and enums. Rows hold strings, numbers
and versioned JSON documents. Translation happens here and nowhere else.
"""

import json
from datetime import datetime
from typing import Any, Dict, Optional

from gxtagent.core.clock import to_utc
from gxtagent.core.errors import StoreError
from gxtagent.core.types import (
    AccountSnapshot, Bar, Bias, Checklist, ExitReason, IndicatorVote,
    SignalSnapshot, SizingConstraint, Trade, TradeSide, TradeStatus,
)

SIGNALS_VERSION = 1
CHECKLIST_VERSION = 1


def encode_time(ts: Optional[datetime]) -> Optional[str]:
    """UTC ISO-8601, so stored timestamps sort as text. Naive times are taken as UTC."""
    if ts is None:
        return None
    return to_utc(ts).isoformat()


def decode_time(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


# --- signals ---------------------------------------------------------------

def encode_signals(snapshot: SignalSnapshot) -> str:
    doc = {
        "version": SIGNALS_VERSION,
        "votes": [
            {"name": v.name, "value": v.value, "vote": v.vote, "weight": v.weight}
            for v in snapshot.votes
        ],
        "structural_low": snapshot.structural_low,
        "structural_high": snapshot.structural_high,
        "price": snapshot.price,
    }
    return json.dumps(doc, sort_keys=True)


def decode_signal_row(row) -> SignalSnapshot:
    doc = json.loads(row["signals"])
    version = doc.get("version")
    if version != SIGNALS_VERSION:
        raise StoreError(f"Unsupported signals record version: {version}")

    votes = tuple(
        IndicatorVote(name=v["name"], value=v["value"], vote=v["vote"], weight=v["weight"])
        for v in doc["votes"]
    )
    return SignalSnapshot(
        symbol=row["symbol"],
        timestamp=decode_time(row["timestamp"]),
        votes=votes,
        score=row["score"],
        confidence=row["confidence"],
        bias=Bias(row["bias"]),
        should_trade=bool(row["should_trade"]),
        structural_low=doc.get("structural_low"),
        structural_high=doc.get("structural_high"),
        price=doc.get("price"),
    )


def signal_params(snapshot: SignalSnapshot) -> Dict[str, Any]:
    return {
        "symbol": snapshot.symbol,
        "timestamp": encode_time(snapshot.timestamp),
        "signals": encode_signals(snapshot),
        "score": snapshot.score,
        "confidence": snapshot.confidence,
        "bias": snapshot.bias.value,
        "should_trade": 1 if snapshot.should_trade else 0,
    }


# --- checklist -------------------------------------------------------------

def encode_checklist(checklist: Checklist) -> str:
    doc = {
        "version": checklist.version,
        "score": checklist.score,
        "confidence": checklist.confidence,
        "bias": checklist.bias.value,
        "signals": checklist.signals,
        "entry_reference_price": checklist.entry_reference_price,
        "equity": checklist.equity,
        "cash": checklist.cash,
        "risk_fraction": checklist.risk_fraction,
        "reward_risk": checklist.reward_risk,
        "stop_distance": checklist.stop_distance,
        "stop_source": checklist.stop_source,
        "binding_constraint": checklist.binding_constraint.value,
        "bar_timestamp": encode_time(checklist.bar_timestamp),
    }
    return json.dumps(doc, sort_keys=True)


def decode_checklist(raw: str) -> Checklist:
    doc = json.loads(raw)
    version = doc.get("version")
    if version != CHECKLIST_VERSION:
        raise StoreError(f"Unsupported checklist record version: {version}")
    return Checklist(
        score=doc["score"],
        confidence=doc["confidence"],
        bias=Bias(doc["bias"]),
        signals=doc["signals"],
        entry_reference_price=doc["entry_reference_price"],
        equity=doc["equity"],
        cash=doc["cash"],
        risk_fraction=doc["risk_fraction"],
        reward_risk=doc["reward_risk"],
        stop_distance=doc["stop_distance"],
        stop_source=doc["stop_source"],
        binding_constraint=SizingConstraint(doc["binding_constraint"]),
        bar_timestamp=decode_time(doc.get("bar_timestamp")),
        version=version,
    )


# --- trades ----------------------------------------------------------------

def trade_params(trade: Trade) -> Dict[str, Any]:
    return {
        "id": trade.id,
        "symbol": trade.symbol,
        "side": trade.side.value,
        "qty": trade.quantity,
        "entry_price": trade.entry_price,
        "exit_price": trade.exit_price,
        "stop_loss": trade.stop_loss,
        "take_profit": trade.take_profit,
        "status": trade.status.value,
        "pnl": trade.pnl,
        "r_multiple": trade.r_multiple,
        "confidence": trade.confidence,
        "opened_at": encode_time(trade.opened_at),
        "closed_at": encode_time(trade.closed_at),
        "checklist_snapshot": encode_checklist(trade.checklist),
    }


def decode_trade_row(row) -> Trade:
    return Trade(
        id=row["id"],
        symbol=row["symbol"],
        side=TradeSide(row["side"]),
        quantity=row["qty"],
        entry_price=row["entry_price"],
        stop_loss=row["stop_loss"],
        take_profit=row["take_profit"],
        confidence=row["confidence"],
        opened_at=decode_time(row["opened_at"]),
        checklist=decode_checklist(row["checklist_snapshot"]),
        status=TradeStatus(row["status"]),
        exit_price=row["exit_price"],
        pnl=row["pnl"],
        r_multiple=row["r_multiple"],
        closed_at=decode_time(row["closed_at"]),
        exit_reason=None,
    )


# --- account / bars --------------------------------------------------------

def account_params(snapshot: AccountSnapshot) -> Dict[str, Any]:
    return {
        "cash": snapshot.cash,
        "equity": snapshot.equity,
        "day_pnl": snapshot.day_pnl,
        "total_pnl": snapshot.total_pnl,
        "timestamp": encode_time(snapshot.timestamp),
    }


def decode_account_row(row) -> AccountSnapshot:
    return AccountSnapshot(
        id=row["id"],
        cash=row["cash"],
        equity=row["equity"],
        day_pnl=row["day_pnl"],
        total_pnl=row["total_pnl"],
        timestamp=decode_time(row["timestamp"]),
    )


def bar_params(bar: Bar) -> Dict[str, Any]:
    return {
        "symbol": bar.symbol,
        "timeframe": bar.timeframe,
        "timestamp": encode_time(bar.timestamp),
        "open": bar.open,
        "high": bar.high,
        "low": bar.low,
        "close": bar.close,
        "volume": bar.volume,
    }


def decode_bar_row(row) -> Bar:
    return Bar(
        symbol=row["symbol"],
        timeframe=row["timeframe"],
        timestamp=decode_time(row["timestamp"]),
        open=row["open"],
        high=row["high"],
        low=row["low"],
        close=row["close"],
        volume=row["volume"],
    )
