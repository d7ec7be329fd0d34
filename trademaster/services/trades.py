"""Derived trade fields as plain functions, applied explicitly by the write path."""
from dataclasses import dataclass
from datetime import datetime

from trademaster.models.trade import (
    CLOSED_STATUSES,
    TRADE_CLOSED,
    TRADE_OPEN,
    TRADE_PENDING,
    TRADE_STOPPED_OUT,
    TRADE_TP_HIT,
    Trade,
)

PRICE_EPSILON = 0.00001
LONG_TYPES = ("buy", "long")


@dataclass(frozen=True)
class PnL:
    pnl: float
    pnl_percentage: float
    result: str  # win | loss | breakeven


def compute_status(trade: Trade) -> str:
    if not trade.entry_price:
        return TRADE_PENDING
    if not trade.exit_price:
        return TRADE_OPEN
    if trade.take_profit and abs(trade.exit_price - trade.take_profit) < PRICE_EPSILON:
        return TRADE_TP_HIT
    if trade.stop_loss and abs(trade.exit_price - trade.stop_loss) < PRICE_EPSILON:
        return TRADE_STOPPED_OUT
    return TRADE_CLOSED


def compute_pnl(trade: Trade) -> PnL | None:
    """None while either price is missing."""
    if not trade.entry_price or not trade.exit_price:
        return None
    if trade.trade_type in LONG_TYPES:
        pnl = (trade.exit_price - trade.entry_price) * trade.position_size
    else:
        pnl = (trade.entry_price - trade.exit_price) * trade.position_size
    cost = trade.entry_price * trade.position_size
    pct = pnl / cost * 100 if cost > 0 else 0.0
    if pnl > 0:
        result = "win"
    elif pnl < 0:
        result = "loss"
    else:
        result = "breakeven"
    return PnL(pnl=pnl, pnl_percentage=pct, result=result)


def compute_risk_reward(trade: Trade) -> float | None:
    if not (trade.stop_loss and trade.take_profit and trade.entry_price):
        return None
    risk = abs(trade.entry_price - trade.stop_loss)
    if risk == 0:
        return None
    return abs(trade.take_profit - trade.entry_price) / risk


def apply_derived_fields(trade: Trade, now: datetime | None = None) -> Trade:
    now = now or datetime.utcnow()
    if not trade.title:
        opened = trade.entry_time or trade.created_at or now
        trade.title = f"{trade.trade_pair} {trade.trade_type.upper()} - {opened:%Y-%m-%d}"
    trade.status = compute_status(trade)
    pnl = compute_pnl(trade)
    if pnl is not None:
        trade.pnl, trade.pnl_percentage, trade.result = pnl.pnl, pnl.pnl_percentage, pnl.result
    trade.risk_reward_ratio = compute_risk_reward(trade)
    if trade.status in CLOSED_STATUSES and not trade.date_closed:
        trade.date_closed = now
    trade.updated_at = now
    return trade
