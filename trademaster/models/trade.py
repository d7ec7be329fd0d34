"""Journal trade; derived fields (status, pnl, result, risk/reward) come from services.trades."""
from datetime import datetime

from sqlmodel import Field

from .analysis_state import AnalysisState

TRADE_PENDING = "pending"
TRADE_OPEN = "open"
TRADE_CLOSED = "closed"
TRADE_TP_HIT = "tp_hit"
TRADE_STOPPED_OUT = "stopped_out"
CLOSED_STATUSES = (TRADE_CLOSED, TRADE_TP_HIT, TRADE_STOPPED_OUT)


class Trade(AnalysisState, table=True):
    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    title: str | None = None
    trade_pair: str
    trade_type: str  # buy | sell | long | short
    entry_price: float | None = None
    exit_price: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    position_size: float
    timeframe: str = "1h"
    status: str = Field(default=TRADE_PENDING, index=True)
    result: str | None = None  # win | loss | breakeven
    pnl: float | None = None
    pnl_percentage: float | None = None
    risk_reward_ratio: float | None = None
    strategy: str | None = None
    notes: str | None = None
    market_condition: str | None = None
    entry_time: datetime = Field(default_factory=datetime.utcnow)
    exit_time: datetime | None = None
    date_closed: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    updated_at: datetime | None = Field(default_factory=datetime.utcnow)
