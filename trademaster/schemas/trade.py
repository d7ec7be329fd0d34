from datetime import datetime

from pydantic import BaseModel, Field


class TradeCreate(BaseModel):
    user_id: int
    trade_pair: str = Field(min_length=1, max_length=20)
    trade_type: str = Field(pattern="^(buy|sell|long|short)$")
    position_size: float = Field(gt=0)
    entry_price: float | None = Field(default=None, ge=0)
    exit_price: float | None = Field(default=None, ge=0)
    stop_loss: float | None = Field(default=None, ge=0)
    take_profit: float | None = Field(default=None, ge=0)
    timeframe: str = "1h"
    title: str | None = None
    strategy: str | None = None
    notes: str | None = Field(default=None, max_length=1000)
    market_condition: str | None = None
    entry_time: datetime | None = None
    exit_time: datetime | None = None


class TradeResponse(BaseModel):
    id: int
    title: str | None
    trade_pair: str
    trade_type: str
    status: str
    result: str | None = None
    pnl: float | None = None
    pnl_percentage: float | None = None
    risk_reward_ratio: float | None = None
    analysis_status: str | None = None
    job_id: str | None = None
