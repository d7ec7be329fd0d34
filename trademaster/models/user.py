from datetime import datetime

from sqlmodel import Field, SQLModel

PLAN_FREE = "free"
PLAN_PREMIUM = "premium"
PLAN_PROFESSIONAL = "professional"


class User(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    email: str = Field(unique=True, index=True)
    full_name: str = ""
    plan: str = Field(default=PLAN_FREE, index=True)  # "free" | "premium" | "professional"
    subscription_active: bool = True
    ai_analysis_count: int = 0  # incremented once per successful analysis
    created_at: datetime | None = Field(default_factory=datetime.utcnow)
    # Denormalized by the hourly usage sweep; may be up to one interval stale
    total_trades: int = 0
    open_trades: int = 0
    closed_trades: int = 0
    total_pnl: float = 0.0
    last_trade_date: datetime | None = None
    stats_updated_at: datetime | None = None

    @property
    def is_ai_eligible(self) -> bool:
        return self.plan != PLAN_FREE and self.subscription_active
