"""Per-user aggregate insight (overall_insight | weekly_insight); one row per (user, kind)."""
from sqlalchemy import UniqueConstraint
from sqlmodel import Field

from .analysis_state import AnalysisState


class UserInsight(AnalysisState, table=True):
    __tablename__ = "user_insights"
    __table_args__ = (UniqueConstraint("user_id", "kind", name="uq_user_insights_user_kind"),)

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    kind: str
