"""initial models

user, trade and user_insights tables, including the AI analysis state columns.

"""
from typing import Sequence, Union

import sqlalchemy as sa
import sqlmodel  # noqa: F401
from alembic import op


revision: str = "0001_initial_models"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _analysis_state_columns() -> list[sa.Column]:
    return [
        sa.Column("analysis_status", sa.String(), nullable=True),
        sa.Column("analysis_error", sa.String(), nullable=True),
        sa.Column("analysis", sa.JSON(), nullable=True),
        sa.Column("analysis_raw", sa.String(), nullable=True),
        sa.Column("analysis_generated_at", sa.DateTime(), nullable=True),
        sa.Column("analysis_started_at", sa.DateTime(), nullable=True),
    ]


def _analysis_state_indexes(table: str) -> None:
    op.create_index(f"ix_{table}_analysis_status", table, ["analysis_status"])
    op.create_index(f"ix_{table}_analysis_generated_at", table, ["analysis_generated_at"])


def upgrade() -> None:
    op.create_table(
        "user",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=False, server_default=""),
        sa.Column("plan", sa.String(), nullable=False, server_default="free"),
        sa.Column("subscription_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("ai_analysis_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("total_trades", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("open_trades", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("closed_trades", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_pnl", sa.Float(), nullable=False, server_default="0"),
        sa.Column("last_trade_date", sa.DateTime(), nullable=True),
        sa.Column("stats_updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_user_email", "user", ["email"], unique=True)
    op.create_index("ix_user_plan", "user", ["plan"])

    op.create_table(
        "trade",
        *_analysis_state_columns(),
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id"), nullable=False),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("trade_pair", sa.String(), nullable=False),
        sa.Column("trade_type", sa.String(), nullable=False),
        sa.Column("entry_price", sa.Float(), nullable=True),
        sa.Column("exit_price", sa.Float(), nullable=True),
        sa.Column("stop_loss", sa.Float(), nullable=True),
        sa.Column("take_profit", sa.Float(), nullable=True),
        sa.Column("position_size", sa.Float(), nullable=False),
        sa.Column("timeframe", sa.String(), nullable=False, server_default="1h"),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("result", sa.String(), nullable=True),
        sa.Column("pnl", sa.Float(), nullable=True),
        sa.Column("pnl_percentage", sa.Float(), nullable=True),
        sa.Column("risk_reward_ratio", sa.Float(), nullable=True),
        sa.Column("strategy", sa.String(), nullable=True),
        sa.Column("notes", sa.String(), nullable=True),
        sa.Column("market_condition", sa.String(), nullable=True),
        sa.Column("entry_time", sa.DateTime(), nullable=False),
        sa.Column("exit_time", sa.DateTime(), nullable=True),
        sa.Column("date_closed", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_trade_user_id", "trade", ["user_id"])
    op.create_index("ix_trade_status", "trade", ["status"])
    op.create_index("ix_trade_created_at", "trade", ["created_at"])
    _analysis_state_indexes("trade")

    op.create_table(
        "user_insights",
        *_analysis_state_columns(),
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id"), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.UniqueConstraint("user_id", "kind", name="uq_user_insights_user_kind"),
    )
    op.create_index("ix_user_insights_user_id", "user_insights", ["user_id"])
    _analysis_state_indexes("user_insights")


def downgrade() -> None:
    op.drop_table("user_insights")
    op.drop_table("trade")
    op.drop_table("user")
