from .core import SweepScheduler
from .sweeps import (
    SweepResult,
    sweep_analysis_cleanup,
    sweep_trade_analysis,
    sweep_usage_statistics,
    sweep_weekly_insights,
)

__all__ = [
    "SweepResult",
    "SweepScheduler",
    "sweep_analysis_cleanup",
    "sweep_trade_analysis",
    "sweep_usage_statistics",
    "sweep_weekly_insights",
]
