from .analysis_state import (
    ANALYSIS_COMPLETED,
    ANALYSIS_FAILED,
    ANALYSIS_PENDING,
    ANALYSIS_PROCESSING,
    AnalysisState,
)
from .insight import UserInsight
from .trade import Trade
from .user import User

__all__ = [
    "ANALYSIS_COMPLETED",
    "ANALYSIS_FAILED",
    "ANALYSIS_PENDING",
    "ANALYSIS_PROCESSING",
    "AnalysisState",
    "Trade",
    "User",
    "UserInsight",
]
