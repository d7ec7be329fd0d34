from .analysis import AnalysisRecord, AnalysisStatusResponse, PsychologyInsights, RiskAssessment
from .trade import TradeCreate, TradeResponse

__all__ = [
    "AnalysisRecord",
    "AnalysisStatusResponse",
    "PsychologyInsights",
    "RiskAssessment",
    "TradeCreate",
    "TradeResponse",
]
