from datetime import datetime

from pydantic import BaseModel, Field


class RiskAssessment(BaseModel):
    level: str = "medium"  # low | medium | high | very-high
    factors: list[str] = Field(default_factory=list)


class PsychologyInsights(BaseModel):
    emotional_state: str = "neutral"
    biases: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)


class AnalysisRecord(BaseModel):
    """Current AI analysis of a subject; a new successful run replaces it."""
    summary: str = ""
    score: int = Field(default=50, ge=0, le=100)
    confidence: int = Field(default=50, ge=0, le=100)
    strengths: list[str] = Field(default_factory=list)
    weaknesses: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    risk_assessment: RiskAssessment = Field(default_factory=RiskAssessment)
    psychology_insights: PsychologyInsights = Field(default_factory=PsychologyInsights)
    generated_at: datetime | None = None
    model: str | None = None
    version: str | None = None
    degraded: bool = False  # True when the provider reply could not be parsed


class AnalysisStatusResponse(BaseModel):
    subject_id: int
    status: str | None
    error: str | None = None
    analysis: AnalysisRecord | None = None
    job_id: str | None = None
