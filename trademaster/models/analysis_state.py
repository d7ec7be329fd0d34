"""AI analysis state carried by every analyzable subject: none → pending → processing → completed | failed."""
from datetime import datetime

from sqlalchemy import JSON
from sqlmodel import Field, SQLModel

ANALYSIS_PENDING = "pending"
ANALYSIS_PROCESSING = "processing"
ANALYSIS_COMPLETED = "completed"
ANALYSIS_FAILED = "failed"
ANALYSIS_STATUSES = (ANALYSIS_PENDING, ANALYSIS_PROCESSING, ANALYSIS_COMPLETED, ANALYSIS_FAILED)


class AnalysisState(SQLModel):
    # None = never attempted (the analysis sweep only picks these up)
    analysis_status: str | None = Field(default=None, index=True)
    analysis_error: str | None = None
    analysis: dict | None = Field(default=None, sa_type=JSON)  # AnalysisRecord.model_dump(mode="json")
    analysis_raw: str | None = None  # raw LLM text, stripped by the cleanup sweep
    analysis_generated_at: datetime | None = Field(default=None, index=True)
    analysis_started_at: datetime | None = None
