import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlmodel import Session, select

from trademaster.api.deps import get_producer
from trademaster.core.database import get_db
from trademaster.core.rate_limit import ANALYZE_LIMIT, analysis_key, limiter
from trademaster.jobs.errors import ProducerError
from trademaster.jobs.models import JobKind, JobPriority
from trademaster.jobs.producer import JobProducer
from trademaster.models import Trade, User, UserInsight
from trademaster.schemas import AnalysisRecord, AnalysisStatusResponse

log = logging.getLogger(__name__)

router = APIRouter(prefix="/insights", tags=["insights"])

INSIGHT_KINDS = (JobKind.OVERALL_INSIGHT.value, JobKind.WEEKLY_INSIGHT.value)


def _insight_kind(kind: str) -> JobKind:
    if kind not in INSIGHT_KINDS:
        raise HTTPException(status_code=404, detail=f"Unknown insight kind: {kind}")
    return JobKind(kind)


def _insight_row(db: Session, user_id: int, kind: JobKind) -> UserInsight | None:
    return db.exec(select(UserInsight).where(UserInsight.user_id == user_id, UserInsight.kind == kind.value)).first()


@router.post("/{user_id}/{kind}", response_model=AnalysisStatusResponse, status_code=status.HTTP_202_ACCEPTED)
@limiter.limit(ANALYZE_LIMIT, key_func=analysis_key)
def request_insight(
    request: Request,
    user_id: int,
    kind: str,
    db: Session = Depends(get_db),
    producer: JobProducer = Depends(get_producer),
):
    job_kind = _insight_kind(kind)
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found.")
    if not user.is_ai_eligible:
        raise HTTPException(status_code=403, detail="AI insights require an active premium subscription.")
    if db.exec(select(Trade.id).where(Trade.user_id == user_id)).first() is None:
        raise HTTPException(status_code=400, detail="No trades found for analysis.")

    try:
        handle = producer.enqueue(job_kind, user_id, priority=JobPriority.NORMAL)
    except ProducerError as e:
        log.error("insight user_id=%s kind=%s not queued: %s", user_id, job_kind.value, e)
        raise HTTPException(status_code=503, detail="Analysis queue is temporarily unavailable. Please try again.")
    log.info("insight requested user_id=%s kind=%s job_id=%s", user_id, job_kind.value, handle.job_id)

    row = _insight_row(db, user_id, job_kind)
    return AnalysisStatusResponse(
        subject_id=user_id,
        status=row.analysis_status if row else None,
        error=row.analysis_error if row else None,
        analysis=AnalysisRecord.model_validate(row.analysis) if row and row.analysis else None,
        job_id=handle.job_id,
    )


@router.get("/{user_id}/{kind}", response_model=AnalysisStatusResponse)
def get_insight(user_id: int, kind: str, db: Session = Depends(get_db)):
    job_kind = _insight_kind(kind)
    row = _insight_row(db, user_id, job_kind)
    if row is None:
        if not db.get(User, user_id):
            raise HTTPException(status_code=404, detail="User not found.")
        return AnalysisStatusResponse(subject_id=user_id, status=None)
    return AnalysisStatusResponse(
        subject_id=user_id,
        status=row.analysis_status,
        error=row.analysis_error,
        analysis=AnalysisRecord.model_validate(row.analysis) if row.analysis else None,
    )
