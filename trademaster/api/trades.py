import logging
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy import and_, or_, update
from sqlmodel import Session, select

from trademaster.api.deps import get_producer
from trademaster.core.config import settings
from trademaster.core.database import get_db
from trademaster.core.rate_limit import ANALYZE_LIMIT, analysis_key, limiter
from trademaster.jobs.errors import ProducerError
from trademaster.jobs.models import JobKind, JobPriority
from trademaster.jobs.producer import JobProducer
from trademaster.models import ANALYSIS_COMPLETED, ANALYSIS_PENDING, ANALYSIS_PROCESSING, Trade, User
from trademaster.models.user import PLAN_PROFESSIONAL
from trademaster.schemas import AnalysisRecord, AnalysisStatusResponse, TradeCreate, TradeResponse
from trademaster.services.trades import apply_derived_fields

log = logging.getLogger(__name__)

router = APIRouter(prefix="/trades", tags=["trades"])

BATCH_MAX_TRADES = 50
BATCH_STAGGER_MS = 1000
QUEUE_UNAVAILABLE = "Analysis queue is temporarily unavailable. Please try again."


class BatchAnalyzeRequest(BaseModel):
    user_id: int
    trade_ids: list[int] = Field(min_length=1, max_length=BATCH_MAX_TRADES)
    priority: str = Field(default="normal", pattern="^(low|normal|high)$")


def _trade_response(trade: Trade, job_id: str | None = None) -> TradeResponse:
    return TradeResponse(
        id=trade.id,
        title=trade.title,
        trade_pair=trade.trade_pair,
        trade_type=trade.trade_type,
        status=trade.status,
        result=trade.result,
        pnl=trade.pnl,
        pnl_percentage=trade.pnl_percentage,
        risk_reward_ratio=trade.risk_reward_ratio,
        analysis_status=trade.analysis_status,
        job_id=job_id,
    )


def _status_response(trade: Trade, job_id: str | None = None) -> AnalysisStatusResponse:
    return AnalysisStatusResponse(
        subject_id=trade.id,
        status=trade.analysis_status,
        error=trade.analysis_error,
        analysis=AnalysisRecord.model_validate(trade.analysis) if trade.analysis else None,
        job_id=job_id,
    )


def _get_trade(db: Session, trade_id: int) -> Trade:
    trade = db.get(Trade, trade_id)
    if not trade:
        raise HTTPException(status_code=404, detail="Trade not found.")
    return trade


def _require_eligible(user: User | None) -> User:
    if user is None or not user.is_ai_eligible:
        raise HTTPException(status_code=403, detail="AI analysis requires an active premium subscription.")
    return user


def _fresh_after() -> datetime:
    return datetime.utcnow() - timedelta(minutes=settings.analysis_reuse_window_minutes)


def _has_fresh_analysis(trade: Trade, fresh_after: datetime) -> bool:
    return bool(
        trade.analysis_status == ANALYSIS_COMPLETED
        and trade.analysis
        and trade.analysis_generated_at
        and trade.analysis_generated_at >= fresh_after
    )


def _mark_pending(db: Session, trade: Trade) -> None:
    """
    Conditional UPDATE: a worker may already have claimed or finished the job
    between enqueue and this write, and its status wins.
    """
    fresh_after = _fresh_after()
    writable = or_(
        Trade.analysis_status.is_(None),
        Trade.analysis_status.not_in((ANALYSIS_PROCESSING, ANALYSIS_COMPLETED)),
        and_(
            Trade.analysis_status == ANALYSIS_COMPLETED,
            or_(Trade.analysis_generated_at.is_(None), Trade.analysis_generated_at < fresh_after),
        ),
    )
    db.exec(
        update(Trade)
        .where(Trade.id == trade.id)
        .where(writable)
        .values(analysis_status=ANALYSIS_PENDING, analysis_error=None)
    )
    db.commit()
    db.refresh(trade)


@router.post("", response_model=TradeResponse, status_code=status.HTTP_201_CREATED)
def create_trade(
    body: TradeCreate,
    db: Session = Depends(get_db),
    producer: JobProducer = Depends(get_producer),
):
    user = db.get(User, body.user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found.")
    data = body.model_dump(exclude_none=True)
    trade = apply_derived_fields(Trade(**data))
    db.add(trade)
    db.commit()
    db.refresh(trade)

    job_id = None
    if user.is_ai_eligible:
        try:
            handle = producer.enqueue(JobKind.TRADE_ANALYSIS, trade.id, priority=JobPriority.NORMAL)
        except ProducerError as e:
            # The analysis sweep picks the trade up later (analysis_status stays empty)
            log.warning("trade_id=%s created but analysis not queued: %s", trade.id, e)
        else:
            job_id = handle.job_id
            _mark_pending(db, trade)
    log.info("trade created trade_id=%s user_id=%s status=%s job_id=%s", trade.id, user.id, trade.status, job_id)
    return _trade_response(trade, job_id)


@router.post("/batch-analyze", status_code=status.HTTP_202_ACCEPTED)
@limiter.limit(ANALYZE_LIMIT, key_func=analysis_key)
def batch_analyze(
    request: Request,
    body: BatchAnalyzeRequest,
    db: Session = Depends(get_db),
    producer: JobProducer = Depends(get_producer),
):
    user = _require_eligible(db.get(User, body.user_id))
    if user.plan != PLAN_PROFESSIONAL:
        raise HTTPException(status_code=403, detail="Batch analysis requires the professional plan.")
    trade_ids = list(dict.fromkeys(body.trade_ids))
    trades = db.exec(select(Trade).where(Trade.id.in_(trade_ids), Trade.user_id == user.id)).all()
    if len(trades) != len(trade_ids):
        raise HTTPException(status_code=400, detail="Some trades were not found.")

    # Trades with an analysis inside the reuse window are reported, not queued
    fresh_after = _fresh_after()
    ordered = sorted(trades, key=lambda t: trade_ids.index(t.id))
    cached_ids = [t.id for t in ordered if _has_fresh_analysis(t, fresh_after)]
    to_queue = [t for t in ordered if t.id not in cached_ids]

    job_ids = []
    try:
        for i, trade in enumerate(to_queue):
            handle = producer.enqueue(
                JobKind.TRADE_ANALYSIS, trade.id, priority=body.priority, delay_ms=i * BATCH_STAGGER_MS
            )
            job_ids.append(handle.job_id)
            _mark_pending(db, trade)
    except ProducerError as e:
        log.error("batch analyze failed user_id=%s queued=%s: %s", user.id, len(job_ids), e)
        raise HTTPException(status_code=503, detail=QUEUE_UNAVAILABLE)
    log.info("batch analysis queued user_id=%s trades=%s cached=%s", user.id, len(job_ids), len(cached_ids))
    return {"job_ids": job_ids, "trades_queued": len(job_ids), "cached_trade_ids": cached_ids}


@router.post("/{trade_id}/analyze", response_model=AnalysisStatusResponse)
@limiter.limit(ANALYZE_LIMIT, key_func=analysis_key)
def analyze_trade(
    request: Request,
    trade_id: int,
    db: Session = Depends(get_db),
    producer: JobProducer = Depends(get_producer),
):
    """Returns the cached analysis when it is recent enough, otherwise queues a high-priority job."""
    trade = _get_trade(db, trade_id)
    _require_eligible(db.get(User, trade.user_id))

    if _has_fresh_analysis(trade, _fresh_after()):
        return _status_response(trade)

    try:
        handle = producer.enqueue(JobKind.TRADE_ANALYSIS, trade.id, priority=JobPriority.HIGH)
    except ProducerError as e:
        log.error("analyze trade_id=%s not queued: %s", trade.id, e)
        raise HTTPException(status_code=503, detail=QUEUE_UNAVAILABLE)
    _mark_pending(db, trade)
    log.info("analysis requested trade_id=%s job_id=%s created=%s", trade.id, handle.job_id, handle.created)
    return _status_response(trade, handle.job_id)


@router.get("/{trade_id}/analysis", response_model=AnalysisStatusResponse)
def get_trade_analysis(trade_id: int, db: Session = Depends(get_db)):
    return _status_response(_get_trade(db, trade_id))
