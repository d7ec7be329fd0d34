"""
Periodic sweeps. Each one is a plain function over an engine (and the producer
or job store where it needs one) so it can run from APScheduler, the worker CLI
or a test. One failing subject never aborts the batch.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import case, func, update
from sqlmodel import Session, select

from trademaster.jobs.errors import ProducerError
from trademaster.jobs.models import JobKind, JobPriority
from trademaster.jobs.producer import JobProducer
from trademaster.jobs.store import RedisJobStore
from trademaster.models import Trade, User, UserInsight
from trademaster.models.trade import CLOSED_STATUSES, TRADE_OPEN
from trademaster.models.user import PLAN_FREE, PLAN_PREMIUM, PLAN_PROFESSIONAL

logger = logging.getLogger(__name__)

WEEKLY_INSIGHT_PLANS = (PLAN_PREMIUM, PLAN_PROFESSIONAL)


@dataclass
class SweepResult:
    found: int = 0
    queued: int = 0
    skipped: int = 0
    updated: int = 0
    errors: int = 0
    extra: dict = field(default_factory=dict)

    def as_dict(self) -> dict:
        out = {
            "found": self.found,
            "queued": self.queued,
            "skipped": self.skipped,
            "updated": self.updated,
            "errors": self.errors,
        }
        out.update(self.extra)
        return out


def _enqueue_staggered(
    producer: JobProducer,
    kind: JobKind,
    subject_ids: list[int],
    *,
    stagger_ms: int,
    result: SweepResult,
) -> None:
    for subject_id in subject_ids:
        try:
            handle = producer.enqueue(kind, subject_id, priority=JobPriority.LOW, delay_ms=result.queued * stagger_ms)
        except ProducerError as e:
            logger.error("sweep enqueue failed kind=%s subject_id=%s: %s", kind.value, subject_id, e)
            result.skipped += 1
            continue
        except Exception:
            logger.exception("sweep enqueue failed kind=%s subject_id=%s", kind.value, subject_id)
            result.skipped += 1
            continue
        if handle.created:
            result.queued += 1
        else:
            result.skipped += 1


def sweep_trade_analysis(
    engine,
    producer: JobProducer,
    *,
    lookback: timedelta = timedelta(minutes=35),
    batch_size: int = 50,
    stagger_ms: int = 2000,
    now: datetime | None = None,
) -> SweepResult:
    """Queues low-priority analysis for recent, never-analyzed trades of paying users."""
    now = now or datetime.utcnow()
    stmt = (
        select(Trade.id)
        .join(User, User.id == Trade.user_id)
        .where(
            Trade.created_at >= now - lookback,
            Trade.analysis_status.is_(None),
            User.plan != PLAN_FREE,
            User.subscription_active.is_(True),
        )
        .order_by(Trade.created_at)
        .limit(batch_size)
    )
    with Session(engine) as db:
        trade_ids = list(db.exec(stmt).all())

    result = SweepResult(found=len(trade_ids))
    _enqueue_staggered(producer, JobKind.TRADE_ANALYSIS, trade_ids, stagger_ms=stagger_ms, result=result)
    logger.info(
        "sweep trade_analysis found=%s queued=%s skipped=%s", result.found, result.queued, result.skipped
    )
    return result


def sweep_weekly_insights(
    engine,
    producer: JobProducer,
    *,
    stagger_ms: int = 5000,
    now: datetime | None = None,
) -> SweepResult:
    """Premium/professional users with a trade in the last 7 days get a weekly insight job."""
    now = now or datetime.utcnow()
    recent = select(Trade.user_id).where(Trade.created_at >= now - timedelta(days=7))
    stmt = (
        select(User.id)
        .where(
            User.plan.in_(WEEKLY_INSIGHT_PLANS),
            User.subscription_active.is_(True),
            User.id.in_(recent),
        )
        .order_by(User.id)
    )
    with Session(engine) as db:
        user_ids = list(db.exec(stmt).all())

    result = SweepResult(found=len(user_ids))
    _enqueue_staggered(producer, JobKind.WEEKLY_INSIGHT, user_ids, stagger_ms=stagger_ms, result=result)
    logger.info(
        "sweep weekly_insights found=%s queued=%s skipped=%s", result.found, result.queued, result.skipped
    )
    return result


def sweep_analysis_cleanup(
    engine,
    store: RedisJobStore | None = None,
    *,
    max_age: timedelta = timedelta(days=30),
    job_retention: timedelta = timedelta(hours=24),
    now: datetime | None = None,
) -> SweepResult:
    """Drops raw provider responses older than ``max_age``; the structured record stays."""
    now = now or datetime.utcnow()
    cutoff = now - max_age
    result = SweepResult()
    for model in (Trade, UserInsight):
        stmt = (
            update(model)
            .where(model.analysis_generated_at < cutoff, model.analysis_raw.is_not(None))
            .values(analysis_raw=None)
        )
        try:
            with engine.begin() as conn:
                result.updated += conn.execute(stmt).rowcount
        except Exception:
            logger.exception("sweep cleanup failed table=%s", model.__tablename__)
            result.errors += 1
    result.found = result.updated

    if store is not None:
        try:
            result.extra["jobs_removed"] = store.clean(int(job_retention.total_seconds() * 1000))
        except Exception:
            logger.exception("sweep cleanup: job store clean failed")
            result.errors += 1

    logger.info(
        "sweep cleanup updated=%s jobs_removed=%s errors=%s",
        result.updated,
        result.extra.get("jobs_removed", 0),
        result.errors,
    )
    return result


def sweep_usage_statistics(engine, *, now: datetime | None = None) -> SweepResult:
    """Recomputes the denormalized per-user trade statistics."""
    now = now or datetime.utcnow()
    aggregate = select(
        Trade.user_id,
        func.count(Trade.id),
        func.sum(case((Trade.status == TRADE_OPEN, 1), else_=0)),
        func.sum(case((Trade.status.in_(CLOSED_STATUSES), 1), else_=0)),
        func.coalesce(func.sum(Trade.pnl), 0.0),
        func.max(Trade.created_at),
    ).group_by(Trade.user_id)

    with Session(engine) as db:
        rows = db.exec(aggregate).all()
        result = SweepResult(found=len(rows))
        for user_id, total, open_count, closed_count, total_pnl, last_trade in rows:
            user = db.get(User, user_id)
            if user is None:
                result.skipped += 1
                continue
            try:
                user.total_trades = int(total)
                user.open_trades = int(open_count or 0)
                user.closed_trades = int(closed_count or 0)
                user.total_pnl = float(total_pnl or 0.0)
                user.last_trade_date = last_trade
                user.stats_updated_at = now
                db.add(user)
                db.commit()
                result.updated += 1
            except Exception:
                db.rollback()
                logger.exception("sweep usage_statistics failed user_id=%s", user_id)
                result.errors += 1

    logger.info(
        "sweep usage_statistics processed=%s updated=%s errors=%s", result.found, result.updated, result.errors
    )
    return result
