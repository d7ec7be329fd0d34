"""
Data access for analyzable subjects: trades (trade_analysis) and per-user insights
(overall_insight, weekly_insight). The executor only talks to these repositories.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from trademaster.jobs.models import JobKind
from trademaster.models import (
    ANALYSIS_COMPLETED,
    ANALYSIS_PROCESSING,
    AnalysisState,
    Trade,
    User,
    UserInsight,
)
from trademaster.schemas.analysis import AnalysisRecord

logger = logging.getLogger(__name__)

OVERALL_INSIGHT_TRADES = 20
WEEKLY_INSIGHT_DAYS = 7


@dataclass
class Subject:
    id: int
    owner_id: int
    status: str | None
    error: str | None
    record: AnalysisRecord | None
    generated_at: datetime | None
    payload: Any  # what the LLM collaborator receives


def _subject_from_row(subject_id: int, owner_id: int, row: AnalysisState | None, payload: Any) -> Subject:
    record = AnalysisRecord.model_validate(row.analysis) if row is not None and row.analysis else None
    return Subject(
        id=subject_id,
        owner_id=owner_id,
        status=row.analysis_status if row is not None else None,
        error=row.analysis_error if row is not None else None,
        record=record,
        generated_at=row.analysis_generated_at if row is not None else None,
        payload=payload,
    )


def _to_int(subject_id: int | str) -> int | None:
    try:
        return int(subject_id)
    except (TypeError, ValueError):
        return None


class _AnalysisStateRepository:
    model: type[AnalysisState]

    def __init__(self, engine):
        self._engine = engine

    def _where(self, subject_id: int) -> list:
        raise NotImplementedError

    def _ensure_row(self, subject_id: int) -> None:
        pass

    def try_mark_processing(
        self,
        subject_id: int | str,
        *,
        now: datetime,
        fresh_after: datetime,
        stale_before: datetime,
    ) -> bool:
        """
        Single compare-and-set: moves the subject to processing unless it is being
        processed (started after ``stale_before``) or completed after ``fresh_after``.
        """
        sid = _to_int(subject_id)
        if sid is None:
            return False
        self._ensure_row(sid)
        m = self.model
        claimable = or_(
            m.analysis_status.is_(None),
            and_(
                m.analysis_status != ANALYSIS_PROCESSING,
                m.analysis_status != ANALYSIS_COMPLETED,
            ),
            and_(
                m.analysis_status == ANALYSIS_PROCESSING,
                or_(m.analysis_started_at.is_(None), m.analysis_started_at < stale_before),
            ),
            and_(
                m.analysis_status == ANALYSIS_COMPLETED,
                or_(m.analysis_generated_at.is_(None), m.analysis_generated_at < fresh_after),
            ),
        )
        stmt = (
            update(m)
            .where(*self._where(sid))
            .where(claimable)
            .values(analysis_status=ANALYSIS_PROCESSING, analysis_started_at=now, analysis_error=None)
        )
        with self._engine.begin() as conn:
            return conn.execute(stmt).rowcount == 1

    def save_record(self, subject_id: int | str, record: AnalysisRecord, raw: str | None, *, now: datetime) -> None:
        stmt = (
            update(self.model)
            .where(*self._where(int(subject_id)))
            .values(
                analysis=record.model_dump(mode="json"),
                analysis_raw=raw,
                analysis_status=ANALYSIS_COMPLETED,
                analysis_generated_at=now,
                analysis_error=None,
            )
        )
        with self._engine.begin() as conn:
            conn.execute(stmt)

    def set_status(
        self,
        subject_id: int | str,
        status: str | None,
        error: str | None = None,
        *,
        keep_completed: bool = False,
    ) -> bool:
        """
        With ``keep_completed`` a persisted record is left alone: a worker that
        saved its result and died before acking still counts as done.
        """
        sid = _to_int(subject_id)
        if sid is None:
            return False
        m = self.model
        stmt = update(m).where(*self._where(sid)).values(analysis_status=status, analysis_error=error)
        if keep_completed:
            stmt = stmt.where(or_(m.analysis_status.is_(None), m.analysis_status != ANALYSIS_COMPLETED))
        with self._engine.begin() as conn:
            return conn.execute(stmt).rowcount == 1

    def increment_usage(self, owner_id: int) -> None:
        stmt = update(User).where(User.id == owner_id).values(ai_analysis_count=User.ai_analysis_count + 1)
        with self._engine.begin() as conn:
            conn.execute(stmt)


class TradeSubjects(_AnalysisStateRepository):
    model = Trade

    def _where(self, subject_id: int) -> list:
        return [Trade.id == subject_id]

    def get(self, subject_id: int | str) -> Subject | None:
        sid = _to_int(subject_id)
        if sid is None:
            return None
        with Session(self._engine) as db:
            trade = db.get(Trade, sid)
            if trade is None:
                return None
            return _subject_from_row(sid, trade.user_id, trade, trade)


class InsightSubjects(_AnalysisStateRepository):
    """Subject id is the user id; state lives in the (user_id, kind) UserInsight row."""
    model = UserInsight

    def __init__(self, engine, kind: JobKind):
        super().__init__(engine)
        self.kind = JobKind(kind)

    def _where(self, subject_id: int) -> list:
        return [UserInsight.user_id == subject_id, UserInsight.kind == self.kind.value]

    def _ensure_row(self, subject_id: int) -> None:
        with Session(self._engine) as db:
            exists = db.exec(select(UserInsight.id).where(*self._where(subject_id))).first()
            if exists is not None:
                return
            db.add(UserInsight(user_id=subject_id, kind=self.kind.value))
            try:
                db.commit()
            except IntegrityError:
                # Another worker created it first
                db.rollback()

    def _trades(self, db: Session, user_id: int) -> list[Trade]:
        stmt = select(Trade).where(Trade.user_id == user_id).order_by(Trade.created_at.desc())
        if self.kind == JobKind.WEEKLY_INSIGHT:
            stmt = stmt.where(Trade.created_at >= datetime.utcnow() - timedelta(days=WEEKLY_INSIGHT_DAYS))
        else:
            stmt = stmt.limit(OVERALL_INSIGHT_TRADES)
        return list(db.exec(stmt).all())

    def get(self, subject_id: int | str) -> Subject | None:
        sid = _to_int(subject_id)
        if sid is None:
            return None
        with Session(self._engine) as db:
            user = db.get(User, sid)
            if user is None:
                return None
            row = db.exec(select(UserInsight).where(*self._where(sid))).first()
            trades = self._trades(db, sid)
            return _subject_from_row(sid, sid, row, (user, trades))


def repository_for(kind: JobKind | str, engine) -> _AnalysisStateRepository:
    kind = JobKind(kind)
    if kind == JobKind.TRADE_ANALYSIS:
        return TradeSubjects(engine)
    return InsightSubjects(engine, kind)
