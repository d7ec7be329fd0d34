"""
Analysis executor: one unit of work for (kind, subject_id).

    pending ─▶ processing ─▶ completed
                          └─▶ failed   (terminal or attempts exhausted; manual re-trigger)

A retryable failure with attempts left puts the subject back to pending with the
last error recorded, so a polling client always sees the true state.
"""
import json
import logging
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from trademaster.jobs.errors import ExecutionError, ExecutorError, NotFoundError
from trademaster.jobs.errors import ProviderTransientError
from trademaster.jobs.models import JobKind
from trademaster.models import ANALYSIS_FAILED, ANALYSIS_PENDING
from trademaster.schemas.analysis import AnalysisRecord
from trademaster.services import analyze
from trademaster.services.subjects import repository_for

logger = logging.getLogger(__name__)

Generator = Callable[[Any], "str | Mapping | AnalysisRecord"]

OUTCOME_COMPLETED = "completed"
OUTCOME_REUSED = "reused"
OUTCOME_SKIPPED = "skipped"

DEFAULT_GENERATORS: dict[JobKind, Generator] = {
    JobKind.TRADE_ANALYSIS: analyze.generate_trade_analysis,
    JobKind.OVERALL_INSIGHT: analyze.generate_overall_insight,
    JobKind.WEEKLY_INSIGHT: analyze.generate_weekly_insight,
}


@dataclass
class ExecutionResult:
    outcome: str  # completed | reused | skipped
    subject_id: str
    record: AnalysisRecord | None = None

    def summary(self) -> dict:
        out = {"outcome": self.outcome, "subject_id": self.subject_id}
        if self.record is not None:
            out.update(score=self.record.score, confidence=self.record.confidence, degraded=self.record.degraded)
        return out


class AnalysisExecutor:
    def __init__(
        self,
        engine,
        generators: Mapping[JobKind, Generator] | None = None,
        *,
        reuse_window: timedelta = timedelta(hours=1),
        timeout_seconds: float = 30.0,
        processing_stale_after: timedelta = timedelta(minutes=2),
        model_label: str = "qwen3",
        version: str = "1.0",
        max_parallel_calls: int = 4,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._engine = engine
        self._generators = dict(DEFAULT_GENERATORS)
        self._generators.update(generators or {})
        self.reuse_window = reuse_window
        self.timeout_seconds = timeout_seconds
        self.processing_stale_after = processing_stale_after
        self.model_label = model_label
        self.version = version
        self._clock = clock
        # The bound is enforced here so any collaborator, not only the SDK client, is cut off
        self._calls = ThreadPoolExecutor(max_workers=max_parallel_calls, thread_name_prefix="llm-call-")

    def close(self) -> None:
        self._calls.shutdown(wait=False)

    def execute(self, kind: JobKind | str, subject_id: str | int, *, attempt: int = 1, max_attempts: int = 1) -> ExecutionResult:
        kind = JobKind(kind)
        repo = repository_for(kind, self._engine)
        subject = repo.get(subject_id)
        if subject is None:
            raise NotFoundError(f"{kind.value} subject not found: {subject_id}")

        now = self._clock()
        if not repo.try_mark_processing(
            subject.id,
            now=now,
            fresh_after=now - self.reuse_window,
            stale_before=now - self.processing_stale_after,
        ):
            current = repo.get(subject_id)
            if current is None:
                raise NotFoundError(f"{kind.value} subject not found: {subject_id}")
            if current.record is not None and current.generated_at and current.generated_at >= now - self.reuse_window:
                logger.info("analysis reused kind=%s subject_id=%s", kind.value, subject_id)
                return ExecutionResult(OUTCOME_REUSED, str(subject_id), current.record)
            logger.info("analysis already in progress kind=%s subject_id=%s status=%s", kind.value, subject_id, current.status)
            return ExecutionResult(OUTCOME_SKIPPED, str(subject_id))

        try:
            raw = self._generate(kind, subject.payload)
            record = analyze.parse_analysis(raw).model_copy(
                update={"generated_at": now, "model": self.model_label, "version": self.version}
            )
            repo.save_record(subject.id, record, _raw_text(raw), now=now)
            repo.increment_usage(subject.owner_id)
        except ExecutorError as e:
            self._record_failure(repo, subject.id, e, attempt, max_attempts)
            raise
        except Exception as e:
            logger.exception("unexpected error kind=%s subject_id=%s", kind.value, subject_id)
            err = ExecutionError(f"Unexpected error: {e}")
            self._record_failure(repo, subject.id, err, attempt, max_attempts)
            raise err from e

        logger.info(
            "analysis completed kind=%s subject_id=%s score=%s degraded=%s",
            kind.value,
            subject_id,
            record.score,
            record.degraded,
        )
        return ExecutionResult(OUTCOME_COMPLETED, str(subject_id), record)

    def _generate(self, kind: JobKind, payload: Any):
        future = self._calls.submit(self._generators[kind], payload)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeout:
            # The dispatched call cannot be cancelled; its late result is dropped
            future.cancel()
            raise ProviderTransientError(f"AI call exceeded {self.timeout_seconds:g}s")

    def _record_failure(self, repo, subject_id: int, error: ExecutorError, attempt: int, max_attempts: int) -> None:
        final = not error.retryable or attempt >= max_attempts
        status = ANALYSIS_FAILED if final else ANALYSIS_PENDING
        try:
            repo.set_status(subject_id, status, str(error)[:2000], keep_completed=True)
        except Exception:
            logger.exception("could not record analysis failure subject_id=%s", subject_id)

    def mark_failed(self, kind: JobKind | str, subject_id: str | int, error: str) -> bool:
        """Used by the pool when a job dies outside execute() (stalled, attempts exhausted)."""
        return repository_for(kind, self._engine).set_status(
            subject_id, ANALYSIS_FAILED, error[:2000], keep_completed=True
        )

    def mark_pending(self, kind: JobKind | str, subject_id: str | int, error: str | None = None) -> bool:
        return repository_for(kind, self._engine).set_status(
            subject_id, ANALYSIS_PENDING, error, keep_completed=True
        )


def _raw_text(raw) -> str | None:
    if isinstance(raw, str):
        return raw
    if isinstance(raw, AnalysisRecord):
        return raw.model_dump_json()
    if isinstance(raw, Mapping):
        return json.dumps(raw, default=str)
    return None
