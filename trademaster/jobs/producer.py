"""Public entry point for queuing analysis work (HTTP handlers, sweeps)."""
import logging

import redis

from .errors import ProducerError
from .models import Job, JobHandle, JobKind, JobPriority, default_job_id
from .store import RedisJobStore

logger = logging.getLogger(__name__)


class JobProducer:
    def __init__(self, store: RedisJobStore, *, max_attempts: int = 3):
        self._store = store
        self._max_attempts = max_attempts

    def enqueue(
        self,
        kind: JobKind | str,
        subject_id: int | str,
        *,
        priority: JobPriority | str | int = JobPriority.NORMAL,
        delay_ms: int = 0,
        dedup_key: str | None = None,
    ) -> JobHandle:
        """
        Queues one unit of work. While a job with the same id is waiting or active
        the call is a no-op and returns that job's handle.
        Raises ProducerError when the job store cannot be reached.
        """
        kind = JobKind(kind)
        job_id = dedup_key or default_job_id(kind, subject_id)
        try:
            delay_until = self._store.now_ms() + delay_ms if delay_ms > 0 else None
            job, created = self._store.enqueue(
                Job(
                    id=job_id,
                    kind=kind,
                    subject_id=str(subject_id),
                    priority=JobPriority.parse(priority),
                    max_attempts=self._max_attempts,
                    delay_until=delay_until,
                )
            )
        except redis.RedisError as e:
            logger.error("enqueue failed job_id=%s kind=%s subject_id=%s: %s", job_id, kind.value, subject_id, e)
            raise ProducerError(f"Job store unreachable: {e}") from e
        if created:
            logger.info(
                "job queued job_id=%s kind=%s subject_id=%s priority=%s delay_ms=%s",
                job.id,
                kind.value,
                subject_id,
                job.priority.name.lower(),
                delay_ms,
            )
        else:
            logger.info("job deduplicated job_id=%s state=%s", job.id, job.state.value)
        return JobHandle(job_id=job.id, state=job.state, created=created)
