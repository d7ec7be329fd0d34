"""
Worker pool: N threads claiming jobs from the Redis store and running them
through the analysis executor.

Job starts are admitted by a moving-window rate limiter shared by every thread
of the pool (and by every process when the limiter storage is redis://).
"""
import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

import redis
from limits import RateLimitItemPerSecond
from limits.storage import storage_from_string
from limits.strategies import MovingWindowRateLimiter

from .errors import ExecutorError, NotFoundError
from .models import Job
from .store import RedisJobStore

logger = logging.getLogger(__name__)

EVENT_ACTIVE = "active"
EVENT_COMPLETED = "completed"
EVENT_FAILED = "failed"
EVENT_RETRYING = "retrying"
EVENT_STALLED = "stalled"
EVENT_DISCARDED = "discarded"

STALLED_ERROR = "job stalled: worker did not finish within the stall threshold"


@dataclass
class JobEvent:
    name: str
    job: Job
    error: str | None = None
    result: dict | None = None
    delay_ms: int | None = None
    extra: dict = field(default_factory=dict)


class WorkerPool:
    def __init__(
        self,
        store: RedisJobStore,
        executor,
        *,
        concurrency: int = 2,
        rate_limit_max: int = 10,
        rate_limit_window_seconds: int = 60,
        rate_limit_storage_uri: str = "memory://",
        backoff_base_ms: int = 2000,
        stall_threshold_seconds: float = 120,
        poll_interval_seconds: float = 1.0,
        maintenance_interval_seconds: float = 5.0,
        pool_id: str | None = None,
    ):
        self._store = store
        self._executor = executor
        self.concurrency = concurrency
        self.backoff_base_ms = backoff_base_ms
        self.stall_threshold_ms = int(stall_threshold_seconds * 1000)
        self.poll_interval_seconds = poll_interval_seconds
        self.maintenance_interval_seconds = maintenance_interval_seconds
        self.pool_id = pool_id or f"pool-{uuid.uuid4().hex[:8]}"

        self._rate_item = RateLimitItemPerSecond(rate_limit_max, rate_limit_window_seconds)
        self._limiter = MovingWindowRateLimiter(storage_from_string(rate_limit_storage_uri))
        # test + claim + hit must not interleave across threads
        self._admit_lock = threading.Lock()

        self._listeners: list[Callable[[JobEvent], None]] = []
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._busy = 0
        self._busy_lock = threading.Lock()
        self._counters = {EVENT_COMPLETED: 0, EVENT_FAILED: 0, EVENT_RETRYING: 0, EVENT_STALLED: 0, EVENT_DISCARDED: 0}

    # ─── events ──────────────────────────────────────────────────────────────

    def add_listener(self, listener: Callable[[JobEvent], None]) -> None:
        self._listeners.append(listener)

    def _emit(self, event: JobEvent) -> None:
        job = event.job
        if event.name in self._counters:
            with self._busy_lock:
                self._counters[event.name] += 1
        level = logging.WARNING if event.name in (EVENT_FAILED, EVENT_STALLED) else logging.INFO
        logger.log(
            level,
            "job %s job_id=%s kind=%s subject_id=%s attempt=%s/%s%s%s",
            event.name,
            job.id,
            job.kind.value,
            job.subject_id,
            job.attempts,
            job.max_attempts,
            f" delay_ms={event.delay_ms}" if event.delay_ms is not None else "",
            f" error={event.error!r}" if event.error else "",
        )
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("job event listener failed event=%s job_id=%s", event.name, job.id)

    # ─── processing ──────────────────────────────────────────────────────────

    def backoff_ms(self, attempts: int) -> int:
        return self.backoff_base_ms * 2 ** max(attempts - 1, 0)

    def _admit(self) -> Job | None:
        with self._admit_lock:
            if not self._limiter.test(self._rate_item, self._store.queue_name):
                return None
            job = self._store.claim()
            if job is not None:
                self._limiter.hit(self._rate_item, self._store.queue_name)
            return job

    def process_next(self) -> Job | None:
        """
        Claims and runs at most one job on the calling thread.
        Returns the job that ran, or None when rate limited, paused or idle.
        """
        job = self._admit()
        if job is None:
            return None
        with self._busy_lock:
            self._busy += 1
        try:
            self._run(job)
        finally:
            with self._busy_lock:
                self._busy -= 1
        return job

    def _run(self, job: Job) -> None:
        self._emit(JobEvent(EVENT_ACTIVE, job))
        try:
            result = self._executor.execute(
                job.kind, job.subject_id, attempt=job.attempts, max_attempts=job.max_attempts
            )
        except NotFoundError as e:
            if self._store.discard(job):
                self._emit(JobEvent(EVENT_DISCARDED, job, error=str(e)))
            return
        except ExecutorError as e:
            self._handle_failure(job, e)
            return
        summary = result.summary()
        if self._store.ack(job, summary):
            self._emit(JobEvent(EVENT_COMPLETED, job, result=summary))

    def _handle_failure(self, job: Job, error: ExecutorError) -> None:
        message = str(error)
        if error.retryable and job.attempts < job.max_attempts:
            delay = self.backoff_ms(job.attempts)
            if self._store.fail(job, message, retry_delay_ms=delay):
                self._emit(JobEvent(EVENT_RETRYING, job, error=message, delay_ms=delay))
        elif self._store.fail(job, message):
            self._emit(JobEvent(EVENT_FAILED, job, error=message))

    def recover_stalled(self) -> int:
        """Reclaims active jobs older than the stall threshold; each counts as a spent attempt."""
        recovered = 0
        for job in self._store.stalled(self.stall_threshold_ms):
            if job.attempts < job.max_attempts:
                delay = self.backoff_ms(job.attempts)
                if not self._store.fail(job, STALLED_ERROR, retry_delay_ms=delay):
                    continue
                self._executor.mark_pending(job.kind, job.subject_id, STALLED_ERROR)
                self._emit(JobEvent(EVENT_STALLED, job, error=STALLED_ERROR, delay_ms=delay))
            else:
                if not self._store.fail(job, STALLED_ERROR):
                    continue
                self._executor.mark_failed(job.kind, job.subject_id, STALLED_ERROR)
                self._emit(JobEvent(EVENT_STALLED, job, error=STALLED_ERROR))
                self._emit(JobEvent(EVENT_FAILED, job, error=STALLED_ERROR))
            recovered += 1
        return recovered

    # ─── threads ─────────────────────────────────────────────────────────────

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            try:
                job = self.process_next()
            except redis.RedisError as e:
                logger.error("worker loop: job store error pool_id=%s: %s", self.pool_id, e)
                job = None
            except Exception:
                logger.exception("worker loop: unexpected error pool_id=%s", self.pool_id)
                job = None
            if job is None:
                self._stop.wait(self.poll_interval_seconds)

    def _maintenance_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.heartbeat()
                self.recover_stalled()
            except redis.RedisError as e:
                logger.error("pool maintenance failed pool_id=%s: %s", self.pool_id, e)
            except Exception:
                logger.exception("pool maintenance failed pool_id=%s", self.pool_id)
            self._stop.wait(self.maintenance_interval_seconds)

    def heartbeat(self) -> None:
        with self._busy_lock:
            busy = self._busy
        self._store.record_worker_status(self.pool_id, busy=busy, capacity=self.concurrency)

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._worker_loop, name=f"{self.pool_id}-worker-{i}", daemon=True)
            for i in range(self.concurrency)
        ]
        self._threads.append(
            threading.Thread(target=self._maintenance_loop, name=f"{self.pool_id}-maintenance", daemon=True)
        )
        for thread in self._threads:
            thread.start()
        logger.info("worker pool started pool_id=%s concurrency=%s", self.pool_id, self.concurrency)

    def stop(self, timeout: float | None = 30.0) -> None:
        """Stops claiming; in-flight jobs are allowed to finish within ``timeout``."""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        try:
            self._store.remove_worker_status(self.pool_id)
        except redis.RedisError as e:
            logger.warning("could not clear worker status pool_id=%s: %s", self.pool_id, e)
        logger.info("worker pool stopped pool_id=%s", self.pool_id)

    def get_status(self) -> dict:
        stats = self._limiter.get_window_stats(self._rate_item, self._store.queue_name)
        with self._busy_lock:
            busy = self._busy
            counters = dict(self._counters)
        return {
            "pool_id": self.pool_id,
            "running": self.running,
            "concurrency": self.concurrency,
            "busy": busy,
            "rate_limit": {
                "max": self._rate_item.amount,
                "window_seconds": self._rate_item.multiples,
                "remaining": stats.remaining,
            },
            "events": counters,
        }
