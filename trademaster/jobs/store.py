"""
Redis-backed job store.

Key layout under ``{prefix}`` (default ``trademaster:queue:ai-analysis``):

    job:{id}              hash   job record (Job.to_redis)
    waiting               zset   claimable jobs, score = priority tier + enqueue seq
    delayed               zset   waiting jobs not yet due, score = delay_until (ms)
    active                zset   claimed jobs, score = claim time (ms), used for stall detection
    completed:{kind}      zset   finished jobs, score = finished_at (ms), trimmed to keep_completed
    failed:{kind}         zset   failed jobs, score = finished_at (ms), trimmed to keep_failed
    seq                   string enqueue counter (FIFO tie-break)
    stats                 hash   "{kind}:completed" / "{kind}:failed" counters
    workers               hash   pool heartbeat (busy/capacity) per pool id
    paused                string set while the queue is paused

All state transitions run inside WATCH/MULTI transactions so that only one
worker can claim a given job and a lost claim cannot ack or fail it.
"""
import json
import logging
import time
import uuid
from typing import Callable

import redis

from .models import Job, JobKind, JobState, PENDING_STATES

logger = logging.getLogger(__name__)


class RedisJobStore:
    def __init__(
        self,
        client: redis.Redis,
        queue_name: str = "ai-analysis",
        *,
        keep_completed: int = 100,
        keep_failed: int = 50,
        clock: Callable[[], float] = time.time,
    ):
        self._redis = client
        self.queue_name = queue_name
        self._prefix = f"trademaster:queue:{queue_name}"
        self._keep = {JobState.COMPLETED: keep_completed, JobState.FAILED: keep_failed}
        self._clock = clock

    # ─── keys ────────────────────────────────────────────────────────────────

    def _key(self, *parts: str) -> str:
        return ":".join((self._prefix,) + parts)

    def _job_key(self, job_id: str) -> str:
        return self._key("job", job_id)

    def _terminal_key(self, state: JobState, kind: JobKind | str) -> str:
        return self._key(state.value, JobKind(kind).value)

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ─── producer side ───────────────────────────────────────────────────────

    def ping(self) -> bool:
        return bool(self._redis.ping())

    def get(self, job_id: str) -> Job | None:
        raw = self._redis.hgetall(self._job_key(job_id))
        return Job.from_redis(raw) if raw else None

    def enqueue(self, job: Job) -> tuple[Job, bool]:
        """
        Stores a new job unless one with the same id is still waiting/active.
        Returns (job, created); on dedup the existing record is returned.
        """
        job_key = self._job_key(job.id)

        def _tx(pipe: redis.client.Pipeline):
            existing = pipe.hgetall(job_key)
            if existing and existing.get("state") in {s.value for s in PENDING_STATES}:
                return Job.from_redis(existing), False
            now = self.now_ms()
            record = job.model_copy(
                update={
                    "state": JobState.WAITING,
                    "attempts": 0,
                    "seq": int(pipe.get(self._key("seq")) or 0) + 1,
                    "enqueued_at": now,
                    "started_at": None,
                    "finished_at": None,
                    "last_error": None,
                    "claim_token": None,
                    "result": None,
                }
            )
            pipe.multi()
            pipe.incr(self._key("seq"))
            if existing:
                kind = existing.get("kind", record.kind.value)
                pipe.zrem(self._terminal_key(JobState.COMPLETED, kind), job.id)
                pipe.zrem(self._terminal_key(JobState.FAILED, kind), job.id)
                pipe.delete(job_key)
            pipe.hset(job_key, mapping=record.to_redis())
            if record.delay_until and record.delay_until > now:
                pipe.zadd(self._key("delayed"), {job.id: record.delay_until})
            else:
                pipe.zadd(self._key("waiting"), {job.id: record.rank})
            return record, True

        return self._redis.transaction(_tx, job_key, self._key("seq"), value_from_callable=True)

    # ─── worker side ─────────────────────────────────────────────────────────

    def claim(self) -> Job | None:
        """
        Promotes due delayed jobs, then atomically moves the best waiting job
        (highest priority, then oldest) to active. Returns None when nothing is due
        or the queue is paused.
        """
        if self.is_paused():
            return None
        waiting_key, delayed_key, active_key = self._key("waiting"), self._key("delayed"), self._key("active")
        token = uuid.uuid4().hex

        def _tx(pipe: redis.client.Pipeline):
            now = self.now_ms()
            due = pipe.zrangebyscore(delayed_key, "-inf", now)
            promoted = {}
            for job_id in due:
                rank = pipe.hget(self._job_key(job_id), "rank")
                if rank is not None:
                    promoted[job_id] = int(rank)
            head = pipe.zrange(waiting_key, 0, 0, withscores=True)
            candidates = dict(promoted)
            if head:
                candidates[head[0][0]] = int(head[0][1])
            chosen = min(candidates, key=candidates.get) if candidates else None
            chosen_raw = None
            if chosen is not None:
                pipe.watch(self._job_key(chosen))
                chosen_raw = pipe.hgetall(self._job_key(chosen))
            pipe.multi()
            if due:
                pipe.zrem(delayed_key, *due)
            for job_id, rank in promoted.items():
                if job_id != chosen:
                    pipe.zadd(waiting_key, {job_id: rank})
            if chosen is None or not chosen_raw:
                if chosen is not None:
                    pipe.zrem(waiting_key, chosen)
                return None
            job = Job.from_redis(chosen_raw).model_copy(
                update={
                    "state": JobState.ACTIVE,
                    "attempts": int(chosen_raw.get("attempts", 0)) + 1,
                    "started_at": now,
                    "claim_token": token,
                }
            )
            pipe.zrem(waiting_key, chosen)
            pipe.hset(
                self._job_key(chosen),
                mapping={
                    "state": job.state.value,
                    "attempts": str(job.attempts),
                    "started_at": str(now),
                    "claim_token": token,
                },
            )
            pipe.zadd(active_key, {chosen: now})
            return job

        return self._redis.transaction(_tx, waiting_key, delayed_key, value_from_callable=True)

    def _finish(self, job: Job, apply) -> bool:
        """Runs ``apply(pipe, now)`` only if ``job`` still holds its claim."""
        job_key = self._job_key(job.id)

        def _tx(pipe: redis.client.Pipeline):
            current = pipe.hgetall(job_key)
            if current.get("state") != JobState.ACTIVE.value or current.get("claim_token") != job.claim_token:
                pipe.unwatch()
                return False
            now = self.now_ms()
            pipe.multi()
            pipe.zrem(self._key("active"), job.id)
            apply(pipe, now)
            return True

        held = self._redis.transaction(_tx, job_key, value_from_callable=True)
        if not held:
            logger.warning("job_id=%s lost its claim before finishing; result ignored", job.id)
        return held

    def ack(self, job: Job, result: dict | None = None) -> bool:
        def _apply(pipe, now):
            mapping = {"state": JobState.COMPLETED.value, "finished_at": str(now)}
            if result is not None:
                mapping["result"] = json.dumps(result)
            pipe.hset(self._job_key(job.id), mapping=mapping)
            pipe.hdel(self._job_key(job.id), "claim_token")
            pipe.zadd(self._terminal_key(JobState.COMPLETED, job.kind), {job.id: now})
            pipe.hincrby(self._key("stats"), f"{job.kind.value}:completed", 1)

        done = self._finish(job, _apply)
        if done:
            self._trim(JobState.COMPLETED, job.kind)
        return done

    def fail(self, job: Job, error: str, *, retry_delay_ms: int | None = None) -> bool:
        """Retries after ``retry_delay_ms`` when given, otherwise moves the job to failed."""

        def _apply(pipe, now):
            job_key = self._job_key(job.id)
            if retry_delay_ms is not None:
                delay_until = now + retry_delay_ms
                pipe.hset(job_key, mapping={"state": JobState.WAITING.value, "last_error": error, "delay_until": str(delay_until)})
                pipe.hdel(job_key, "claim_token")
                pipe.zadd(self._key("delayed"), {job.id: delay_until})
            else:
                pipe.hset(job_key, mapping={"state": JobState.FAILED.value, "last_error": error, "finished_at": str(now)})
                pipe.hdel(job_key, "claim_token")
                pipe.zadd(self._terminal_key(JobState.FAILED, job.kind), {job.id: now})
                pipe.hincrby(self._key("stats"), f"{job.kind.value}:failed", 1)

        done = self._finish(job, _apply)
        if done and retry_delay_ms is None:
            self._trim(JobState.FAILED, job.kind)
        return done

    def discard(self, job: Job) -> bool:
        """Removes the job record entirely (subject no longer exists)."""
        return self._finish(job, lambda pipe, now: pipe.delete(self._job_key(job.id)))

    def stalled(self, threshold_ms: int) -> list[Job]:
        """Active jobs claimed more than ``threshold_ms`` ago."""
        cutoff = self.now_ms() - threshold_ms
        jobs = []
        for job_id in self._redis.zrangebyscore(self._key("active"), "-inf", cutoff):
            job = self.get(job_id)
            if job is None:
                self._redis.zrem(self._key("active"), job_id)
                continue
            jobs.append(job)
        return jobs

    def _trim(self, state: JobState, kind: JobKind) -> None:
        key = self._terminal_key(state, kind)
        keep = self._keep[state]
        stale = self._redis.zrange(key, 0, -(keep + 1))
        if not stale:
            return
        pipe = self._redis.pipeline()
        pipe.zrem(key, *stale)
        pipe.delete(*[self._job_key(job_id) for job_id in stale])
        pipe.execute()

    def clean(self, older_than_ms: int) -> int:
        """Deletes completed/failed job records finished before now - older_than_ms."""
        cutoff = self.now_ms() - older_than_ms
        removed = 0
        for state in (JobState.COMPLETED, JobState.FAILED):
            for kind in JobKind:
                key = self._terminal_key(state, kind)
                old = self._redis.zrangebyscore(key, "-inf", cutoff)
                if not old:
                    continue
                pipe = self._redis.pipeline()
                pipe.zrem(key, *old)
                pipe.delete(*[self._job_key(job_id) for job_id in old])
                pipe.execute()
                removed += len(old)
        return removed

    # ─── control & observability ─────────────────────────────────────────────

    def pause(self) -> None:
        self._redis.set(self._key("paused"), "1")

    def resume(self) -> None:
        self._redis.delete(self._key("paused"))

    def is_paused(self) -> bool:
        return bool(self._redis.exists(self._key("paused")))

    def counts(self) -> dict[str, int]:
        pipe = self._redis.pipeline()
        pipe.zcard(self._key("waiting"))
        pipe.zcard(self._key("delayed"))
        pipe.zcard(self._key("active"))
        for state in (JobState.COMPLETED, JobState.FAILED):
            for kind in JobKind:
                pipe.zcard(self._terminal_key(state, kind))
        values = pipe.execute()
        n_kinds = len(JobKind)
        return {
            "waiting": values[0],
            "delayed": values[1],
            "active": values[2],
            "completed": sum(values[3 : 3 + n_kinds]),
            "failed": sum(values[3 + n_kinds :]),
        }

    def kind_stats(self) -> dict[str, dict[str, int]]:
        raw = self._redis.hgetall(self._key("stats"))
        out = {kind.value: {"completed": 0, "failed": 0} for kind in JobKind}
        for field, value in raw.items():
            kind, outcome = field.rsplit(":", 1)
            out.setdefault(kind, {"completed": 0, "failed": 0})[outcome] = int(value)
        return out

    def list_jobs(self, state: JobState | str, limit: int = 50) -> list[Job]:
        state = JobState(state)
        if state == JobState.WAITING:
            ids = self._redis.zrange(self._key("waiting"), 0, limit - 1)
            if len(ids) < limit:
                ids += self._redis.zrange(self._key("delayed"), 0, limit - len(ids) - 1)
        elif state == JobState.ACTIVE:
            ids = self._redis.zrange(self._key("active"), 0, limit - 1)
        else:
            scored: list[tuple[str, float]] = []
            for kind in JobKind:
                scored += self._redis.zrevrange(self._terminal_key(state, kind), 0, limit - 1, withscores=True)
            ids = [job_id for job_id, _ in sorted(scored, key=lambda item: item[1], reverse=True)[:limit]]
        jobs = [self.get(job_id) for job_id in ids]
        return [job for job in jobs if job is not None]

    def record_worker_status(self, pool_id: str, *, busy: int, capacity: int) -> None:
        payload = json.dumps({"busy": busy, "capacity": capacity, "updated_at": self.now_ms()})
        self._redis.hset(self._key("workers"), pool_id, payload)

    def remove_worker_status(self, pool_id: str) -> None:
        self._redis.hdel(self._key("workers"), pool_id)

    def worker_status(self) -> dict[str, dict]:
        return {pool_id: json.loads(raw) for pool_id, raw in self._redis.hgetall(self._key("workers")).items()}
