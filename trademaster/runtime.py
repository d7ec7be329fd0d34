"""Builds the queue components from settings; the API, the worker CLI and tests share this wiring."""
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta

import redis

from trademaster.core.config import Settings, settings
from trademaster.core.redis import create_redis
from trademaster.jobs.models import JobKind
from trademaster.jobs.pool import WorkerPool
from trademaster.jobs.producer import JobProducer
from trademaster.jobs.store import RedisJobStore
from trademaster.scheduler.core import SweepScheduler
from trademaster.services.executor import AnalysisExecutor


def build_store(client: redis.Redis, cfg: Settings | None = None) -> RedisJobStore:
    cfg = cfg or settings
    return RedisJobStore(
        client,
        cfg.queue_name,
        keep_completed=cfg.job_keep_completed,
        keep_failed=cfg.job_keep_failed,
    )


def build_producer(store: RedisJobStore, cfg: Settings | None = None) -> JobProducer:
    cfg = cfg or settings
    return JobProducer(store, max_attempts=cfg.job_max_attempts)


def build_executor(engine, cfg: Settings | None = None, generators: Mapping[JobKind, object] | None = None) -> AnalysisExecutor:
    cfg = cfg or settings
    return AnalysisExecutor(
        engine,
        generators,
        reuse_window=timedelta(minutes=cfg.analysis_reuse_window_minutes),
        timeout_seconds=cfg.ai_timeout_seconds,
        processing_stale_after=timedelta(seconds=cfg.job_stall_threshold_seconds),
        model_label=cfg.ai_model_label,
        version=cfg.ai_analysis_version,
        max_parallel_calls=max(cfg.worker_concurrency * 2, 2),
    )


def build_pool(store: RedisJobStore, executor: AnalysisExecutor, cfg: Settings | None = None) -> WorkerPool:
    cfg = cfg or settings
    return WorkerPool(
        store,
        executor,
        concurrency=cfg.worker_concurrency,
        rate_limit_max=cfg.worker_rate_limit_max,
        rate_limit_window_seconds=cfg.worker_rate_limit_window_seconds,
        rate_limit_storage_uri=cfg.worker_rate_limit_storage_uri,
        backoff_base_ms=cfg.job_backoff_base_ms,
        stall_threshold_seconds=cfg.job_stall_threshold_seconds,
        poll_interval_seconds=cfg.worker_poll_interval_seconds,
    )


@dataclass
class Runtime:
    settings: Settings
    engine: object
    store: RedisJobStore
    producer: JobProducer
    executor: AnalysisExecutor
    pool: WorkerPool
    scheduler: SweepScheduler

    def shutdown(self) -> None:
        self.scheduler.stop()
        self.pool.stop()
        self.executor.close()


def build_runtime(
    cfg: Settings | None = None,
    *,
    engine=None,
    redis_client: redis.Redis | None = None,
    generators: Mapping[JobKind, object] | None = None,
) -> Runtime:
    cfg = cfg or settings
    if engine is None:
        from trademaster.core.database import engine
    client = redis_client if redis_client is not None else create_redis(cfg.redis_url, ping=True)
    store = build_store(client, cfg)
    producer = build_producer(store, cfg)
    executor = build_executor(engine, cfg, generators)
    return Runtime(
        settings=cfg,
        engine=engine,
        store=store,
        producer=producer,
        executor=executor,
        pool=build_pool(store, executor, cfg),
        scheduler=SweepScheduler(engine, producer, store, cfg),
    )
