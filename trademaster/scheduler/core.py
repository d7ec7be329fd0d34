"""
Sweep scheduler: named APScheduler jobs, each pausable on its own.

Sweeps also run on demand through ``run_sweep`` (admin endpoint, worker CLI).
"""
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from trademaster.core.config import Settings, settings
from trademaster.jobs.producer import JobProducer
from trademaster.jobs.store import RedisJobStore

from . import sweeps
from .sweeps import SweepResult

logger = logging.getLogger(__name__)

SWEEP_TRADE_ANALYSIS = "trade_analysis"
SWEEP_ANALYSIS_CLEANUP = "analysis_cleanup"
SWEEP_USAGE_STATISTICS = "usage_statistics"
SWEEP_WEEKLY_INSIGHTS = "weekly_insights"


@dataclass
class SweepDefinition:
    name: str
    func: Callable[[], SweepResult]
    trigger: BaseTrigger
    description: str


def build_sweeps(engine, producer: JobProducer, store: RedisJobStore | None, cfg: Settings) -> list[SweepDefinition]:
    tz = cfg.scheduler_timezone
    return [
        SweepDefinition(
            SWEEP_TRADE_ANALYSIS,
            lambda: sweeps.sweep_trade_analysis(
                engine,
                producer,
                lookback=timedelta(minutes=cfg.sweep_analysis_lookback_minutes),
                batch_size=cfg.sweep_analysis_batch_size,
                stagger_ms=cfg.sweep_analysis_stagger_ms,
            ),
            IntervalTrigger(minutes=cfg.sweep_analysis_interval_minutes, timezone=tz),
            "Queue analysis for recent unanalyzed trades of paying users",
        ),
        SweepDefinition(
            SWEEP_ANALYSIS_CLEANUP,
            lambda: sweeps.sweep_analysis_cleanup(
                engine,
                store,
                max_age=timedelta(days=cfg.sweep_cleanup_max_age_days),
                job_retention=timedelta(hours=cfg.sweep_job_retention_hours),
            ),
            CronTrigger(hour=cfg.sweep_cleanup_hour, minute=0, timezone=tz),
            "Strip old raw AI responses and purge finished job records",
        ),
        SweepDefinition(
            SWEEP_USAGE_STATISTICS,
            lambda: sweeps.sweep_usage_statistics(engine),
            IntervalTrigger(minutes=cfg.sweep_stats_interval_minutes, timezone=tz),
            "Recompute per-user trade statistics",
        ),
        SweepDefinition(
            SWEEP_WEEKLY_INSIGHTS,
            lambda: sweeps.sweep_weekly_insights(
                engine, producer, stagger_ms=cfg.sweep_weekly_insights_stagger_ms
            ),
            CronTrigger(
                day_of_week=cfg.sweep_weekly_insights_day,
                hour=cfg.sweep_weekly_insights_hour,
                minute=0,
                timezone=tz,
            ),
            "Queue weekly insights for active premium users",
        ),
    ]


class SweepScheduler:
    def __init__(
        self,
        engine,
        producer: JobProducer,
        store: RedisJobStore | None = None,
        cfg: Settings | None = None,
        *,
        definitions: list[SweepDefinition] | None = None,
    ):
        cfg = cfg or settings
        self.timezone = cfg.scheduler_timezone
        self._scheduler = BackgroundScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60 * 5,
            },
            timezone=self.timezone,
        )
        self._definitions = {d.name: d for d in (definitions or build_sweeps(engine, producer, store, cfg))}
        self._paused: set[str] = set()
        self._last_runs: dict[str, dict] = {}
        self._lock = threading.Lock()
        # Added while stopped: APScheduler keeps them pending until start()
        for definition in self._definitions.values():
            self._scheduler.add_job(
                self._execute,
                trigger=definition.trigger,
                args=[definition.name],
                id=definition.name,
                name=definition.description,
                replace_existing=True,
            )

    @property
    def running(self) -> bool:
        return self._scheduler.running

    @property
    def names(self) -> list[str]:
        return list(self._definitions)

    def start(self) -> bool:
        """Returns False when already running."""
        if self._scheduler.running:
            logger.info("Scheduler already running")
            return False
        self._scheduler.start()
        logger.info("Sweep scheduler started sweeps=%s", ",".join(self._definitions))
        return True

    def stop(self, wait: bool = True) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Sweep scheduler shutdown complete")

    def _definition(self, name: str) -> SweepDefinition:
        if name not in self._definitions:
            raise KeyError(f"Unknown sweep: {name}")
        return self._definitions[name]

    def start_sweep(self, name: str) -> None:
        self._definition(name)
        self._scheduler.resume_job(name)
        self._paused.discard(name)
        logger.info("sweep resumed name=%s", name)

    def stop_sweep(self, name: str) -> None:
        self._definition(name)
        self._scheduler.pause_job(name)
        self._paused.add(name)
        logger.info("sweep paused name=%s", name)

    def run_sweep(self, name: str) -> SweepResult:
        """Runs a sweep now on the calling thread, regardless of its schedule."""
        self._definition(name)
        return self._execute(name)

    def _execute(self, name: str) -> SweepResult:
        definition = self._definitions[name]
        started = datetime.utcnow()
        t0 = time.perf_counter()
        try:
            result = definition.func()
        except Exception as e:
            logger.exception("sweep failed name=%s", name)
            self._record_run(name, started, t0, success=False, error=str(e)[:500])
            raise
        self._record_run(name, started, t0, success=True, result=result.as_dict())
        return result

    def _record_run(self, name: str, started: datetime, t0: float, **entry) -> None:
        entry.update(at=started.isoformat(), duration_ms=round((time.perf_counter() - t0) * 1000, 2))
        with self._lock:
            self._last_runs[name] = entry

    def get_status(self) -> dict:
        """Snapshot of the schedule; no side effects."""
        with self._lock:
            last_runs = dict(self._last_runs)
        out = []
        for name, definition in self._definitions.items():
            job = self._scheduler.get_job(name)
            next_run = getattr(job, "next_run_time", None) if job is not None else None
            out.append(
                {
                    "name": name,
                    "description": definition.description,
                    "trigger": str(definition.trigger),
                    "paused": name in self._paused,
                    "next_run_time": next_run.isoformat() if next_run else None,
                    "last_run": last_runs.get(name),
                }
            )
        return {"running": self._scheduler.running, "timezone": self.timezone, "sweeps": out}
