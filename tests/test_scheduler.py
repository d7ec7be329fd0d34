"""Sweeps and the SweepScheduler wrapper."""
from datetime import datetime, timedelta

import pytest

from helpers import load
from trademaster.jobs.errors import ProducerError
from trademaster.jobs.models import JobKind, JobPriority
from trademaster.models import ANALYSIS_COMPLETED, Trade, User
from trademaster.models.trade import TRADE_OPEN
from trademaster.models.user import PLAN_FREE, PLAN_PROFESSIONAL
from trademaster.scheduler.core import SWEEP_USAGE_STATISTICS, SweepScheduler
from trademaster.scheduler.sweeps import (
    SweepResult,
    sweep_analysis_cleanup,
    sweep_trade_analysis,
    sweep_usage_statistics,
    sweep_weekly_insights,
)


class FlakyProducer:
    """Fails for the given subject ids, delegates everything else."""

    def __init__(self, producer, failing_ids):
        self._producer = producer
        self.failing_ids = set(failing_ids)

    def enqueue(self, kind, subject_id, **kwargs):
        if subject_id in self.failing_ids:
            raise ProducerError("Job store unreachable: connection reset")
        return self._producer.enqueue(kind, subject_id, **kwargs)


def test_trade_sweep_isolates_per_trade_failures(db_engine, producer, store, make_user, make_trade):
    user = make_user()
    trades = [make_trade(user.id) for _ in range(5)]

    result = sweep_trade_analysis(db_engine, FlakyProducer(producer, {trades[2].id}))

    assert (result.found, result.queued, result.skipped) == (5, 4, 1)
    assert store.counts()["waiting"] + store.counts()["delayed"] == 4
    assert store.get(f"trade_analysis:{trades[2].id}") is None


def test_trade_sweep_queues_low_priority_with_stagger(db_engine, producer, store, make_user, make_trade):
    user = make_user()
    trades = [make_trade(user.id) for _ in range(3)]

    sweep_trade_analysis(db_engine, producer, stagger_ms=2000)

    jobs = [store.get(f"trade_analysis:{t.id}") for t in trades]
    assert all(job.priority == JobPriority.LOW for job in jobs)
    assert jobs[0].delay_until is None
    assert jobs[1].delay_until - jobs[1].enqueued_at == 2000
    assert jobs[2].delay_until - jobs[2].enqueued_at == 4000


def test_trade_sweep_selects_only_eligible_recent_unanalyzed(db_engine, producer, make_user, make_trade):
    premium = make_user()
    free = make_user(plan=PLAN_FREE)
    lapsed = make_user(active=False)
    wanted = make_trade(premium.id)
    make_trade(free.id)
    make_trade(lapsed.id)
    make_trade(premium.id, created_at=datetime.utcnow() - timedelta(minutes=40))
    make_trade(premium.id, analysis_status=ANALYSIS_COMPLETED)

    result = sweep_trade_analysis(db_engine, producer)

    assert result.found == 1
    assert result.queued == 1
    assert producer.enqueue(JobKind.TRADE_ANALYSIS, wanted.id).created is False


def test_trade_sweep_respects_batch_cap(db_engine, producer, make_user, make_trade):
    user = make_user()
    for _ in range(5):
        make_trade(user.id)

    result = sweep_trade_analysis(db_engine, producer, batch_size=3)

    assert result.found == 3
    assert result.queued == 3


def test_trade_sweep_counts_deduplicated_as_skipped(db_engine, producer, make_user, make_trade):
    user = make_user()
    trade = make_trade(user.id)
    producer.enqueue(JobKind.TRADE_ANALYSIS, trade.id)

    result = sweep_trade_analysis(db_engine, producer)

    assert (result.found, result.queued, result.skipped) == (1, 0, 1)


def test_cleanup_strips_old_raw_responses_only(db_engine, store, producer, clock, make_user, make_trade):
    user = make_user()
    now = datetime.utcnow()
    old = make_trade(
        user.id,
        analysis_status=ANALYSIS_COMPLETED,
        analysis={"summary": "old", "score": 60},
        analysis_raw="raw old",
        analysis_generated_at=now - timedelta(days=40),
    )
    recent = make_trade(
        user.id,
        analysis_status=ANALYSIS_COMPLETED,
        analysis={"summary": "new", "score": 70},
        analysis_raw="raw new",
        analysis_generated_at=now - timedelta(days=2),
    )
    producer.enqueue(JobKind.TRADE_ANALYSIS, 999)
    store.ack(store.claim())
    clock.advance(25 * 3600)

    result = sweep_analysis_cleanup(db_engine, store, now=now)

    assert result.updated == 1
    assert result.extra["jobs_removed"] == 1
    assert load(Trade, old.id).analysis_raw is None
    assert load(Trade, old.id).analysis["score"] == 60
    assert load(Trade, recent.id).analysis_raw == "raw new"


def test_usage_statistics_aggregates_per_user(db_engine, make_user, make_trade):
    alice = make_user()
    bob = make_user()
    make_trade(alice.id, entry_price=1.0, exit_price=1.5, position_size=10)  # +5
    make_trade(alice.id, entry_price=2.0, exit_price=1.0, position_size=2)  # -2
    make_trade(alice.id, entry_price=1.0)  # open
    make_trade(bob.id, entry_price=None)  # pending

    result = sweep_usage_statistics(db_engine)

    assert result.found == 2
    assert result.updated == 2
    a = load(User, alice.id)
    assert a.total_trades == 3
    assert a.open_trades == 1
    assert a.closed_trades == 2
    assert a.total_pnl == pytest.approx(3.0)
    assert a.last_trade_date is not None
    assert a.stats_updated_at is not None
    b = load(User, bob.id)
    assert (b.total_trades, b.open_trades, b.closed_trades, b.total_pnl) == (1, 0, 0, 0.0)


def test_usage_statistics_counts_open_status(db_engine, make_user, make_trade):
    user = make_user()
    trade = make_trade(user.id)
    assert trade.status == TRADE_OPEN
    sweep_usage_statistics(db_engine)
    assert load(User, user.id).open_trades == 1


def test_weekly_insights_targets_active_premium_traders(db_engine, producer, store, make_user, make_trade):
    premium = make_user()
    professional = make_user(plan=PLAN_PROFESSIONAL)
    free = make_user(plan=PLAN_FREE)
    idle = make_user(plan=PLAN_PROFESSIONAL)
    make_trade(premium.id)
    make_trade(professional.id)
    make_trade(free.id)
    make_trade(idle.id, created_at=datetime.utcnow() - timedelta(days=9))

    result = sweep_weekly_insights(db_engine, producer, stagger_ms=5000)

    assert (result.found, result.queued) == (2, 2)
    first = store.get(f"weekly_insight:{premium.id}")
    second = store.get(f"weekly_insight:{professional.id}")
    assert first.priority == JobPriority.LOW
    assert first.delay_until is None
    assert second.delay_until - second.enqueued_at == 5000
    assert store.get(f"weekly_insight:{free.id}") is None
    assert store.get(f"weekly_insight:{idle.id}") is None


def test_scheduler_status_lists_named_sweeps(db_engine, producer, store):
    scheduler = SweepScheduler(db_engine, producer, store)
    status = scheduler.get_status()
    assert status["running"] is False
    assert status["timezone"] == "UTC"
    names = [s["name"] for s in status["sweeps"]]
    assert names == ["trade_analysis", "analysis_cleanup", "usage_statistics", "weekly_insights"]
    assert all(s["paused"] is False and s["last_run"] is None for s in status["sweeps"])
    # get_status has no side effects
    assert scheduler.get_status() == status


def test_scheduler_pause_resume_and_manual_run(db_engine, producer, store, make_user, make_trade):
    scheduler = SweepScheduler(db_engine, producer, store)
    scheduler.stop_sweep(SWEEP_USAGE_STATISTICS)
    paused = {s["name"]: s["paused"] for s in scheduler.get_status()["sweeps"]}
    assert paused[SWEEP_USAGE_STATISTICS] is True

    scheduler.start_sweep(SWEEP_USAGE_STATISTICS)
    paused = {s["name"]: s["paused"] for s in scheduler.get_status()["sweeps"]}
    assert paused[SWEEP_USAGE_STATISTICS] is False

    user = make_user()
    make_trade(user.id)
    result = scheduler.run_sweep(SWEEP_USAGE_STATISTICS)
    assert isinstance(result, SweepResult)
    assert result.updated == 1
    last = {s["name"]: s["last_run"] for s in scheduler.get_status()["sweeps"]}[SWEEP_USAGE_STATISTICS]
    assert last["success"] is True
    assert last["result"]["updated"] == 1


def test_scheduler_rejects_unknown_sweep(db_engine, producer, store):
    scheduler = SweepScheduler(db_engine, producer, store)
    with pytest.raises(KeyError):
        scheduler.run_sweep("nope")
    with pytest.raises(KeyError):
        scheduler.stop_sweep("nope")


def test_scheduler_starts_and_stops(db_engine, producer, store):
    scheduler = SweepScheduler(db_engine, producer, store)
    assert scheduler.start() is True
    try:
        assert scheduler.start() is False
        status = scheduler.get_status()
        assert status["running"] is True
        assert all(s["next_run_time"] for s in status["sweeps"])
    finally:
        scheduler.stop(wait=False)
    assert scheduler.running is False
