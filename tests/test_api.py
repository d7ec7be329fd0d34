"""HTTP surface: trades, analysis requests, insights, admin queue endpoints, health."""
from datetime import datetime, timedelta

import fakeredis
from fastapi.testclient import TestClient
from sqlalchemy import update
from sqlmodel import Session

from helpers import ADMIN_HEADERS, StubGenerator, load
from trademaster.api.deps import get_producer
from trademaster.api.trades import _mark_pending
from trademaster.jobs.models import JobKind, JobPriority, JobState
from trademaster.jobs.pool import WorkerPool
from trademaster.jobs.producer import JobProducer
from trademaster.jobs.store import RedisJobStore
from trademaster.models import ANALYSIS_COMPLETED, ANALYSIS_PENDING, ANALYSIS_PROCESSING, Trade
from trademaster.models.user import PLAN_FREE, PLAN_PROFESSIONAL


def _trade_body(user_id: int, **kwargs) -> dict:
    body = {"user_id": user_id, "trade_pair": "EUR/USD", "trade_type": "buy", "position_size": 1000, "entry_price": 1.1}
    body.update(kwargs)
    return body


def test_health_reports_database_and_queue(client: TestClient):
    r = client.get("/health")
    assert r.status_code == 200
    j = r.json()
    assert j["status"] == "ok"
    assert j["database"] == "ok"
    assert j["queue"] == "ok"
    assert "ai_configured" in j
    assert "X-Request-ID" in r.headers


def test_create_trade_queues_analysis_for_premium_owner(client: TestClient, store, make_user):
    user = make_user()
    r = client.post("/trades", json=_trade_body(user.id, exit_price=1.2))
    assert r.status_code == 201, r.text
    j = r.json()
    assert j["status"] == "closed"
    assert j["result"] == "win"
    assert j["job_id"] == f"trade_analysis:{j['id']}"
    assert j["analysis_status"] == ANALYSIS_PENDING
    job = store.get(j["job_id"])
    assert job.priority == JobPriority.NORMAL
    assert job.state == JobState.WAITING


def test_create_trade_for_free_owner_does_not_queue(client: TestClient, store, make_user):
    user = make_user(plan=PLAN_FREE)
    r = client.post("/trades", json=_trade_body(user.id))
    assert r.status_code == 201
    assert r.json()["job_id"] is None
    assert r.json()["analysis_status"] is None
    assert store.counts()["waiting"] == 0


def test_create_trade_survives_queue_outage(client: TestClient, make_user):
    from trademaster.main import app

    server = fakeredis.FakeServer()
    server.connected = False
    down = JobProducer(RedisJobStore(fakeredis.FakeRedis(server=server, decode_responses=True)))
    app.dependency_overrides[get_producer] = lambda: down
    user = make_user()

    r = client.post("/trades", json=_trade_body(user.id))

    assert r.status_code == 201
    assert r.json()["job_id"] is None
    # Left for the analysis sweep
    assert load(Trade, r.json()["id"]).analysis_status is None


def test_create_trade_validates_input(client: TestClient, make_user):
    user = make_user()
    r = client.post("/trades", json=_trade_body(user.id, trade_type="hold"))
    assert r.status_code == 422
    assert r.json()["status_code"] == 422
    r = client.post("/trades", json=_trade_body(9999))
    assert r.status_code == 404
    assert r.json()["error"] == "User not found."


def test_analyze_queues_high_priority_job(client: TestClient, store, make_user, make_trade):
    user = make_user()
    trade = make_trade(user.id)
    r = client.post(f"/trades/{trade.id}/analyze")
    assert r.status_code == 200, r.text
    j = r.json()
    assert j["status"] == ANALYSIS_PENDING
    assert j["job_id"] == f"trade_analysis:{trade.id}"
    assert store.get(j["job_id"]).priority == JobPriority.HIGH


def test_analyze_returns_recent_analysis_from_cache(client: TestClient, store, make_user, make_trade):
    user = make_user()
    trade = make_trade(
        user.id,
        analysis_status=ANALYSIS_COMPLETED,
        analysis={"summary": "cached", "score": 77},
        analysis_generated_at=datetime.utcnow() - timedelta(minutes=5),
    )
    r = client.post(f"/trades/{trade.id}/analyze")
    assert r.status_code == 200
    j = r.json()
    assert j["status"] == ANALYSIS_COMPLETED
    assert j["analysis"]["score"] == 77
    assert j["job_id"] is None
    assert store.counts()["waiting"] == 0


def test_analyze_old_analysis_is_requeued(client: TestClient, store, make_user, make_trade):
    user = make_user()
    trade = make_trade(
        user.id,
        analysis_status=ANALYSIS_COMPLETED,
        analysis={"summary": "old", "score": 40},
        analysis_generated_at=datetime.utcnow() - timedelta(hours=3),
    )
    r = client.post(f"/trades/{trade.id}/analyze")
    assert r.json()["job_id"] == f"trade_analysis:{trade.id}"
    assert store.counts()["waiting"] == 1


def test_analyze_requires_eligible_owner(client: TestClient, make_user, make_trade):
    trade = make_trade(make_user(plan=PLAN_FREE).id)
    assert client.post(f"/trades/{trade.id}/analyze").status_code == 403
    assert client.post("/trades/9999/analyze").status_code == 404


def test_analyze_returns_503_when_queue_is_down(client: TestClient, make_user, make_trade):
    from trademaster.main import app

    server = fakeredis.FakeServer()
    server.connected = False
    down = JobProducer(RedisJobStore(fakeredis.FakeRedis(server=server, decode_responses=True)))
    app.dependency_overrides[get_producer] = lambda: down
    trade = make_trade(make_user().id)

    r = client.post(f"/trades/{trade.id}/analyze")

    assert r.status_code == 503
    assert "try again" in r.json()["error"]
    assert load(Trade, trade.id).analysis_status is None


def test_batch_analyze_for_professional_plan(client: TestClient, store, make_user, make_trade):
    user = make_user(plan=PLAN_PROFESSIONAL)
    trades = [make_trade(user.id) for _ in range(3)]
    r = client.post(
        "/trades/batch-analyze",
        json={"user_id": user.id, "trade_ids": [t.id for t in trades], "priority": "low"},
    )
    assert r.status_code == 202, r.text
    assert r.json()["trades_queued"] == 3
    jobs = [store.get(job_id) for job_id in r.json()["job_ids"]]
    assert [job.delay_until is None for job in jobs] == [True, False, False]
    assert jobs[2].delay_until - jobs[2].enqueued_at == 2000


def test_batch_analyze_rejects_premium_plan_and_foreign_trades(client: TestClient, make_user, make_trade):
    premium = make_user()
    pro = make_user(plan=PLAN_PROFESSIONAL)
    other = make_trade(premium.id)
    r = client.post("/trades/batch-analyze", json={"user_id": premium.id, "trade_ids": [other.id]})
    assert r.status_code == 403
    r = client.post("/trades/batch-analyze", json={"user_id": pro.id, "trade_ids": [other.id]})
    assert r.status_code == 400


def test_get_trade_analysis_status(client: TestClient, make_user, make_trade):
    trade = make_trade(make_user().id, analysis_status=ANALYSIS_PENDING, analysis_error="AI provider error 503")
    r = client.get(f"/trades/{trade.id}/analysis")
    assert r.status_code == 200
    assert r.json() == {
        "subject_id": trade.id,
        "status": ANALYSIS_PENDING,
        "error": "AI provider error 503",
        "analysis": None,
        "job_id": None,
    }
    assert client.get("/trades/9999/analysis").status_code == 404


def test_request_overall_insight(client: TestClient, store, make_user, make_trade):
    user = make_user()
    make_trade(user.id)
    r = client.post(f"/insights/{user.id}/overall_insight")
    assert r.status_code == 202, r.text
    assert r.json()["job_id"] == f"overall_insight:{user.id}"
    assert store.get(f"overall_insight:{user.id}").state == JobState.WAITING

    r = client.get(f"/insights/{user.id}/overall_insight")
    assert r.status_code == 200
    assert r.json()["status"] is None


def test_request_insight_errors(client: TestClient, make_user):
    user = make_user()
    assert client.post(f"/insights/{user.id}/monthly_insight").status_code == 404
    assert client.post(f"/insights/{user.id}/weekly_insight").status_code == 400
    free = make_user(plan=PLAN_FREE)
    assert client.post(f"/insights/{free.id}/weekly_insight").status_code == 403


def test_admin_requires_secret(client: TestClient):
    assert client.get("/admin/queue/stats").status_code == 403
    assert client.get("/admin/queue/stats", headers={"X-Admin-Secret": "wrong"}).status_code == 403


def test_admin_queue_stats_and_jobs(client: TestClient, producer):
    producer.enqueue("trade_analysis", 1)
    producer.enqueue("weekly_insight", 2, priority="low")
    r = client.get("/admin/queue/stats", headers=ADMIN_HEADERS)
    assert r.status_code == 200
    j = r.json()
    assert j["counts"]["waiting"] == 2
    assert j["paused"] is False
    assert set(j["kinds"]) == {"trade_analysis", "overall_insight", "weekly_insight"}

    r = client.get("/admin/queue/jobs", params={"state": "waiting"}, headers=ADMIN_HEADERS)
    assert [job["id"] for job in r.json()["jobs"]] == ["trade_analysis:1", "weekly_insight:2"]
    assert "claim_token" not in r.json()["jobs"][0]


def test_admin_pause_and_resume(client: TestClient, store):
    assert client.post("/admin/queue/pause", headers=ADMIN_HEADERS).json() == {"paused": True}
    assert store.is_paused()
    assert client.post("/admin/queue/resume", headers=ADMIN_HEADERS).json() == {"paused": False}
    assert not store.is_paused()


def test_admin_scheduler_status_and_manual_sweep(client: TestClient, store, make_user, make_trade):
    r = client.get("/admin/scheduler", headers=ADMIN_HEADERS)
    assert r.status_code == 200
    assert len(r.json()["sweeps"]) == 4

    make_trade(make_user().id)
    r = client.post("/admin/sweeps/trade_analysis/run", headers=ADMIN_HEADERS)
    assert r.status_code == 200
    assert r.json()["queued"] == 1
    assert client.post("/admin/sweeps/nope/run", headers=ADMIN_HEADERS).status_code == 404

    r = client.post("/admin/sweeps/weekly_insights/pause", headers=ADMIN_HEADERS)
    assert r.json() == {"sweep": "weekly_insights", "paused": True}


def test_batch_analyze_reports_fresh_analyses_as_cached(client: TestClient, store, make_user, make_trade):
    user = make_user(plan=PLAN_PROFESSIONAL)
    done = make_trade(
        user.id,
        analysis_status=ANALYSIS_COMPLETED,
        analysis={"summary": "recent", "score": 66},
        analysis_generated_at=datetime.utcnow() - timedelta(minutes=10),
    )
    fresh = make_trade(user.id)

    r = client.post("/trades/batch-analyze", json={"user_id": user.id, "trade_ids": [done.id, fresh.id]})

    assert r.status_code == 202
    assert r.json()["job_ids"] == [f"trade_analysis:{fresh.id}"]
    assert r.json()["cached_trade_ids"] == [done.id]
    assert store.get(f"trade_analysis:{done.id}") is None
    # First queued job is not delayed even though it is second in the request
    assert store.get(f"trade_analysis:{fresh.id}").delay_until is None
    saved = load(Trade, done.id)
    assert saved.analysis_status == ANALYSIS_COMPLETED
    assert saved.analysis["score"] == 66


def test_mark_pending_does_not_overwrite_a_finished_worker(db_engine, producer, store, make_user, make_trade, make_executor):
    user = make_user()
    trade = make_trade(user.id)
    pool = WorkerPool(store, make_executor({JobKind.TRADE_ANALYSIS: StubGenerator()}))

    with Session(db_engine) as db:
        loaded = db.get(Trade, trade.id)
        producer.enqueue(JobKind.TRADE_ANALYSIS, trade.id)
        # The worker finishes before the request handler writes its status
        pool.process_next()
        _mark_pending(db, loaded)
        assert loaded.analysis_status == ANALYSIS_COMPLETED

    saved = load(Trade, trade.id)
    assert saved.analysis_status == ANALYSIS_COMPLETED
    assert saved.analysis["score"] == 80
    assert store.get(f"trade_analysis:{trade.id}").state == JobState.COMPLETED


def test_mark_pending_leaves_processing_subject_alone(db_engine, make_user, make_trade):
    trade = make_trade(make_user().id)
    with Session(db_engine) as db:
        loaded = db.get(Trade, trade.id)
        db.exec(update(Trade).where(Trade.id == trade.id).values(analysis_status=ANALYSIS_PROCESSING))
        db.commit()
        _mark_pending(db, loaded)
    assert load(Trade, trade.id).analysis_status == ANALYSIS_PROCESSING


def test_mark_pending_requeues_stale_completed_analysis(db_engine, make_user, make_trade):
    trade = make_trade(
        make_user().id,
        analysis_status=ANALYSIS_COMPLETED,
        analysis={"summary": "old", "score": 40},
        analysis_generated_at=datetime.utcnow() - timedelta(hours=3),
    )
    with Session(db_engine) as db:
        _mark_pending(db, db.get(Trade, trade.id))
    assert load(Trade, trade.id).analysis_status == ANALYSIS_PENDING
