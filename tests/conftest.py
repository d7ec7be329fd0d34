"""Pytest fixtures: in-memory SQLite, fakeredis job store, controllable clock, test client."""
import os

import pytest

# In-memory SQLite and test secrets (must be set before trademaster is imported)
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://127.0.0.1:6399/15")
os.environ.setdefault("OPENROUTER_API_KEY", "sk-or-test-dummy")
os.environ.setdefault("ADMIN_SECRET", "test-admin-secret")
# High HTTP limits so the whole suite fits in one window
os.environ.setdefault("RATE_LIMIT_ANALYZE_PER_MINUTE", "1000")

import fakeredis
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

from helpers import FakeClock
from trademaster.api.deps import get_producer, get_scheduler, get_store
from trademaster.core.database import engine, init_db
from trademaster.core.rate_limit import limiter
from trademaster.jobs.producer import JobProducer
from trademaster.jobs.store import RedisJobStore
from trademaster.models import Trade, User
from trademaster.models.user import PLAN_PREMIUM
from trademaster.scheduler.core import SweepScheduler
from trademaster.services.executor import AnalysisExecutor
from trademaster.services.trades import apply_derived_fields


@pytest.fixture(autouse=True)
def db_engine():
    """Fresh tables for every test."""
    SQLModel.metadata.drop_all(engine)
    init_db()
    limiter.reset()
    yield engine


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server):
    return fakeredis.FakeRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def store(redis_client, clock):
    return RedisJobStore(redis_client, "test-queue", clock=clock)


@pytest.fixture
def producer(store):
    return JobProducer(store, max_attempts=3)


@pytest.fixture
def make_executor(db_engine, clock):
    created = []

    def _make(generators=None, **kwargs):
        kwargs.setdefault("clock", clock.utcnow)
        executor = AnalysisExecutor(db_engine, generators, **kwargs)
        created.append(executor)
        return executor

    yield _make
    for executor in created:
        executor.close()


@pytest.fixture
def make_user(db_engine):
    counter = {"n": 0}

    def _make(plan: str = PLAN_PREMIUM, active: bool = True, **kwargs) -> User:
        counter["n"] += 1
        kwargs.setdefault("email", f"trader{counter['n']}@example.com")
        with Session(db_engine, expire_on_commit=False) as db:
            user = User(plan=plan, subscription_active=active, **kwargs)
            db.add(user)
            db.commit()
            db.refresh(user)
            return user

    return _make


@pytest.fixture
def make_trade(db_engine):
    def _make(user_id: int, **kwargs) -> Trade:
        kwargs.setdefault("trade_pair", "EUR/USD")
        kwargs.setdefault("trade_type", "buy")
        kwargs.setdefault("position_size", 1000)
        kwargs.setdefault("entry_price", 1.1000)
        with Session(db_engine, expire_on_commit=False) as db:
            trade = apply_derived_fields(Trade(user_id=user_id, **kwargs))
            db.add(trade)
            db.commit()
            db.refresh(trade)
            return trade

    return _make


@pytest.fixture
def client(store, producer, db_engine):
    """TestClient wired to the fakeredis store; lifespan creates the tables."""
    from trademaster.main import app

    scheduler = SweepScheduler(db_engine, producer, store)
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_producer] = lambda: producer
    app.dependency_overrides[get_scheduler] = lambda: scheduler
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
