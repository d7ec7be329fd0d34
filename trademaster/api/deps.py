import hmac

from fastapi import Depends, Header, HTTPException, Query, Request

from trademaster.core.config import settings
from trademaster.jobs.producer import JobProducer
from trademaster.jobs.store import RedisJobStore
from trademaster.scheduler.core import SweepScheduler


def get_store(request: Request) -> RedisJobStore:
    return request.app.state.job_store


def get_producer(request: Request) -> JobProducer:
    return request.app.state.producer


def get_scheduler(request: Request) -> SweepScheduler:
    return request.app.state.scheduler


def _constant_time_compare(provided: str | None, expected: str | None) -> bool:
    return hmac.compare_digest((provided or "").encode("utf-8"), (expected or "").encode("utf-8"))


def _get_admin_secret(
    x_admin_secret: str | None = Header(None, alias="X-Admin-Secret"),
    admin_secret: str | None = Query(None),
) -> str | None:
    return x_admin_secret or admin_secret


def require_admin(secret: str | None = Depends(_get_admin_secret)) -> None:
    if not (settings.admin_secret or "").strip():
        raise HTTPException(status_code=503, detail="Admin API is not configured (ADMIN_SECRET missing).")
    if not _constant_time_compare(secret, settings.admin_secret):
        raise HTTPException(status_code=403, detail="Forbidden.")
