"""Queue and scheduler operations (X-Admin-Secret)."""
import logging

import redis
from fastapi import APIRouter, Depends, HTTPException, Query

from trademaster.api.deps import get_scheduler, get_store, require_admin
from trademaster.jobs.models import JobState
from trademaster.jobs.store import RedisJobStore
from trademaster.scheduler.core import SweepScheduler

log = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


def _store_unavailable(e: redis.RedisError) -> HTTPException:
    log.error("admin: job store unreachable: %s", e)
    return HTTPException(status_code=503, detail="Job store unreachable.")


@router.get("/queue/stats")
def queue_stats(store: RedisJobStore = Depends(get_store)):
    try:
        return {
            "queue": store.queue_name,
            "paused": store.is_paused(),
            "counts": store.counts(),
            "kinds": store.kind_stats(),
            "workers": store.worker_status(),
        }
    except redis.RedisError as e:
        raise _store_unavailable(e)


@router.get("/queue/jobs")
def queue_jobs(
    state: JobState = Query(JobState.WAITING),
    limit: int = Query(50, ge=1, le=200),
    store: RedisJobStore = Depends(get_store),
):
    try:
        jobs = store.list_jobs(state, limit)
    except redis.RedisError as e:
        raise _store_unavailable(e)
    return {"state": state.value, "jobs": [job.model_dump(mode="json", exclude={"claim_token"}) for job in jobs]}


@router.post("/queue/pause")
def pause_queue(store: RedisJobStore = Depends(get_store)):
    try:
        store.pause()
    except redis.RedisError as e:
        raise _store_unavailable(e)
    log.info("queue paused queue=%s", store.queue_name)
    return {"paused": True}


@router.post("/queue/resume")
def resume_queue(store: RedisJobStore = Depends(get_store)):
    try:
        store.resume()
    except redis.RedisError as e:
        raise _store_unavailable(e)
    log.info("queue resumed queue=%s", store.queue_name)
    return {"paused": False}


@router.post("/queue/clean")
def clean_queue(
    older_than_hours: float = Query(24, ge=0),
    store: RedisJobStore = Depends(get_store),
):
    try:
        removed = store.clean(int(older_than_hours * 3600 * 1000))
    except redis.RedisError as e:
        raise _store_unavailable(e)
    return {"removed": removed}


@router.get("/scheduler")
def scheduler_status(scheduler: SweepScheduler = Depends(get_scheduler)):
    return scheduler.get_status()


@router.post("/sweeps/{name}/run")
def run_sweep(name: str, scheduler: SweepScheduler = Depends(get_scheduler)):
    if name not in scheduler.names:
        raise HTTPException(status_code=404, detail=f"Unknown sweep: {name}")
    return {"sweep": name, **scheduler.run_sweep(name).as_dict()}


@router.post("/sweeps/{name}/pause")
def pause_sweep(name: str, scheduler: SweepScheduler = Depends(get_scheduler)):
    if name not in scheduler.names:
        raise HTTPException(status_code=404, detail=f"Unknown sweep: {name}")
    scheduler.stop_sweep(name)
    return {"sweep": name, "paused": True}


@router.post("/sweeps/{name}/resume")
def resume_sweep(name: str, scheduler: SweepScheduler = Depends(get_scheduler)):
    if name not in scheduler.names:
        raise HTTPException(status_code=404, detail=f"Unknown sweep: {name}")
    scheduler.start_sweep(name)
    return {"sweep": name, "paused": False}
