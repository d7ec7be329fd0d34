import logging
import time
import uuid
from contextlib import asynccontextmanager

import redis
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from trademaster.api.admin import router as admin_router
from trademaster.api.deps import get_store
from trademaster.api.insights import router as insights_router
from trademaster.api.trades import router as trades_router
from trademaster.core.config import is_ai_configured, settings
from trademaster.core.database import engine, init_db
from trademaster.core.rate_limit import limiter
from trademaster.core.redis import create_redis
from trademaster.jobs.errors import ProducerError
from trademaster.jobs.store import RedisJobStore
from trademaster.logging import setup_logging
from trademaster.runtime import build_producer, build_store
from trademaster.scheduler.core import SweepScheduler

setup_logging(level=logging.INFO)
log = logging.getLogger("trademaster")


def _cors_origins_list() -> list[str]:
    if not settings.cors_origins or settings.cors_origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in settings.cors_origins.split(",") if o.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    # The client connects lazily; /health reports Redis reachability
    store = build_store(create_redis(settings.redis_url))
    app.state.job_store = store
    app.state.producer = build_producer(store)
    app.state.scheduler = SweepScheduler(engine, app.state.producer, store)
    if settings.api_run_scheduler:
        app.state.scheduler.start()
    log.info("AI provider key loaded: %s", "yes" if is_ai_configured() else "NO (set OPENROUTER_API_KEY in .env)")
    yield
    app.state.scheduler.stop(wait=False)


app = FastAPI(
    title="TradeMaster AI API",
    description="Trading journal with background AI trade analysis",
    lifespan=lifespan,
)
app.state.limiter = limiter


def _error_response(request: Request, status_code: int, detail: str) -> JSONResponse:
    rid = getattr(request.state, "request_id", None)
    body = {"error": detail, "status_code": status_code}
    if rid:
        body["request_id"] = rid
    return JSONResponse(status_code=status_code, content=body)


def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    log.warning("rate limit exceeded path=%s limit=%s", request.url.path, exc.detail)
    return _error_response(request, 429, "Too many requests. Please wait a minute.")


app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)


def _jsonable_errors(errs) -> list:
    # ctx may hold exception instances
    return [{k: v for k, v in e.items() if k != "ctx"} for e in errs]


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errs = exc.errors()
    log.warning("Request validation error (422): path=%s method=%s detail=%s", request.url.path, request.method, errs)
    first = errs[0] if errs else {}
    rid = getattr(request.state, "request_id", None)
    body = {"error": first.get("msg") or "Invalid request.", "status_code": 422, "detail": _jsonable_errors(errs)}
    if rid:
        body["request_id"] = rid
    return JSONResponse(status_code=422, content=body)


@app.exception_handler(HTTPException)
def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error_response(request, exc.status_code, exc.detail if isinstance(exc.detail, str) else str(exc.detail))


@app.exception_handler(ProducerError)
def producer_error_handler(request: Request, exc: ProducerError) -> JSONResponse:
    log.error("Job store unreachable: path=%s %s", request.url.path, exc)
    return _error_response(request, 503, "Analysis queue is temporarily unavailable. Please try again.")


@app.exception_handler(Exception)
def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    log.exception("Unhandled exception: path=%s %s", request.url.path, exc, exc_info=True)
    return _error_response(request, 500, "Unexpected server error.")


@app.middleware("http")
async def request_id_and_latency(request: Request, call_next):
    request.state.request_id = str(uuid.uuid4())
    start = time.perf_counter()
    response = await call_next(request)
    latency_ms = (time.perf_counter() - start) * 1000
    response.headers["X-Request-ID"] = request.state.request_id
    log.info(
        "request_id=%s method=%s path=%s status=%s latency_ms=%.2f",
        request.state.request_id,
        request.method,
        request.url.path,
        response.status_code,
        latency_ms,
    )
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(trades_router)
app.include_router(insights_router)
app.include_router(admin_router)


@app.get("/health")
def health(store: RedisJobStore = Depends(get_store)):
    database = "ok"
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        log.warning("health: database check failed: %s", e)
        database = "error"
    queue = "ok"
    try:
        store.ping()
    except redis.RedisError as e:
        log.warning("health: redis check failed: %s", e)
        queue = "error"
    return {
        "status": "ok" if database == "ok" and queue == "ok" else "degraded",
        "database": database,
        "queue": queue,
        "ai_configured": is_ai_configured(),
    }
