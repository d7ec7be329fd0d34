"""
HTTP rate limits (SlowAPI).

Plain routes are keyed by client IP. Routes that trigger AI work are keyed by the
user named in the path, falling back to the client IP.
"""
from fastapi import Request

from slowapi import Limiter

from .config import settings

ANALYZE_LIMIT = f"{settings.rate_limit_analyze_per_minute}/minute"


def client_key(request: Request) -> str:
    # Render/Nginx put the original client first in X-Forwarded-For
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "anonymous"


def analysis_key(request: Request) -> str:
    user_id = request.path_params.get("user_id")
    if user_id is not None:
        return f"user:{user_id}"
    return f"ip:{client_key(request)}"


limiter = Limiter(
    key_func=client_key,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"],
    # memory:// is per API process; point it at Redis to share counters between replicas
    storage_uri=settings.http_rate_limit_storage_uri,
    strategy="moving-window",
)
