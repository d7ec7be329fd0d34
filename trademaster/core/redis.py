"""Redis connection for the job queue."""
import logging

import redis

logger = logging.getLogger(__name__)


def create_redis(url: str, *, ping: bool = False) -> redis.Redis:
    """
    Builds a client from REDIS_URL. Connections are opened lazily; pass ping=True
    to fail fast at process start (worker) instead of on the first command (API).
    """
    client = redis.Redis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=10,
        socket_timeout=5,
        health_check_interval=30,
    )
    if ping:
        try:
            client.ping()
        except redis.RedisError:
            logger.error("Redis connection failed: %s", _redact(url))
            raise
        logger.info("Redis connected: %s", _redact(url))
    return client


def _redact(url: str) -> str:
    if "@" not in url:
        return url
    scheme, rest = url.split("://", 1)
    return f"{scheme}://***@{rest.split('@', 1)[1]}"
