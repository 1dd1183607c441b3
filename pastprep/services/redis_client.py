"""Shared Redis connection for the grade cache and the rate limiter.

Both callers treat Redis as optional: a short connect timeout keeps a
missing server from stalling a request, and every caller catches
``redis.RedisError``.
"""

import redis

from pastprep.config import settings

_pool: redis.ConnectionPool | None = None


def get_redis() -> redis.Redis:
    global _pool
    if _pool is None:
        _pool = redis.ConnectionPool.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            max_connections=20,
            socket_connect_timeout=1,
            socket_timeout=2,
        )
    return redis.Redis(connection_pool=_pool)
