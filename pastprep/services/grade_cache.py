"""Redis-backed cache for successful essay grading outcomes.

Identical (question, answer, reference, max marks) payloads are common on
retakes and re-submissions; caching them avoids a second paid LLM call and
keeps the grade stable. Keys are content-addressed (SHA-256 of the request).
Every Redis problem is logged and treated as a miss.
"""

import hashlib
import json
import logging
from typing import Any

import redis

from pastprep.config import settings
from pastprep.services.redis_client import get_redis

logger = logging.getLogger(__name__)

def _make_key(prefix: str, params: dict[str, Any]) -> str:
    serialised = json.dumps(params, sort_keys=True, default=str)
    digest = hashlib.sha256(serialised.encode()).hexdigest()[:24]
    return f"grade_cache:{prefix}:{digest}"


def cache_get(prefix: str, params: dict[str, Any]) -> dict[str, Any] | None:
    """Return a cached outcome, or None on miss / disabled / Redis error."""
    if not settings.GRADE_CACHE_ENABLED:
        return None
    key = _make_key(prefix, params)
    try:
        raw = get_redis().get(key)
    except redis.RedisError as e:
        logger.warning("Grade cache read failed (non-fatal): %s", e)
        return None
    if not raw:
        return None
    try:
        cached = json.loads(raw)
    except ValueError:
        logger.warning("Grade cache entry %s is not valid JSON; treating as miss", key)
        return None
    if not isinstance(cached, dict):
        logger.warning("Grade cache entry %s is not an object; treating as miss", key)
        return None
    logger.debug("Grade cache HIT: %s", key)
    return cached


def cache_set(
    prefix: str,
    params: dict[str, Any],
    result: dict[str, Any],
    ttl: int | None = None,
) -> None:
    if not settings.GRADE_CACHE_ENABLED:
        return
    key = _make_key(prefix, params)
    try:
        get_redis().setex(
            key, ttl or settings.GRADE_CACHE_TTL_SECONDS, json.dumps(result, default=str)
        )
    except redis.RedisError as e:
        logger.warning("Grade cache write failed (non-fatal): %s", e)
