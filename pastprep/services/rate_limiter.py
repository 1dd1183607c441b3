"""Redis-backed leaky-bucket rate limiter for grading endpoints.

Submitting an exam or a practice answer can fan out into one external
grading call per question, so these endpoints are throttled per user.

Algorithm
---------
Each bucket is a Redis hash holding the remaining *tokens* and the time of
the last refill. Tokens refill at ``RPM / 60`` per second up to ``BURST``.
A request is allowed only when a token is available; otherwise 429.
When Redis is unreachable the limiter fails open.

Usage as a FastAPI dependency
-----------------------------
```python
@router.post("/{session_id}/submit")
async def submit(..., _rl=Depends(require_grading_rate_limit)):
    ...
```
"""

import logging
import time

import redis
from fastapi import HTTPException, Request, status

from pastprep.config import settings
from pastprep.services.redis_client import get_redis

logger = logging.getLogger(__name__)

# KEYS[1] = bucket key
# ARGV[1] = max tokens (burst), ARGV[2] = refill rate (tokens/s), ARGV[3] = now
# Returns 1 if allowed, 0 if rejected.
_LUA_SCRIPT = """
local key         = KEYS[1]
local max_tokens  = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local now         = tonumber(ARGV[3])

local bucket = redis.call('HMGET', key, 'tokens', 'last_refill')
local tokens      = tonumber(bucket[1])
local last_refill = tonumber(bucket[2])

if tokens == nil then
    tokens = max_tokens
    last_refill = now
end

local elapsed = math.max(0, now - last_refill)
tokens = math.min(max_tokens, tokens + elapsed * refill_rate)

local allowed = 0
if tokens >= 1 then
    tokens = tokens - 1
    allowed = 1
end

redis.call('HSET', key, 'tokens', tokens, 'last_refill', now)
redis.call('EXPIRE', key, 120)
return allowed
"""


def _client_key(request: Request) -> str:
    """Per-user bucket when the caller is authenticated, else per IP."""
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"rl:grading:u:{user_id}"
    forwarded = request.headers.get("x-forwarded-for")
    ip = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else "unknown")
    return f"rl:grading:ip:{ip}"


def _check(bucket_key: str) -> bool:
    """Return True if the request should be allowed."""
    rpm = settings.RATE_LIMIT_GRADING_RPM
    if rpm <= 0:
        return True  # disabled

    try:
        allowed = get_redis().eval(
            _LUA_SCRIPT, 1, bucket_key, settings.RATE_LIMIT_GRADING_BURST, rpm / 60.0, time.time()
        )
    except redis.RedisError as e:
        logger.warning("Rate-limiter Redis error (allowing request): %s", e)
        return True
    return bool(allowed)


async def require_grading_rate_limit(request: Request) -> None:
    """FastAPI dependency: raises 429 if the caller exceeds the limit."""
    key = _client_key(request)
    if not _check(key):
        logger.info("Rate-limited: %s", key)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many grading requests, please slow down.",
        )
