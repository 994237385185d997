"""Redis-based sliding window rate limiter.

Uses sorted sets (ZSET) for a precise sliding window counter.
Rate limits are per identity subject and apply to chat requests only.
"""

import logging
import math
import time
import uuid
from dataclasses import dataclass

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from app.config import get_settings

logger = logging.getLogger(__name__)

RATE_LIMITED_ROUTES = {("POST", "/api/chat")}


@dataclass
class RateLimitResult:
    """Outcome of one sliding-window check."""

    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int
    reset_at: int

    def as_meta(self) -> dict:
        return {
            "limit": self.limit,
            "remaining": self.remaining,
            "resetSeconds": self.reset_seconds,
        }

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.reset_seconds)
        return headers


# Trim, count and conditionally record in one step so concurrent requests
# cannot all observe the same count.
# KEYS: window key
# ARGV: now, window seconds, limit, member
_LUA_SLIDING_WINDOW = r"""
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

redis.call("ZREMRANGEBYSCORE", key, 0, now - window)
local count = redis.call("ZCARD", key)
local allowed = 0
if count < limit then
  redis.call("ZADD", key, ARGV[1], ARGV[4])
  redis.call("EXPIRE", key, window + 1)
  allowed = 1
end

-- scores come back as strings; Lua numbers would be truncated to integers
local oldest = redis.call("ZRANGE", key, 0, 0, "WITHSCORES")
local oldest_score = ""
if oldest[2] then
  oldest_score = oldest[2]
end
return {allowed, count, oldest_score}
"""


async def hit_sliding_window(
    redis, key: str, limit: int, window: int, now: float | None = None
) -> RateLimitResult:
    """Count a request against ``key``; rejected requests are not recorded."""
    now = time.time() if now is None else now
    member = f"{now}:{uuid.uuid4().hex[:8]}"
    allowed, current_count, oldest_score = await redis.eval(
        _LUA_SLIDING_WINDOW, 1, key, repr(now), window, limit, member
    )
    allowed = bool(int(allowed))
    current_count = int(current_count)

    if oldest_score:
        reset_seconds = max(1, math.ceil(float(oldest_score) + window - now))
    else:
        reset_seconds = window

    if not allowed:
        return RateLimitResult(
            allowed=False,
            limit=limit,
            remaining=0,
            reset_seconds=reset_seconds,
            reset_at=int(now + reset_seconds),
        )

    return RateLimitResult(
        allowed=True,
        limit=limit,
        remaining=max(0, limit - current_count - 1),
        reset_seconds=reset_seconds,
        reset_at=int(now + reset_seconds),
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding window rate limiter using Redis ZSETs."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if (request.method, request.url.path) not in RATE_LIMITED_ROUTES:
            return await call_next(request)

        subject = getattr(request.state, "user_sub", None)
        if not subject:
            return await call_next(request)

        redis = getattr(request.app.state, "redis", None)
        if not redis:
            # No Redis connection: allow the request but log a warning
            logger.warning("Redis not available for rate limiting")
            return await call_next(request)

        settings = get_settings()
        try:
            result = await hit_sliding_window(
                redis,
                f"qecoach:rate:{subject}",
                settings.rate_limit_requests,
                settings.rate_limit_window_seconds,
            )
        except Exception:
            logger.exception("Rate limit check failed; allowing request")
            return await call_next(request)

        request.state.rate_limit = result

        if not result.allowed:
            request.state.rate_limited = True
            logger.warning(
                "Rate limit exceeded",
                extra={"event": "rate_limit_exceeded", "user_id": subject},
            )
            return JSONResponse(
                {
                    "ok": False,
                    "error": "Rate limit exceeded",
                    "details": f"Rate limit reached. Please retry in {result.reset_seconds}s.",
                    "rate": result.as_meta(),
                },
                status_code=429,
                headers=result.headers(),
            )

        response = await call_next(request)
        for name, value in result.headers().items():
            response.headers[name] = value
        return response
