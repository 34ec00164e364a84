"""
Rate Limiting Middleware
========================

Redis-based per-client rate limiting for `/api` endpoints
(default 100 requests per hour per IP). Fails open when Redis is down.
"""

import time
import logging
from typing import Callable, Optional, Tuple

import redis
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from ..config import get_settings

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60 * 60
EXEMPT_PATHS = ("/health", "/api/health")


class RateLimiter:
    """
    Redis-based rate limiter using sliding window algorithm.
    """

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self._client = None

    @property
    def client(self):
        """Lazy-load Redis client"""
        if self._client is None:
            try:
                self._client = redis.from_url(
                    self.redis_url,
                    decode_responses=True
                )
                self._client.ping()
            except redis.RedisError as e:
                logger.warning(f"Redis connection failed: {e}")
                self._client = None

        return self._client

    def is_allowed(
        self,
        key: str,
        limit: int,
        window_seconds: int = WINDOW_SECONDS
    ) -> Tuple[bool, int, int]:
        """
        Check if request is allowed under rate limit.

        Args:
            key: Rate limit key (e.g., "ratelimit:ip:10.0.0.1")
            limit: Maximum requests allowed
            window_seconds: Time window in seconds

        Returns:
            (is_allowed, remaining, reset_time)
        """
        if not self.client:
            return (True, limit, 0)

        now = time.time()
        window_start = now - window_seconds

        try:
            pipe = self.client.pipeline()
            pipe.zremrangebyscore(key, 0, window_start)
            pipe.zcard(key)
            pipe.zadd(key, {f"{now}": now})
            pipe.expire(key, window_seconds)
            results = pipe.execute()
            current_count = results[1]

            remaining = max(0, limit - current_count - 1)
            reset_time = int(now + window_seconds)

            if current_count >= limit:
                return (False, 0, reset_time)

            return (True, remaining, reset_time)

        except redis.RedisError as e:
            logger.warning(f"Rate limit check failed: {e}")
            return (True, limit, 0)


_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get singleton rate limiter instance"""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(get_settings().redis_url)
    return _rate_limiter


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    FastAPI middleware limiting requests per client IP on /api paths.
    """

    def __init__(self, app, limiter: Optional[RateLimiter] = None, limit: Optional[int] = None):
        super().__init__(app)
        self.limiter = limiter or get_rate_limiter()
        self.limit = limit or get_settings().rate_limit_per_hour

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if not path.startswith("/api") or path in EXEMPT_PATHS:
            return await call_next(request)

        allowed, remaining, reset = self.limiter.is_allowed(
            f"ratelimit:ip:{client_ip(request)}", self.limit
        )
        if not allowed:
            retry_after = max(0, reset - int(time.time()))
            return JSONResponse(
                status_code=429,
                content={
                    "status": "fail",
                    "message": "Too many requests from this IP, please try again in an hour!",
                },
                headers={
                    "X-RateLimit-Limit": str(self.limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(reset),
                    "Retry-After": str(retry_after),
                }
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response
