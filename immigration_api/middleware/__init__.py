"""
Middleware Package
==================

FastAPI middleware for security headers and rate limiting.
"""

from .rate_limit import RateLimitMiddleware, RateLimiter, get_rate_limiter
from .security import SecurityHeadersMiddleware

__all__ = [
    "RateLimitMiddleware",
    "RateLimiter",
    "get_rate_limiter",
    "SecurityHeadersMiddleware",
]
