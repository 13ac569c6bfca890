"""Sliding and fixed window rate limiting."""

from .models import FIXED, SLIDING, RateLimitConfig, RateLimitResult
from .service import WindowLimiter

__all__ = [
    "FIXED",
    "SLIDING",
    "RateLimitConfig",
    "RateLimitResult",
    "WindowLimiter",
]
