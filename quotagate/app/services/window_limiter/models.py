"""Rate limiting data models."""

from dataclasses import dataclass
from typing import Optional

from quotagate.app.exceptions import ConfigurationError
from quotagate.app.services.reasons import DenialReason

SLIDING = "sliding"
FIXED = "fixed"


@dataclass(frozen=True)
class RateLimitConfig:
    """Rate limit for one scope.

    Attributes:
        window_ms: Window length in milliseconds
        max_requests: Requests admitted per window
        key_namespace: First segment of the store key
        scope_type: Scope segment of the store key
        algorithm: 'sliding' (default) or 'fixed'
    """
    window_ms: int
    max_requests: int
    key_namespace: str = "ratelimit"
    scope_type: str = "global"
    algorithm: str = SLIDING

    def __post_init__(self):
        if self.window_ms <= 0:
            raise ConfigurationError("window_ms must be positive")
        if self.max_requests <= 0:
            raise ConfigurationError("max_requests must be positive")
        if self.algorithm not in (SLIDING, FIXED):
            raise ConfigurationError(f"Unknown rate limit algorithm: {self.algorithm}")


@dataclass
class RateLimitResult:
    """Result of a rate limit check.

    ``reset_at`` is in epoch milliseconds. ``degraded`` marks results
    produced by the failure policy instead of the store.
    """
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after_seconds: Optional[int] = None
    reason: Optional[DenialReason] = None
    degraded: bool = False
