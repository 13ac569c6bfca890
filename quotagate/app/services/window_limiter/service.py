"""Request rate limiting over sliding or fixed windows.

The sliding window keeps one ordered-set entry per admitted request in the
shared store. Purge, insert, count and rollback happen inside a single
store script, so concurrent checks from any number of instances can never
admit more than ``max_requests`` per window.
"""

import logging
import math
import time
import uuid
from typing import Callable

from quotagate.app.core.logging import get_log_context
from quotagate.app.exceptions import ConfigurationError
from quotagate.app.services.failsafe import FailOpenPolicy
from quotagate.app.services.reasons import DenialReason
from quotagate.app.store.base import CounterStore
from quotagate.app.store.keys import fixed_window_key, sliding_window_key

from .models import FIXED, RateLimitConfig, RateLimitResult

logger = logging.getLogger(__name__)


def _retry_after(reset_at_ms: int, now_ms: int) -> int:
    return max(1, math.ceil((reset_at_ms - now_ms) / 1000))


class WindowLimiter:
    """Sliding/fixed window rate limiter backed by a shared counter store.

    Args:
        store: Shared counter store
        policy: Failure policy applied to every store call
        clock: Returns the current time in epoch seconds
    """

    def __init__(
        self,
        store: CounterStore,
        policy: FailOpenPolicy,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._policy = policy
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def check_rate_limit(
        self, identifier: str, config: RateLimitConfig
    ) -> RateLimitResult:
        """Check and record one request for ``identifier``.

        Returns:
            RateLimitResult. On store failure the failure policy decides;
            in fail-open mode the request is admitted with full remaining
            capacity and ``degraded=True``.
        """
        if not identifier:
            raise ConfigurationError("identifier must not be empty")

        now_ms = self._now_ms()
        if config.algorithm == FIXED:
            call = lambda: self._check_fixed(identifier, config, now_ms)
        else:
            call = lambda: self._check_sliding(identifier, config, now_ms)

        result = await self._policy.run(
            "check_rate_limit",
            identifier,
            call,
            lambda fail_closed: self._degraded(config, now_ms, fail_closed),
        )
        if not result.allowed and not result.degraded:
            logger.info(
                f"Rate limit exceeded for {config.scope_type} {identifier}",
                extra=get_log_context(
                    identifier=identifier,
                    scope=config.scope_type,
                    reason=DenialReason.RATE_LIMITED.value,
                ),
            )
        return result

    async def _check_sliding(
        self, identifier: str, config: RateLimitConfig, now_ms: int
    ) -> RateLimitResult:
        key = sliding_window_key(config.key_namespace, config.scope_type, identifier)
        member = f"{now_ms}-{uuid.uuid4().hex[:12]}"
        outcome = await self._store.sliding_window_hit(
            key, now_ms, config.window_ms, config.max_requests, member
        )

        reset_at = outcome.oldest_ms + config.window_ms
        if outcome.allowed:
            return RateLimitResult(
                allowed=True,
                limit=config.max_requests,
                remaining=max(0, config.max_requests - outcome.count),
                reset_at=reset_at,
            )
        return RateLimitResult(
            allowed=False,
            limit=config.max_requests,
            remaining=0,
            reset_at=reset_at,
            retry_after_seconds=_retry_after(reset_at, now_ms),
            reason=DenialReason.RATE_LIMITED,
        )

    async def _check_fixed(
        self, identifier: str, config: RateLimitConfig, now_ms: int
    ) -> RateLimitResult:
        window_start = now_ms - now_ms % config.window_ms
        key = fixed_window_key(
            config.key_namespace, config.scope_type, identifier, window_start
        )
        outcome = await self._store.fixed_window_hit(key, config.window_ms)

        reset_at = window_start + config.window_ms
        if outcome.count <= config.max_requests:
            return RateLimitResult(
                allowed=True,
                limit=config.max_requests,
                remaining=config.max_requests - outcome.count,
                reset_at=reset_at,
            )
        return RateLimitResult(
            allowed=False,
            limit=config.max_requests,
            remaining=0,
            reset_at=reset_at,
            retry_after_seconds=_retry_after(reset_at, now_ms),
            reason=DenialReason.RATE_LIMITED,
        )

    def _degraded(
        self, config: RateLimitConfig, now_ms: int, fail_closed: bool
    ) -> RateLimitResult:
        reset_at = now_ms + config.window_ms
        if fail_closed:
            return RateLimitResult(
                allowed=False,
                limit=config.max_requests,
                remaining=0,
                reset_at=reset_at,
                retry_after_seconds=_retry_after(reset_at, now_ms),
                reason=DenialReason.STORE_UNAVAILABLE,
                degraded=True,
            )
        return RateLimitResult(
            allowed=True,
            limit=config.max_requests,
            remaining=config.max_requests,
            reset_at=reset_at,
            degraded=True,
        )

    async def reset_rate_limit(self, identifier: str, config: RateLimitConfig) -> int:
        """Clear the window state for ``identifier``.

        Removes the sliding-window set and the current fixed-window counter.

        Raises:
            StoreUnavailableError: If the store cannot be reached
        """
        now_ms = self._now_ms()
        window_start = now_ms - now_ms % config.window_ms
        keys = (
            sliding_window_key(config.key_namespace, config.scope_type, identifier),
            fixed_window_key(
                config.key_namespace, config.scope_type, identifier, window_start
            ),
        )
        removed = await self._policy.run_strict(
            "reset_rate_limit", lambda: self._store.delete(*keys)
        )
        logger.info(
            f"Reset rate limit for {config.scope_type} {identifier}",
            extra=get_log_context(identifier=identifier, scope=config.scope_type),
        )
        return removed
