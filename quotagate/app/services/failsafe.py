"""Failure policy shared by every admission check that touches the store.

Admission checks must never block or error because the counter store is
slow or unreachable. Each store call is bounded by a timeout; any store
failure is reported once through the observer and answered with a
fallback result. In fail-open mode (the default) the fallback admits the
request; in fail-closed mode it denies with ``store_unavailable``.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

import redis

from quotagate.app.core.config import settings
from quotagate.app.core.observability import AdmissionObserver
from quotagate.app.exceptions import StoreError, StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

REDIS_EXCEPTIONS = (
    redis.ConnectionError,
    redis.TimeoutError,
    redis.RedisError,
)


class FailOpenPolicy:
    """Timeout plus fail-open/fail-closed handling around store calls.

    A timeout only cancels the client-side wait. A script already sent to
    Redis still runs to completion, so a check that timed out may have
    reserved its amount even though the degraded result reports zero
    usage. Committing that request later adds the actual usage again, and
    the ledger overcounts by the reservation. Short of an idempotency key
    per reservation this is accepted: it errs toward denial, never toward
    admitting more than the limit.

    Args:
        observer: Receives one ``store_degraded`` event per failed call
        timeout_seconds: Upper bound for a single store call
        fail_mode: 'open' or 'closed'
    """

    def __init__(
        self,
        observer: AdmissionObserver,
        timeout_seconds: Optional[float] = None,
        fail_mode: Optional[str] = None,
    ) -> None:
        self.observer = observer
        self.timeout_seconds = timeout_seconds or settings.store_timeout_seconds
        self.fail_mode = fail_mode or settings.store_fail_mode

    @property
    def fail_closed(self) -> bool:
        return self.fail_mode == "closed"

    @staticmethod
    def _classify(error: BaseException) -> str:
        if isinstance(error, (asyncio.TimeoutError, redis.TimeoutError)):
            return "timeout"
        if isinstance(error, redis.ConnectionError):
            return "connection_error"
        if isinstance(error, REDIS_EXCEPTIONS):
            return "redis_error"
        if isinstance(error, StoreError):
            return "invalid_reply"
        return "unexpected_error"

    async def run(
        self,
        operation: str,
        identifier: Optional[str],
        call: Callable[[], Awaitable[T]],
        fallback: Callable[[bool], T],
    ) -> T:
        """Run ``call`` under the policy.

        Args:
            operation: Operation name for events and logs
            identifier: Identifier being checked, if any
            call: Zero-argument coroutine factory performing the store work
            fallback: Builds the degraded result; receives ``fail_closed``

        Returns:
            The store result, or the fallback result on failure
        """
        try:
            return await asyncio.wait_for(call(), timeout=self.timeout_seconds)
        except (asyncio.TimeoutError, StoreError) + REDIS_EXCEPTIONS as e:
            error = e
        except Exception as e:
            logger.exception(f"Unexpected error during {operation}")
            error = e

        self.observer.store_degraded(
            operation, identifier, self._classify(error), error
        )
        return fallback(self.fail_closed)

    async def run_strict(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
    ) -> T:
        """Run an administrative store call, raising instead of degrading.

        Raises:
            StoreUnavailableError: If the store fails or times out
        """
        try:
            return await asyncio.wait_for(call(), timeout=self.timeout_seconds)
        except (asyncio.TimeoutError, StoreError) + REDIS_EXCEPTIONS as e:
            raise StoreUnavailableError(operation, e) from e
