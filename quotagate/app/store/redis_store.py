"""Redis-backed counter store shared by every process instance.

Redis key layout (see ``keys``):
- ratelimit:<scope>:window:<id>:sliding - ordered set of request entries
- ratelimit:<scope>:window:<id>:<window_start_ms> - fixed window counter
- <metric>:<scope>:<daily|monthly>:<id>:<period> - ledger hash with
  ``used`` and ``warned:<pct>`` fields
"""

import logging
from typing import Any, List, Optional, Sequence

import redis.asyncio as aioredis

from quotagate.app.core.config import settings
from quotagate.app.exceptions import StoreError
from quotagate.app.store.base import CounterStore
from quotagate.app.store.models import (
    USED_FIELD,
    WARNED_FIELD_PREFIX,
    FixedWindowOutcome,
    LedgerOutcome,
    LedgerReading,
    LedgerSpec,
    WindowOutcome,
    parse_counter,
)
from quotagate.app.store.redis_lua import (
    APPLY_LEDGERS_SCRIPT,
    FIXED_WINDOW_SCRIPT,
    SLIDING_WINDOW_SCRIPT,
)

logger = logging.getLogger(__name__)

NO_LIMIT = -1


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class RedisCounterStore(CounterStore):
    """Counter store using Redis Lua scripts for atomicity.

    Args:
        redis_client: Pre-built ``redis.asyncio`` client (tests inject mocks)
        redis_url: Connection URL used when no client is given
    """

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        socket_timeout: Optional[float] = None,
    ) -> None:
        self._redis = redis_client
        self._redis_url = redis_url or settings.redis_url
        self._socket_timeout = socket_timeout or settings.store_timeout_seconds

    def _get_redis(self) -> Any:
        """Get or create Redis client."""
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_timeout,
            )
            logger.info("Connected counter store to Redis")
        return self._redis

    async def sliding_window_hit(
        self, key: str, now_ms: int, window_ms: int, max_requests: int, member: str
    ) -> WindowOutcome:
        result = await self._get_redis().eval(
            SLIDING_WINDOW_SCRIPT, 1, key, now_ms, window_ms, max_requests, member
        )
        try:
            allowed, count, oldest = result
            return WindowOutcome(
                allowed=bool(int(allowed)), count=int(count), oldest_ms=int(oldest)
            )
        except (TypeError, ValueError) as e:
            raise StoreError(f"Unexpected sliding window reply: {result!r}") from e

    async def fixed_window_hit(self, key: str, window_ms: int) -> FixedWindowOutcome:
        result = await self._get_redis().eval(FIXED_WINDOW_SCRIPT, 1, key, window_ms)
        try:
            count, ttl_ms = result
            return FixedWindowOutcome(count=int(count), ttl_ms=int(ttl_ms))
        except (TypeError, ValueError) as e:
            raise StoreError(f"Unexpected fixed window reply: {result!r}") from e

    @staticmethod
    def _ledger_args(specs: Sequence[LedgerSpec], enforce: bool) -> List[Any]:
        args: List[Any] = ["1" if enforce else "0"]
        for spec in specs:
            args.extend([
                spec.amount,
                NO_LIMIT if spec.limit is None else spec.limit,
                spec.expire_at,
                len(spec.thresholds),
            ])
            args.extend(sorted(spec.thresholds))
        return args

    async def apply_ledgers(
        self, specs: Sequence[LedgerSpec], enforce: bool
    ) -> LedgerOutcome:
        if not specs:
            return LedgerOutcome(allowed=True, failed_index=None, used=[], malformed=[])

        keys = [spec.key for spec in specs]
        result = await self._get_redis().eval(
            APPLY_LEDGERS_SCRIPT, len(keys), *keys, *self._ledger_args(specs, enforce)
        )
        try:
            allowed, failed_index, used, malformed, fired = result
            used = [int(v) for v in used]
            malformed = [bool(int(v)) for v in malformed]
            if not int(allowed):
                return LedgerOutcome(
                    allowed=False,
                    failed_index=int(failed_index) - 1,
                    used=used,
                    malformed=malformed,
                    fired=[() for _ in specs],
                )
            fired_lists = [tuple(int(t) for t in entry) for entry in fired]
        except (TypeError, ValueError) as e:
            raise StoreError(f"Unexpected ledger reply: {result!r}") from e

        if len(used) != len(specs) or len(fired_lists) != len(specs):
            raise StoreError(f"Ledger reply does not match {len(specs)} keys: {result!r}")
        return LedgerOutcome(
            allowed=True,
            failed_index=None,
            used=used,
            malformed=malformed,
            fired=fired_lists,
        )

    async def read_ledger(self, key: str) -> LedgerReading:
        raw = await self._get_redis().hgetall(key)
        if not raw:
            return LedgerReading(key=key, exists=False, used=0)

        fields = {_text(name): value for name, value in raw.items()}
        used, malformed = parse_counter(fields.get(USED_FIELD))
        warned = set()
        for name in fields:
            if name.startswith(WARNED_FIELD_PREFIX):
                try:
                    warned.add(int(name[len(WARNED_FIELD_PREFIX):]))
                except ValueError:
                    logger.warning(f"Ignoring unexpected warning field {name!r} at {key!r}")
        return LedgerReading(
            key=key, exists=True, used=used, warned=frozenset(warned), malformed=malformed
        )

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._get_redis().delete(*keys))

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
