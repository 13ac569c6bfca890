"""Tests running the Redis Lua scripts against a Lua-capable fake server."""

import asyncio
import time

import fakeredis
import pytest

from quotagate.app.core.observability import DATA_INTEGRITY, STORE_DEGRADED
from quotagate.app.core.periods import daily_period, utc_from_timestamp
from quotagate.app.services.escalation import EscalationEngine
from quotagate.app.services.failsafe import FailOpenPolicy
from quotagate.app.services.quota_tracker import QuotaConfig, QuotaTracker
from quotagate.app.services.reasons import DenialReason
from quotagate.app.services.window_limiter import RateLimitConfig, WindowLimiter
from quotagate.app.store.keys import ledger_key
from quotagate.app.store.models import LedgerSpec
from quotagate.app.store.redis_store import RedisCounterStore


@pytest.fixture
def redis_client():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def live_clock(make_clock):
    # Key expiry on the server follows wall-clock time
    return make_clock(time.time())


@pytest.fixture
def redis_store(redis_client):
    return RedisCounterStore(redis_client=redis_client)


@pytest.fixture
def policy(observer):
    return FailOpenPolicy(observer, timeout_seconds=30, fail_mode="open")


@pytest.fixture
def limiter(redis_store, policy, live_clock):
    return WindowLimiter(redis_store, policy, clock=live_clock)


@pytest.fixture
def tracker(redis_store, policy, live_clock):
    return QuotaTracker(redis_store, policy, escalation=EscalationEngine(), clock=live_clock)


@pytest.fixture
def config():
    return QuotaConfig(daily_limit=1000, warning_thresholds=(80, 95), scope_type="apikey")


def daily_key(clock, identifier="k1"):
    period = daily_period(utc_from_timestamp(clock()))
    return ledger_key("tokens", "apikey", "daily", identifier, period.key)


def names(results):
    return [w.name for r in results for w in r.warnings]


class TestSlidingWindowScript:

    @pytest.mark.asyncio
    async def test_window_denies_eleventh_then_recovers(self, limiter, live_clock):
        config = RateLimitConfig(window_ms=60_000, max_requests=10, scope_type="apikey")
        for _ in range(10):
            assert (await limiter.check_rate_limit("u1", config)).allowed is True

        live_clock.advance(0.5)
        result = await limiter.check_rate_limit("u1", config)
        assert result.allowed is False
        assert result.degraded is False
        assert 59 <= result.retry_after_seconds <= 60

        live_clock.advance(60.5)
        assert (await limiter.check_rate_limit("u1", config)).allowed is True

    @pytest.mark.asyncio
    async def test_concurrent_checks_never_exceed_max(self, limiter):
        config = RateLimitConfig(window_ms=60_000, max_requests=10)

        results = await asyncio.gather(
            *[limiter.check_rate_limit("u1", config) for _ in range(100)]
        )

        assert sum(1 for r in results if r.allowed) == 10


class TestFixedWindowScript:

    @pytest.mark.asyncio
    async def test_ttl_set_once_per_window(self, redis_store, redis_client):
        first = await redis_store.fixed_window_hit("ratelimit:apikey:window:u1:0", 60_000)
        second = await redis_store.fixed_window_hit("ratelimit:apikey:window:u1:0", 60_000)

        assert (first.count, second.count) == (1, 2)
        assert 0 < first.ttl_ms <= 60_000
        assert 0 < second.ttl_ms <= first.ttl_ms
        assert 0 < await redis_client.pttl("ratelimit:apikey:window:u1:0") <= 60_000


class TestApplyLedgersScript:
    """Tests for quota ledgers on the Redis backend."""

    @pytest.mark.asyncio
    async def test_scenario_b(self, tracker, observer):
        config = QuotaConfig(daily_limit=100_000)
        await tracker.record_usage("k1", 95_000, config)

        first = await tracker.check_quota("k1", 4_000, config)
        assert first.allowed is True
        assert first.used == 99_000

        second = await tracker.check_quota("k1", 2_000, config)
        assert second.allowed is False
        assert second.reason == DenialReason.DAILY_QUOTA
        assert second.used == 99_000
        assert observer.count(STORE_DEGRADED) == 0

    @pytest.mark.asyncio
    async def test_exact_limit_then_exhausted(self, tracker, config):
        assert (await tracker.check_quota("k1", 1000, config)).allowed is True

        result = await tracker.check_quota("k1", 0, config)

        assert result.allowed is False
        assert result.reason == DenialReason.DAILY_QUOTA

    @pytest.mark.asyncio
    async def test_zero_amount_creates_no_ledger(self, tracker, redis_client, config, live_clock):
        result = await tracker.check_quota("k1", 0, config)

        assert result.allowed is True
        assert await redis_client.exists(daily_key(live_clock)) == 0

    @pytest.mark.asyncio
    async def test_denial_writes_nothing(self, redis_store):
        await redis_store.apply_ledgers([LedgerSpec("a", 8, None, 2**31)], enforce=False)

        outcome = await redis_store.apply_ledgers(
            [LedgerSpec("b", 5, 100, 2**31), LedgerSpec("a", 5, 10, 2**31)], enforce=True
        )

        assert outcome.allowed is False
        assert outcome.failed_index == 1
        assert (await redis_store.read_ledger("a")).used == 8
        assert (await redis_store.read_ledger("b")).exists is False

    @pytest.mark.asyncio
    async def test_scenario_c_thresholds_fire_once_until_reset(self, tracker, config):
        assert names([await tracker.record_usage("k1", 799, config)]) == []
        assert names([await tracker.check_quota("k1", 1, config)]) == ["daily80"]
        assert names([await tracker.check_quota("k1", 100, config)]) == []
        assert names([await tracker.check_quota("k1", 50, config)]) == ["daily95"]

        await tracker.reset_quota("k1", "daily", config)

        assert names([await tracker.record_usage("k1", 800, config)]) == ["daily80"]

    @pytest.mark.asyncio
    async def test_concurrent_crossings_fire_exactly_once(self, tracker, config):
        await tracker.record_usage("k1", 799, config)

        results = await asyncio.gather(
            *[tracker.record_usage("k1", 1, config) for _ in range(200)]
        )

        assert names(results).count("daily80") == 1
        assert (await tracker.get_usage("k1", config)).daily.used == 999

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["garbage", "12.5", "1e3"])
    async def test_malformed_counter_replaced(
        self, tracker, redis_client, observer, config, live_clock, raw
    ):
        await redis_client.hset(daily_key(live_clock), "used", raw)

        result = await tracker.check_quota("k1", 10, config)

        assert result.allowed is True
        assert result.degraded is False
        assert result.used == 10
        assert observer.count(DATA_INTEGRITY) == 1
        assert observer.count(STORE_DEGRADED) == 0
        assert await redis_client.hget(daily_key(live_clock), "used") == "10"

    @pytest.mark.asyncio
    async def test_ledger_expires_at_period_boundary(
        self, tracker, redis_client, config, live_clock
    ):
        await tracker.record_usage("k1", 5, config)

        ttl = await redis_client.ttl(daily_key(live_clock))
        expected = daily_period(utc_from_timestamp(live_clock())).expire_at - time.time()

        assert ttl > 0
        assert abs(ttl - expected) <= 2
