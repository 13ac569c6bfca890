"""Tests for scope adapters."""

from unittest.mock import AsyncMock

import pytest
import redis

from quotagate.app.adapters import (
    ScopeLimits,
    StaticConfigProvider,
    UsageAmounts,
    UsageCommit,
    UsageEstimate,
)
from quotagate.app.engine import QuotaGate
from quotagate.app.exceptions import AdmissionDeniedError
from quotagate.app.services.reasons import DenialReason

ONE_DOLLAR = 1_000_000


@pytest.fixture
def limits():
    return ScopeLimits.with_usd(
        daily_cost_limit_usd="1.00",
        monthly_cost_limit_usd="20.00",
        window_ms=60_000,
        max_requests=5,
        daily_token_limit=1000,
        monthly_token_limit=10_000,
    )


@pytest.fixture
def provider(limits):
    return StaticConfigProvider({("apikey", "k1"): limits})


@pytest.fixture
def gate(store, test_settings, observer, provider, clock):
    return QuotaGate(
        store=store,
        config=test_settings,
        observer=observer,
        config_provider=provider,
        clock=clock,
    )


class TestCheck:
    """Tests for admission checks."""

    @pytest.mark.asyncio
    async def test_reserves_tokens_and_cost(self, gate):
        estimate = UsageEstimate(tokens=300, cost_micros=200_000)

        decision = await gate.api_keys.check("k1", estimate)

        assert decision.allowed is True
        assert decision.reason is None
        assert decision.reserved == estimate
        assert decision.tokens.used == 300
        assert decision.cost.used == 200_000
        assert decision.rate.remaining == 4

    @pytest.mark.asyncio
    async def test_cost_denial_leaves_no_token_reservation(self, gate):
        estimate = UsageEstimate(tokens=100, cost_micros=2 * ONE_DOLLAR)

        decision = await gate.api_keys.check("k1", estimate)

        assert decision.allowed is False
        assert decision.reason == DenialReason.COST_BUDGET
        assert decision.reserved == UsageEstimate()
        stats = await gate.api_keys.usage_stats("k1")
        assert stats["tokens"]["daily_used"] == 0
        assert stats["cost"]["daily_used"] == 0

    @pytest.mark.asyncio
    async def test_token_denial_retries_at_next_reset(self, gate):
        decision = await gate.api_keys.check("k1", UsageEstimate(tokens=1500))

        assert decision.allowed is False
        assert decision.reason == DenialReason.DAILY_QUOTA
        # 12:00 UTC, daily reset at midnight
        assert decision.retry_after == 12 * 3600
        assert "1000" in decision.message

    @pytest.mark.asyncio
    async def test_rate_limit_short_circuits_quota(self, gate):
        for _ in range(5):
            assert (await gate.api_keys.check("k1")).allowed is True

        decision = await gate.api_keys.check("k1", UsageEstimate(tokens=10))

        assert decision.allowed is False
        assert decision.reason == DenialReason.RATE_LIMITED
        assert decision.tokens is None
        assert decision.retry_after == 60
        assert decision.headers()["Retry-After"] == "60"

    @pytest.mark.asyncio
    async def test_headers(self, gate):
        decision = await gate.api_keys.check(
            "k1", UsageEstimate(tokens=300, cost_micros=200_000)
        )

        headers = decision.headers()
        assert headers["X-RateLimit-Limit"] == "5"
        assert headers["X-RateLimit-Remaining"] == "4"
        assert headers["X-Token-Limit"] == "1000"
        assert headers["X-Token-Used"] == "300"
        assert headers["X-Token-Remaining"] == "700"
        assert headers["X-Cost-Limit"] == "$1.00"
        assert headers["X-Cost-Used"] == "$0.20"
        assert "Retry-After" not in headers

    @pytest.mark.asyncio
    async def test_exhausted_ledger_denies_without_estimate(self, gate):
        await gate.api_keys.commit_usage(UsageCommit(
            scope_type="apikey", identifier="k1", actual=UsageAmounts(tokens=5000)
        ))

        decision = await gate.api_keys.check("k1")

        assert decision.allowed is False
        assert decision.reason == DenialReason.DAILY_QUOTA
        assert decision.headers()["X-Token-Remaining"] == "0"
        assert decision.retry_after == 12 * 3600

    @pytest.mark.asyncio
    async def test_zero_estimate_creates_no_ledger(self, gate):
        decision = await gate.api_keys.check("k1")

        assert decision.allowed is True
        assert decision.tokens.used == 0
        statuses = await gate.api_keys.quota_status("k1")
        assert statuses["tokens.daily"] == "UNINITIALIZED"
        assert statuses["cost.daily"] == "UNINITIALIZED"

    @pytest.mark.asyncio
    async def test_enforce_raises_on_denial(self, gate):
        with pytest.raises(AdmissionDeniedError) as exc_info:
            await gate.api_keys.enforce("k1", UsageEstimate(tokens=5000))

        assert exc_info.value.status_code == 429
        assert exc_info.value.reason == "daily_quota"
        assert exc_info.value.headers["Retry-After"] == str(12 * 3600)

    @pytest.mark.asyncio
    async def test_degraded_check_reserves_nothing(self, gate, store, observer):
        store.apply_ledgers = AsyncMock(side_effect=redis.ConnectionError("down"))

        decision = await gate.api_keys.check("k1", UsageEstimate(tokens=100))

        assert decision.allowed is True
        assert decision.degraded is True
        assert decision.reserved == UsageEstimate()


class TestLimitResolution:

    @pytest.mark.asyncio
    async def test_unknown_identifier_uses_defaults(self, gate, test_settings):
        decision = await gate.api_keys.check("unknown", UsageEstimate(tokens=1))

        assert decision.rate.limit == test_settings.default_rate_limit_max_requests
        assert decision.tokens.limit == test_settings.default_daily_token_limit

    @pytest.mark.asyncio
    async def test_provider_failure_uses_defaults(self, store, test_settings, clock):
        provider = AsyncMock()
        provider.get_limits.side_effect = RuntimeError("config db down")
        gate = QuotaGate(store=store, config=test_settings, config_provider=provider, clock=clock)

        decision = await gate.users.check("u1")

        assert decision.allowed is True
        assert decision.rate.limit == test_settings.default_rate_limit_max_requests

    @pytest.mark.asyncio
    async def test_group_daily_cost_derived_from_monthly(self, gate, provider):
        provider.set_limits(
            "group",
            "g1",
            ScopeLimits.with_usd(monthly_cost_limit_usd=30, window_ms=1000, max_requests=10),
        )

        limits = await gate.groups.resolve_limits("g1")

        assert limits.daily_cost_limit == ONE_DOLLAR
        assert limits.monthly_cost_limit == 30 * ONE_DOLLAR

    @pytest.mark.asyncio
    async def test_scopes_are_independent(self, gate, provider, limits):
        provider.set_limits("user", "k1", limits)
        await gate.api_keys.check("k1", UsageEstimate(tokens=900))

        decision = await gate.users.check("k1", UsageEstimate(tokens=900))

        assert decision.allowed is True


class TestUsageAccounting:
    """Tests for committing actual usage."""

    @pytest.mark.asyncio
    async def test_commit_adds_only_usage_beyond_reservation(self, gate):
        decision = await gate.api_keys.check(
            "k1", UsageEstimate(tokens=300, cost_micros=200_000)
        )

        results = await gate.api_keys.commit_usage(UsageCommit(
            scope_type="apikey",
            identifier="k1",
            actual=UsageAmounts(tokens=420, cost_micros=150_000),
            reserved=decision.reserved,
        ))

        assert results["tokens"].used == 420
        assert results["cost"].used == 200_000
        assert results["requests"].used == 1

    @pytest.mark.asyncio
    async def test_commit_never_denied_by_limit(self, gate):
        results = await gate.api_keys.commit_usage(UsageCommit(
            scope_type="apikey",
            identifier="k1",
            actual=UsageAmounts(tokens=5000),
        ))

        assert results["tokens"].used == 5000
        decision = await gate.api_keys.check("k1", UsageEstimate(tokens=1))
        assert decision.reason == DenialReason.DAILY_QUOTA

    @pytest.mark.asyncio
    async def test_record_usage_goes_through_dispatcher(self, gate):
        gate.start()
        decision = await gate.api_keys.check("k1", UsageEstimate(tokens=100))

        assert gate.api_keys.record_usage(
            "k1", UsageAmounts.from_usd(tokens=250, cost_usd="0.05"), decision
        ) is True
        await gate.dispatcher.join()

        stats = await gate.api_keys.usage_stats("k1")
        assert stats["tokens"]["daily_used"] == 250
        assert stats["cost"]["daily_used"] == 50_000
        assert stats["cost"]["daily_used_usd"] == "$0.05"
        assert stats["requests"]["daily_used"] == 1
        await gate.close()


class TestAdministration:

    @pytest.mark.asyncio
    async def test_quota_status_and_reset(self, gate):
        statuses = await gate.api_keys.quota_status("k1")
        assert statuses["tokens.daily"] == "UNINITIALIZED"

        await gate.api_keys.check("k1", UsageEstimate(tokens=850))
        statuses = await gate.api_keys.quota_status("k1")
        assert statuses["tokens.daily"] == "WARNED_80"
        assert statuses["tokens.monthly"] == "ACTIVE"
        assert statuses["cost.daily"] == "UNINITIALIZED"

        await gate.api_keys.check("k1", UsageEstimate(tokens=150))
        assert (await gate.api_keys.quota_status("k1"))["tokens.daily"] == "EXHAUSTED"

        await gate.api_keys.reset_quota("k1")
        statuses = await gate.api_keys.quota_status("k1")
        assert statuses["tokens.daily"] == "UNINITIALIZED"
        assert statuses["tokens.monthly"] == "ACTIVE"

    @pytest.mark.asyncio
    async def test_reset_rate_limit(self, gate):
        for _ in range(5):
            await gate.api_keys.check("k1")
        assert (await gate.api_keys.check("k1")).allowed is False

        await gate.api_keys.reset_rate_limit("k1")

        assert (await gate.api_keys.check("k1")).allowed is True
