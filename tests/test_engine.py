"""End-to-end tests for the QuotaGate composition root."""

import json

import pytest

from quotagate.app.adapters import ScopeLimits, StaticConfigProvider, UsageAmounts, UsageEstimate
from quotagate.app.core.config import Settings
from quotagate.app.core.observability import BACKGROUND_FAILED
from quotagate.app.db.async_session import build_async_engine, build_session_maker, session_scope
from quotagate.app.db.crud import get_usage_rows
from quotagate.app.engine import QuotaGate, build_store
from quotagate.app.exceptions import ConfigurationError
from quotagate.app.store import InMemoryCounterStore, RedisCounterStore


class CollectingNotifier:
    def __init__(self):
        self.warnings = []

    async def deliver(self, warning):
        self.warnings.append(warning)


class FailingNotifier:
    def __init__(self):
        self.attempts = 0

    async def deliver(self, warning):
        self.attempts += 1
        raise ConnectionError("webhook unreachable")


class CollectingSink:
    def __init__(self):
        self.records = []

    async def persist(self, record):
        self.records.append(record)


@pytest.fixture
def provider():
    return StaticConfigProvider({
        ("apikey", "k1"): ScopeLimits(
            window_ms=60_000,
            max_requests=10,
            daily_token_limit=1000,
            monthly_token_limit=20_000,
        ),
    })


class TestQuotaGate:

    @pytest.mark.asyncio
    async def test_request_lifecycle(self, store, test_settings, observer, provider, clock):
        notifier = CollectingNotifier()
        sink = CollectingSink()
        gate = QuotaGate(
            store=store,
            config=test_settings,
            observer=observer,
            config_provider=provider,
            notifier=notifier,
            sink=sink,
            clock=clock,
        )
        gate.start()

        decision = await gate.api_keys.check("k1", UsageEstimate(tokens=850))
        assert decision.allowed is True
        gate.api_keys.record_usage("k1", UsageAmounts(tokens=850), decision)
        await gate.dispatcher.join()

        assert [w.name for w in notifier.warnings] == ["daily80"]
        assert len(sink.records) == 6
        tokens_daily = [
            r for r in sink.records if r.metric == "tokens" and r.period_type == "daily"
        ]
        assert tokens_daily[0].used == 850
        assert tokens_daily[0].limit == 1000
        await gate.close()

    @pytest.mark.asyncio
    async def test_warnings_not_queued_without_notifier(
        self, store, test_settings, provider, clock
    ):
        gate = QuotaGate(
            store=store, config=test_settings, config_provider=provider, clock=clock
        )

        decision = await gate.api_keys.check("k1", UsageEstimate(tokens=990))

        assert [w.name for w in decision.tokens.warnings] == ["daily80", "daily95"]
        assert gate.dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_undeliverable_warning_dead_lettered_and_not_refired(
        self, store, test_settings, observer, provider, clock
    ):
        notifier = FailingNotifier()
        gate = QuotaGate(
            store=store,
            config=test_settings,
            observer=observer,
            config_provider=provider,
            notifier=notifier,
            clock=clock,
        )
        gate.start()

        first = await gate.api_keys.check("k1", UsageEstimate(tokens=850))
        await gate.dispatcher.join()

        assert first.allowed is True
        assert notifier.attempts == test_settings.background_max_retries
        assert observer.count(BACKGROUND_FAILED) == 1
        entries = [
            json.loads(line)
            for line in test_settings.dead_letter_path.read_text().splitlines()
        ]
        assert [e["kind"] for e in entries] == ["QuotaWarning"]
        assert entries[0]["payload"]["threshold_percent"] == 80
        assert entries[0]["payload"]["identifier"] == "k1"

        second = await gate.api_keys.check("k1", UsageEstimate(tokens=50))
        third = await gate.api_keys.check("k1", UsageEstimate(tokens=10))
        await gate.dispatcher.join()

        assert [w.name for w in second.tokens.warnings] == []
        assert [w.name for w in third.tokens.warnings] == []
        assert observer.count(BACKGROUND_FAILED) == 1
        assert len(test_settings.dead_letter_path.read_text().splitlines()) == 1
        await gate.close()

    def test_adapter_lookup(self, store, test_settings):
        gate = QuotaGate(store=store, config=test_settings)

        assert gate.adapter("group") is gate.groups
        with pytest.raises(ConfigurationError):
            gate.adapter("tenant")

    @pytest.mark.asyncio
    async def test_from_settings_persists_usage(self, tmp_path):
        db_url = f"sqlite+aiosqlite:///{tmp_path / 'usage.db'}"
        config = Settings(
            persistence_enabled=True,
            database_url=db_url,
            background_retry_delay=0.001,
            dead_letter_path=tmp_path / "dead_letter.jsonl",
        )

        gate = await QuotaGate.from_settings(config)
        gate.start()
        decision = await gate.users.check("u1", UsageEstimate(tokens=10))
        gate.users.record_usage("u1", UsageAmounts(tokens=25), decision)
        await gate.close()

        engine = build_async_engine(db_url)
        async with session_scope(build_session_maker(engine)) as session:
            rows = await get_usage_rows(session, "user", "u1", metric="tokens")
        assert {r.period_type: r.used for r in rows} == {"daily": 25, "monthly": 25}
        await engine.dispose()


class TestBuildStore:

    def test_memory_store_when_redis_disabled(self):
        assert isinstance(build_store(Settings(redis_enabled=False)), InMemoryCounterStore)

    def test_redis_store_when_enabled(self):
        store = build_store(Settings(redis_enabled=True, redis_url="redis://localhost:6399/0"))
        assert isinstance(store, RedisCounterStore)
