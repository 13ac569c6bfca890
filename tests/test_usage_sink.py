"""Tests for durable usage persistence."""

import pytest

from quotagate.app.db.async_session import (
    build_async_engine,
    build_session_maker,
    init_usage_schema,
    session_scope,
)
from quotagate.app.db.crud import get_usage_rows, upsert_usage
from quotagate.app.db.sink import SqlUsageSink
from quotagate.app.services.dispatcher import UsageRecord


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'usage.db'}"


def record(used, period_type="daily", period_key="2026-10-17"):
    return UsageRecord(
        scope_type="apikey",
        identifier="k1",
        metric="tokens",
        period_type=period_type,
        period_key=period_key,
        used=used,
        limit=1000,
    )


class TestUpsertUsage:
    """Tests for the usage ledger upsert."""

    @pytest.mark.asyncio
    async def test_same_record_twice_is_idempotent(self, db_url):
        engine = build_async_engine(db_url)
        await init_usage_schema(engine)
        sink = SqlUsageSink(build_session_maker(engine))

        await sink.persist(record(300))
        await sink.persist(record(300))

        async with session_scope(build_session_maker(engine)) as session:
            rows = await get_usage_rows(session, "apikey", "k1")
        assert len(rows) == 1
        assert rows[0].used == 300
        assert rows[0].usage_limit == 1000
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_newer_total_overwrites(self, db_url):
        engine = build_async_engine(db_url)
        await init_usage_schema(engine)
        session_maker = build_session_maker(engine)
        sink = SqlUsageSink(session_maker)

        await sink.persist(record(300))
        await sink.persist(record(450))
        await sink.persist(record(450, "monthly", "2026-10"))

        async with session_scope(session_maker) as session:
            rows = await get_usage_rows(session, "apikey", "k1", metric="tokens")
        assert [(r.period_type, r.used) for r in rows] == [("daily", 450), ("monthly", 450)]
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_manual_commit(self, db_url):
        engine = build_async_engine(db_url)
        await init_usage_schema(engine)
        session_maker = build_session_maker(engine)

        async with session_scope(session_maker) as session:
            await upsert_usage(
                session, "group", "g1", "cost", "monthly", "2026-10", 5_000_000,
                auto_commit=False,
            )
            await session.rollback()

        async with session_scope(session_maker) as session:
            assert await get_usage_rows(session, "group", "g1") == []
        await engine.dispose()
