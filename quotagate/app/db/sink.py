"""Durable persistence of usage totals."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quotagate.app.core.logging import get_log_context, get_logger
from quotagate.app.db.async_session import session_scope
from quotagate.app.db.crud import upsert_usage
from quotagate.app.services.dispatcher import UsageRecord

logger = get_logger(__name__)


class SqlUsageSink:
    """Usage sink writing absolute ledger totals to the ``usage_ledger`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def persist(self, record: UsageRecord) -> None:
        async with session_scope(self._session_maker) as session:
            await upsert_usage(
                session,
                scope_type=record.scope_type,
                identifier=record.identifier,
                metric=record.metric,
                period_type=record.period_type,
                period_key=record.period_key,
                used=record.used,
                limit=record.limit,
            )
        logger.debug(
            f"Persisted {record.metric} {record.period_type} total {record.used}",
            extra=get_log_context(
                identifier=record.identifier,
                scope=record.scope_type,
                metric=record.metric,
                period=record.period_type,
            ),
        )
