"""Usage ledger CRUD operations."""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from quotagate.app.db.models import UsageLedger

_UPSERT_BY_DIALECT = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}

_CONFLICT_COLUMNS = ["scope_type", "identifier", "metric", "period_type", "period_key"]


async def upsert_usage(
    session: AsyncSession,
    scope_type: str,
    identifier: str,
    metric: str,
    period_type: str,
    period_key: str,
    used: int,
    limit: int | None = None,
    auto_commit: bool = True,
) -> None:
    """Insert or overwrite the total for one ledger period.

    Writing the same total twice leaves the row unchanged, so retried
    background writes are harmless.

    Args:
        session: Database session
        used: Absolute total for the period
        auto_commit: Whether to commit the transaction. Set to False
                     if you want to control transaction boundaries manually.
    """
    dialect = session.get_bind().dialect.name
    insert = _UPSERT_BY_DIALECT.get(dialect)
    if insert is None:
        raise NotImplementedError(f"Usage upsert is not supported on {dialect}")

    now = datetime.now(timezone.utc)
    stmt = insert(UsageLedger).values(
        scope_type=scope_type,
        identifier=identifier,
        metric=metric,
        period_type=period_type,
        period_key=period_key,
        used=used,
        usage_limit=limit,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=_CONFLICT_COLUMNS,
        set_={
            "used": stmt.excluded.used,
            "usage_limit": stmt.excluded.usage_limit,
            "updated_at": now,
        },
    )
    await session.execute(stmt)
    if auto_commit:
        await session.commit()


async def get_usage_rows(
    session: AsyncSession,
    scope_type: str,
    identifier: str,
    metric: str | None = None,
) -> list[UsageLedger]:
    """Get persisted ledger rows for an identifier, newest period first."""
    query = select(UsageLedger).where(
        UsageLedger.scope_type == scope_type,
        UsageLedger.identifier == identifier,
    )
    if metric is not None:
        query = query.where(UsageLedger.metric == metric)
    result = await session.execute(
        query.order_by(UsageLedger.period_type, UsageLedger.period_key.desc())
    )
    return list(result.scalars().all())
