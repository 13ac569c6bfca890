from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    pass


class UsageLedger(Base):
    """Durable copy of a quota ledger's total for one period.

    One row per (scope_type, identifier, metric, period_type, period_key);
    rows are overwritten with the latest absolute total.
    """
    __tablename__ = "usage_ledger"
    __table_args__ = (
        UniqueConstraint(
            "scope_type", "identifier", "metric", "period_type", "period_key",
            name="uq_usage_ledger_period",
        ),
        Index("idx_usage_ledger_identifier", "scope_type", "identifier"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scope_type: Mapped[str] = mapped_column(String(32))
    identifier: Mapped[str] = mapped_column(String(255))
    metric: Mapped[str] = mapped_column(String(32))  # tokens | cost | requests
    period_type: Mapped[str] = mapped_column(String(16))  # daily | monthly
    period_key: Mapped[str] = mapped_column(String(16))
    used: Mapped[int] = mapped_column(BigInteger, default=0)
    usage_limit: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
