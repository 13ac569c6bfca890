"""Shared counter store backends."""

from quotagate.app.store.base import CounterStore
from quotagate.app.store.memory import InMemoryCounterStore
from quotagate.app.store.models import (
    FixedWindowOutcome,
    LedgerOutcome,
    LedgerReading,
    LedgerSpec,
    WindowOutcome,
)
from quotagate.app.store.redis_store import RedisCounterStore

__all__ = [
    "CounterStore",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "FixedWindowOutcome",
    "LedgerOutcome",
    "LedgerReading",
    "LedgerSpec",
    "WindowOutcome",
]
