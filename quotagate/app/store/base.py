"""Shared counter store interface."""

from abc import ABC, abstractmethod
from typing import Sequence

from quotagate.app.store.models import (
    FixedWindowOutcome,
    LedgerOutcome,
    LedgerReading,
    LedgerSpec,
    WindowOutcome,
)


class CounterStore(ABC):
    """Abstract base class for counter store backends.

    Every method that mutates state must be atomic with respect to every
    other caller of the same store, including callers in other processes.
    """

    @abstractmethod
    async def sliding_window_hit(
        self, key: str, now_ms: int, window_ms: int, max_requests: int, member: str
    ) -> WindowOutcome:
        """Purge, insert, count and conditionally roll back in one step.

        Args:
            key: Ordered-set key for the identifier
            now_ms: Current time in epoch milliseconds (entry score)
            window_ms: Window length in milliseconds
            max_requests: Maximum entries admitted per window
            member: Unique member name for this hit

        Returns:
            WindowOutcome with admission status and oldest entry score
        """
        pass

    @abstractmethod
    async def fixed_window_hit(self, key: str, window_ms: int) -> FixedWindowOutcome:
        """Increment a fixed-window counter, setting its TTL on creation."""
        pass

    @abstractmethod
    async def apply_ledgers(
        self, specs: Sequence[LedgerSpec], enforce: bool
    ) -> LedgerOutcome:
        """Atomically check and increment one or more ledgers.

        When ``enforce`` is set and any ledger would be broken, nothing is
        written. Otherwise every amount is added, every expiry refreshed,
        and warning bits for crossed thresholds are test-and-set.
        """
        pass

    @abstractmethod
    async def read_ledger(self, key: str) -> LedgerReading:
        """Read a ledger without mutating it."""
        pass

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""
        pass

    async def close(self) -> None:
        """Release connections."""
        pass
