"""In-memory counter store for single-instance deployments and tests."""

import asyncio
import time
from typing import Callable, Dict, List, Sequence, Tuple

from quotagate.app.store.base import CounterStore
from quotagate.app.store.models import (
    USED_FIELD,
    WARNED_FIELD_PREFIX,
    FixedWindowOutcome,
    LedgerOutcome,
    LedgerReading,
    LedgerSpec,
    WindowOutcome,
    crossed_thresholds,
    ledger_denies,
    parse_counter,
)


class InMemoryCounterStore(CounterStore):
    """Process-local counter store.

    Each operation runs inside one ``asyncio.Lock`` critical section with
    no awaits in between, which gives the same all-or-nothing semantics as
    the Redis scripts for callers sharing this instance. Not shared across
    processes.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = asyncio.Lock()
        self._sorted_sets: Dict[str, Dict[str, int]] = {}
        self._counters: Dict[str, int] = {}
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._expires_at_ms: Dict[str, int] = {}

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _expire_if_due(self, key: str) -> None:
        expires_at = self._expires_at_ms.get(key)
        if expires_at is not None and expires_at <= self._now_ms():
            self._drop(key)

    def _drop(self, key: str) -> bool:
        existed = False
        for container in (self._sorted_sets, self._counters, self._hashes):
            if container.pop(key, None) is not None:
                existed = True
        self._expires_at_ms.pop(key, None)
        return existed

    async def sliding_window_hit(
        self, key: str, now_ms: int, window_ms: int, max_requests: int, member: str
    ) -> WindowOutcome:
        async with self._lock:
            self._expire_if_due(key)
            entries = self._sorted_sets.setdefault(key, {})

            cutoff = now_ms - window_ms
            for name, score in list(entries.items()):
                if score < cutoff:
                    del entries[name]

            entries[member] = now_ms
            count = len(entries)
            allowed = count <= max_requests
            if not allowed:
                del entries[member]

            oldest = min(entries.values()) if entries else now_ms
            self._expires_at_ms[key] = self._now_ms() + window_ms
            return WindowOutcome(allowed=allowed, count=count, oldest_ms=oldest)

    async def fixed_window_hit(self, key: str, window_ms: int) -> FixedWindowOutcome:
        async with self._lock:
            self._expire_if_due(key)
            count = self._counters.get(key, 0) + 1
            self._counters[key] = count
            if key not in self._expires_at_ms:
                self._expires_at_ms[key] = self._now_ms() + window_ms
            ttl_ms = self._expires_at_ms[key] - self._now_ms()
            return FixedWindowOutcome(count=count, ttl_ms=ttl_ms)

    async def apply_ledgers(
        self, specs: Sequence[LedgerSpec], enforce: bool
    ) -> LedgerOutcome:
        async with self._lock:
            used: List[int] = []
            malformed: List[bool] = []
            missing: List[bool] = []
            for spec in specs:
                self._expire_if_due(spec.key)
                raw = self._hashes.get(spec.key, {}).get(USED_FIELD)
                value, bad = parse_counter(raw)
                missing.append(raw is None)
                used.append(value)
                malformed.append(bad)

            if enforce:
                for index, spec in enumerate(specs):
                    if ledger_denies(used[index], spec.amount, spec.limit):
                        return LedgerOutcome(
                            allowed=False,
                            failed_index=index,
                            used=used,
                            malformed=malformed,
                            fired=[() for _ in specs],
                        )

            fired: List[Tuple[int, ...]] = []
            for index, spec in enumerate(specs):
                # Zero amounts never create a ledger
                if spec.amount == 0 and missing[index]:
                    fired.append(())
                    continue
                ledger = self._hashes.setdefault(spec.key, {})
                if malformed[index]:
                    new_used = spec.amount
                else:
                    new_used = used[index] + spec.amount
                ledger[USED_FIELD] = str(new_used)
                self._expires_at_ms[spec.key] = spec.expire_at * 1000
                used[index] = new_used

                warned = [
                    int(name[len(WARNED_FIELD_PREFIX):])
                    for name in ledger
                    if name.startswith(WARNED_FIELD_PREFIX)
                ]
                newly = crossed_thresholds(new_used, spec.limit, spec.thresholds, warned)
                for threshold in newly:
                    ledger[f"{WARNED_FIELD_PREFIX}{threshold}"] = "1"
                fired.append(newly)

            return LedgerOutcome(
                allowed=True, failed_index=None, used=used, malformed=malformed, fired=fired
            )

    async def read_ledger(self, key: str) -> LedgerReading:
        async with self._lock:
            self._expire_if_due(key)
            ledger = self._hashes.get(key)
            if ledger is None:
                return LedgerReading(key=key, exists=False, used=0)
            value, bad = parse_counter(ledger.get(USED_FIELD))
            warned = frozenset(
                int(name[len(WARNED_FIELD_PREFIX):])
                for name in ledger
                if name.startswith(WARNED_FIELD_PREFIX)
            )
            return LedgerReading(
                key=key, exists=True, used=value, warned=warned, malformed=bad
            )

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            removed = 0
            for key in keys:
                self._expire_if_due(key)
                if self._drop(key):
                    removed += 1
            return removed

    async def clear(self) -> None:
        """Clear all data."""
        async with self._lock:
            self._sorted_sets.clear()
            self._counters.clear()
            self._hashes.clear()
            self._expires_at_ms.clear()
