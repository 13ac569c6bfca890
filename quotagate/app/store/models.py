"""Data models and admission rules for the shared counter store.

``ledger_denies`` and ``crossed_thresholds`` define the semantics every
backend applies inside its atomic section; the Redis Lua scripts in
``redis_lua`` mirror them line for line.
"""

import re
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Optional, Tuple

WARNED_FIELD_PREFIX = "warned:"
USED_FIELD = "used"

# Same pattern the apply-ledgers script accepts
_INTEGER_RE = re.compile(r"-?[0-9]+")


@dataclass(frozen=True)
class WindowOutcome:
    """Result of one atomic sliding-window hit.

    Attributes:
        allowed: Whether the inserted entry was kept
        count: Entries in the window including the tentative one
        oldest_ms: Score of the oldest surviving entry
    """
    allowed: bool
    count: int
    oldest_ms: int


@dataclass(frozen=True)
class FixedWindowOutcome:
    """Result of one fixed-window increment."""
    count: int
    ttl_ms: int


@dataclass(frozen=True)
class LedgerSpec:
    """One ledger touched by an atomic ledger update.

    Attributes:
        key: Store key of the ledger hash
        amount: Non-negative integer to add
        limit: Ceiling enforced when the update is enforcing; None for none
        expire_at: Epoch seconds of the next reset boundary
        thresholds: Warning thresholds (percent) to test-and-set
    """
    key: str
    amount: int
    limit: Optional[int]
    expire_at: int
    thresholds: Tuple[int, ...] = ()


@dataclass
class LedgerOutcome:
    """Result of an atomic ledger update.

    On denial nothing was written; ``used`` holds the values read.
    ``fired`` lists, per ledger, the thresholds whose warning bit this
    update set.
    """
    allowed: bool
    failed_index: Optional[int]
    used: List[int]
    malformed: List[bool]
    fired: List[Tuple[int, ...]] = field(default_factory=list)


@dataclass(frozen=True)
class LedgerReading:
    """Read-only view of a ledger hash."""
    key: str
    exists: bool
    used: int
    warned: FrozenSet[int] = frozenset()
    malformed: bool = False


def ledger_denies(used: int, amount: int, limit: Optional[int]) -> bool:
    """Whether consuming ``amount`` on top of ``used`` breaks ``limit``.

    A ledger at or beyond its limit is exhausted and denies even a
    zero-amount request; otherwise only a projected overrun denies.
    """
    if limit is None:
        return False
    if used + amount > limit:
        return True
    return amount == 0 and used >= limit


def crossed_thresholds(
    used: int,
    limit: Optional[int],
    thresholds: Iterable[int],
    warned: Iterable[int] = (),
) -> Tuple[int, ...]:
    """Thresholds reached by ``used`` whose warning has not been sent.

    Uses integer arithmetic: ``used * 100 >= threshold * limit``.
    """
    if not limit or limit <= 0:
        return ()
    already = set(warned)
    return tuple(
        t for t in sorted(set(thresholds))
        if t not in already and used * 100 >= t * limit
    )


def parse_counter(raw) -> Tuple[int, bool]:
    """Parse a stored counter value.

    Returns:
        Tuple of (value, malformed). Missing values are zero; values that
        are not integers are zero and flagged as malformed.
    """
    if raw is None:
        return 0, False
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw, False
    if isinstance(raw, str) and _INTEGER_RE.fullmatch(raw):
        return int(raw), False
    return 0, True
