"""Early-warning escalation for quota ledgers.

Warning bits are set by the store inside the same atomic script that
increments usage, so exactly one caller observes each (period,
threshold) crossing no matter how many requests cross it concurrently.
This module turns those fired bits into warnings and hands them to the
background dispatcher. Delivery failure never unsets a bit.
"""

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Iterable, List, Optional, Protocol

from quotagate.app.core.logging import get_log_context
from quotagate.app.services.dispatcher import BackgroundDispatcher
from quotagate.app.services.quota_tracker.models import QuotaConfig, UsageSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaWarning:
    """A one-shot warning that usage crossed a threshold in a period."""
    identifier: str
    scope_type: str
    metric: str
    period_type: str
    threshold_percent: int
    current_usage: int
    limit: int
    period_key: str

    @property
    def name(self) -> str:
        """Warning name, e.g. 'daily80'."""
        return f"{self.period_type}{self.threshold_percent}"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["name"] = self.name
        return data


class WarningNotifier(Protocol):
    """Delivers warnings to an operator-facing channel."""

    async def deliver(self, warning: QuotaWarning) -> None:
        ...


class QuotaState(str, Enum):
    UNINITIALIZED = "UNINITIALIZED"
    ACTIVE = "ACTIVE"
    WARNED = "WARNED"
    EXHAUSTED = "EXHAUSTED"


@dataclass(frozen=True)
class QuotaStatus:
    """Lifecycle state of one ledger.

    ``threshold`` is the highest threshold warned so far when the state
    is WARNED.
    """
    state: QuotaState
    threshold: Optional[int] = None

    def __str__(self) -> str:
        if self.state == QuotaState.WARNED and self.threshold is not None:
            return f"WARNED_{self.threshold}"
        return self.state.value


def quota_status(
    used: int,
    limit: Optional[int],
    warned: Iterable[int] = (),
    exists: bool = True,
) -> QuotaStatus:
    """Derive the ledger state.

    UNINITIALIZED -> ACTIVE -> WARNED_<pct> -> EXHAUSTED; a reset returns
    the ledger to UNINITIALIZED.

    Examples:
        >>> str(quota_status(850, 1000, warned=[80]))
        'WARNED_80'
    """
    if not exists:
        return QuotaStatus(QuotaState.UNINITIALIZED)
    if limit is not None and used >= limit:
        return QuotaStatus(QuotaState.EXHAUSTED)
    warned = sorted(warned)
    if warned:
        return QuotaStatus(QuotaState.WARNED, warned[-1])
    return QuotaStatus(QuotaState.ACTIVE)


class EscalationEngine:
    """Turns fired warning bits into warnings and dispatches them.

    Args:
        dispatcher: Background dispatcher receiving each warning, if any
    """

    def __init__(self, dispatcher: Optional[BackgroundDispatcher] = None) -> None:
        self._dispatcher = dispatcher

    def evaluate_thresholds(
        self, identifier: str, snapshot: Optional[UsageSnapshot], config: QuotaConfig
    ) -> List[QuotaWarning]:
        """Build and submit warnings for the bits fired by one commit.

        Returns:
            The warnings raised, in period then threshold order
        """
        if snapshot is None:
            return []

        warnings = []
        for ledger in (snapshot.daily, snapshot.monthly):
            if not ledger.limit:
                continue
            for threshold in sorted(ledger.fired):
                if threshold not in config.warning_thresholds:
                    continue
                warnings.append(QuotaWarning(
                    identifier=identifier,
                    scope_type=config.scope_type,
                    metric=config.metric,
                    period_type=ledger.period_type,
                    threshold_percent=threshold,
                    current_usage=ledger.used,
                    limit=ledger.limit,
                    period_key=ledger.period_key,
                ))

        for warning in warnings:
            logger.warning(
                f"Quota warning {warning.name} for {warning.scope_type} {identifier}: "
                f"{warning.current_usage}/{warning.limit} {warning.metric}",
                extra=get_log_context(
                    identifier=identifier,
                    scope=warning.scope_type,
                    metric=warning.metric,
                    period=warning.period_type,
                    event="quota_warning",
                ),
            )
            if self._dispatcher is not None:
                self._dispatcher.submit(warning)
        return warnings
