"""Calendar-aligned quota ledgers for tokens, cost and request counts.

Each (metric, scope, identifier, period) has one ledger hash in the shared
store. Checks and commits go through a single atomic script that reads
every ledger involved, denies without writing when any enforced limit
would be broken, and otherwise increments all of them, refreshes their
expiry to the next reset boundary and sets warning bits for crossed
thresholds.
"""

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence, Tuple

from quotagate.app.core.logging import get_log_context
from quotagate.app.core.observability import AdmissionObserver
from quotagate.app.core.periods import (
    DAILY,
    MONTHLY,
    Period,
    daily_period,
    monthly_period,
    utc_from_timestamp,
)
from quotagate.app.core.units import validate_amount
from quotagate.app.exceptions import ConfigurationError
from quotagate.app.services.failsafe import FailOpenPolicy
from quotagate.app.services.reasons import DenialReason
from quotagate.app.store.base import CounterStore
from quotagate.app.store.keys import ledger_key
from quotagate.app.store.models import LedgerOutcome, LedgerSpec

from .models import LedgerSnapshot, QuotaConfig, QuotaResult, UsageSnapshot

if TYPE_CHECKING:
    from quotagate.app.services.escalation import EscalationEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Plan:
    amount: int
    config: QuotaConfig
    daily: Period
    monthly: Period
    daily_key: str
    monthly_key: str

    def specs(self) -> Tuple[LedgerSpec, LedgerSpec]:
        config = self.config
        return (
            LedgerSpec(
                key=self.daily_key,
                amount=self.amount,
                limit=config.daily_limit,
                expire_at=self.daily.expire_at,
                thresholds=config.warning_thresholds if config.daily_limit else (),
            ),
            LedgerSpec(
                key=self.monthly_key,
                amount=self.amount,
                limit=config.monthly_limit,
                expire_at=self.monthly.expire_at,
                thresholds=config.warning_thresholds if config.monthly_limit else (),
            ),
        )


class QuotaTracker:
    """Daily/monthly quota ledgers backed by a shared counter store.

    Args:
        store: Shared counter store
        policy: Failure policy applied to every store call
        escalation: Turns fired warning bits into warnings, if given
        observer: Receives data-integrity events
        clock: Returns the current time in epoch seconds
    """

    def __init__(
        self,
        store: CounterStore,
        policy: FailOpenPolicy,
        escalation: Optional["EscalationEngine"] = None,
        observer: Optional[AdmissionObserver] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._policy = policy
        self._escalation = escalation
        self._observer = observer or policy.observer
        self._clock = clock

    def _plan(self, identifier: str, amount: int, config: QuotaConfig) -> _Plan:
        now = utc_from_timestamp(self._clock())
        daily = daily_period(now, config.reset_time, config.timezone)
        monthly = monthly_period(now, config.reset_time, config.timezone)
        return _Plan(
            amount=amount,
            config=config,
            daily=daily,
            monthly=monthly,
            daily_key=ledger_key(
                config.key_namespace, config.scope_type, DAILY, identifier, daily.key
            ),
            monthly_key=ledger_key(
                config.key_namespace, config.scope_type, MONTHLY, identifier, monthly.key
            ),
        )

    @staticmethod
    def _validate(identifier: str, amount: int) -> None:
        if not identifier:
            raise ConfigurationError("identifier must not be empty")
        validate_amount(amount)

    async def check_quota(
        self, identifier: str, amount: int, config: QuotaConfig
    ) -> QuotaResult:
        """Check ``amount`` against the daily and monthly limits and reserve it.

        Denies without mutation when ``used + amount`` exceeds a limit, or
        when the ledger is already exhausted and ``amount`` is zero.
        """
        results = await self.check_quotas(identifier, [(amount, config)])
        return results[0]

    async def check_quotas(
        self, identifier: str, requests: Sequence[Tuple[int, QuotaConfig]]
    ) -> List[QuotaResult]:
        """Check several metrics for ``identifier`` in one atomic step.

        Either every amount is reserved or none is. On denial all results
        have ``allowed=False``; only the metric that failed carries a
        ``reason``.
        """
        for amount, _ in requests:
            self._validate(identifier, amount)
        plans = [self._plan(identifier, amount, config) for amount, config in requests]
        if not plans:
            return []

        return await self._policy.run(
            "check_quota",
            identifier,
            lambda: self._apply(identifier, plans, enforce=True),
            lambda fail_closed: [self._degraded(plan, fail_closed) for plan in plans],
        )

    async def record_usage(
        self, identifier: str, amount: int, config: QuotaConfig
    ) -> QuotaResult:
        """Add ``amount`` to the ledgers unconditionally."""
        self._validate(identifier, amount)
        plan = self._plan(identifier, amount, config)
        results = await self._policy.run(
            "record_usage",
            identifier,
            lambda: self._apply(identifier, [plan], enforce=False),
            lambda fail_closed: [self._degraded(plan, False)],
        )
        return results[0]

    async def _apply(
        self, identifier: str, plans: List[_Plan], enforce: bool
    ) -> List[QuotaResult]:
        specs = [spec for plan in plans for spec in plan.specs()]
        outcome = await self._store.apply_ledgers(specs, enforce=enforce)
        for index, spec in enumerate(specs):
            if outcome.malformed[index]:
                self._observer.data_integrity(spec.key)

        results = [
            self._result(identifier, plan, index, outcome)
            for index, plan in enumerate(plans)
        ]
        if outcome.allowed and self._escalation is not None:
            for plan, result in zip(plans, results):
                result.warnings = self._escalation.evaluate_thresholds(
                    identifier, result.snapshot, plan.config
                )
        return results

    def _result(
        self, identifier: str, plan: _Plan, index: int, outcome: LedgerOutcome
    ) -> QuotaResult:
        config = plan.config
        daily_at, monthly_at = 2 * index, 2 * index + 1
        snapshot = UsageSnapshot(
            identifier=identifier,
            metric=config.metric,
            scope_type=config.scope_type,
            daily=LedgerSnapshot(
                period_type=DAILY,
                period_key=plan.daily.key,
                used=outcome.used[daily_at],
                limit=config.daily_limit,
                resets_at=plan.daily.expire_at,
                fired=tuple(outcome.fired[daily_at]) if outcome.fired else (),
            ),
            monthly=LedgerSnapshot(
                period_type=MONTHLY,
                period_key=plan.monthly.key,
                used=outcome.used[monthly_at],
                limit=config.monthly_limit,
                resets_at=plan.monthly.expire_at,
                fired=tuple(outcome.fired[monthly_at]) if outcome.fired else (),
            ),
        )

        reason = None
        ledger = snapshot.daily
        if outcome.failed_index == daily_at:
            reason = DenialReason.DAILY_QUOTA
        elif outcome.failed_index == monthly_at:
            reason = DenialReason.MONTHLY_QUOTA
            ledger = snapshot.monthly

        if reason is not None:
            logger.info(
                f"Quota exceeded for {config.scope_type} {identifier}: "
                f"{ledger.used} + {plan.amount} > {ledger.limit} {config.metric}",
                extra=get_log_context(
                    identifier=identifier,
                    scope=config.scope_type,
                    metric=config.metric,
                    period=ledger.period_type,
                    reason=reason.value,
                ),
            )

        return QuotaResult(
            allowed=outcome.allowed,
            used=ledger.used,
            limit=ledger.limit,
            remaining=ledger.remaining,
            reset_at=ledger.resets_at,
            metric=config.metric,
            reason=reason,
            period=ledger.period_type,
            period_key=ledger.period_key,
            monthly_used=snapshot.monthly.used,
            monthly_limit=config.monthly_limit,
            snapshot=snapshot,
        )

    def _degraded(self, plan: _Plan, fail_closed: bool) -> QuotaResult:
        config = plan.config
        return QuotaResult(
            allowed=not fail_closed,
            used=0,
            limit=config.daily_limit,
            remaining=config.daily_limit,
            reset_at=plan.daily.expire_at,
            metric=config.metric,
            reason=DenialReason.STORE_UNAVAILABLE if fail_closed else None,
            period=DAILY,
            period_key=plan.daily.key,
            monthly_limit=config.monthly_limit,
            degraded=True,
        )

    async def reset_quota(
        self, identifier: str, period: str, config: QuotaConfig
    ) -> int:
        """Clear the current period's ledger and warning bits. Idempotent.

        Args:
            period: 'daily', 'monthly' or 'all'

        Raises:
            StoreUnavailableError: If the store cannot be reached
        """
        if period not in (DAILY, MONTHLY, "all"):
            raise ConfigurationError(f"Unknown period: {period}")
        plan = self._plan(identifier, 0, config)
        keys = []
        if period in (DAILY, "all"):
            keys.append(plan.daily_key)
        if period in (MONTHLY, "all"):
            keys.append(plan.monthly_key)

        removed = await self._policy.run_strict(
            "reset_quota", lambda: self._store.delete(*keys)
        )
        logger.info(
            f"Reset {period} {config.metric} quota for {config.scope_type} {identifier}",
            extra=get_log_context(
                identifier=identifier,
                scope=config.scope_type,
                metric=config.metric,
                period=period,
            ),
        )
        return removed

    async def get_usage(self, identifier: str, config: QuotaConfig) -> UsageSnapshot:
        """Read daily and monthly totals without mutating them."""
        if not identifier:
            raise ConfigurationError("identifier must not be empty")
        plan = self._plan(identifier, 0, config)

        async def _read() -> UsageSnapshot:
            daily = await self._store.read_ledger(plan.daily_key)
            monthly = await self._store.read_ledger(plan.monthly_key)
            for reading in (daily, monthly):
                if reading.malformed:
                    self._observer.data_integrity(reading.key)
            return UsageSnapshot(
                identifier=identifier,
                metric=config.metric,
                scope_type=config.scope_type,
                daily=LedgerSnapshot(
                    period_type=DAILY,
                    period_key=plan.daily.key,
                    used=daily.used,
                    limit=config.daily_limit,
                    resets_at=plan.daily.expire_at,
                    warned=daily.warned,
                    exists=daily.exists,
                ),
                monthly=LedgerSnapshot(
                    period_type=MONTHLY,
                    period_key=plan.monthly.key,
                    used=monthly.used,
                    limit=config.monthly_limit,
                    resets_at=plan.monthly.expire_at,
                    warned=monthly.warned,
                    exists=monthly.exists,
                ),
            )

        def _unknown(fail_closed: bool) -> UsageSnapshot:
            return UsageSnapshot(
                identifier=identifier,
                metric=config.metric,
                scope_type=config.scope_type,
                daily=LedgerSnapshot(
                    DAILY, plan.daily.key, 0, config.daily_limit,
                    plan.daily.expire_at, exists=False,
                ),
                monthly=LedgerSnapshot(
                    MONTHLY, plan.monthly.key, 0, config.monthly_limit,
                    plan.monthly.expire_at, exists=False,
                ),
                degraded=True,
            )

        return await self._policy.run("get_usage", identifier, _read, _unknown)
