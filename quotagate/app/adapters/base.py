"""Shared behaviour of the scope adapters.

A scope adapter binds the generic limiter and tracker to one scope type:
it resolves the identifier's limits, runs the rate check and the quota
checks in order, and turns their results into a single admission
decision with response headers.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from quotagate.app.core.config import Settings, settings as default_settings
from quotagate.app.core.logging import get_log_context
from quotagate.app.core.periods import DAILY
from quotagate.app.core.units import Number, format_usd, usd_to_micros, validate_amount
from quotagate.app.exceptions import AdmissionDeniedError, ConfigurationError
from quotagate.app.services.dispatcher import BackgroundDispatcher, UsageRecord
from quotagate.app.services.escalation import quota_status
from quotagate.app.services.quota_tracker import (
    QuotaConfig,
    QuotaResult,
    QuotaTracker,
    UsageSnapshot,
)
from quotagate.app.services.reasons import DenialReason
from quotagate.app.services.window_limiter import (
    SLIDING,
    RateLimitConfig,
    RateLimitResult,
    WindowLimiter,
)

logger = logging.getLogger(__name__)

TOKENS = "tokens"
COST = "cost"
REQUESTS = "requests"


@dataclass(frozen=True)
class ScopeLimits:
    """Configured limits for one identifier.

    Cost limits are integer micro-USD; use ``ScopeLimits.with_usd`` to
    build them from decimal dollars.
    """
    window_ms: int
    max_requests: int
    daily_token_limit: Optional[int] = None
    monthly_token_limit: Optional[int] = None
    daily_cost_limit: Optional[int] = None
    monthly_cost_limit: Optional[int] = None
    warning_thresholds: Tuple[int, ...] = (80, 95)
    reset_time: str = "00:00"
    timezone: str = "UTC"
    algorithm: str = SLIDING

    @classmethod
    def with_usd(
        cls,
        daily_cost_limit_usd: Optional[Number] = None,
        monthly_cost_limit_usd: Optional[Number] = None,
        **kwargs,
    ) -> "ScopeLimits":
        return cls(
            daily_cost_limit=(
                usd_to_micros(daily_cost_limit_usd)
                if daily_cost_limit_usd is not None else None
            ),
            monthly_cost_limit=(
                usd_to_micros(monthly_cost_limit_usd)
                if monthly_cost_limit_usd is not None else None
            ),
            **kwargs,
        )

    @classmethod
    def from_settings(cls, config: Settings) -> "ScopeLimits":
        """Conservative defaults used when a scope has no configuration."""
        return cls.with_usd(
            daily_cost_limit_usd=config.default_daily_cost_limit_usd,
            monthly_cost_limit_usd=config.default_monthly_cost_limit_usd,
            window_ms=config.default_rate_limit_window_ms,
            max_requests=config.default_rate_limit_max_requests,
            daily_token_limit=config.default_daily_token_limit,
            monthly_token_limit=config.default_monthly_token_limit,
            warning_thresholds=tuple(config.default_warning_thresholds),
            reset_time=config.quota_reset_time,
            timezone=config.quota_timezone,
        )


class ScopeConfigProvider(Protocol):
    """Looks up the limits configured for an identifier."""

    async def get_limits(self, scope_type: str, identifier: str) -> Optional[ScopeLimits]:
        ...


class StaticConfigProvider:
    """Config provider backed by a dictionary, keyed by (scope_type, identifier)."""

    def __init__(self, limits: Optional[Dict[Tuple[str, str], ScopeLimits]] = None):
        self._limits = dict(limits or {})

    def set_limits(self, scope_type: str, identifier: str, limits: ScopeLimits) -> None:
        self._limits[(scope_type, identifier)] = limits

    async def get_limits(self, scope_type: str, identifier: str) -> Optional[ScopeLimits]:
        return self._limits.get((scope_type, identifier))


@dataclass(frozen=True)
class UsageEstimate:
    """Expected consumption of a request, reserved at admission."""
    tokens: int = 0
    cost_micros: int = 0

    @classmethod
    def from_usd(cls, tokens: int = 0, cost_usd: Number = 0) -> "UsageEstimate":
        return cls(tokens=tokens, cost_micros=usd_to_micros(cost_usd))

    def __post_init__(self):
        validate_amount(self.tokens, "tokens")
        validate_amount(self.cost_micros, "cost_micros")


@dataclass(frozen=True)
class UsageAmounts:
    """Actual consumption of a completed request."""
    tokens: int = 0
    cost_micros: int = 0
    requests: int = 1

    @classmethod
    def from_usd(
        cls, tokens: int = 0, cost_usd: Number = 0, requests: int = 1
    ) -> "UsageAmounts":
        return cls(tokens=tokens, cost_micros=usd_to_micros(cost_usd), requests=requests)

    def __post_init__(self):
        validate_amount(self.tokens, "tokens")
        validate_amount(self.cost_micros, "cost_micros")
        validate_amount(self.requests, "requests")


@dataclass(frozen=True)
class UsageCommit:
    """Background message committing a completed request's usage."""
    scope_type: str
    identifier: str
    actual: UsageAmounts
    reserved: UsageEstimate = field(default_factory=UsageEstimate)


@dataclass
class AdmissionDecision:
    """Outcome of an admission check for one identifier."""
    allowed: bool
    scope_type: str
    identifier: str
    reason: Optional[DenialReason] = None
    rate: Optional[RateLimitResult] = None
    tokens: Optional[QuotaResult] = None
    cost: Optional[QuotaResult] = None
    reserved: UsageEstimate = field(default_factory=UsageEstimate)
    checked_at: Optional[int] = None

    @property
    def degraded(self) -> bool:
        return any(r is not None and r.degraded for r in (self.rate, self.tokens, self.cost))

    @property
    def retry_after(self) -> Optional[int]:
        if self.allowed:
            return None
        if self.rate is not None and self.rate.retry_after_seconds is not None:
            return self.rate.retry_after_seconds
        failed = self.cost if self.reason == DenialReason.COST_BUDGET else self.tokens
        if failed is not None and failed.reason is not None and self.checked_at is not None:
            if self.reason != DenialReason.STORE_UNAVAILABLE:
                return max(1, failed.reset_at - self.checked_at)
        return None

    @property
    def message(self) -> str:
        if self.allowed:
            return "Request admitted"
        if self.reason == DenialReason.RATE_LIMITED:
            return "Rate limit exceeded. Please try again later."
        if self.reason == DenialReason.COST_BUDGET and self.cost is not None:
            return (
                f"Cost budget exceeded: {format_usd(self.cost.used)} of "
                f"{format_usd(self.cost.limit or 0)} used this {self.cost.period} period"
            )
        if self.tokens is not None and self.reason in (
            DenialReason.DAILY_QUOTA, DenialReason.MONTHLY_QUOTA
        ):
            return (
                f"Token quota exceeded: {self.tokens.used}/{self.tokens.limit} "
                f"tokens used this {self.tokens.period} period"
            )
        return "Request denied: usage limits temporarily unavailable"

    def headers(self) -> Dict[str, str]:
        """Rate-limit and quota response headers."""
        headers: Dict[str, str] = {}
        if self.rate is not None:
            headers["X-RateLimit-Limit"] = str(self.rate.limit)
            headers["X-RateLimit-Remaining"] = str(self.rate.remaining)
            headers["X-RateLimit-Reset"] = str(math.ceil(self.rate.reset_at / 1000))
        if self.tokens is not None and self.tokens.limit is not None:
            headers["X-Token-Limit"] = str(self.tokens.limit)
            headers["X-Token-Used"] = str(self.tokens.used)
            headers["X-Token-Remaining"] = str(self.tokens.remaining)
        if self.cost is not None and self.cost.limit is not None:
            headers["X-Cost-Limit"] = format_usd(self.cost.limit)
            headers["X-Cost-Used"] = format_usd(self.cost.used)
            headers["X-Cost-Remaining"] = format_usd(self.cost.remaining or 0)
        retry_after = self.retry_after
        if retry_after is not None:
            headers["Retry-After"] = str(retry_after)
        return headers

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "scope_type": self.scope_type,
            "identifier": self.identifier,
            "reason": self.reason.value if self.reason else None,
            "retry_after": self.retry_after,
            "degraded": self.degraded,
        }


class ScopeAdapter:
    """Admission control bound to one scope type.

    Args:
        limiter: Window limiter for request rate
        tracker: Quota tracker for tokens, cost and request counts
        dispatcher: Background dispatcher for usage commits and records
        config_provider: Resolves per-identifier limits; defaults apply
            when it is missing, returns nothing or fails
        config: Settings providing namespaces and default limits
        persist_usage: Submit a UsageRecord per ledger after each commit
        clock: Returns the current time in epoch seconds
    """

    scope_type = "global"

    def __init__(
        self,
        limiter: WindowLimiter,
        tracker: QuotaTracker,
        dispatcher: BackgroundDispatcher,
        config_provider: Optional[ScopeConfigProvider] = None,
        config: Optional[Settings] = None,
        persist_usage: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._limiter = limiter
        self._tracker = tracker
        self._dispatcher = dispatcher
        self._provider = config_provider
        self._settings = config or default_settings
        self._persist_usage = persist_usage
        self._clock = clock
        self._defaults = ScopeLimits.from_settings(self._settings)

    # Configuration

    async def resolve_limits(self, identifier: str) -> ScopeLimits:
        """Get the identifier's limits, falling back to conservative defaults."""
        if self._provider is None:
            return self._defaults
        try:
            limits = await self._provider.get_limits(self.scope_type, identifier)
        except Exception as e:
            logger.warning(
                f"Config lookup failed for {self.scope_type} {identifier}, "
                f"using default limits: {e}",
                extra=get_log_context(
                    identifier=identifier,
                    scope=self.scope_type,
                    error_type=type(e).__name__,
                ),
            )
            return self._defaults
        if limits is None:
            return self._defaults
        return self.derive_limits(limits)

    def derive_limits(self, limits: ScopeLimits) -> ScopeLimits:
        """Hook for scope-specific limit derivation."""
        return limits

    def rate_config(self, limits: ScopeLimits) -> RateLimitConfig:
        return RateLimitConfig(
            window_ms=limits.window_ms,
            max_requests=limits.max_requests,
            key_namespace=self._settings.rate_limit_namespace,
            scope_type=self.scope_type,
            algorithm=limits.algorithm,
        )

    def quota_config(self, limits: ScopeLimits, metric: str) -> QuotaConfig:
        if metric == TOKENS:
            daily, monthly = limits.daily_token_limit, limits.monthly_token_limit
            namespace, thresholds = self._settings.token_namespace, limits.warning_thresholds
        elif metric == COST:
            daily, monthly = limits.daily_cost_limit, limits.monthly_cost_limit
            namespace, thresholds = self._settings.cost_namespace, limits.warning_thresholds
        elif metric == REQUESTS:
            daily, monthly = None, None
            namespace, thresholds = self._settings.request_namespace, ()
        else:
            raise ConfigurationError(f"Unknown metric: {metric}")
        return QuotaConfig(
            daily_limit=daily,
            monthly_limit=monthly,
            warning_thresholds=thresholds,
            reset_time=limits.reset_time,
            timezone=limits.timezone,
            key_namespace=namespace,
            scope_type=self.scope_type,
        )

    # Admission

    async def check(
        self, identifier: str, estimate: Optional[UsageEstimate] = None
    ) -> AdmissionDecision:
        """Run the rate check, then reserve the estimated tokens and cost.

        The rate check short-circuits on denial. Token and cost quotas are
        checked together, so a cost denial never leaves a token reservation
        behind. A metric with a limit is checked even when its estimate is
        zero, so an exhausted ledger denies until rollover or reset.
        """
        estimate = estimate or UsageEstimate()
        checked_at = int(self._clock())
        limits = await self.resolve_limits(identifier)

        rate = await self._limiter.check_rate_limit(identifier, self.rate_config(limits))
        if not rate.allowed:
            return AdmissionDecision(
                allowed=False,
                scope_type=self.scope_type,
                identifier=identifier,
                reason=rate.reason,
                rate=rate,
                checked_at=checked_at,
            )

        metrics: List[str] = []
        requests = []
        for metric, amount in ((TOKENS, estimate.tokens), (COST, estimate.cost_micros)):
            config = self.quota_config(limits, metric)
            if amount > 0 or config.daily_limit is not None or config.monthly_limit is not None:
                metrics.append(metric)
                requests.append((amount, config))

        results = dict(zip(metrics, await self._tracker.check_quotas(identifier, requests)))
        tokens, cost = results.get(TOKENS), results.get(COST)

        reason = None
        for metric, result in results.items():
            if result.reason is None:
                continue
            if metric == COST and result.reason != DenialReason.STORE_UNAVAILABLE:
                reason = DenialReason.COST_BUDGET
            else:
                reason = result.reason
            break

        allowed = all(r.allowed for r in results.values())
        if not allowed:
            logger.info(
                f"Admission denied for {self.scope_type} {identifier}",
                extra=get_log_context(
                    identifier=identifier,
                    scope=self.scope_type,
                    reason=reason.value if reason else None,
                ),
            )
        return AdmissionDecision(
            allowed=allowed,
            scope_type=self.scope_type,
            identifier=identifier,
            reason=reason,
            rate=rate,
            tokens=tokens,
            cost=cost,
            reserved=self._reserved(estimate, tokens, cost) if allowed else UsageEstimate(),
            checked_at=checked_at,
        )

    @staticmethod
    def _reserved(
        estimate: UsageEstimate, tokens: Optional[QuotaResult], cost: Optional[QuotaResult]
    ) -> UsageEstimate:
        # Degraded checks reserved nothing in the store
        return UsageEstimate(
            tokens=estimate.tokens if tokens is not None and not tokens.degraded else 0,
            cost_micros=estimate.cost_micros if cost is not None and not cost.degraded else 0,
        )

    async def enforce(
        self, identifier: str, estimate: Optional[UsageEstimate] = None
    ) -> AdmissionDecision:
        """Check admission, raising on denial.

        Raises:
            AdmissionDeniedError: If the request is denied
        """
        decision = await self.check(identifier, estimate)
        if not decision.allowed:
            raise AdmissionDeniedError(
                reason=decision.reason.value if decision.reason else "denied",
                message=decision.message,
                retry_after=decision.retry_after,
                headers=decision.headers(),
            )
        return decision

    # Usage accounting

    def record_usage(
        self,
        identifier: str,
        amounts: UsageAmounts,
        decision: Optional[AdmissionDecision] = None,
    ) -> bool:
        """Hand a completed request's usage to the background dispatcher.

        Never blocks the caller.

        Returns:
            False if the dispatcher dropped the commit
        """
        reserved = decision.reserved if decision is not None else UsageEstimate()
        return self._dispatcher.submit(UsageCommit(
            scope_type=self.scope_type,
            identifier=identifier,
            actual=amounts,
            reserved=reserved,
        ))

    async def commit_usage(self, commit: UsageCommit) -> Dict[str, QuotaResult]:
        """Apply a usage commit to the ledgers.

        Only consumption beyond the admission reservation is added, so a
        request is never counted twice. Reservations larger than the actual
        usage are not refunded.
        """
        identifier = commit.identifier
        limits = await self.resolve_limits(identifier)
        amounts = (
            (TOKENS, max(0, commit.actual.tokens - commit.reserved.tokens)),
            (COST, max(0, commit.actual.cost_micros - commit.reserved.cost_micros)),
            (REQUESTS, commit.actual.requests),
        )

        results: Dict[str, QuotaResult] = {}
        for metric, amount in amounts:
            result = await self._tracker.record_usage(
                identifier, amount, self.quota_config(limits, metric)
            )
            results[metric] = result
            if self._persist_usage and result.snapshot is not None and not result.degraded:
                self._submit_records(result.snapshot)
        return results

    def _submit_records(self, snapshot: UsageSnapshot) -> None:
        for ledger in (snapshot.daily, snapshot.monthly):
            self._dispatcher.submit(UsageRecord(
                scope_type=snapshot.scope_type,
                identifier=snapshot.identifier,
                metric=snapshot.metric,
                period_type=ledger.period_type,
                period_key=ledger.period_key,
                used=ledger.used,
                limit=ledger.limit,
            ))

    # Administration and reporting

    async def reset_quota(self, identifier: str, period: str = DAILY) -> int:
        """Clear the identifier's token, cost and request ledgers for a period."""
        limits = await self.resolve_limits(identifier)
        removed = 0
        for metric in (TOKENS, COST, REQUESTS):
            removed += await self._tracker.reset_quota(
                identifier, period, self.quota_config(limits, metric)
            )
        return removed

    async def reset_rate_limit(self, identifier: str) -> int:
        limits = await self.resolve_limits(identifier)
        return await self._limiter.reset_rate_limit(identifier, self.rate_config(limits))

    async def _snapshots(self, identifier: str) -> Dict[str, UsageSnapshot]:
        limits = await self.resolve_limits(identifier)
        return {
            metric: await self._tracker.get_usage(
                identifier, self.quota_config(limits, metric)
            )
            for metric in (TOKENS, COST, REQUESTS)
        }

    async def usage_stats(self, identifier: str) -> dict:
        """Daily and monthly usage of every metric, without mutation."""
        snapshots = await self._snapshots(identifier)
        tokens, cost, requests = snapshots[TOKENS], snapshots[COST], snapshots[REQUESTS]
        return {
            "scope_type": self.scope_type,
            "identifier": identifier,
            "tokens": tokens.to_dict(),
            "cost": {
                **cost.to_dict(),
                "daily_used_usd": format_usd(cost.daily.used),
                "monthly_used_usd": format_usd(cost.monthly.used),
            },
            "requests": requests.to_dict(),
            "degraded": any(s.degraded for s in snapshots.values()),
        }

    async def quota_status(self, identifier: str) -> Dict[str, str]:
        """Ledger states keyed by '<metric>.<period>', e.g. 'tokens.daily'."""
        snapshots = await self._snapshots(identifier)
        statuses = {}
        for metric in (TOKENS, COST):
            for ledger in (snapshots[metric].daily, snapshots[metric].monthly):
                status = quota_status(ledger.used, ledger.limit, ledger.warned, ledger.exists)
                statuses[f"{metric}.{ledger.period_type}"] = str(status)
        return statuses
