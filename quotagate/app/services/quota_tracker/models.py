"""Quota tracking data models."""

from dataclasses import dataclass, field
from typing import Any, FrozenSet, List, Optional, Tuple

from quotagate.app.core.periods import DAILY, get_zone, parse_reset_time
from quotagate.app.exceptions import ConfigurationError
from quotagate.app.services.reasons import DenialReason


@dataclass(frozen=True)
class QuotaConfig:
    """Quota for one metric of one scope.

    Attributes:
        daily_limit: Daily ceiling; None tracks usage without enforcing
        monthly_limit: Monthly ceiling; None tracks usage without enforcing
        warning_thresholds: Percentages of a limit that trigger a warning
        reset_time: Local 'HH:MM' at which periods roll over
        timezone: IANA timezone of ``reset_time``
        key_namespace: Metric namespace, e.g. 'tokens' or 'cost'
        scope_type: Scope segment of the store key
    """
    daily_limit: Optional[int]
    monthly_limit: Optional[int] = None
    warning_thresholds: Tuple[int, ...] = (80, 95)
    reset_time: str = "00:00"
    timezone: str = "UTC"
    key_namespace: str = "tokens"
    scope_type: str = "global"

    def __post_init__(self):
        for name in ("daily_limit", "monthly_limit"):
            value = getattr(self, name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ConfigurationError(f"{name} must be a non-negative integer")
        for threshold in self.warning_thresholds:
            if threshold <= 0 or threshold > 100:
                raise ConfigurationError("Warning thresholds must be within 1..100")
        object.__setattr__(
            self, "warning_thresholds", tuple(sorted(set(self.warning_thresholds)))
        )
        parse_reset_time(self.reset_time)
        get_zone(self.timezone)

    @property
    def metric(self) -> str:
        return self.key_namespace


@dataclass(frozen=True)
class LedgerSnapshot:
    """State of one ledger after a check, commit or read.

    Attributes:
        period_type: 'daily' or 'monthly'
        period_key: 'YYYY-MM-DD' or 'YYYY-MM'
        used: Consumption in the period
        limit: Ceiling, or None when not enforced
        resets_at: Epoch seconds of the next reset boundary
        fired: Thresholds whose warning bit was set by this operation
        warned: Thresholds already warned in this period (reads only)
    """
    period_type: str
    period_key: str
    used: int
    limit: Optional[int]
    resets_at: int
    fired: Tuple[int, ...] = ()
    warned: FrozenSet[int] = frozenset()
    exists: bool = True

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(0, self.limit - self.used)


@dataclass(frozen=True)
class UsageSnapshot:
    """Daily and monthly state of one metric for one identifier."""
    identifier: str
    metric: str
    scope_type: str
    daily: LedgerSnapshot
    monthly: LedgerSnapshot
    degraded: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "identifier": self.identifier,
            "metric": self.metric,
            "scope_type": self.scope_type,
            "daily_used": self.daily.used,
            "daily_limit": self.daily.limit,
            "daily_period": self.daily.period_key,
            "monthly_used": self.monthly.used,
            "monthly_limit": self.monthly.limit,
            "monthly_period": self.monthly.period_key,
            "degraded": self.degraded,
        }


@dataclass
class QuotaResult:
    """Result of a quota check or commit.

    ``used``/``limit``/``remaining`` describe the daily ledger unless the
    monthly ledger caused the denial. ``reset_at`` is in epoch seconds.
    """
    allowed: bool
    used: int
    limit: Optional[int]
    remaining: Optional[int]
    reset_at: int
    metric: str = "tokens"
    reason: Optional[DenialReason] = None
    period: str = DAILY
    period_key: str = ""
    monthly_used: Optional[int] = None
    monthly_limit: Optional[int] = None
    degraded: bool = False
    warnings: List[Any] = field(default_factory=list)
    snapshot: Optional[UsageSnapshot] = None
