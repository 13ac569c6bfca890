"""Admission control per workgroup.

A workgroup shares one budget between its members. Groups are often
configured with a monthly budget only; the daily cost limit is then
derived from it so that one day cannot spend the whole month.
"""

from dataclasses import replace

from .base import ScopeAdapter, ScopeLimits

DAYS_PER_BUDGET_MONTH = 30


class GroupAdapter(ScopeAdapter):
    """Limits tracked for a workgroup as a whole."""

    scope_type = "group"

    def derive_limits(self, limits: ScopeLimits) -> ScopeLimits:
        if limits.daily_cost_limit is None and limits.monthly_cost_limit is not None:
            return replace(
                limits,
                daily_cost_limit=limits.monthly_cost_limit // DAYS_PER_BUDGET_MONTH,
            )
        return limits
