"""Denial reasons reported by admission checks."""

from enum import Enum


class DenialReason(str, Enum):
    RATE_LIMITED = "rate_limited"
    DAILY_QUOTA = "daily_quota"
    MONTHLY_QUOTA = "monthly_quota"
    COST_BUDGET = "cost_budget"
    STORE_UNAVAILABLE = "store_unavailable"
