"""Daily and monthly quota ledgers."""

from .models import LedgerSnapshot, QuotaConfig, QuotaResult, UsageSnapshot
from .service import QuotaTracker

__all__ = [
    "LedgerSnapshot",
    "QuotaConfig",
    "QuotaResult",
    "UsageSnapshot",
    "QuotaTracker",
]
