"""Core utilities for quotagate."""

from quotagate.app.core.config import Settings, settings
from quotagate.app.core.logging import get_log_context, get_logger, setup_logging
from quotagate.app.core.observability import AdmissionObserver
from quotagate.app.core.periods import (
    DAILY,
    MONTHLY,
    Period,
    current_period,
    daily_period,
    monthly_period,
)
from quotagate.app.core.units import format_usd, micros_to_usd, usd_to_micros

__all__ = [
    "Settings",
    "settings",
    "get_logger",
    "get_log_context",
    "setup_logging",
    "AdmissionObserver",
    "DAILY",
    "MONTHLY",
    "Period",
    "current_period",
    "daily_period",
    "monthly_period",
    "format_usd",
    "micros_to_usd",
    "usd_to_micros",
]
