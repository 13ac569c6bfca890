"""Calendar period helpers for daily and monthly quota ledgers."""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from quotagate.app.exceptions import ConfigurationError

DAILY = "daily"
MONTHLY = "monthly"


@dataclass(frozen=True)
class Period:
    """A calendar-aligned accounting period.

    Attributes:
        period_type: 'daily' or 'monthly'
        key: 'YYYY-MM-DD' for daily periods, 'YYYY-MM' for monthly periods
        starts_at: Aware datetime of the period's reset boundary
        resets_at: Aware datetime of the next reset boundary
    """
    period_type: str
    key: str
    starts_at: datetime
    resets_at: datetime

    @property
    def expire_at(self) -> int:
        """Epoch seconds at which the ledger for this period may expire."""
        return int(self.resets_at.timestamp())


def parse_reset_time(value: str) -> time:
    """Parse an 'HH:MM' reset time."""
    try:
        hours, minutes = value.split(":")
        return time(int(hours), int(minutes))
    except ValueError as e:
        raise ConfigurationError(f"Invalid reset time {value!r}, expected HH:MM") from e


@lru_cache(maxsize=64)
def get_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"Unknown timezone: {name}") from e


def _at(day: date, reset: time, zone: ZoneInfo) -> datetime:
    return datetime.combine(day, reset, tzinfo=zone)


def daily_period(now: datetime, reset_time: str = "00:00", tz: str = "UTC") -> Period:
    """Get the daily period containing ``now``.

    The period starts at ``reset_time`` local time. Before today's reset
    boundary the period still belongs to the previous calendar day.

    Examples:
        >>> p = daily_period(datetime(2026, 3, 2, 1, 0, tzinfo=timezone.utc), "02:00")
        >>> p.key
        '2026-03-01'
    """
    zone = get_zone(tz)
    reset = parse_reset_time(reset_time)
    local = now.astimezone(zone)

    boundary = _at(local.date(), reset, zone)
    if local >= boundary:
        start_day = local.date()
    else:
        start_day = local.date() - timedelta(days=1)

    return Period(
        period_type=DAILY,
        key=start_day.isoformat(),
        starts_at=_at(start_day, reset, zone),
        resets_at=_at(start_day + timedelta(days=1), reset, zone),
    )


def _next_month(day: date) -> date:
    if day.month == 12:
        return date(day.year + 1, 1, 1)
    return date(day.year, day.month + 1, 1)


def _previous_month(day: date) -> date:
    if day.month == 1:
        return date(day.year - 1, 12, 1)
    return date(day.year, day.month - 1, 1)


def monthly_period(now: datetime, reset_time: str = "00:00", tz: str = "UTC") -> Period:
    """Get the monthly period containing ``now``.

    Monthly periods start on the first day of the month at ``reset_time``.
    """
    zone = get_zone(tz)
    reset = parse_reset_time(reset_time)
    local = now.astimezone(zone)

    first = local.date().replace(day=1)
    if local < _at(first, reset, zone):
        first = _previous_month(first)

    return Period(
        period_type=MONTHLY,
        key=f"{first.year:04d}-{first.month:02d}",
        starts_at=_at(first, reset, zone),
        resets_at=_at(_next_month(first), reset, zone),
    )


def current_period(
    period_type: str, now: datetime, reset_time: str = "00:00", tz: str = "UTC"
) -> Period:
    if period_type == DAILY:
        return daily_period(now, reset_time, tz)
    if period_type == MONTHLY:
        return monthly_period(now, reset_time, tz)
    raise ConfigurationError(f"Unknown period type: {period_type}")


def utc_from_timestamp(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)
