"""Numeric representation of consumable quantities.

Tokens and request counts are non-negative integers. Cost is stored as
integer micro-USD (1 USD = 1_000_000 micros) so ledgers never accumulate
floating point error. Conversions round half-up.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

MICROS_PER_USD = 1_000_000

Number = Union[int, float, str, Decimal]


def usd_to_micros(amount: Number) -> int:
    """Convert a USD amount to integer micro-USD, rounding half-up.

    Floats are converted through ``str`` so that ``0.1`` becomes exactly
    100000 micros.

    Examples:
        >>> usd_to_micros("0.002")
        2000
        >>> usd_to_micros(0.0000015)
        2
    """
    value = Decimal(str(amount)) if not isinstance(amount, Decimal) else amount
    micros = (value * MICROS_PER_USD).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    if micros < 0:
        raise ValueError("Cost amounts must not be negative")
    return int(micros)


def micros_to_usd(micros: int) -> Decimal:
    return Decimal(micros) / MICROS_PER_USD


def format_usd(micros: int) -> str:
    """Format micro-USD for display, rounded half-up to cents."""
    cents = micros_to_usd(micros).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return f"${cents}"


def validate_amount(amount: int, name: str = "amount") -> int:
    """Validate a ledger amount is a non-negative integer."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise TypeError(f"{name} must be an integer, got {type(amount).__name__}")
    if amount < 0:
        raise ValueError(f"{name} must not be negative")
    return amount
