"""
Money Arithmetic Module

Decimal helpers for all monetary math in the engine. NEVER uses float for
monetary values: amounts are Decimal, rounded to cents with ROUND_HALF_UP.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Any, Iterable

from .exceptions import InvalidAmount

# Set global decimal context for financial precision
getcontext().prec = 28

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def quantize(amount: Decimal) -> Decimal:
    """Round an amount to cents, half up"""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def round_points(value: Decimal) -> int:
    """Round a score component to whole points, half up"""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_decimal(value: Any, field_name: str = "amount") -> Decimal:
    """
    Convert user input (str, int, Decimal) to Decimal.

    Floats are converted through their string representation so 0.1 stays 0.1.
    Raises InvalidAmount for anything that is not a finite number.
    """
    if isinstance(value, bool) or value is None:
        raise InvalidAmount(f"{field_name} must be a number", {"field": field_name})
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise InvalidAmount(f"{field_name} is not a valid number: {value!r}", {"field": field_name})
    if not result.is_finite():
        raise InvalidAmount(f"{field_name} must be finite", {"field": field_name})
    return result


def parse_money(value: Any, field_name: str = "amount") -> Decimal:
    """
    Parse a positive money amount with at most 2 decimal places.

    Raises:
        InvalidAmount: non-numeric, not positive, or sub-cent precision
    """
    amount = to_decimal(value, field_name)
    if amount <= 0:
        raise InvalidAmount(f"{field_name} must be positive, got {amount}", {"field": field_name})
    if amount != amount.quantize(CENT):
        raise InvalidAmount(f"{field_name} has more than 2 decimal places: {amount}", {"field": field_name})
    return quantize(amount)


def money_sum(amounts: Iterable[Decimal]) -> Decimal:
    total = ZERO
    for amount in amounts:
        total += amount
    return quantize(total)


def percentage(part: Decimal, whole: Decimal) -> Decimal:
    """part / whole * 100, or 0 when whole is 0"""
    if not whole:
        return Decimal("0")
    return Decimal(part) * Decimal("100") / Decimal(whole)
