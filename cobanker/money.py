"""
Monetary Amount Module

Parses and rounds amounts to currency precision. NEVER uses float arithmetic:
floats are converted through their string form before quantizing.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Any

from .errors import ValidationError

getcontext().prec = 28

CURRENCY_PLACES = 2
_QUANTUM = Decimal('0.1') ** CURRENCY_PLACES
ZERO = Decimal('0.00')


def to_amount(value: Any, field: str = "amount") -> Decimal:
    """
    Convert a value to a Decimal rounded to currency precision.

    Raises:
        ValidationError: if the value is not a finite number
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return amount.quantize(_QUANTUM, rounding=ROUND_HALF_UP)


def positive_amount(value: Any, field: str = "amount") -> Decimal:
    """Parse an amount that must be strictly positive after rounding"""
    amount = to_amount(value, field)
    if amount <= 0:
        raise ValidationError(f"{field} must be greater than zero")
    return amount


def non_negative_amount(value: Any, field: str = "amount") -> Decimal:
    """Parse an amount that may be zero but not negative"""
    amount = to_amount(value, field)
    if amount < 0:
        raise ValidationError(f"{field} cannot be negative")
    return amount


def format_amount(amount: Decimal) -> str:
    """Render an amount with exactly two decimal places"""
    return str(amount.quantize(_QUANTUM, rounding=ROUND_HALF_UP))
