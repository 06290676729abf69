"""
Money Utilities
Decimal helpers shared by the discount engine, payment store and PSP client.
Amounts are kept as Decimal (rupees) everywhere and stored as Decimal128;
integer minor units (paise) exist only at the PSP boundary.
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Optional

from bson.decimal128 import Decimal128

TWO_PLACES = Decimal("0.01")
ONE = Decimal("1")
HUNDRED = Decimal("100")


def to_decimal(value: Any) -> Optional[Decimal]:
    """Coerce str / int / float / Decimal128 into a Decimal (None passes through)"""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, float):
        # str() keeps the shortest repr, avoiding binary float expansion
        value = str(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError(f"Invalid amount: {value!r}")


def quantize_amount(value: Any) -> Decimal:
    """Round half-up to two fraction digits"""
    return to_decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Any) -> int:
    """Rupees -> paise, rounded half-up"""
    return int((to_decimal(amount) * HUNDRED).quantize(ONE, rounding=ROUND_HALF_UP))


def from_minor_units(minor: Any) -> Optional[Decimal]:
    """Paise -> rupees with two fraction digits"""
    if minor is None:
        return None
    return quantize_amount(Decimal(int(minor)) / HUNDRED)


def to_decimal128(value: Any) -> Optional[Decimal128]:
    """Decimal -> Decimal128 for storage (two fraction digits)"""
    if value is None:
        return None
    return Decimal128(quantize_amount(value))


def to_float(value: Any) -> Optional[float]:
    """Stored amount -> float for JSON responses"""
    if value is None:
        return None
    return float(quantize_amount(value))
