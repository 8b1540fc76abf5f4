"""Decimal helpers for money amounts and fractional quantities."""
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

_TWO_PLACES = Decimal("0.01")
_THREE_PLACES = Decimal("0.001")

ZERO = Decimal("0")

# Amounts closer than this are treated as equal (floating price recalculation noise).
MONEY_TOLERANCE = Decimal("0.01")


def to_decimal(value: Any) -> Decimal:
    """Convert *value* to a Decimal without rounding; raises ValueError on junk."""
    if isinstance(value, Decimal):
        return value
    if value is None or isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    try:
        return Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"not a number: {value!r}") from exc


def to_money(value: Any) -> Decimal:
    """Convert *value* to a Decimal rounded to two places."""
    return to_decimal(value).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)


def to_quantity(value: Any) -> Decimal:
    """Convert *value* to a Decimal rounded to three places (fractional units)."""
    return to_decimal(value).quantize(_THREE_PLACES, rounding=ROUND_HALF_UP)


def money_equal(a: Any, b: Any) -> bool:
    return abs(to_decimal(a) - to_decimal(b)) < MONEY_TOLERANCE


def as_float(value: Decimal | None) -> float | None:
    """JSON-friendly rendering."""
    if value is None:
        return None
    return float(value)
