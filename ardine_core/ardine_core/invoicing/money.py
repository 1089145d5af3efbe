"""Integer-cent arithmetic shared by time entries and invoice items."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from fractions import Fraction

SECONDS_PER_HOUR = 3600
_QUANTITY_PLACES = Decimal("0.01")


def round_half_up(value: Decimal | Fraction | int) -> int:
    """Round to the nearest integer, halves away from zero."""
    if isinstance(value, Fraction):
        value = Decimal(value.numerator) / Decimal(value.denominator)
    return int(Decimal(value).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def item_amount_cents(quantity: Decimal | Fraction | int, rate_cents: int) -> int:
    """``round(quantity * rate_cents)``."""
    if isinstance(quantity, Fraction):
        return round_half_up(quantity * rate_cents)
    return round_half_up(Decimal(quantity) * rate_cents)


def hours_from_seconds(seconds: int) -> Fraction:
    """Exact hours for a duration, without intermediate rounding."""
    return Fraction(seconds, SECONDS_PER_HOUR)


def quantity_from_seconds(seconds: int) -> Decimal:
    """Hours rounded to the two places stored on invoice items."""
    exact = hours_from_seconds(seconds)
    return (Decimal(exact.numerator) / Decimal(exact.denominator)).quantize(_QUANTITY_PLACES, rounding=ROUND_HALF_UP)


def tax_amount_cents(subtotal_cents: int, tax_rate_percent: Decimal | int) -> int:
    """``round(subtotal * tax_rate / 100)``."""
    return round_half_up(Decimal(subtotal_cents) * Decimal(tax_rate_percent) / Decimal(100))
