"""Money and duration helpers.

All monetary values are Decimal quantized to cents with ROUND_HALF_UP,
the granularity at which amounts are persisted and displayed.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Decimal | int | float | str) -> Decimal:
    """Round *value* to two decimal places."""
    if not isinstance(value, Decimal):
        # str() first so floats like 2.675 keep their printed value
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_hours(value: Decimal | int | float | str) -> Decimal:
    """Normalize an hour count to Decimal, rounded to two places."""
    return to_money(value)


def minutes_to_hours(minutes: int) -> Decimal:
    return to_hours(Decimal(minutes) / Decimal(60))


def format_money(amount: Decimal) -> str:
    return f"${to_money(amount):.2f}"
