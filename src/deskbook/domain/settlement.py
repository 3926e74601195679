"""Settlement engine - reconciles booked vs actual usage at checkout.

The rate used is always the effective hourly rate captured on the
reservation at booking time (holder discount already applied). The
processing fee from the original quote is never refunded or recomputed.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from .errors import InvalidTimeRange
from .models import Reservation
from .money import ZERO, to_hours, to_money


class SettlementKind(str, Enum):
    REFUND = "refund"
    OVERAGE = "overage"
    NONE = "none"


@dataclass(frozen=True)
class Settlement:
    kind: SettlementKind
    booked_hours: Decimal
    actual_hours: Decimal
    effective_rate: Decimal
    refund_amount: Decimal = ZERO
    overage_charge: Decimal = ZERO
    credit_hours_refund: Decimal = ZERO
    final_charge: Decimal | None = None
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


def actual_duration_hours(check_in: datetime, check_out: datetime) -> Decimal:
    """Hours between check-in and check-out, rounded to two decimals."""
    if check_out < check_in:
        raise InvalidTimeRange(
            "check_out must not be before check_in",
            {"check_in": check_in.isoformat(), "check_out": check_out.isoformat()},
        )
    seconds = Decimal(str((check_out - check_in).total_seconds()))
    return to_hours(seconds / Decimal(3600))


def settle(
    booked_hours: Decimal,
    actual_hours: Decimal,
    effective_rate: Decimal,
) -> Settlement:
    """Refund unused hours or charge extra hours at *effective_rate*."""
    booked = to_hours(booked_hours)
    actual = to_hours(actual_hours)
    rate = to_money(effective_rate)

    if actual < booked:
        return Settlement(
            kind=SettlementKind.REFUND,
            booked_hours=booked,
            actual_hours=actual,
            effective_rate=rate,
            refund_amount=to_money((booked - actual) * rate),
            description=f"Used {actual} of {booked} hours booked. Refund issued.",
        )

    if actual > booked:
        extra = actual - booked
        return Settlement(
            kind=SettlementKind.OVERAGE,
            booked_hours=booked,
            actual_hours=actual,
            effective_rate=rate,
            overage_charge=to_money(extra * rate),
            description=f"Used {actual} hours ({extra} hours overage). Additional charge applied.",
        )

    return Settlement(
        kind=SettlementKind.NONE,
        booked_hours=booked,
        actual_hours=actual,
        effective_rate=rate,
        description=f"Used exactly {actual} hours as booked.",
    )


def settle_reservation(reservation: Reservation, actual_hours: Decimal) -> Settlement:
    """Settle a reservation against its booking-time rate.

    Unused time is refunded first from the paid (overage) hours; whatever
    remains was covered by credits and comes back as credit hours instead
    of money. Extra time is always charged at the effective rate.
    """
    booked = reservation.duration_hours
    actual = to_hours(actual_hours)
    paid_hours = booked - reservation.credits_used
    rate = reservation.effective_hourly_rate

    if actual < booked:
        unused = booked - actual
        money_hours = min(unused, paid_hours)
        credit_hours = unused - money_hours
        base = settle(money_hours, ZERO, rate) if money_hours > 0 else None
        refund = base.refund_amount if base is not None else ZERO
        settlement = Settlement(
            kind=SettlementKind.REFUND,
            booked_hours=booked,
            actual_hours=actual,
            effective_rate=to_money(rate),
            refund_amount=refund,
            credit_hours_refund=to_hours(credit_hours),
            description=f"Used {actual} of {booked} hours booked. Refund issued.",
        )
    else:
        settlement = settle(booked, actual, rate)

    final_charge = to_money(
        reservation.total_price - settlement.refund_amount + settlement.overage_charge
    )
    return replace(settlement, final_charge=final_charge)
