"""Rate engine - prices desk, meeting-room and flat-rate bookings.

Pure calculation functions. No store access here; the caller supplies the
resource, duration, holder eligibility and available credits.

Every monetary intermediate (subtotal, discount, fee, total) is rounded to
cents before it is combined with the next term.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from datetime import time
from decimal import Decimal
from typing import Any

from .models import (
    PaymentMethod,
    Reservation,
    Resource,
    ResourceCategory,
    minutes_of_day,
)
from .money import ZERO, format_money, minutes_to_hours, to_hours, to_money


@dataclass(frozen=True)
class PricingPolicy:
    processing_fee: Decimal = Decimal("2.00")
    holder_discount_rate: Decimal = Decimal("0.5")
    day_pass_rate: Decimal = Decimal("25.00")

    def __post_init__(self) -> None:
        if self.processing_fee < 0:
            raise ValueError("processing_fee must be >= 0")
        if not Decimal("0") <= self.holder_discount_rate <= Decimal("1"):
            raise ValueError("holder_discount_rate must be between 0 and 1")


DEFAULT_POLICY = PricingPolicy()


@dataclass(frozen=True)
class PricingBreakdown:
    base_rate: Decimal
    duration_hours: Decimal
    subtotal: Decimal
    discount_amount: Decimal
    holder_discount_applied: bool
    processing_fee: Decimal
    total_price: Decimal
    effective_hourly_rate: Decimal
    payment_method: PaymentMethod = PaymentMethod.CARD
    credits_applied: Decimal = ZERO
    overage_hours: Decimal = ZERO
    overage_charge: Decimal = ZERO

    @property
    def net_subtotal(self) -> Decimal:
        """Subtotal after the holder discount, before the fee."""
        return to_money(self.subtotal - self.discount_amount)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["payment_method"] = self.payment_method.value
        data["net_subtotal"] = self.net_subtotal
        return data


def _discount(amount: Decimal, holder_eligible: bool, policy: PricingPolicy) -> Decimal:
    if not holder_eligible:
        return ZERO
    return to_money(amount * policy.holder_discount_rate)


def _effective_rate(rate: Decimal, holder_eligible: bool, policy: PricingPolicy) -> Decimal:
    return to_money(rate - _discount(rate, holder_eligible, policy))


def quote_hourly(
    resource: Resource,
    duration_hours: Decimal,
    *,
    holder_eligible: bool,
    policy: PricingPolicy = DEFAULT_POLICY,
) -> PricingBreakdown:
    """Price a non-credit resource billed per hour."""
    duration = to_hours(duration_hours)
    if duration <= 0:
        raise ValueError("duration_hours must be > 0")

    subtotal = to_money(resource.hourly_rate * duration)
    discount = _discount(subtotal, holder_eligible, policy)
    fee = to_money(policy.processing_fee)
    total = to_money(subtotal - discount + fee)

    return PricingBreakdown(
        base_rate=to_money(resource.hourly_rate),
        duration_hours=duration,
        subtotal=subtotal,
        discount_amount=discount,
        holder_discount_applied=holder_eligible,
        processing_fee=fee,
        total_price=total,
        effective_hourly_rate=_effective_rate(resource.hourly_rate, holder_eligible, policy),
    )


def quote_credit_resource(
    resource: Resource,
    duration_hours: Decimal,
    available_credits: Decimal,
    *,
    holder_eligible: bool,
    policy: PricingPolicy = DEFAULT_POLICY,
) -> PricingBreakdown:
    """Price a credit-eligible resource: credits first, overage at the base rate.

    No processing fee is charged when nothing is left to pay after the
    discount (fully credited bookings).
    """
    duration = to_hours(duration_hours)
    if duration <= 0:
        raise ValueError("duration_hours must be > 0")

    credits_applied = min(duration, max(to_hours(available_credits), ZERO))
    overage_hours = duration - credits_applied
    overage_charge = to_money(overage_hours * resource.hourly_rate)
    discount = _discount(overage_charge, holder_eligible, policy)
    fee = to_money(policy.processing_fee) if overage_charge > discount else ZERO
    total = to_money(overage_charge - discount + fee)

    if credits_applied == duration:
        payment_method = PaymentMethod.CREDITS
    else:
        # Mixed bookings settle the overage by card
        payment_method = PaymentMethod.CARD

    return PricingBreakdown(
        base_rate=to_money(resource.hourly_rate),
        duration_hours=duration,
        subtotal=overage_charge,
        discount_amount=discount,
        holder_discount_applied=holder_eligible,
        processing_fee=fee,
        total_price=total,
        effective_hourly_rate=_effective_rate(resource.hourly_rate, holder_eligible, policy),
        payment_method=payment_method,
        credits_applied=credits_applied,
        overage_hours=overage_hours,
        overage_charge=overage_charge,
    )


def quote_flat_rate(
    flat_rate: Decimal,
    *,
    holder_eligible: bool,
    policy: PricingPolicy = DEFAULT_POLICY,
) -> PricingBreakdown:
    """Price a flat-rate product such as a day pass."""
    subtotal = to_money(flat_rate)
    discount = _discount(subtotal, holder_eligible, policy)
    fee = to_money(policy.processing_fee)

    return PricingBreakdown(
        base_rate=subtotal,
        duration_hours=ZERO,
        subtotal=subtotal,
        discount_amount=discount,
        holder_discount_applied=holder_eligible,
        processing_fee=fee,
        total_price=to_money(subtotal - discount + fee),
        effective_hourly_rate=ZERO,
    )


def quote_membership_included(resource: Resource, duration_hours: Decimal) -> PricingBreakdown:
    """Desk time included in an active membership plan costs nothing."""
    return PricingBreakdown(
        base_rate=to_money(resource.hourly_rate),
        duration_hours=to_hours(duration_hours),
        subtotal=ZERO,
        discount_amount=ZERO,
        holder_discount_applied=False,
        processing_fee=ZERO,
        total_price=ZERO,
        effective_hourly_rate=ZERO,
        payment_method=PaymentMethod.MEMBERSHIP,
    )


def quote_reservation(
    resource: Resource,
    duration_hours: Decimal,
    *,
    holder_eligible: bool,
    available_credits: Decimal = ZERO,
    membership_includes_desk: bool = False,
    day_pass: bool = False,
    policy: PricingPolicy = DEFAULT_POLICY,
) -> PricingBreakdown:
    """Pick the pricing regime for *resource* and quote it."""
    if day_pass:
        flat = resource.flat_rate if resource.flat_rate is not None else policy.day_pass_rate
        return quote_flat_rate(flat, holder_eligible=holder_eligible, policy=policy)

    if resource.accepts_credits:
        return quote_credit_resource(
            resource,
            duration_hours,
            available_credits,
            holder_eligible=holder_eligible,
            policy=policy,
        )

    if membership_includes_desk and resource.category == ResourceCategory.DESK:
        return quote_membership_included(resource, duration_hours)

    return quote_hourly(
        resource, duration_hours, holder_eligible=holder_eligible, policy=policy
    )


def quote_extension(
    reservation: Reservation,
    resource: Resource,
    new_end_time: time,
    *,
    policy: PricingPolicy = DEFAULT_POLICY,
) -> PricingBreakdown:
    """Price the hours added by moving a reservation's end to *new_end_time*.

    Uses the holder flag captured on the reservation, never the holder's
    current status. Membership bookings extend for free.
    """
    added = minutes_to_hours(
        minutes_of_day(new_end_time) - minutes_of_day(reservation.end_time)
    )
    if added <= 0:
        raise ValueError("new_end_time must be after the current end_time")

    if reservation.payment_method == PaymentMethod.MEMBERSHIP:
        return quote_membership_included(resource, added)

    # Extra time on a credit resource is billed as overage, credits were
    # settled at booking time.
    breakdown = quote_hourly(
        resource,
        added,
        holder_eligible=reservation.holder_discount_applied,
        policy=policy,
    )
    if resource.accepts_credits:
        breakdown = replace(
            breakdown,
            overage_hours=added,
            overage_charge=breakdown.subtotal,
        )
    return breakdown


def pricing_summary(breakdown: PricingBreakdown) -> list[str]:
    """Human-readable lines describing a quote."""
    lines: list[str] = []

    if breakdown.credits_applied > 0:
        lines.append(f"Credits used: {breakdown.credits_applied} hours")

    if breakdown.overage_hours > 0:
        lines.append(
            f"Overage: {breakdown.overage_hours} hours @ "
            f"{format_money(breakdown.base_rate)}/hr = "
            f"{format_money(breakdown.overage_charge)}"
        )
    elif breakdown.subtotal > 0:
        lines.append(f"Subtotal: {format_money(breakdown.subtotal)}")

    if breakdown.discount_amount > 0:
        lines.append(f"Holder discount: -{format_money(breakdown.discount_amount)}")

    if breakdown.processing_fee > 0:
        lines.append(f"Processing fee: {format_money(breakdown.processing_fee)}")

    lines.append(f"Total: {format_money(breakdown.total_price)}")
    return lines
