"""Reservation flows - availability, pricing, credits and lifecycle over the stores.

Every write re-runs its guards inside the store transaction that performs
it. A window seen as free by an earlier read is never trusted at commit
time.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import date, datetime, time
from decimal import Decimal

from deskbook.infra.settings import EngineSettings
from deskbook.infra.stores import ReservationStore
from deskbook.infra.time import utc_now
from deskbook.observability.correlation import correlation_scope

from . import lifecycle
from .availability import (
    Slot,
    check_slot_available,
    generate_available_slots,
    validate_window,
)
from .credits import CreditLedger
from .errors import (
    CreditLedgerInvariantViolation,
    EngineError,
    IllegalTransition,
    InvalidTimeRange,
    ReservationNotFound,
    SlotUnavailable,
)
from .lifecycle import CancellationResult, CheckoutResult, Transition
from .models import (
    CreditType,
    PaymentMethod,
    Reservation,
    ReservationStatus,
    Resource,
    minutes_of_day,
)
from .money import ZERO, minutes_to_hours, to_money
from .pricing import PricingBreakdown, quote_extension, quote_reservation
from .requests import BookingRequest

logger = logging.getLogger(__name__)

_DEFAULT_SETTINGS = EngineSettings()


@dataclass(frozen=True)
class BookingResult:
    reservation: Reservation | None = None
    pricing: PricingBreakdown | None = None
    error: EngineError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ExtensionResult:
    reservation: Reservation | None = None
    pricing: PricingBreakdown | None = None
    error: EngineError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def requires_additional_payment(self) -> bool:
        return self.pricing is not None and self.pricing.total_price > 0


def _not_found(reservation_id: str) -> ReservationNotFound:
    return ReservationNotFound(f"Reservation {reservation_id} not found")


def _log(message: str, **fields) -> None:
    logger.info(message, extra={"extra_fields": fields})


# ── Availability and quotes ──────────────────────────────


def find_available_slots(
    store: ReservationStore,
    resource: Resource,
    booking_date: date,
    min_duration_hours: Decimal | None = None,
    *,
    settings: EngineSettings = _DEFAULT_SETTINGS,
) -> list[Slot]:
    """Slots for one resource and date, straight from the store."""
    reservations = store.fetch_active_reservations(resource.id, booking_date)
    return generate_available_slots(
        resource,
        reservations,
        booking_date,
        min_duration_hours,
        hours=settings.operating_hours,
    )


def quote_booking(
    request: BookingRequest,
    resource: Resource,
    *,
    available_credits: Decimal = ZERO,
    settings: EngineSettings = _DEFAULT_SETTINGS,
) -> PricingBreakdown | EngineError:
    """Validate the requested window and price it without reserving anything."""
    error = validate_window(
        resource, request.start_time, request.end_time, hours=settings.operating_hours
    )
    if error is not None:
        return error
    return quote_reservation(
        resource,
        request.duration_hours,
        holder_eligible=request.holder_eligible,
        available_credits=available_credits,
        membership_includes_desk=request.membership_includes_desk,
        day_pass=request.day_pass,
        policy=settings.pricing_policy,
    )


# ── Create ───────────────────────────────────────────────


def create_reservation(
    store: ReservationStore,
    ledger: CreditLedger,
    request: BookingRequest,
    resource: Resource,
    *,
    reservation_id: str | None = None,
    now: datetime | None = None,
    settings: EngineSettings = _DEFAULT_SETTINGS,
    correlation_id: str | None = None,
) -> BookingResult:
    """Reserve a window and price it.

    This function:
    1. Validates time order, operating hours and duration bounds
    2. Returns the stored reservation when *reservation_id* was already booked
    3. Locks the resource/date and re-checks overlap inside the transaction
    4. Deducts meeting-room credits (idempotent per reservation id)
    5. Prices the booking with the credits actually applied
    6. Inserts the reservation: pending, or confirmed when nothing is due

    Credits deducted by this call are refunded when the insert fails.
    """
    if request.resource_id != resource.id:
        raise ValueError("request.resource_id does not match resource.id")

    now = now or utc_now()
    reservation_id = reservation_id or str(uuid.uuid4())

    with correlation_scope(correlation_id):
        error = validate_window(
            resource, request.start_time, request.end_time, hours=settings.operating_hours
        )
        if error is not None:
            return BookingResult(error=error)

        held_before = ZERO
        credits_applied = ZERO
        try:
            with store.transaction() as session:
                stored = session.get(reservation_id, lock=True)
                if stored is not None:
                    if stored.user_id != request.user_id:
                        raise ValueError(
                            f"reservation id {reservation_id} belongs to another user"
                        )
                    _log("duplicate booking ignored", reservation_id=reservation_id)
                    return BookingResult(reservation=stored)

                existing = session.fetch_active_reservations(
                    resource.id, request.booking_date, lock=True
                )
                conflict = check_slot_available(
                    existing,
                    resource_id=resource.id,
                    start=request.start_time,
                    end=request.end_time,
                )
                if conflict is not None:
                    return BookingResult(error=conflict)

                if resource.accepts_credits and not request.day_pass:
                    held_before = ledger.held(
                        request.user_id,
                        CreditType.MEETING_ROOM,
                        reservation_id,
                        on=request.booking_date,
                    )
                    credits_applied = ledger.deduct(
                        request.user_id,
                        CreditType.MEETING_ROOM,
                        request.duration_hours,
                        reservation_id,
                        on=request.booking_date,
                        now=now,
                    )

                pricing = quote_reservation(
                    resource,
                    request.duration_hours,
                    holder_eligible=request.holder_eligible,
                    available_credits=credits_applied,
                    membership_includes_desk=request.membership_includes_desk,
                    day_pass=request.day_pass,
                    policy=settings.pricing_policy,
                )
                reservation = Reservation(
                    id=reservation_id,
                    user_id=request.user_id,
                    resource_id=resource.id,
                    booking_date=request.booking_date,
                    start_time=request.start_time,
                    end_time=request.end_time,
                    status=(
                        ReservationStatus.CONFIRMED
                        if pricing.total_price == 0
                        else ReservationStatus.PENDING
                    ),
                    holder_discount_applied=pricing.holder_discount_applied,
                    credits_used=pricing.credits_applied,
                    overage_hours=pricing.overage_hours,
                    subtotal=pricing.subtotal,
                    discount_amount=pricing.discount_amount,
                    processing_fee=pricing.processing_fee,
                    total_price=pricing.total_price,
                    effective_hourly_rate=pricing.effective_hourly_rate,
                    payment_method=pricing.payment_method,
                    created_at=now,
                )
                session.insert(reservation)
        except Exception as exc:
            deducted = credits_applied - held_before
            if deducted > 0:
                ledger.refund(
                    request.user_id,
                    CreditType.MEETING_ROOM,
                    deducted,
                    reservation_id,
                    on=request.booking_date,
                    now=now,
                )
            if isinstance(exc, (SlotUnavailable, CreditLedgerInvariantViolation)):
                return BookingResult(error=exc)
            raise

        _log(
            "reservation created",
            reservation_id=reservation.id,
            resource_id=resource.id,
            status=reservation.status.value,
            total_price=str(reservation.total_price),
            credits_used=str(reservation.credits_used),
        )
        return BookingResult(reservation=reservation, pricing=pricing)


# ── Lifecycle ────────────────────────────────────────────


def confirm_reservation(store: ReservationStore, reservation_id: str) -> Transition:
    """Mark a pending reservation confirmed once its payment is captured."""
    with store.transaction() as session:
        reservation = session.get(reservation_id, lock=True)
        if reservation is None:
            return Transition(error=_not_found(reservation_id))
        result = lifecycle.confirm(reservation)
        if result.ok:
            session.update(result.reservation)
    return result


def check_in_reservation(
    store: ReservationStore,
    reservation_id: str,
    *,
    user_id: str,
    now: datetime | None = None,
    settings: EngineSettings = _DEFAULT_SETTINGS,
) -> Transition:
    now = now or utc_now()
    with store.transaction() as session:
        reservation = session.get(reservation_id, lock=True)
        if reservation is None or reservation.user_id != user_id:
            return Transition(error=_not_found(reservation_id))

        result = lifecycle.check_in(
            reservation,
            now=now,
            checked_in=session.find_checked_in(user_id),
            policy=settings.lifecycle_policy,
        )
        if result.ok:
            session.update(result.reservation)

    if result.ok:
        _log("reservation checked in", reservation_id=reservation_id)
    return result


def check_out_reservation(
    store: ReservationStore,
    ledger: CreditLedger,
    reservation_id: str,
    *,
    now: datetime | None = None,
) -> CheckoutResult:
    """Complete a checked-in reservation and settle its actual usage.

    Credit hours left unused come back to the user's balance before the
    status change commits; the money refund or overage is returned for the
    caller to execute.
    """
    now = now or utc_now()
    with store.transaction() as session:
        reservation = session.get(reservation_id, lock=True)
        if reservation is None:
            return CheckoutResult(error=_not_found(reservation_id))
        result = lifecycle.check_out(reservation, now=now)
        if not result.ok:
            return result

        settlement = result.settlement
        if settlement.credit_hours_refund > 0:
            try:
                ledger.refund(
                    reservation.user_id,
                    CreditType.MEETING_ROOM,
                    settlement.credit_hours_refund,
                    reservation_id,
                    on=reservation.booking_date,
                    now=now,
                    idempotency_key="checkout",
                )
            except CreditLedgerInvariantViolation as exc:
                return CheckoutResult(error=exc)
        session.update(result.reservation)

    _log(
        "reservation checked out",
        reservation_id=reservation_id,
        settlement=settlement.kind.value,
        refund_amount=str(settlement.refund_amount),
        overage_charge=str(settlement.overage_charge),
        credit_hours_refund=str(settlement.credit_hours_refund),
    )
    return result


def cancel_reservation(
    store: ReservationStore,
    ledger: CreditLedger,
    reservation_id: str,
    *,
    now: datetime | None = None,
    settings: EngineSettings = _DEFAULT_SETTINGS,
) -> CancellationResult:
    """Cancel a pending/confirmed reservation, releasing its window.

    Idempotent: cancelling twice reports already_cancelled without refunding
    again.
    """
    now = now or utc_now()
    with store.transaction() as session:
        reservation = session.get(reservation_id, lock=True)
        if reservation is None:
            return CancellationResult(error=_not_found(reservation_id))
        result = lifecycle.cancel(reservation, now=now, policy=settings.lifecycle_policy)
        if not result.ok or result.already_cancelled:
            return result

        if result.credit_hours_refund > 0:
            try:
                ledger.refund(
                    reservation.user_id,
                    CreditType.MEETING_ROOM,
                    result.credit_hours_refund,
                    reservation_id,
                    on=reservation.booking_date,
                    now=now,
                    idempotency_key="cancellation",
                )
            except CreditLedgerInvariantViolation as exc:
                return CancellationResult(error=exc)
        session.update(result.reservation)

    _log(
        "reservation cancelled",
        reservation_id=reservation_id,
        refund_eligible=result.refund_eligible,
        refund_amount=str(result.refund_amount),
    )
    return result


def extend_reservation(
    store: ReservationStore,
    reservation_id: str,
    new_end_time: time,
    resource: Resource,
    *,
    settings: EngineSettings = _DEFAULT_SETTINGS,
) -> ExtensionResult:
    """Move a checked-in reservation's end later and price the added hours.

    The added window must be free (ignoring the reservation itself) and the
    new total duration must stay within the resource bounds. The extra
    charge uses the holder flag captured at booking time.
    """
    with store.transaction() as session:
        reservation = session.get(reservation_id, lock=True)
        if reservation is None:
            return ExtensionResult(error=_not_found(reservation_id))
        if reservation.resource_id != resource.id:
            raise ValueError("resource.id does not match the reservation's resource")

        if reservation.status != ReservationStatus.CHECKED_IN:
            return ExtensionResult(
                error=IllegalTransition(
                    reservation.id, reservation.status.value, "extended"
                )
            )

        if new_end_time <= reservation.end_time:
            return ExtensionResult(
                error=InvalidTimeRange(
                    "new_end_time must be after the current end_time",
                    {
                        "end_time": reservation.end_time.isoformat(),
                        "new_end_time": new_end_time.isoformat(),
                    },
                )
            )
        error = validate_window(
            resource, reservation.start_time, new_end_time, hours=settings.operating_hours
        )
        if error is not None:
            return ExtensionResult(error=error)

        existing = session.fetch_active_reservations(
            reservation.resource_id, reservation.booking_date, lock=True
        )
        conflict = check_slot_available(
            existing,
            resource_id=reservation.resource_id,
            start=reservation.end_time,
            end=new_end_time,
            exclude_reservation_id=reservation.id,
        )
        if conflict is not None:
            return ExtensionResult(error=conflict)

        pricing = quote_extension(
            reservation, resource, new_end_time, policy=settings.pricing_policy
        )
        extended = replace(
            reservation,
            end_time=new_end_time,
            overage_hours=reservation.overage_hours + pricing.overage_hours,
            subtotal=to_money(reservation.subtotal + pricing.subtotal),
            discount_amount=to_money(reservation.discount_amount + pricing.discount_amount),
            processing_fee=to_money(reservation.processing_fee + pricing.processing_fee),
            total_price=to_money(reservation.total_price + pricing.total_price),
            payment_method=(
                PaymentMethod.CARD
                if reservation.payment_method == PaymentMethod.CREDITS
                else reservation.payment_method
            ),
        )
        session.update(extended)

    _log(
        "reservation extended",
        reservation_id=reservation_id,
        added_hours=str(
            minutes_to_hours(minutes_of_day(new_end_time) - minutes_of_day(reservation.end_time))
        ),
        additional_charge=str(pricing.total_price),
    )
    return ExtensionResult(reservation=extended, pricing=pricing)
