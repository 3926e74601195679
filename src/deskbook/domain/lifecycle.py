"""Reservation lifecycle - status transitions and their guards.

    pending ──> confirmed ──> checked_in ──> completed
       │            │
       └────────────┴──> cancelled

Each operation returns a result object holding either the updated
reservation or the typed error that rejected the transition. Nothing is
persisted here; the caller writes the returned reservation.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable

from deskbook.infra.time import local_datetime

from .errors import (
    ActiveCheckInExists,
    CheckInWindowClosed,
    EngineError,
    IllegalTransition,
    InvalidTimeRange,
)
from .models import Reservation, ReservationStatus
from .money import ZERO
from .settlement import Settlement, actual_duration_hours, settle_reservation

_S = ReservationStatus

TRANSITIONS: dict[ReservationStatus, frozenset[ReservationStatus]] = {
    _S.PENDING: frozenset({_S.CONFIRMED, _S.CANCELLED}),
    _S.CONFIRMED: frozenset({_S.CHECKED_IN, _S.CANCELLED}),
    _S.CHECKED_IN: frozenset({_S.COMPLETED}),
    _S.COMPLETED: frozenset(),
    _S.CANCELLED: frozenset(),
}


@dataclass(frozen=True)
class LifecyclePolicy:
    check_in_early_minutes: int = 15
    check_in_late_minutes: int = 60
    refund_cutoff_hours: int = 24
    timezone: str = "UTC"


DEFAULT_LIFECYCLE_POLICY = LifecyclePolicy()


@dataclass(frozen=True)
class Transition:
    reservation: Reservation | None = None
    error: EngineError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class CheckoutResult:
    reservation: Reservation | None = None
    settlement: Settlement | None = None
    error: EngineError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class CancellationResult:
    reservation: Reservation | None = None
    refund_eligible: bool = False
    refund_amount: Decimal = ZERO
    credit_hours_refund: Decimal = ZERO
    already_cancelled: bool = False
    error: EngineError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def can_transition(current: ReservationStatus, target: ReservationStatus) -> bool:
    return target in TRANSITIONS[current]


def _illegal(reservation: Reservation, target: ReservationStatus) -> IllegalTransition:
    return IllegalTransition(reservation.id, reservation.status.value, target.value)


def starts_at(reservation: Reservation, policy: LifecyclePolicy = DEFAULT_LIFECYCLE_POLICY) -> datetime:
    return local_datetime(reservation.booking_date, reservation.start_time, policy.timezone)


def check_in_window(
    reservation: Reservation, policy: LifecyclePolicy = DEFAULT_LIFECYCLE_POLICY
) -> tuple[datetime, datetime]:
    """Earliest and latest instants at which check-in is accepted."""
    start = starts_at(reservation, policy)
    return (
        start - timedelta(minutes=policy.check_in_early_minutes),
        start + timedelta(minutes=policy.check_in_late_minutes),
    )


def confirm(reservation: Reservation) -> Transition:
    """Payment captured (or nothing to pay): pending -> confirmed."""
    if not can_transition(reservation.status, _S.CONFIRMED):
        return Transition(error=_illegal(reservation, _S.CONFIRMED))
    return Transition(reservation=replace(reservation, status=_S.CONFIRMED))


def check_in(
    reservation: Reservation,
    *,
    now: datetime,
    checked_in: Iterable[Reservation] = (),
    policy: LifecyclePolicy = DEFAULT_LIFECYCLE_POLICY,
) -> Transition:
    """confirmed -> checked_in, inside the window around the booked start.

    *checked_in* lists the user's reservations currently checked in; a user
    may hold only one at a time.
    """
    if not can_transition(reservation.status, _S.CHECKED_IN):
        return Transition(error=_illegal(reservation, _S.CHECKED_IN))

    others = [r for r in checked_in if r.id != reservation.id]
    if others:
        return Transition(
            error=ActiveCheckInExists(
                f"User {reservation.user_id} is already checked in to reservation {others[0].id}",
                {"active_reservation_id": others[0].id},
            )
        )

    opens, closes = check_in_window(reservation, policy)
    if now < opens or now > closes:
        return Transition(
            error=CheckInWindowClosed(
                "Check-in is not available at this time",
                {
                    "opens_at": opens.isoformat(),
                    "closes_at": closes.isoformat(),
                    "now": now.isoformat(),
                },
            )
        )

    return Transition(
        reservation=replace(reservation, status=_S.CHECKED_IN, check_in_time=now)
    )


def check_out(reservation: Reservation, *, now: datetime) -> CheckoutResult:
    """checked_in -> completed, settling actual usage against the booking-time rate."""
    if not can_transition(reservation.status, _S.COMPLETED):
        return CheckoutResult(error=_illegal(reservation, _S.COMPLETED))

    if reservation.check_in_time is None:
        return CheckoutResult(
            error=InvalidTimeRange(f"Reservation {reservation.id} has no check-in time")
        )

    try:
        actual = actual_duration_hours(reservation.check_in_time, now)
    except EngineError as exc:
        return CheckoutResult(error=exc)

    settlement = settle_reservation(reservation, actual)
    completed = replace(
        reservation,
        status=_S.COMPLETED,
        check_out_time=now,
        actual_duration_hours=actual,
        final_charge=settlement.final_charge,
    )
    return CheckoutResult(reservation=completed, settlement=settlement)


def cancel(
    reservation: Reservation,
    *,
    now: datetime,
    policy: LifecyclePolicy = DEFAULT_LIFECYCLE_POLICY,
) -> CancellationResult:
    """pending|confirmed -> cancelled.

    Full refund (money and credit hours) when cancelled more than
    refund_cutoff_hours before the booked start, nothing otherwise.
    """
    if reservation.status == _S.CANCELLED:
        return CancellationResult(reservation=reservation, already_cancelled=True)

    if not can_transition(reservation.status, _S.CANCELLED):
        return CancellationResult(error=_illegal(reservation, _S.CANCELLED))

    lead = starts_at(reservation, policy) - now
    eligible = lead > timedelta(hours=policy.refund_cutoff_hours)

    return CancellationResult(
        reservation=replace(reservation, status=_S.CANCELLED),
        refund_eligible=eligible,
        refund_amount=reservation.total_price if eligible else ZERO,
        credit_hours_refund=reservation.credits_used if eligible else ZERO,
    )
