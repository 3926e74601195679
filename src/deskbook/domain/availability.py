"""Availability engine: overlap detection and free-slot generation.

Overlap formula:  (a.start < b.end) AND (a.end > b.start)
Strict inequality makes windows half-open, so a reservation ending at 10:00
does not conflict with one starting at 10:00.

Only active statuses (pending, confirmed, checked_in) occupy a window.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, time
from decimal import Decimal
from typing import Iterable, Protocol

from .errors import (
    AboveMaximumDuration,
    BelowMinimumDuration,
    EngineError,
    InvalidTimeRange,
    OutsideOperatingHours,
    SlotUnavailable,
)
from .models import Reservation, Resource, minutes_of_day
from .money import minutes_to_hours

logger = logging.getLogger(__name__)


class Interval(Protocol):
    start_time: time
    end_time: time


@dataclass(frozen=True)
class OperatingHours:
    """Business-hours bound for every resource, 07:00-22:00 by default."""

    opens_at: time = time(7, 0)
    closes_at: time = time(22, 0)

    def __post_init__(self) -> None:
        if self.closes_at <= self.opens_at:
            raise ValueError("closes_at must be after opens_at")

    def contains(self, start: time, end: time) -> bool:
        return self.opens_at <= start and end <= self.closes_at


DEFAULT_OPERATING_HOURS = OperatingHours()


@dataclass(frozen=True)
class Slot:
    """A contiguous interval on a resource, tagged available or not."""

    resource_id: str
    resource_name: str
    start_time: time
    end_time: time
    available: bool

    @property
    def duration_hours(self) -> Decimal:
        return minutes_to_hours(
            minutes_of_day(self.end_time) - minutes_of_day(self.start_time)
        )

    def to_dict(self) -> dict:
        return {
            "resource_id": self.resource_id,
            "resource_name": self.resource_name,
            "start_time": self.start_time.strftime("%H:%M"),
            "end_time": self.end_time.strftime("%H:%M"),
            "available": self.available,
        }


def _time_from_minutes(minutes: int) -> time:
    return time(minutes // 60, minutes % 60)


def has_overlap(a: Interval, b: Interval) -> bool:
    """Return True if the half-open intervals a and b overlap."""
    return a.start_time < b.end_time and a.end_time > b.start_time


def _window(start: time, end: time) -> Slot:
    return Slot("", "", start, end, True)


def _active(
    reservations: Iterable[Reservation],
    exclude_reservation_id: str | None = None,
) -> list[Reservation]:
    return [
        r
        for r in reservations
        if r.is_active and r.id != exclude_reservation_id
    ]


def find_conflict(
    reservations: Iterable[Reservation],
    start: time,
    end: time,
    *,
    exclude_reservation_id: str | None = None,
) -> Reservation | None:
    """Return the earliest active reservation overlapping [start, end), or None."""
    requested = _window(start, end)
    for reservation in sorted(
        _active(reservations, exclude_reservation_id), key=lambda r: r.start_time
    ):
        if has_overlap(requested, reservation):
            return reservation
    return None


def is_window_available(
    reservations: Iterable[Reservation],
    start: time,
    end: time,
    *,
    exclude_reservation_id: str | None = None,
) -> bool:
    """True iff no active reservation overlaps [start, end)."""
    return (
        find_conflict(
            reservations, start, end, exclude_reservation_id=exclude_reservation_id
        )
        is None
    )


def check_slot_available(
    reservations: Iterable[Reservation],
    *,
    resource_id: str,
    start: time,
    end: time,
    exclude_reservation_id: str | None = None,
) -> SlotUnavailable | None:
    """Return SlotUnavailable if [start, end) is taken, else None."""
    conflict = find_conflict(
        reservations, start, end, exclude_reservation_id=exclude_reservation_id
    )
    if conflict is None:
        return None

    logger.warning(
        "slot conflict detected",
        extra={
            "extra_fields": {
                "resource_id": resource_id,
                "requested_start": start.isoformat(),
                "requested_end": end.isoformat(),
                "conflicting_reservation_id": conflict.id,
                "existing_start": conflict.start_time.isoformat(),
                "existing_end": conflict.end_time.isoformat(),
            },
        },
    )
    return SlotUnavailable(
        resource_id,
        conflict.id,
        {
            "existing_start": conflict.start_time.isoformat(),
            "existing_end": conflict.end_time.isoformat(),
        },
    )


def assert_slot_available(
    reservations: Iterable[Reservation],
    *,
    resource_id: str,
    start: time,
    end: time,
    exclude_reservation_id: str | None = None,
) -> None:
    """Raise SlotUnavailable if [start, end) is taken.

    For transactional flows where a conflict must abort the commit.
    """
    error = check_slot_available(
        reservations,
        resource_id=resource_id,
        start=start,
        end=end,
        exclude_reservation_id=exclude_reservation_id,
    )
    if error is not None:
        raise error


def validate_window(
    resource: Resource,
    start: time,
    end: time,
    *,
    hours: OperatingHours = DEFAULT_OPERATING_HOURS,
) -> EngineError | None:
    """Validate a requested window against time order, business hours and duration bounds."""
    if end <= start:
        return InvalidTimeRange(
            "end_time must be after start_time",
            {"start_time": start.isoformat(), "end_time": end.isoformat()},
        )

    if not hours.contains(start, end):
        return OutsideOperatingHours(
            f"Bookings must fall between {hours.opens_at:%H:%M} "
            f"and {hours.closes_at:%H:%M}",
            {
                "opens_at": hours.opens_at.isoformat(),
                "closes_at": hours.closes_at.isoformat(),
            },
        )

    duration = minutes_to_hours(minutes_of_day(end) - minutes_of_day(start))
    if duration < resource.min_duration_hours:
        return BelowMinimumDuration(
            f"Minimum booking duration is {resource.min_duration_hours} hours",
            {"duration_hours": str(duration)},
        )
    if duration > resource.max_duration_hours:
        return AboveMaximumDuration(
            f"Maximum booking duration is {resource.max_duration_hours} hours",
            {"duration_hours": str(duration)},
        )
    return None


def generate_available_slots(
    resource: Resource,
    reservations: Iterable[Reservation],
    booking_date: date,
    min_duration_hours: Decimal | None = None,
    *,
    hours: OperatingHours = DEFAULT_OPERATING_HOURS,
) -> list[Slot]:
    """Split the operating window into available gaps and reserved spans.

    Reservations for other resources or dates, and inactive ones, are
    ignored; reserved spans are clipped to the operating window. Gaps shorter than min_duration_hours (default: the resource
    minimum) are dropped because they cannot host a valid booking.
    """
    if min_duration_hours is None:
        min_duration_hours = resource.min_duration_hours
    min_minutes = min_duration_hours * 60

    day_start = minutes_of_day(hours.opens_at)
    day_end = minutes_of_day(hours.closes_at)

    relevant = sorted(
        (
            r
            for r in _active(reservations)
            if r.resource_id == resource.id and r.booking_date == booking_date
        ),
        key=lambda r: (r.start_time, r.end_time),
    )

    def _slot(start: int, end: int, available: bool) -> Slot:
        return Slot(
            resource_id=resource.id,
            resource_name=resource.name,
            start_time=_time_from_minutes(start),
            end_time=_time_from_minutes(end),
            available=available,
        )

    slots: list[Slot] = []
    cursor = day_start

    for reservation in relevant:
        # reserved spans are reported only inside the operating window
        res_start = max(minutes_of_day(reservation.start_time), day_start)
        res_end = min(minutes_of_day(reservation.end_time), day_end)
        if res_end <= res_start:
            continue

        if cursor < res_start:
            if res_start - cursor >= min_minutes:
                slots.append(_slot(cursor, res_start, True))

        slots.append(_slot(res_start, res_end, False))
        cursor = max(cursor, res_end)

    if cursor < day_end and day_end - cursor >= min_minutes:
        slots.append(_slot(cursor, day_end, True))

    return slots


def available_slots(slots: Iterable[Slot]) -> list[Slot]:
    return [s for s in slots if s.available]


def total_available_hours(slots: Iterable[Slot]) -> Decimal:
    return sum((s.duration_hours for s in slots if s.available), Decimal("0.00"))
