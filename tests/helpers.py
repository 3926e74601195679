"""Shared test helper functions for deskbook tests.

Importable by both conftest.py and individual test files. These are NOT
fixtures - they are regular functions and constants.
"""

from __future__ import annotations

from datetime import date, datetime, time, timezone

from deskbook.domain.models import Reservation, ReservationStatus

BOOKING_DATE = date(2026, 3, 10)
CYCLE_START = date(2026, 3, 1)
CYCLE_END = date(2026, 4, 1)


def at(hour: int, minute: int = 0, day: date = BOOKING_DATE) -> datetime:
    """UTC instant on *day*, matching the default engine timezone."""
    return datetime.combine(day, time(hour, minute), tzinfo=timezone.utc)


def make_reservation(**overrides) -> Reservation:
    fields = {
        "id": "res-1",
        "user_id": "user-1",
        "resource_id": "desk-1",
        "booking_date": BOOKING_DATE,
        "start_time": time(9, 0),
        "end_time": time(12, 0),
        "status": ReservationStatus.CONFIRMED,
    }
    fields.update(overrides)
    return Reservation(**fields)
