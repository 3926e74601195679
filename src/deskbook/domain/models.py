"""Core data model: resources, reservations and credit balances."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any

from .money import ZERO, minutes_to_hours

# ── Enums ─────────────────────────────────────────────────


class ResourceCategory(str, Enum):
    DESK = "desk"
    MEETING_ROOM = "meeting-room"


class ReservationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CHECKED_IN = "checked_in"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Statuses that hold their [start, end) window on the resource.
ACTIVE_STATUSES = frozenset(
    {
        ReservationStatus.PENDING,
        ReservationStatus.CONFIRMED,
        ReservationStatus.CHECKED_IN,
    }
)


class PaymentMethod(str, Enum):
    CARD = "card"
    CREDITS = "credits"
    MEMBERSHIP = "membership"


class CreditType(str, Enum):
    MEETING_ROOM = "meeting-room"
    PRINTING = "printing"
    GUEST_PASS = "guest-pass"


class TransactionType(str, Enum):
    ALLOCATION = "allocation"
    USAGE = "usage"
    REFUND = "refund"


def minutes_of_day(value: time) -> int:
    return value.hour * 60 + value.minute


# ── Resources and reservations ───────────────────────────


@dataclass(frozen=True)
class Resource:
    """A bookable desk or meeting room."""

    id: str
    name: str
    category: ResourceCategory
    hourly_rate: Decimal
    accepts_credits: bool = False
    min_duration_hours: Decimal = Decimal("1")
    max_duration_hours: Decimal = Decimal("8")
    flat_rate: Decimal | None = None

    def __post_init__(self) -> None:
        if self.hourly_rate < 0:
            raise ValueError("hourly_rate must be >= 0")
        if self.min_duration_hours <= 0:
            raise ValueError("min_duration_hours must be > 0")
        if self.max_duration_hours < self.min_duration_hours:
            raise ValueError("max_duration_hours must be >= min_duration_hours")


@dataclass(frozen=True)
class Reservation:
    """A booking of one resource on one date, with its pricing snapshot.

    The pricing fields (holder flag, effective rate, totals) are captured at
    booking time and never recomputed afterwards.
    """

    id: str
    user_id: str
    resource_id: str
    booking_date: date
    start_time: time
    end_time: time
    status: ReservationStatus = ReservationStatus.PENDING
    holder_discount_applied: bool = False
    credits_used: Decimal = ZERO
    overage_hours: Decimal = ZERO
    subtotal: Decimal = ZERO
    discount_amount: Decimal = ZERO
    processing_fee: Decimal = ZERO
    total_price: Decimal = ZERO
    effective_hourly_rate: Decimal = ZERO
    payment_method: PaymentMethod = PaymentMethod.CARD
    check_in_time: datetime | None = None
    check_out_time: datetime | None = None
    actual_duration_hours: Decimal | None = None
    final_charge: Decimal | None = None
    created_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")

    @property
    def duration_minutes(self) -> int:
        return minutes_of_day(self.end_time) - minutes_of_day(self.start_time)

    @property
    def duration_hours(self) -> Decimal:
        return minutes_to_hours(self.duration_minutes)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["payment_method"] = self.payment_method.value
        data["duration_hours"] = self.duration_hours
        return data


# ── Credits ───────────────────────────────────────────────


@dataclass(frozen=True)
class CreditBalance:
    """Credit allocation for one user, credit type and billing cycle.

    The cycle is half-open: [cycle_start, cycle_end).
    """

    id: str
    user_id: str
    credit_type: CreditType
    cycle_start: date
    cycle_end: date
    allocated: Decimal
    used: Decimal = ZERO
    remaining: Decimal | None = None

    def __post_init__(self) -> None:
        if self.remaining is None:
            object.__setattr__(self, "remaining", self.allocated - self.used)

    def covers(self, day: date) -> bool:
        return self.cycle_start <= day < self.cycle_end


@dataclass(frozen=True)
class CreditTransaction:
    """Append-only ledger row; never mutated once written."""

    id: str
    user_id: str
    balance_id: str
    transaction_type: TransactionType
    amount: Decimal
    balance_after: Decimal
    reservation_id: str | None = None
    description: str = ""
    idempotency_key: str | None = None
    created_at: datetime | None = field(default=None, compare=False)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["transaction_type"] = self.transaction_type.value
        return data
