"""Tests for reservation flows over the in-memory stores."""

from datetime import time, timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest

from deskbook.domain.errors import (
    ActiveCheckInExists,
    BelowMinimumDuration,
    CreditLedgerInvariantViolation,
    IllegalTransition,
    InvalidTimeRange,
    OutsideOperatingHours,
    ReservationNotFound,
    SlotUnavailable,
)
from deskbook.domain.models import CreditType, PaymentMethod, ReservationStatus, TransactionType
from deskbook.domain.requests import BookingRequest
from deskbook.domain.reservations import (
    cancel_reservation,
    check_in_reservation,
    check_out_reservation,
    confirm_reservation,
    create_reservation,
    extend_reservation,
    find_available_slots,
    quote_booking,
)
from deskbook.domain.settlement import SettlementKind
from deskbook.infra.memory_store import InMemoryReservationStore
from deskbook.observability.correlation import get_correlation_id

from helpers import BOOKING_DATE, CYCLE_END, CYCLE_START, at, make_reservation

S = ReservationStatus
ROOM = CreditType.MEETING_ROOM
BOOKED_AT = at(9) - timedelta(days=3)


def _request(**overrides) -> BookingRequest:
    fields = {
        "user_id": "user-1",
        "resource_id": "desk-1",
        "booking_date": BOOKING_DATE,
        "start_time": time(9, 0),
        "end_time": time(12, 0),
    }
    fields.update(overrides)
    return BookingRequest(**fields)


def _book(store, ledger, resource, **overrides):
    request = _request(resource_id=resource.id, **overrides)
    return create_reservation(store, ledger, request, resource, now=BOOKED_AT)


def _fund(ledger, hours="10"):
    ledger.allocate_cycle("user-1", ROOM, Decimal(hours), CYCLE_START, CYCLE_END, now=BOOKED_AT)


# ── Availability and quotes ──────────────────────────────


class TestFindAvailableSlots:
    def test_reads_store(self, reservation_store, ledger, desk):
        _book(reservation_store, ledger, desk)
        slots = find_available_slots(reservation_store, desk, BOOKING_DATE)
        assert [(s.start_time, s.end_time, s.available) for s in slots] == [
            (time(7), time(9), True),
            (time(9), time(12), False),
            (time(12), time(22), True),
        ]


class TestQuoteBooking:
    def test_quote_without_reserving(self, reservation_store, desk):
        quote = quote_booking(_request(holder_eligible=True), desk)
        assert quote.total_price == Decimal("5.75")
        assert reservation_store.all() == []

    def test_quote_rejects_bad_window(self, desk):
        error = quote_booking(_request(start_time=time(21), end_time=time(23)), desk)
        assert isinstance(error, OutsideOperatingHours)


# ── Create ───────────────────────────────────────────────


class TestCreateReservation:
    def test_card_booking_is_pending(self, reservation_store, ledger, desk):
        result = _book(reservation_store, ledger, desk)
        assert result.ok
        reservation = result.reservation
        assert reservation.status == S.PENDING
        assert reservation.total_price == Decimal("9.50")
        assert reservation.effective_hourly_rate == Decimal("2.50")
        assert reservation.created_at == BOOKED_AT
        assert reservation_store.get(reservation.id) == reservation

    def test_overlap_rejected(self, reservation_store, ledger, desk):
        first = _book(reservation_store, ledger, desk)
        second = _book(
            reservation_store, ledger, desk, user_id="user-2",
            start_time=time(11), end_time=time(13),
        )
        assert isinstance(second.error, SlotUnavailable)
        assert second.error.conflicting_reservation_id == first.reservation.id
        assert len(reservation_store.all()) == 1

    def test_adjacent_booking_allowed(self, reservation_store, ledger, desk):
        _book(reservation_store, ledger, desk)
        result = _book(
            reservation_store, ledger, desk, start_time=time(12), end_time=time(14)
        )
        assert result.ok

    def test_cancelled_window_can_be_rebooked(self, reservation_store, ledger, desk):
        first = _book(reservation_store, ledger, desk)
        cancel_reservation(reservation_store, ledger, first.reservation.id, now=BOOKED_AT)
        assert _book(reservation_store, ledger, desk).ok

    def test_invalid_window_not_stored(self, reservation_store, ledger, desk):
        result = _book(reservation_store, ledger, desk, end_time=time(9, 30))
        assert isinstance(result.error, BelowMinimumDuration)
        assert reservation_store.all() == []

    def test_resource_mismatch_raises(self, reservation_store, ledger, desk):
        with pytest.raises(ValueError):
            create_reservation(
                reservation_store, ledger, _request(resource_id="other"), desk
            )

    def test_credit_booking_deducts_and_prices_overage(
        self, reservation_store, ledger, meeting_room
    ):
        _fund(ledger, "2")
        result = _book(
            reservation_store, ledger, meeting_room, start_time=time(9), end_time=time(13)
        )
        assert result.ok
        assert result.reservation.credits_used == Decimal("2.00")
        assert result.reservation.total_price == Decimal("122.00")
        assert ledger.available("user-1", ROOM, BOOKING_DATE) == Decimal("0.00")

    def test_fully_credited_booking_is_confirmed(self, reservation_store, ledger, meeting_room):
        _fund(ledger)
        result = _book(reservation_store, ledger, meeting_room)
        assert result.reservation.status == S.CONFIRMED
        assert result.reservation.payment_method == PaymentMethod.CREDITS
        assert result.reservation.total_price == Decimal("0.00")

    def test_membership_desk_is_confirmed(self, reservation_store, ledger, desk):
        result = _book(reservation_store, ledger, desk, membership_includes_desk=True)
        assert result.reservation.status == S.CONFIRMED
        assert result.reservation.payment_method == PaymentMethod.MEMBERSHIP

    def test_failed_insert_refunds_credits(self, ledger, meeting_room):
        _fund(ledger)
        store = InMemoryReservationStore()
        with patch.object(store, "insert", side_effect=SlotUnavailable("room-1", "unknown")):
            result = _book(store, ledger, meeting_room)
        assert isinstance(result.error, SlotUnavailable)
        assert ledger.available("user-1", ROOM, BOOKING_DATE) == Decimal("10.00")

    def test_unexpected_failure_refunds_and_raises(self, ledger, meeting_room):
        _fund(ledger)
        store = InMemoryReservationStore()
        with patch.object(store, "insert", side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError):
                _book(store, ledger, meeting_room)
        assert ledger.available("user-1", ROOM, BOOKING_DATE) == Decimal("10.00")

    def test_retry_with_booked_id_returns_stored_reservation(
        self, reservation_store, ledger, meeting_room
    ):
        _fund(ledger)
        request = _request(resource_id=meeting_room.id)
        first = create_reservation(
            reservation_store, ledger, request, meeting_room,
            reservation_id="res-1", now=BOOKED_AT,
        )
        retry = create_reservation(
            reservation_store, ledger, request, meeting_room,
            reservation_id="res-1", now=BOOKED_AT,
        )
        assert retry.ok
        assert retry.reservation == first.reservation
        assert len(reservation_store.all()) == 1
        assert ledger.available("user-1", ROOM, BOOKING_DATE) == Decimal("7.00")

    def test_booked_id_with_another_window_keeps_its_credits(
        self, reservation_store, ledger, meeting_room
    ):
        _fund(ledger)
        create_reservation(
            reservation_store, ledger, _request(resource_id=meeting_room.id), meeting_room,
            reservation_id="res-1", now=BOOKED_AT,
        )
        retry = create_reservation(
            reservation_store, ledger,
            _request(resource_id=meeting_room.id, start_time=time(14), end_time=time(16)),
            meeting_room, reservation_id="res-1", now=BOOKED_AT,
        )
        assert retry.reservation.start_time == time(9)
        assert reservation_store.get("res-1").credits_used == Decimal("3.00")
        assert ledger.available("user-1", ROOM, BOOKING_DATE) == Decimal("7.00")

    def test_booked_id_of_another_user_rejected(self, reservation_store, ledger, desk):
        create_reservation(
            reservation_store, ledger, _request(), desk, reservation_id="res-1", now=BOOKED_AT
        )
        with pytest.raises(ValueError):
            create_reservation(
                reservation_store, ledger, _request(user_id="user-2"), desk,
                reservation_id="res-1", now=BOOKED_AT,
            )

    def test_retry_after_failed_insert_deducts_again(self, ledger, meeting_room):
        _fund(ledger)
        store = InMemoryReservationStore()
        request = _request(resource_id=meeting_room.id)
        with patch.object(store, "insert", side_effect=RuntimeError("db down")):
            with pytest.raises(RuntimeError):
                create_reservation(
                    store, ledger, request, meeting_room, reservation_id="res-1", now=BOOKED_AT
                )
        assert ledger.available("user-1", ROOM, BOOKING_DATE) == Decimal("10.00")

        result = create_reservation(
            store, ledger, request, meeting_room, reservation_id="res-1", now=BOOKED_AT
        )
        assert result.ok
        assert result.reservation.credits_used == Decimal("3.00")
        assert result.reservation.status == S.CONFIRMED
        assert ledger.available("user-1", ROOM, BOOKING_DATE) == Decimal("7.00")

    def test_failed_insert_keeps_hours_held_before_the_call(self, ledger, meeting_room):
        _fund(ledger)
        ledger.deduct("user-1", ROOM, Decimal("3"), "res-1", on=BOOKING_DATE, now=BOOKED_AT)
        store = InMemoryReservationStore()
        with patch.object(store, "insert", side_effect=SlotUnavailable("room-1", "unknown")):
            result = create_reservation(
                store, ledger, _request(resource_id=meeting_room.id), meeting_room,
                reservation_id="res-1", now=BOOKED_AT,
            )
        assert isinstance(result.error, SlotUnavailable)
        assert ledger.available("user-1", ROOM, BOOKING_DATE) == Decimal("7.00")

    def test_ledger_invariant_violation_returned(self, reservation_store, ledger, meeting_room):
        _fund(ledger)
        violation = CreditLedgerInvariantViolation("Credit balance bal-1 is inconsistent")
        with patch.object(ledger, "deduct", side_effect=violation):
            result = _book(reservation_store, ledger, meeting_room)
        assert result.error is violation
        assert result.error.reason_code == "credit_ledger_invariant_violation"
        assert reservation_store.all() == []

    def test_correlation_id_bound_during_flow(self, reservation_store, ledger, desk):
        seen = []
        original = reservation_store.insert

        def spy(reservation):
            seen.append(get_correlation_id())
            original(reservation)

        with patch.object(reservation_store, "insert", side_effect=spy):
            create_reservation(
                reservation_store, ledger, _request(), desk,
                now=BOOKED_AT, correlation_id="corr-123",
            )
        assert seen == ["corr-123"]
        assert get_correlation_id() == ""


# ── Lifecycle flows ──────────────────────────────────────


@pytest.fixture
def booked(reservation_store, ledger, desk):
    return _book(reservation_store, ledger, desk).reservation


class TestLifecycleFlows:
    def test_confirm(self, reservation_store, booked):
        result = confirm_reservation(reservation_store, booked.id)
        assert result.ok
        assert reservation_store.get(booked.id).status == S.CONFIRMED

    def test_confirm_missing(self, reservation_store):
        result = confirm_reservation(reservation_store, "nope")
        assert isinstance(result.error, ReservationNotFound)

    def test_check_in_and_out(self, reservation_store, ledger, booked):
        confirm_reservation(reservation_store, booked.id)
        checked_in = check_in_reservation(
            reservation_store, booked.id, user_id="user-1", now=at(9, 5)
        )
        assert checked_in.ok

        result = check_out_reservation(reservation_store, ledger, booked.id, now=at(11, 5))
        assert result.ok
        assert result.settlement.kind == SettlementKind.REFUND
        assert result.settlement.refund_amount == Decimal("2.50")
        stored = reservation_store.get(booked.id)
        assert stored.status == S.COMPLETED
        assert stored.final_charge == Decimal("7.00")

    def test_check_in_wrong_user(self, reservation_store, booked):
        confirm_reservation(reservation_store, booked.id)
        result = check_in_reservation(
            reservation_store, booked.id, user_id="user-2", now=at(9)
        )
        assert isinstance(result.error, ReservationNotFound)

    def test_one_check_in_per_user(self, reservation_store, ledger, desk, booked):
        other_desk = desk.__class__(
            id="desk-2", name="Hot Desk 2", category=desk.category, hourly_rate=desk.hourly_rate
        )
        other = _book(reservation_store, ledger, other_desk).reservation
        for rid in (booked.id, other.id):
            confirm_reservation(reservation_store, rid)

        assert check_in_reservation(reservation_store, booked.id, user_id="user-1", now=at(9)).ok
        result = check_in_reservation(reservation_store, other.id, user_id="user-1", now=at(9))
        assert isinstance(result.error, ActiveCheckInExists)

    def test_check_out_credit_booking_returns_credit_hours(
        self, reservation_store, ledger, meeting_room
    ):
        _fund(ledger)
        reservation = _book(reservation_store, ledger, meeting_room).reservation
        check_in_reservation(reservation_store, reservation.id, user_id="user-1", now=at(9))
        result = check_out_reservation(reservation_store, ledger, reservation.id, now=at(10))
        assert result.settlement.credit_hours_refund == Decimal("2.00")
        assert ledger.available("user-1", ROOM, BOOKING_DATE) == Decimal("9.00")

    def test_cancel_early_refunds(self, reservation_store, ledger, booked):
        result = cancel_reservation(
            reservation_store, ledger, booked.id, now=at(9) - timedelta(hours=25)
        )
        assert result.refund_eligible
        assert result.refund_amount == Decimal("9.50")
        assert reservation_store.get(booked.id).status == S.CANCELLED

    def test_cancel_late_keeps_payment(self, reservation_store, ledger, booked):
        result = cancel_reservation(
            reservation_store, ledger, booked.id, now=at(9) - timedelta(hours=10)
        )
        assert not result.refund_eligible
        assert result.refund_amount == Decimal("0.00")

    def test_cancel_twice(self, reservation_store, ledger, booked):
        cancel_reservation(reservation_store, ledger, booked.id, now=BOOKED_AT)
        again = cancel_reservation(reservation_store, ledger, booked.id, now=BOOKED_AT)
        assert again.ok
        assert again.already_cancelled

    def test_cancel_credit_booking_returns_credits(
        self, reservation_store, ledger, meeting_room
    ):
        _fund(ledger)
        reservation = _book(reservation_store, ledger, meeting_room).reservation
        result = cancel_reservation(reservation_store, ledger, reservation.id, now=BOOKED_AT)
        assert result.credit_hours_refund == Decimal("3.00")
        assert ledger.available("user-1", ROOM, BOOKING_DATE) == Decimal("10.00")

    def test_check_out_not_committed_when_credit_refund_fails(
        self, reservation_store, ledger, meeting_room
    ):
        _fund(ledger)
        reservation = _book(reservation_store, ledger, meeting_room).reservation
        check_in_reservation(reservation_store, reservation.id, user_id="user-1", now=at(9))
        with patch.object(ledger, "refund", side_effect=RuntimeError("ledger unavailable")):
            with pytest.raises(RuntimeError):
                check_out_reservation(reservation_store, ledger, reservation.id, now=at(10))
        assert reservation_store.get(reservation.id).status == S.CHECKED_IN

        retry = check_out_reservation(reservation_store, ledger, reservation.id, now=at(10))
        assert retry.ok
        assert reservation_store.get(reservation.id).status == S.COMPLETED
        assert ledger.available("user-1", ROOM, BOOKING_DATE) == Decimal("9.00")

    def test_check_out_retry_after_failed_update_refunds_once(
        self, reservation_store, ledger, meeting_room
    ):
        _fund(ledger)
        reservation = _book(reservation_store, ledger, meeting_room).reservation
        check_in_reservation(reservation_store, reservation.id, user_id="user-1", now=at(9))
        with patch.object(reservation_store, "update", side_effect=RuntimeError("db down")):
            with pytest.raises(RuntimeError):
                check_out_reservation(reservation_store, ledger, reservation.id, now=at(10))

        assert check_out_reservation(reservation_store, ledger, reservation.id, now=at(10)).ok
        assert ledger.available("user-1", ROOM, BOOKING_DATE) == Decimal("9.00")

    def test_cancel_not_committed_when_credit_refund_fails(
        self, reservation_store, ledger, meeting_room
    ):
        _fund(ledger)
        reservation = _book(reservation_store, ledger, meeting_room).reservation
        with patch.object(ledger, "refund", side_effect=RuntimeError("ledger unavailable")):
            with pytest.raises(RuntimeError):
                cancel_reservation(reservation_store, ledger, reservation.id, now=BOOKED_AT)
        assert reservation_store.get(reservation.id).status == S.CONFIRMED
        assert ledger.available("user-1", ROOM, BOOKING_DATE) == Decimal("7.00")

        retry = cancel_reservation(reservation_store, ledger, reservation.id, now=BOOKED_AT)
        assert retry.ok
        assert not retry.already_cancelled
        assert reservation_store.get(reservation.id).status == S.CANCELLED
        assert ledger.available("user-1", ROOM, BOOKING_DATE) == Decimal("10.00")

    def test_cancel_retry_after_failed_update_refunds_once(
        self, reservation_store, ledger, meeting_room
    ):
        _fund(ledger)
        reservation = _book(reservation_store, ledger, meeting_room).reservation
        with patch.object(reservation_store, "update", side_effect=RuntimeError("db down")):
            with pytest.raises(RuntimeError):
                cancel_reservation(reservation_store, ledger, reservation.id, now=BOOKED_AT)
        assert reservation_store.get(reservation.id).status == S.CONFIRMED

        assert cancel_reservation(reservation_store, ledger, reservation.id, now=BOOKED_AT).ok
        assert ledger.available("user-1", ROOM, BOOKING_DATE) == Decimal("10.00")
        refunds = [
            t for t in ledger.transactions("user-1") if t.transaction_type == TransactionType.REFUND
        ]
        assert len(refunds) == 1

    def test_cancel_returns_ledger_invariant_violation(
        self, reservation_store, ledger, meeting_room
    ):
        _fund(ledger)
        reservation = _book(reservation_store, ledger, meeting_room).reservation
        violation = CreditLedgerInvariantViolation("Credit balance bal-1 is inconsistent")
        with patch.object(ledger, "refund", side_effect=violation):
            result = cancel_reservation(reservation_store, ledger, reservation.id, now=BOOKED_AT)
        assert result.error is violation
        assert reservation_store.get(reservation.id).status == S.CONFIRMED

    def test_cancel_missing(self, reservation_store, ledger):
        result = cancel_reservation(reservation_store, ledger, "nope", now=BOOKED_AT)
        assert isinstance(result.error, ReservationNotFound)


# ── Extension ────────────────────────────────────────────


class TestExtendReservation:
    def _checked_in(self, store, ledger, resource, **overrides):
        reservation = _book(store, ledger, resource, **overrides).reservation
        confirm_reservation(store, reservation.id)
        check_in_reservation(store, reservation.id, user_id="user-1", now=at(9))
        return reservation

    def test_extend_adds_charge(self, reservation_store, ledger, desk):
        reservation = self._checked_in(reservation_store, ledger, desk)
        result = extend_reservation(reservation_store, reservation.id, time(14), desk)
        assert result.ok
        assert result.requires_additional_payment
        assert result.pricing.total_price == Decimal("7.00")
        stored = reservation_store.get(reservation.id)
        assert stored.end_time == time(14)
        assert stored.subtotal == Decimal("12.50")
        assert stored.total_price == Decimal("16.50")

    def test_extend_keeps_holder_rate(self, reservation_store, ledger, desk):
        reservation = self._checked_in(reservation_store, ledger, desk, holder_eligible=True)
        result = extend_reservation(reservation_store, reservation.id, time(13), desk)
        assert result.pricing.discount_amount == Decimal("1.25")

    def test_extend_blocked_by_next_booking(self, reservation_store, ledger, desk):
        reservation = self._checked_in(reservation_store, ledger, desk)
        _book(
            reservation_store, ledger, desk, user_id="user-2",
            start_time=time(13), end_time=time(15),
        )
        result = extend_reservation(reservation_store, reservation.id, time(14), desk)
        assert isinstance(result.error, SlotUnavailable)
        assert reservation_store.get(reservation.id).end_time == time(12)

    def test_extend_beyond_maximum(self, reservation_store, ledger, desk):
        reservation = self._checked_in(reservation_store, ledger, desk)
        result = extend_reservation(reservation_store, reservation.id, time(18), desk)
        assert result.error.reason_code == "above_maximum_duration"

    def test_extend_past_closing(self, reservation_store, ledger, desk):
        reservation = make_reservation(
            status=S.CHECKED_IN, start_time=time(18), end_time=time(21), check_in_time=at(18)
        )
        reservation_store.insert(reservation)
        result = extend_reservation(reservation_store, reservation.id, time(23), desk)
        assert isinstance(result.error, OutsideOperatingHours)

    def test_extend_requires_later_end(self, reservation_store, ledger, desk):
        reservation = self._checked_in(reservation_store, ledger, desk)
        result = extend_reservation(reservation_store, reservation.id, time(11), desk)
        assert result.error.reason_code == "invalid_time_range"

    def test_extend_requires_check_in(self, reservation_store, booked, desk):
        result = extend_reservation(reservation_store, booked.id, time(14), desk)
        assert isinstance(result.error, IllegalTransition)

    def test_extend_missing(self, reservation_store, desk):
        result = extend_reservation(reservation_store, "nope", time(14), desk)
        assert isinstance(result.error, ReservationNotFound)

    def test_extend_to_current_end_rejected(self, reservation_store, ledger, desk):
        reservation = self._checked_in(reservation_store, ledger, desk)
        result = extend_reservation(reservation_store, reservation.id, time(12), desk)
        assert isinstance(result.error, InvalidTimeRange)
        assert result.error.meta == {"end_time": "12:00:00", "new_end_time": "12:00:00"}

    def test_extend_with_other_resource_raises(
        self, reservation_store, ledger, desk, meeting_room
    ):
        reservation = self._checked_in(reservation_store, ledger, desk)
        with pytest.raises(ValueError):
            extend_reservation(reservation_store, reservation.id, time(14), meeting_room)
        assert reservation_store.get(reservation.id).end_time == time(12)
