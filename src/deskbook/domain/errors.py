"""Typed validation outcomes for the reservation engine.

Each outcome is an Exception subclass so transactional code can raise it to
abort a commit, but the engine functions return them inside result objects
instead of raising.
"""

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base class for every engine outcome that rejects an operation."""

    reason_code = "engine_error"

    def __init__(self, message: str, meta: dict[str, Any] | None = None):
        self.meta = meta or {}
        super().__init__(message)

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> dict[str, Any]:
        return {"reason": self.reason_code, "message": self.message, "meta": self.meta}


class InvalidTimeRange(EngineError):
    """End is not after start."""

    reason_code = "invalid_time_range"


class OutsideOperatingHours(EngineError):
    reason_code = "outside_operating_hours"


class SlotUnavailable(EngineError):
    """The requested window overlaps an active reservation."""

    reason_code = "slot_unavailable"

    def __init__(
        self,
        resource_id: str,
        conflicting_reservation_id: str,
        meta: dict[str, Any] | None = None,
    ) -> None:
        self.resource_id = resource_id
        self.conflicting_reservation_id = conflicting_reservation_id
        super().__init__(
            f"Resource {resource_id} has a conflicting reservation "
            f"({conflicting_reservation_id})",
            meta,
        )


class BelowMinimumDuration(EngineError):
    reason_code = "below_minimum_duration"


class AboveMaximumDuration(EngineError):
    reason_code = "above_maximum_duration"


class CreditLedgerInvariantViolation(EngineError):
    """A balance change would break remaining == allocated - used, 0 <= remaining <= allocated."""

    reason_code = "credit_ledger_invariant_violation"


class IllegalTransition(EngineError):
    reason_code = "illegal_transition"

    def __init__(self, reservation_id: str, current: str, target: str) -> None:
        self.reservation_id = reservation_id
        self.current = current
        self.target = target
        super().__init__(
            f"Reservation {reservation_id} cannot move from '{current}' to '{target}'",
            {"current": current, "target": target},
        )


class CheckInWindowClosed(EngineError):
    reason_code = "check_in_window_closed"


class ActiveCheckInExists(EngineError):
    """The user already holds another checked-in reservation."""

    reason_code = "active_check_in_exists"


class ReservationNotFound(EngineError):
    reason_code = "reservation_not_found"


class RequestValidationError(EngineError):
    """A boundary payload failed to parse into a typed request."""

    reason_code = "invalid_request"

    def __init__(self, errors: list[dict[str, Any]]) -> None:
        self.errors = errors
        fields = ", ".join(
            ".".join(str(p) for p in e.get("loc", ())) or "<root>" for e in errors
        )
        super().__init__(f"Invalid request: {fields}", {"errors": errors})
