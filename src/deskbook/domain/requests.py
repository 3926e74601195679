"""Typed request schemas, validated once at the engine boundary.

``parse_*`` helpers turn loose payloads into frozen pydantic models or a
RequestValidationError; business logic only ever sees the parsed models.
"""

from __future__ import annotations

from datetime import date, time
from decimal import Decimal
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import RequestValidationError
from .models import ResourceCategory, minutes_of_day
from .money import minutes_to_hours


class BookingRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    user_id: str = Field(min_length=1)
    resource_id: str = Field(min_length=1)
    booking_date: date
    start_time: time
    end_time: time
    attendees: int = Field(default=1, ge=1)
    holder_eligible: bool = False
    membership_includes_desk: bool = False
    day_pass: bool = False
    special_requests: str | None = None

    @model_validator(mode="after")
    def _end_after_start(self) -> "BookingRequest":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    @property
    def duration_hours(self) -> Decimal:
        return minutes_to_hours(minutes_of_day(self.end_time) - minutes_of_day(self.start_time))


class AvailabilityQuery(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    booking_date: date
    resource_id: str | None = None
    resource_category: ResourceCategory | None = None
    start_time: time | None = None
    end_time: time | None = None
    duration_hours: Decimal | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _times_together(self) -> "AvailabilityQuery":
        if (self.start_time is None) != (self.end_time is None):
            raise ValueError("start_time and end_time must be provided together")
        if self.start_time is not None and self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class ExtensionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    reservation_id: str = Field(min_length=1)
    new_end_time: time


_M = TypeVar("_M", bound=BaseModel)


def _parse(model: type[_M], payload: dict[str, Any]) -> _M | RequestValidationError:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        return RequestValidationError(
            exc.errors(include_url=False, include_context=False, include_input=False)
        )


def parse_booking_request(payload: dict[str, Any]) -> BookingRequest | RequestValidationError:
    return _parse(BookingRequest, payload)


def parse_availability_query(payload: dict[str, Any]) -> AvailabilityQuery | RequestValidationError:
    return _parse(AvailabilityQuery, payload)


def parse_extension_request(payload: dict[str, Any]) -> ExtensionRequest | RequestValidationError:
    return _parse(ExtensionRequest, payload)
