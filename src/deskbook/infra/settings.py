"""Engine settings loaded from environment variables.

Settings are plain frozen dataclasses handed to each call; nothing here is
cached at module level.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import time
from decimal import Decimal, InvalidOperation
from typing import Mapping

from deskbook.domain.availability import OperatingHours
from deskbook.domain.lifecycle import LifecyclePolicy
from deskbook.domain.pricing import PricingPolicy

_PREFIX = "DESKBOOK_"


@dataclass(frozen=True)
class EngineSettings:
    opens_at: time = time(7, 0)
    closes_at: time = time(22, 0)
    processing_fee: Decimal = Decimal("2.00")
    holder_discount_rate: Decimal = Decimal("0.5")
    day_pass_rate: Decimal = Decimal("25.00")
    check_in_early_minutes: int = 15
    check_in_late_minutes: int = 60
    refund_cutoff_hours: int = 24
    timezone: str = "UTC"

    @property
    def operating_hours(self) -> OperatingHours:
        return OperatingHours(opens_at=self.opens_at, closes_at=self.closes_at)

    @property
    def pricing_policy(self) -> PricingPolicy:
        return PricingPolicy(
            processing_fee=self.processing_fee,
            holder_discount_rate=self.holder_discount_rate,
            day_pass_rate=self.day_pass_rate,
        )

    @property
    def lifecycle_policy(self) -> LifecyclePolicy:
        return LifecyclePolicy(
            check_in_early_minutes=self.check_in_early_minutes,
            check_in_late_minutes=self.check_in_late_minutes,
            refund_cutoff_hours=self.refund_cutoff_hours,
            timezone=self.timezone,
        )


def _time(raw: str, name: str) -> time:
    try:
        return time.fromisoformat(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be HH:MM, got {raw!r}") from exc


def _decimal(raw: str, name: str) -> Decimal:
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise ValueError(f"{name} must be a decimal number, got {raw!r}") from exc


def _int(raw: str, name: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def load_engine_settings(environ: Mapping[str, str] | None = None) -> EngineSettings:
    """Build EngineSettings from DESKBOOK_* variables, falling back to defaults.

    Raises:
        ValueError: If a variable is set but cannot be parsed.
    """
    env = os.environ if environ is None else environ
    defaults = EngineSettings()

    def get(key: str) -> str | None:
        value = env.get(_PREFIX + key)
        return value.strip() if value and value.strip() else None

    def pick(key: str, parse, default):
        raw = get(key)
        return default if raw is None else parse(raw, _PREFIX + key)

    settings = EngineSettings(
        opens_at=pick("OPENS_AT", _time, defaults.opens_at),
        closes_at=pick("CLOSES_AT", _time, defaults.closes_at),
        processing_fee=pick("PROCESSING_FEE", _decimal, defaults.processing_fee),
        holder_discount_rate=pick(
            "HOLDER_DISCOUNT_RATE", _decimal, defaults.holder_discount_rate
        ),
        day_pass_rate=pick("DAY_PASS_RATE", _decimal, defaults.day_pass_rate),
        check_in_early_minutes=pick(
            "CHECK_IN_EARLY_MINUTES", _int, defaults.check_in_early_minutes
        ),
        check_in_late_minutes=pick(
            "CHECK_IN_LATE_MINUTES", _int, defaults.check_in_late_minutes
        ),
        refund_cutoff_hours=pick("REFUND_CUTOFF_HOURS", _int, defaults.refund_cutoff_hours),
        timezone=get("TIMEZONE") or defaults.timezone,
    )

    # Building the policies raises ValueError on inverted hours or bad rates.
    _ = (settings.operating_hours, settings.pricing_policy)
    return settings
