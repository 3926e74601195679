"""Shared pytest fixtures for deskbook tests."""
import sys
sys.dont_write_bytecode = True

from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402

from deskbook.domain.credits import CreditLedger  # noqa: E402
from deskbook.domain.models import Resource, ResourceCategory  # noqa: E402
from deskbook.infra.memory_store import (  # noqa: E402
    InMemoryCreditStore,
    InMemoryReservationStore,
)
from deskbook.infra.settings import EngineSettings  # noqa: E402


@pytest.fixture
def desk() -> Resource:
    return Resource(
        id="desk-1",
        name="Hot Desk 1",
        category=ResourceCategory.DESK,
        hourly_rate=Decimal("2.50"),
    )


@pytest.fixture
def meeting_room() -> Resource:
    return Resource(
        id="room-1",
        name="Boardroom",
        category=ResourceCategory.MEETING_ROOM,
        hourly_rate=Decimal("60.00"),
        accepts_credits=True,
    )


@pytest.fixture
def reservation_store() -> InMemoryReservationStore:
    return InMemoryReservationStore()


@pytest.fixture
def credit_store() -> InMemoryCreditStore:
    return InMemoryCreditStore()


@pytest.fixture
def ledger(credit_store) -> CreditLedger:
    return CreditLedger(credit_store)


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings()
