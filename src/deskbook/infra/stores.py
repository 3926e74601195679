"""Store interfaces the engine depends on.

Two capabilities, each with an in-memory implementation (tests, local runs)
and a Postgres implementation (production):

- ReservationStore: reservations per resource and date.
- CreditStore: credit balances and the append-only transaction ledger.

Every read-modify-write goes through ``transaction()``, which yields a
session. Reads with ``lock=True`` must serialize concurrent writers until the
transaction ends (FOR UPDATE in Postgres, a lock in memory).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date
from typing import ContextManager

from deskbook.domain.models import (
    CreditBalance,
    CreditTransaction,
    CreditType,
    Reservation,
    TransactionType,
)


class ReservationSession(ABC):
    @abstractmethod
    def fetch_active_reservations(
        self, resource_id: str, booking_date: date, *, lock: bool = False
    ) -> list[Reservation]:
        """Reservations in pending/confirmed/checked_in for the resource and date."""

    @abstractmethod
    def get(self, reservation_id: str, *, lock: bool = False) -> Reservation | None: ...

    @abstractmethod
    def find_checked_in(self, user_id: str) -> list[Reservation]: ...

    @abstractmethod
    def insert(self, reservation: Reservation) -> None: ...

    @abstractmethod
    def update(self, reservation: Reservation) -> None: ...


class ReservationStore(ABC):
    @abstractmethod
    def transaction(self) -> ContextManager[ReservationSession]:
        """Open a unit of work; commits on clean exit, rolls back on exception."""

    def fetch_active_reservations(
        self, resource_id: str, booking_date: date
    ) -> list[Reservation]:
        with self.transaction() as session:
            return session.fetch_active_reservations(resource_id, booking_date)

    def get(self, reservation_id: str) -> Reservation | None:
        with self.transaction() as session:
            return session.get(reservation_id)


class CreditSession(ABC):
    @abstractmethod
    def find_balance(
        self,
        user_id: str,
        credit_type: CreditType,
        on: date,
        *,
        lock: bool = False,
    ) -> CreditBalance | None:
        """Balance whose cycle covers *on*; the latest cycle wins if several do."""

    @abstractmethod
    def find_balance_for_cycle(
        self, user_id: str, credit_type: CreditType, cycle_start: date
    ) -> CreditBalance | None: ...

    @abstractmethod
    def insert_balance(self, balance: CreditBalance) -> None: ...

    @abstractmethod
    def update_balance(self, balance: CreditBalance) -> None: ...

    @abstractmethod
    def find_transactions(
        self,
        balance_id: str,
        *,
        reservation_id: str | None = None,
        transaction_type: TransactionType | None = None,
    ) -> list[CreditTransaction]: ...

    @abstractmethod
    def append_transaction(self, transaction: CreditTransaction) -> None: ...

    @abstractmethod
    def list_transactions(
        self, user_id: str, credit_type: CreditType | None = None
    ) -> list[CreditTransaction]:
        """Transactions for a user, newest first."""


class CreditStore(ABC):
    @abstractmethod
    def transaction(self) -> ContextManager[CreditSession]: ...

    def fetch_credit_balance(
        self, user_id: str, credit_type: CreditType, on: date
    ) -> CreditBalance | None:
        with self.transaction() as session:
            return session.find_balance(user_id, credit_type, on)
