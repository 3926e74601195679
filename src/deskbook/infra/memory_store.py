"""In-memory stores for tests and local runs.

A single re-entrant lock serializes every transaction, so "locked" reads
behave like SELECT ... FOR UPDATE. Changes made inside a transaction that
raises are rolled back from a snapshot taken at entry.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import date
from typing import Iterator

from deskbook.domain.models import (
    CreditBalance,
    CreditTransaction,
    CreditType,
    Reservation,
    ReservationStatus,
    TransactionType,
)

from .stores import CreditSession, CreditStore, ReservationSession, ReservationStore


class InMemoryReservationStore(ReservationStore, ReservationSession):
    def __init__(self, reservations: list[Reservation] | None = None) -> None:
        self._lock = threading.RLock()
        self._rows: dict[str, Reservation] = {r.id: r for r in reservations or []}

    @contextmanager
    def transaction(self) -> Iterator[ReservationSession]:
        with self._lock:
            snapshot = dict(self._rows)
            try:
                yield self
            except BaseException:
                self._rows = snapshot
                raise

    def fetch_active_reservations(
        self, resource_id: str, booking_date: date, *, lock: bool = False
    ) -> list[Reservation]:
        return sorted(
            (
                r
                for r in self._rows.values()
                if r.resource_id == resource_id
                and r.booking_date == booking_date
                and r.is_active
            ),
            key=lambda r: r.start_time,
        )

    def get(self, reservation_id: str, *, lock: bool = False) -> Reservation | None:
        return self._rows.get(reservation_id)

    def find_checked_in(self, user_id: str) -> list[Reservation]:
        return [
            r
            for r in self._rows.values()
            if r.user_id == user_id and r.status == ReservationStatus.CHECKED_IN
        ]

    def insert(self, reservation: Reservation) -> None:
        if reservation.id in self._rows:
            raise KeyError(f"Reservation {reservation.id} already exists")
        self._rows[reservation.id] = reservation

    def update(self, reservation: Reservation) -> None:
        if reservation.id not in self._rows:
            raise KeyError(f"Reservation {reservation.id} not found")
        self._rows[reservation.id] = reservation

    def all(self) -> list[Reservation]:
        return list(self._rows.values())


class InMemoryCreditStore(CreditStore, CreditSession):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._balances: dict[str, CreditBalance] = {}
        self._transactions: list[CreditTransaction] = []

    @contextmanager
    def transaction(self) -> Iterator[CreditSession]:
        with self._lock:
            balances = dict(self._balances)
            transactions = list(self._transactions)
            try:
                yield self
            except BaseException:
                self._balances = balances
                self._transactions = transactions
                raise

    def find_balance(
        self,
        user_id: str,
        credit_type: CreditType,
        on: date,
        *,
        lock: bool = False,
    ) -> CreditBalance | None:
        matches = [
            b
            for b in self._balances.values()
            if b.user_id == user_id and b.credit_type == credit_type and b.covers(on)
        ]
        if not matches:
            return None
        return max(matches, key=lambda b: b.cycle_start)

    def find_balance_for_cycle(
        self, user_id: str, credit_type: CreditType, cycle_start: date
    ) -> CreditBalance | None:
        for balance in self._balances.values():
            if (
                balance.user_id == user_id
                and balance.credit_type == credit_type
                and balance.cycle_start == cycle_start
            ):
                return balance
        return None

    def insert_balance(self, balance: CreditBalance) -> None:
        self._balances[balance.id] = balance

    def update_balance(self, balance: CreditBalance) -> None:
        if balance.id not in self._balances:
            raise KeyError(f"Credit balance {balance.id} not found")
        self._balances[balance.id] = balance

    def find_transactions(
        self,
        balance_id: str,
        *,
        reservation_id: str | None = None,
        transaction_type: TransactionType | None = None,
    ) -> list[CreditTransaction]:
        return [
            t
            for t in self._transactions
            if t.balance_id == balance_id
            and (reservation_id is None or t.reservation_id == reservation_id)
            and (transaction_type is None or t.transaction_type == transaction_type)
        ]

    def append_transaction(self, transaction: CreditTransaction) -> None:
        self._transactions.append(transaction)

    def list_transactions(
        self, user_id: str, credit_type: CreditType | None = None
    ) -> list[CreditTransaction]:
        types = {b.id: b.credit_type for b in self._balances.values()}
        rows = [
            t
            for t in self._transactions
            if t.user_id == user_id
            and (credit_type is None or types.get(t.balance_id) == credit_type)
        ]
        # Appended in commit order; newest first
        return list(reversed(rows))
