"""Postgres-backed reservation and credit stores (psycopg2).

Locked reads:
- reservations: a transaction-scoped advisory lock on (resource_id, date)
  plus FOR UPDATE on the active rows, so an empty day is serialized too;
- credit balances: FOR UPDATE on the balance row.

The no_active_reservation_overlap exclusion constraint (see migrations) is
the last line of defence; a violation surfaces as SlotUnavailable.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from typing import Any, Iterator

from psycopg2 import errors as pg_errors
from psycopg2.extensions import cursor as PgCursor

from deskbook.domain.errors import SlotUnavailable
from deskbook.domain.models import (
    ACTIVE_STATUSES,
    CreditBalance,
    CreditTransaction,
    CreditType,
    PaymentMethod,
    Reservation,
    ReservationStatus,
    TransactionType,
)

from .db import ConnectionFactory, fetchall, fetchone, for_update, get_conn, txn
from .stores import CreditSession, CreditStore, ReservationSession, ReservationStore

logger = logging.getLogger(__name__)

_ACTIVE = [s.value for s in sorted(ACTIVE_STATUSES, key=lambda s: s.value)]

RESERVATION_COLUMNS = (
    "id",
    "user_id",
    "resource_id",
    "booking_date",
    "start_time",
    "end_time",
    "status",
    "holder_discount_applied",
    "credits_used",
    "overage_hours",
    "subtotal",
    "discount_amount",
    "processing_fee",
    "total_price",
    "effective_hourly_rate",
    "payment_method",
    "check_in_time",
    "check_out_time",
    "actual_duration_hours",
    "final_charge",
    "created_at",
)

BALANCE_COLUMNS = (
    "id",
    "user_id",
    "credit_type",
    "cycle_start",
    "cycle_end",
    "allocated",
    "used",
    "remaining",
)

TRANSACTION_COLUMNS = (
    "id",
    "user_id",
    "balance_id",
    "transaction_type",
    "amount",
    "balance_after",
    "reservation_id",
    "description",
    "idempotency_key",
    "created_at",
)

_SELECT_RESERVATION = f"SELECT {', '.join(RESERVATION_COLUMNS)} FROM reservations"


# ── Row mapping ──────────────────────────────────────────


def reservation_from_row(row: tuple[Any, ...]) -> Reservation:
    data = dict(zip(RESERVATION_COLUMNS, row))
    data["id"] = str(data["id"])
    data["status"] = ReservationStatus(data["status"])
    data["payment_method"] = PaymentMethod(data["payment_method"])
    return Reservation(**data)


def reservation_to_params(reservation: Reservation) -> list[Any]:
    values = []
    for column in RESERVATION_COLUMNS:
        value = getattr(reservation, column)
        if isinstance(value, (ReservationStatus, PaymentMethod)):
            value = value.value
        values.append(value)
    return values


def balance_from_row(row: tuple[Any, ...]) -> CreditBalance:
    data = dict(zip(BALANCE_COLUMNS, row))
    data["id"] = str(data["id"])
    data["credit_type"] = CreditType(data["credit_type"])
    return CreditBalance(**data)


def transaction_from_row(row: tuple[Any, ...]) -> CreditTransaction:
    data = dict(zip(TRANSACTION_COLUMNS, row))
    data["id"] = str(data["id"])
    data["balance_id"] = str(data["balance_id"])
    data["transaction_type"] = TransactionType(data["transaction_type"])
    data["amount"] = Decimal(data["amount"])
    data["balance_after"] = Decimal(data["balance_after"])
    return CreditTransaction(**data)


# ── Reservations ─────────────────────────────────────────


class PostgresReservationSession(ReservationSession):
    def __init__(self, cur: PgCursor) -> None:
        self.cur = cur

    def fetch_active_reservations(
        self, resource_id: str, booking_date: date, *, lock: bool = False
    ) -> list[Reservation]:
        query = (
            f"{_SELECT_RESERVATION} "
            "WHERE resource_id = %s AND booking_date = %s AND status = ANY(%s) "
            "ORDER BY start_time"
        )
        params = (resource_id, booking_date, _ACTIVE)
        if lock:
            self.cur.execute(
                "SELECT pg_advisory_xact_lock(hashtext(%s))",
                (f"{resource_id}:{booking_date.isoformat()}",),
            )
            rows = for_update(self.cur, query, params)
        else:
            rows = fetchall(self.cur, query, params)
        return [reservation_from_row(r) for r in rows]

    def get(self, reservation_id: str, *, lock: bool = False) -> Reservation | None:
        query = f"{_SELECT_RESERVATION} WHERE id = %s"
        if lock:
            rows = for_update(self.cur, query, (reservation_id,))
            row = rows[0] if rows else None
        else:
            row = fetchone(self.cur, query, (reservation_id,))
        return reservation_from_row(row) if row else None

    def find_checked_in(self, user_id: str) -> list[Reservation]:
        rows = fetchall(
            self.cur,
            f"{_SELECT_RESERVATION} WHERE user_id = %s AND status = %s",
            (user_id, ReservationStatus.CHECKED_IN.value),
        )
        return [reservation_from_row(r) for r in rows]

    def insert(self, reservation: Reservation) -> None:
        placeholders = ", ".join(["%s"] * len(RESERVATION_COLUMNS))
        try:
            self.cur.execute(
                f"INSERT INTO reservations ({', '.join(RESERVATION_COLUMNS)}) "
                f"VALUES ({placeholders})",
                reservation_to_params(reservation),
            )
        except pg_errors.ExclusionViolation as exc:
            logger.warning(
                "overlap rejected by exclusion constraint",
                extra={
                    "extra_fields": {
                        "reservation_id": reservation.id,
                        "resource_id": reservation.resource_id,
                    }
                },
            )
            raise SlotUnavailable(
                reservation.resource_id, "unknown", {"constraint": "no_active_reservation_overlap"}
            ) from exc

    def update(self, reservation: Reservation) -> None:
        columns = [c for c in RESERVATION_COLUMNS if c not in ("id", "created_at")]
        assignments = ", ".join(f"{c} = %s" for c in columns)
        params = dict(zip(RESERVATION_COLUMNS, reservation_to_params(reservation)))
        self.cur.execute(
            f"UPDATE reservations SET {assignments}, updated_at = now() WHERE id = %s",
            [params[c] for c in columns] + [reservation.id],
        )


class PostgresReservationStore(ReservationStore):
    def __init__(self, connect: ConnectionFactory = get_conn) -> None:
        self._connect = connect

    @contextmanager
    def transaction(self) -> Iterator[ReservationSession]:
        with txn(connect=self._connect) as cur:
            yield PostgresReservationSession(cur)


# ── Credits ──────────────────────────────────────────────


class PostgresCreditSession(CreditSession):
    def __init__(self, cur: PgCursor) -> None:
        self.cur = cur

    def find_balance(
        self,
        user_id: str,
        credit_type: CreditType,
        on: date,
        *,
        lock: bool = False,
    ) -> CreditBalance | None:
        query = (
            f"SELECT {', '.join(BALANCE_COLUMNS)} FROM credit_balances "
            "WHERE user_id = %s AND credit_type = %s "
            "AND cycle_start <= %s AND cycle_end > %s "
            "ORDER BY cycle_start DESC LIMIT 1"
        )
        params = (user_id, credit_type.value, on, on)
        if lock:
            rows = for_update(self.cur, query, params)
            row = rows[0] if rows else None
        else:
            row = fetchone(self.cur, query, params)
        return balance_from_row(row) if row else None

    def find_balance_for_cycle(
        self, user_id: str, credit_type: CreditType, cycle_start: date
    ) -> CreditBalance | None:
        row = fetchone(
            self.cur,
            f"SELECT {', '.join(BALANCE_COLUMNS)} FROM credit_balances "
            "WHERE user_id = %s AND credit_type = %s AND cycle_start = %s",
            (user_id, credit_type.value, cycle_start),
        )
        return balance_from_row(row) if row else None

    def insert_balance(self, balance: CreditBalance) -> None:
        self.cur.execute(
            f"INSERT INTO credit_balances ({', '.join(BALANCE_COLUMNS)}) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s, %s)",
            (
                balance.id,
                balance.user_id,
                balance.credit_type.value,
                balance.cycle_start,
                balance.cycle_end,
                balance.allocated,
                balance.used,
                balance.remaining,
            ),
        )

    def update_balance(self, balance: CreditBalance) -> None:
        self.cur.execute(
            """
            UPDATE credit_balances
            SET used = %s, remaining = %s, updated_at = now()
            WHERE id = %s
            """,
            (balance.used, balance.remaining, balance.id),
        )

    def find_transactions(
        self,
        balance_id: str,
        *,
        reservation_id: str | None = None,
        transaction_type: TransactionType | None = None,
    ) -> list[CreditTransaction]:
        conditions = ["balance_id = %s"]
        params: list[Any] = [balance_id]
        if reservation_id is not None:
            conditions.append("reservation_id = %s")
            params.append(reservation_id)
        if transaction_type is not None:
            conditions.append("transaction_type = %s")
            params.append(transaction_type.value)

        rows = fetchall(
            self.cur,
            f"SELECT {', '.join(TRANSACTION_COLUMNS)} FROM credit_transactions "
            f"WHERE {' AND '.join(conditions)} ORDER BY created_at",
            params,
        )
        return [transaction_from_row(r) for r in rows]

    def append_transaction(self, transaction: CreditTransaction) -> None:
        self.cur.execute(
            f"INSERT INTO credit_transactions ({', '.join(TRANSACTION_COLUMNS)}) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, now()))",
            (
                transaction.id,
                transaction.user_id,
                transaction.balance_id,
                transaction.transaction_type.value,
                transaction.amount,
                transaction.balance_after,
                transaction.reservation_id,
                transaction.description,
                transaction.idempotency_key,
                transaction.created_at,
            ),
        )

    def list_transactions(
        self, user_id: str, credit_type: CreditType | None = None
    ) -> list[CreditTransaction]:
        columns = ", ".join(f"t.{c}" for c in TRANSACTION_COLUMNS)
        query = (
            f"SELECT {columns} FROM credit_transactions t "
            "JOIN credit_balances b ON b.id = t.balance_id "
            "WHERE t.user_id = %s"
        )
        params: list[Any] = [user_id]
        if credit_type is not None:
            query += " AND b.credit_type = %s"
            params.append(credit_type.value)
        query += " ORDER BY t.created_at DESC"
        return [transaction_from_row(r) for r in fetchall(self.cur, query, params)]


class PostgresCreditStore(CreditStore):
    def __init__(self, connect: ConnectionFactory = get_conn) -> None:
        self._connect = connect

    @contextmanager
    def transaction(self) -> Iterator[CreditSession]:
        with txn(connect=self._connect) as cur:
            yield PostgresCreditSession(cur)
