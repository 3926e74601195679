"""Credit ledger - per-user, per-credit-type balances across billing cycles.

Balances never roll over: allocating a new cycle creates a new row and the
previous cycle's remainder stays inert.

Deductions are idempotent on the hours a reservation still holds (its usage
minus its refunds): a retried deduction for a reservation that holds credits
returns them without touching the balance, while one whose credits were
refunded deducts again. Refunds never exceed what the reservation holds and
are deduplicated by an optional idempotency key.

Balance changes that would break the invariants raise
CreditLedgerInvariantViolation so the surrounding transaction aborts; the
reservation flows turn it into a result error.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal

from deskbook.infra.stores import CreditSession, CreditStore
from deskbook.infra.time import utc_now

from .errors import CreditLedgerInvariantViolation
from .models import CreditBalance, CreditTransaction, CreditType, TransactionType
from .money import ZERO, to_hours

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BalanceSnapshot:
    allocated: Decimal
    used: Decimal
    remaining: Decimal


@dataclass(frozen=True)
class LedgerEntry:
    """Result of a pure balance change: new balance, ledger row, hours moved."""

    balance: CreditBalance
    transaction: CreditTransaction | None
    applied: Decimal


def check_balance_invariants(balance: CreditBalance) -> CreditLedgerInvariantViolation | None:
    """Return a violation if remaining != allocated - used or falls outside [0, allocated]."""
    problems = []
    if balance.remaining != balance.allocated - balance.used:
        problems.append("remaining_mismatch")
    if balance.remaining < 0:
        problems.append("remaining_negative")
    if balance.remaining > balance.allocated:
        problems.append("remaining_above_allocated")
    if balance.used < 0:
        problems.append("used_negative")

    if not problems:
        return None
    return CreditLedgerInvariantViolation(
        f"Credit balance {balance.id} violates ledger invariants",
        {
            "problems": problems,
            "allocated": str(balance.allocated),
            "used": str(balance.used),
            "remaining": str(balance.remaining),
        },
    )


def _with_used(balance: CreditBalance, used: Decimal) -> CreditBalance:
    updated = replace(balance, used=used, remaining=balance.allocated - used)
    violation = check_balance_invariants(updated)
    if violation is not None:
        raise violation
    return updated


def _transaction(
    balance: CreditBalance,
    transaction_type: TransactionType,
    amount: Decimal,
    *,
    reservation_id: str | None,
    description: str,
    now: datetime,
    idempotency_key: str | None = None,
) -> CreditTransaction:
    return CreditTransaction(
        id=str(uuid.uuid4()),
        user_id=balance.user_id,
        balance_id=balance.id,
        transaction_type=transaction_type,
        amount=amount,
        balance_after=balance.remaining,
        reservation_id=reservation_id,
        description=description,
        idempotency_key=idempotency_key,
        created_at=now,
    )


def apply_deduction(
    balance: CreditBalance,
    requested_hours: Decimal,
    *,
    reservation_id: str | None,
    now: datetime,
    description: str = "",
) -> LedgerEntry:
    """Deduct up to *requested_hours*; any shortfall is left for the caller to bill."""
    requested = to_hours(requested_hours)
    if requested < 0:
        raise ValueError("requested_hours must be >= 0")

    applied = min(requested, balance.remaining)
    if applied <= 0:
        return LedgerEntry(balance, None, ZERO)

    updated = _with_used(balance, balance.used + applied)
    txn = _transaction(
        updated,
        TransactionType.USAGE,
        -applied,
        reservation_id=reservation_id,
        description=description or f"Used {applied} hours",
        now=now,
    )
    return LedgerEntry(updated, txn, applied)


def apply_refund(
    balance: CreditBalance,
    hours: Decimal,
    *,
    reservation_id: str | None,
    now: datetime,
    description: str = "",
    idempotency_key: str | None = None,
) -> LedgerEntry:
    """Give back up to *hours*, capped so used never drops below zero."""
    requested = to_hours(hours)
    if requested < 0:
        raise ValueError("hours must be >= 0")

    applied = min(requested, balance.used)
    if applied <= 0:
        return LedgerEntry(balance, None, ZERO)

    updated = _with_used(balance, balance.used - applied)
    txn = _transaction(
        updated,
        TransactionType.REFUND,
        applied,
        reservation_id=reservation_id,
        description=description or f"Refunded {applied} hours",
        now=now,
        idempotency_key=idempotency_key,
    )
    return LedgerEntry(updated, txn, applied)


class CreditLedger:
    """Credit operations over a CreditStore.

    Each operation runs as one store transaction with the balance row
    locked, so concurrent deductions for the same user and credit type are
    serialized.
    """

    def __init__(self, store: CreditStore) -> None:
        self._store = store

    def get_balance(
        self, user_id: str, credit_type: CreditType, on: date
    ) -> BalanceSnapshot | None:
        balance = self._store.fetch_credit_balance(user_id, credit_type, on)
        if balance is None:
            return None
        return BalanceSnapshot(balance.allocated, balance.used, balance.remaining)

    def available(self, user_id: str, credit_type: CreditType, on: date) -> Decimal:
        snapshot = self.get_balance(user_id, credit_type, on)
        return snapshot.remaining if snapshot is not None else ZERO

    def held(
        self, user_id: str, credit_type: CreditType, reservation_id: str, *, on: date
    ) -> Decimal:
        """Hours the reservation currently holds: its usage minus its refunds."""
        with self._store.transaction() as session:
            balance = session.find_balance(user_id, credit_type, on)
            if balance is None:
                return ZERO
            return self._held(session, balance, reservation_id)

    def deduct(
        self,
        user_id: str,
        credit_type: CreditType,
        requested_hours: Decimal,
        reservation_id: str,
        *,
        on: date,
        now: datetime | None = None,
    ) -> Decimal:
        """Deduct credits for a reservation and return the hours it holds afterwards.

        Returns zero when the user has no balance for the cycle covering *on*.
        A reservation that already holds credits is left untouched.
        """
        now = now or utc_now()
        with self._store.transaction() as session:
            balance = session.find_balance(user_id, credit_type, on, lock=True)
            if balance is None:
                logger.info(
                    "no credit balance for cycle",
                    extra={
                        "extra_fields": {
                            "user_id": user_id,
                            "credit_type": credit_type.value,
                            "on": on.isoformat(),
                        }
                    },
                )
                return ZERO

            held = self._held(session, balance, reservation_id)
            if held > 0:
                logger.info(
                    "duplicate deduction ignored",
                    extra={
                        "extra_fields": {
                            "balance_id": balance.id,
                            "reservation_id": reservation_id,
                            "held": str(held),
                        }
                    },
                )
                return held

            entry = apply_deduction(
                balance,
                requested_hours,
                reservation_id=reservation_id,
                now=now,
                description=f"Reservation {reservation_id}",
            )
            self._persist(session, entry)

        logger.info(
            "credits deducted",
            extra={
                "extra_fields": {
                    "user_id": user_id,
                    "credit_type": credit_type.value,
                    "reservation_id": reservation_id,
                    "requested": str(requested_hours),
                    "applied": str(entry.applied),
                    "remaining": str(entry.balance.remaining),
                }
            },
        )
        return entry.applied

    def refund(
        self,
        user_id: str,
        credit_type: CreditType,
        hours: Decimal,
        reservation_id: str,
        *,
        on: date,
        now: datetime | None = None,
        idempotency_key: str | None = None,
    ) -> Decimal:
        """Return credits to the balance and report the hours refunded.

        The refund never exceeds what the reservation still holds. With an
        *idempotency_key*, a repeated call returns the hours recorded by the
        first one instead of refunding again.
        """
        now = now or utc_now()
        with self._store.transaction() as session:
            balance = session.find_balance(user_id, credit_type, on, lock=True)
            if balance is None:
                return ZERO

            if idempotency_key is not None:
                previous = self._keyed_refunds(session, balance, reservation_id, idempotency_key)
                if previous:
                    logger.info(
                        "duplicate refund ignored",
                        extra={
                            "extra_fields": {
                                "balance_id": balance.id,
                                "reservation_id": reservation_id,
                                "idempotency_key": idempotency_key,
                            }
                        },
                    )
                    return sum((t.amount for t in previous), ZERO)

            requested = min(to_hours(hours), self._held(session, balance, reservation_id))
            entry = apply_refund(
                balance,
                requested,
                reservation_id=reservation_id,
                now=now,
                description=f"Refund for reservation {reservation_id}",
                idempotency_key=idempotency_key,
            )
            self._persist(session, entry)

        logger.info(
            "credits refunded",
            extra={
                "extra_fields": {
                    "user_id": user_id,
                    "credit_type": credit_type.value,
                    "reservation_id": reservation_id,
                    "applied": str(entry.applied),
                    "remaining": str(entry.balance.remaining),
                }
            },
        )
        return entry.applied

    def allocate_cycle(
        self,
        user_id: str,
        credit_type: CreditType,
        allocated_amount: Decimal,
        cycle_start: date,
        cycle_end: date,
        *,
        now: datetime | None = None,
    ) -> CreditBalance:
        """Create the balance for a new billing cycle.

        Earlier cycles are left as they are; their remainder is not carried
        forward. Allocating the same cycle twice returns the existing balance.
        """
        if cycle_end <= cycle_start:
            raise ValueError("cycle_end must be after cycle_start")
        allocated = to_hours(allocated_amount)
        if allocated < 0:
            raise ValueError("allocated_amount must be >= 0")

        now = now or utc_now()
        with self._store.transaction() as session:
            existing = session.find_balance_for_cycle(user_id, credit_type, cycle_start)
            if existing is not None:
                return existing

            balance = CreditBalance(
                id=str(uuid.uuid4()),
                user_id=user_id,
                credit_type=credit_type,
                cycle_start=cycle_start,
                cycle_end=cycle_end,
                allocated=allocated,
                used=ZERO,
                remaining=allocated,
            )
            violation = check_balance_invariants(balance)
            if violation is not None:
                raise violation

            session.insert_balance(balance)
            session.append_transaction(
                _transaction(
                    balance,
                    TransactionType.ALLOCATION,
                    allocated,
                    reservation_id=None,
                    description=f"Cycle {cycle_start.isoformat()} allocation",
                    now=now,
                )
            )

        logger.info(
            "credit cycle allocated",
            extra={
                "extra_fields": {
                    "user_id": user_id,
                    "credit_type": credit_type.value,
                    "cycle_start": cycle_start.isoformat(),
                    "cycle_end": cycle_end.isoformat(),
                    "allocated": str(allocated),
                }
            },
        )
        return balance

    def transactions(
        self, user_id: str, credit_type: CreditType | None = None
    ) -> list[CreditTransaction]:
        with self._store.transaction() as session:
            return session.list_transactions(user_id, credit_type)

    # ── internals ─────────────────────────────────────────

    @staticmethod
    def _held(session: CreditSession, balance: CreditBalance, reservation_id: str) -> Decimal:
        held = ZERO
        for t in session.find_transactions(balance.id, reservation_id=reservation_id):
            if t.transaction_type == TransactionType.USAGE:
                held += abs(t.amount)
            elif t.transaction_type == TransactionType.REFUND:
                held -= t.amount
        return max(held, ZERO)

    @staticmethod
    def _keyed_refunds(
        session: CreditSession,
        balance: CreditBalance,
        reservation_id: str,
        idempotency_key: str,
    ) -> list[CreditTransaction]:
        refunds = session.find_transactions(
            balance.id,
            reservation_id=reservation_id,
            transaction_type=TransactionType.REFUND,
        )
        return [t for t in refunds if t.idempotency_key == idempotency_key]

    @staticmethod
    def _persist(session: CreditSession, entry: LedgerEntry) -> None:
        if entry.transaction is None:
            return
        session.update_balance(entry.balance)
        session.append_transaction(entry.transaction)
