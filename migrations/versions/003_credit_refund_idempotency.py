"""Idempotency key on credit ledger refunds.

Revision ID: 003_credit_refund_idempotency
Revises: 002_no_active_reservation_overlap
Create Date: 2026-10-18
"""

from __future__ import annotations

from pathlib import Path

from alembic import op

revision = "003_credit_refund_idempotency"
down_revision = "002_no_active_reservation_overlap"
branch_labels = None
depends_on = None

_SQL_FILE = Path(__file__).resolve().parent.parent / "sql" / "003_credit_refund_idempotency.sql"


def upgrade() -> None:
    op.execute(_SQL_FILE.read_text(encoding="utf-8"))


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS uq_credit_transactions_idempotency_key")
    op.execute("ALTER TABLE credit_transactions DROP COLUMN IF EXISTS idempotency_key")
