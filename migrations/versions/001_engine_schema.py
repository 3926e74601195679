"""Reservation, credit balance and credit ledger tables (SQL-only).

Revision ID: 001_engine_schema
Revises:
Create Date: 2026-10-12
"""

from __future__ import annotations

from pathlib import Path

from alembic import op


# revision identifiers, used by Alembic.
revision = "001_engine_schema"
down_revision = None
branch_labels = None
depends_on = None


def _read_sql() -> str:
    sql_path = Path(__file__).resolve().parents[1] / "sql" / "001_engine_schema.sql"
    return sql_path.read_text(encoding="utf-8")


def upgrade() -> None:
    conn = op.get_bind()
    conn.exec_driver_sql(_read_sql())


def downgrade() -> None:
    conn = op.get_bind()
    conn.exec_driver_sql("DROP TABLE IF EXISTS credit_transactions")
    conn.exec_driver_sql("DROP TABLE IF EXISTS credit_balances")
    conn.exec_driver_sql("DROP TABLE IF EXISTS reservations")
