"""DB-level exclusion constraint for overlapping active reservations.

The application re-checks overlap under a per-resource/date lock before
every insert; this constraint rejects an overlapping row even when that
path is bypassed.

Revision ID: 002_no_active_reservation_overlap
Revises: 001_engine_schema
Create Date: 2026-10-12
"""

from __future__ import annotations

from pathlib import Path

from alembic import op

revision = "002_no_active_reservation_overlap"
down_revision = "001_engine_schema"
branch_labels = None
depends_on = None

_SQL_FILE = (
    Path(__file__).resolve().parent.parent / "sql" / "002_no_active_reservation_overlap.sql"
)


def upgrade() -> None:
    op.execute(_SQL_FILE.read_text(encoding="utf-8"))


def downgrade() -> None:
    op.execute(
        "ALTER TABLE reservations DROP CONSTRAINT IF EXISTS no_active_reservation_overlap"
    )
    # btree_gist is kept: other indexes may depend on it.
