"""Database URL helpers for Alembic migrations.

Kept apart from env.py so they can be tested without triggering
alembic.context at import time.
"""

from __future__ import annotations

import os

from psycopg2.extensions import parse_dsn
from sqlalchemy.engine import URL, make_url

DRIVERNAME = "postgresql+psycopg2"

_URL_PARTS = {"user", "password", "host", "port", "dbname"}


def dsn_to_url(dsn: str) -> URL:
    """Convert a libpq DSN (key=value or postgres:// URI) to a SQLAlchemy URL.

    A socket directory host (``host=/cloudsql/...``) is passed as the
    ``host`` query argument, which is how psycopg2 expects it. An empty
    password falls back to DB_PASSWORD.
    """
    if dsn.startswith(DRIVERNAME + "://"):
        return make_url(dsn)

    params = parse_dsn(dsn)

    password = params.get("password") or os.environ.get("DB_PASSWORD") or None
    host = params.get("host")
    port = params.get("port")
    query = {k: v for k, v in params.items() if k not in _URL_PARTS}

    if host and host.startswith("/"):
        query["host"] = host
        host = None
        port = None

    return URL.create(
        DRIVERNAME,
        username=params.get("user"),
        password=password,
        host=host,
        port=int(port) if port else None,
        database=params.get("dbname"),
        query=query,
    )


def get_database_url() -> str:
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    # postgres:// is accepted by libpq but not by SQLAlchemy
    return dsn_to_url(url).render_as_string(hide_password=False)
