"""Database access layer using psycopg2.

Provides:
- get_conn(): connection from DATABASE_URL (or an explicit DSN)
- txn(): context manager for a short transaction
- fetchone/fetchall: query helpers
- for_update(): SELECT ... FOR UPDATE helper returning all locked rows
"""

import os
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Sequence

import psycopg2
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor

ConnectionFactory = Callable[[], PgConnection]


def get_conn(dsn: str | None = None) -> PgConnection:
    """Open a new connection.

    Raises:
        RuntimeError: If no DSN is given and DATABASE_URL is not set.
        psycopg2.Error: On connection failure.
    """
    dsn = dsn or os.environ.get("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL environment variable not set")
    return psycopg2.connect(dsn)


@contextmanager
def txn(
    conn: PgConnection | None = None,
    *,
    connect: ConnectionFactory = get_conn,
) -> Iterator[PgCursor]:
    """Yield a cursor inside one transaction.

    Commits on clean exit and rolls back on exception. A connection opened
    here (conn is None) is closed on exit; a caller-supplied one is not.

    Example:
        with txn() as cur:
            cur.execute("UPDATE reservations SET status = %s WHERE id = %s", (s, rid))
    """
    owns_conn = conn is None
    if owns_conn:
        conn = connect()

    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        if owns_conn:
            conn.close()


def fetchone(
    cur: PgCursor,
    query: str,
    params: Sequence[Any] | None = None,
) -> tuple[Any, ...] | None:
    cur.execute(query, params)
    return cur.fetchone()


def fetchall(
    cur: PgCursor,
    query: str,
    params: Sequence[Any] | None = None,
) -> list[tuple[Any, ...]]:
    cur.execute(query, params)
    return cur.fetchall()


def for_update(
    cur: PgCursor,
    query: str,
    params: Sequence[Any] | None = None,
    *,
    nowait: bool = False,
) -> list[tuple[Any, ...]]:
    """Run *query* with FOR UPDATE appended and return the locked rows.

    Use within a transaction; the rows stay locked until commit/rollback.
    With nowait=True the query fails instead of waiting on a held lock.
    """
    suffix = " FOR UPDATE NOWAIT" if nowait else " FOR UPDATE"
    cur.execute(query.rstrip().rstrip(";") + suffix, params)
    return cur.fetchall()
