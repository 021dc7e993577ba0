"""psycopg2 access for the Postgres-backed poll state store.

Provides:
- get_conn(): connection from DATABASE_URL
- txn(): short transaction context manager
- fetchone(): query helper
"""

import os
from contextlib import contextmanager
from typing import Any, Iterator, Sequence

import psycopg2
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor


def get_conn() -> PgConnection:
    """Open a connection using DATABASE_URL.

    Raises:
        RuntimeError: If DATABASE_URL is not set.
        psycopg2.Error: On connection failure.
    """
    dsn = os.environ.get("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL environment variable not set")
    return psycopg2.connect(dsn)


@contextmanager
def txn(conn: PgConnection | None = None) -> Iterator[PgCursor]:
    """Run a block inside one transaction.

    A connection opened here is closed on exit. Commits on success, rolls
    back and re-raises on error.

    Example:
        with txn() as cur:
            cur.execute("SELECT payload FROM processed_integration_events WHERE id = %s", (sid,))
    """
    owns_conn = conn is None
    if owns_conn:
        conn = get_conn()

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
    """Execute ``query`` and return the first row, or None."""
    cur.execute(query, params)
    return cur.fetchone()
