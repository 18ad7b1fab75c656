from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

import psycopg2
from psycopg2.pool import SimpleConnectionPool

from billing.config import settings

_pool: SimpleConnectionPool | None = None


def init_pool() -> None:
    global _pool
    if _pool is not None:
        return
    if not settings.db_enabled:
        return
    _pool = SimpleConnectionPool(settings.db_pool_min, settings.db_pool_max, dsn=settings.db_dsn)


def close_pool() -> None:
    global _pool
    if _pool is not None:
        _pool.closeall()
        _pool = None


@contextmanager
def get_conn(*, statement_timeout_ms: int | None = None) -> Iterator[psycopg2.extensions.connection]:
    """Yield a pooled connection inside one transaction.

    Commits when the block exits normally and rolls back on any exception.
    The connection goes back to the pool either way. Yields None when the
    database is not configured.
    """
    if _pool is None:
        init_pool()
    if _pool is None:
        # DB not configured
        yield None  # type: ignore[misc]
        return
    conn: psycopg2.extensions.connection | None = None
    try:
        # Attempt to obtain a healthy connection (retry once on closed connections)
        for attempt in range(2):
            conn = _pool.getconn()
            try:
                with conn.cursor() as cur:
                    if settings.db_schema:
                        cur.execute(f"SET search_path TO {settings.db_schema}")
                    if statement_timeout_ms:
                        cur.execute("SET LOCAL statement_timeout = %s", (int(statement_timeout_ms),))
                break
            except (psycopg2.OperationalError, psycopg2.InterfaceError):
                try:
                    _pool.putconn(conn, close=True)
                except Exception:  # noqa: BLE001
                    pass
                conn = None
                if attempt == 1:
                    raise
        if conn is None:
            yield None  # type: ignore[misc]
            return
        yield conn
        conn.commit()
    except Exception:
        if conn is not None:
            try:
                conn.rollback()
            except Exception:  # noqa: BLE001
                pass
        raise
    finally:
        if conn is not None:
            _pool.putconn(conn)
