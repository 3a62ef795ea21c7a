from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from psycopg2.extensions import connection as PgConnection
from psycopg2.pool import SimpleConnectionPool

from settings import settings

# audit writes are one short batch per attempt
_SESSION_OPTIONS = "-c statement_timeout=5000 -c application_name=tillpay"

_pool: Optional[SimpleConnectionPool] = None


def _require_dsn() -> str:
    dsn = (settings.DATABASE_URL or "").strip()
    if not dsn:
        raise RuntimeError("DATABASE_URL is not set; the audit log needs a database.")
    return dsn


def init_pool() -> SimpleConnectionPool:
    """Created lazily by the first audit write."""
    global _pool
    if _pool is None:
        _pool = SimpleConnectionPool(
            minconn=1,
            maxconn=4,
            dsn=_require_dsn(),
            connect_timeout=5,
            options=_SESSION_OPTIONS,
        )
    return _pool


def close_pool() -> None:
    global _pool
    if _pool is not None:
        _pool.closeall()
        _pool = None


@contextmanager
def get_conn() -> Iterator[PgConnection]:
    """One transaction per block: commit on clean exit, roll back on error."""
    pool = init_pool()
    conn = pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)
