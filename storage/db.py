"""PostgreSQL access for site configuration lookups.

The harvester never writes to the database. Connections come from a lazily
created psycopg2 pool and are switched to read-only autocommit sessions.
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager

import psycopg2
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from env_config import get_database_url

logger = logging.getLogger(__name__)

_pool: ThreadedConnectionPool | None = None


def get_pool(max_connections: int = 4, dsn: str | None = None) -> ThreadedConnectionPool:
    """Return the process-wide connection pool, creating it on first use.

    Args:
        max_connections: Upper bound on pooled connections.
        dsn: Connection string. Defaults to DATABASE_URL.

    Raises:
        psycopg2.Error: If the first connection cannot be opened.
    """
    global _pool

    if _pool is None:
        _pool = ThreadedConnectionPool(minconn=1, maxconn=max_connections, dsn=dsn or get_database_url())
        logger.debug(f"Opened database pool (max {max_connections} connections)")
    return _pool


@contextmanager
def read_cursor() -> Generator[RealDictCursor, None, None]:
    """Yield a dict-row cursor on a read-only connection.

    A connection that fails at the transport level is closed instead of being
    returned to the pool.

    Example:
        >>> with read_cursor() as cur:
        ...     cur.execute("SELECT selector FROM websites WHERE url = %s", ("site.com",))
        ...     row = cur.fetchone()
    """
    pool = get_pool()
    conn = pool.getconn()
    broken = False
    try:
        if not conn.readonly:
            conn.set_session(readonly=True, autocommit=True)
        with conn.cursor(cursor_factory=RealDictCursor) as cursor:
            yield cursor
    except (psycopg2.OperationalError, psycopg2.InterfaceError):
        broken = True
        raise
    finally:
        pool.putconn(conn, close=broken)


def close_pool() -> None:
    """Close every pooled connection. The next lookup opens a new pool."""
    global _pool
    if _pool is not None:
        _pool.closeall()
        _pool = None
