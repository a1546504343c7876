"""Tests for the read-only connection pool helpers."""

from unittest.mock import MagicMock, patch

import psycopg2
import pytest

from storage import db


@pytest.fixture
def pool():
    instance = MagicMock()
    conn = MagicMock()
    conn.readonly = False
    instance.getconn.return_value = conn
    with patch("storage.db.ThreadedConnectionPool", return_value=instance) as cls:
        instance.cls = cls
        yield instance
    db._pool = None


class TestReadCursor:
    def test_pool_created_once(self, pool, monkeypatch) -> None:
        monkeypatch.setenv("DATABASE_URL", "postgresql://db.internal/sites")

        assert db.get_pool() is db.get_pool()
        pool.cls.assert_called_once_with(minconn=1, maxconn=4, dsn="postgresql://db.internal/sites")

    def test_connection_made_read_only(self, pool) -> None:
        conn = pool.getconn.return_value

        with db.read_cursor() as cur:
            cur.execute("SELECT 1")

        conn.set_session.assert_called_once_with(readonly=True, autocommit=True)
        conn.cursor.assert_called_once_with(cursor_factory=db.RealDictCursor)
        pool.putconn.assert_called_once_with(conn, close=False)

    def test_query_error_keeps_connection(self, pool) -> None:
        conn = pool.getconn.return_value

        with pytest.raises(psycopg2.ProgrammingError):
            with db.read_cursor():
                raise psycopg2.ProgrammingError("no such column")

        pool.putconn.assert_called_once_with(conn, close=False)

    def test_broken_connection_discarded(self, pool) -> None:
        conn = pool.getconn.return_value

        with pytest.raises(psycopg2.OperationalError):
            with db.read_cursor():
                raise psycopg2.OperationalError("server closed the connection")

        pool.putconn.assert_called_once_with(conn, close=True)

    def test_close_pool(self, pool) -> None:
        db.get_pool()
        db.close_pool()

        pool.closeall.assert_called_once()
        assert db._pool is None
