"""Shared test fixtures and configuration."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from config import DatabaseConfig
from models.schema import clear_schema_cache


@pytest.fixture(autouse=True)
def _clear_schema_cache():
    """Start every test with an empty schema registry."""
    clear_schema_cache()
    yield
    clear_schema_cache()


@pytest.fixture
def db_config() -> DatabaseConfig:
    return DatabaseConfig(
        host="localhost",
        port=5432,
        username="tester",
        password="secret",
        database="school",
    )


@pytest.fixture
def pg_conn():
    """A psycopg2-like connection mock; its cursor is `pg_conn.cur`."""
    conn = MagicMock()
    conn.closed = 0
    cur = conn.cursor.return_value.__enter__.return_value
    cur.description = None
    cur.rowcount = -1
    conn.cur = cur
    with patch("psycopg2.connect", return_value=conn) as connect:
        conn.connect_mock = connect
        yield conn


@pytest.fixture
def apg_conn():
    """An asyncpg-like connection mock."""
    conn = MagicMock()
    conn.is_closed = MagicMock(return_value=False)
    conn.close = AsyncMock()
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetchval = AsyncMock(return_value=None)
    conn.execute = AsyncMock(return_value="")
    with patch("asyncpg.connect", new=AsyncMock(return_value=conn)) as connect:
        conn.connect_mock = connect
        yield conn
