"""
db/async_connection.py
----------------------
Opens a single asynchronous PostgreSQL session with asyncpg.
"""

import asyncpg

from config import DatabaseConfig
from utils.logger import get_logger

logger = get_logger(__name__)


async def open_async_connection(config: DatabaseConfig) -> asyncpg.Connection:
    """
    Open an asyncpg connection to the database described by `config`.

    asyncpg runs in auto-commit mode; explicit transactions are opened only
    where a server-side cursor needs one.

    Raises:
        ConfigurationError: If a login setting is missing.
        OSError / asyncpg.PostgresError: If the connection fails.
    """
    config.validate()
    try:
        conn = await asyncpg.connect(**config.connect_kwargs())
        logger.info(f"Connected to {config.host}:{config.port}/{config.database}")
        return conn
    except (OSError, asyncpg.PostgresError) as e:
        logger.error(f"Failed to connect to {config.host}:{config.port}/{config.database}: {e}")
        raise


async def close_async_connection(conn: asyncpg.Connection) -> None:
    """Gracefully close a connection opened by open_async_connection()."""
    await conn.close()
    logger.info("Database connection closed.")
