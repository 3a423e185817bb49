"""
db/connection.py
----------------
Opens a single synchronous PostgreSQL session with psycopg2.
There is deliberately no pool: one repository owns one connection.
"""

import psycopg2
import psycopg2.extensions

from config import DatabaseConfig
from utils.logger import get_logger

logger = get_logger(__name__)


def open_connection(config: DatabaseConfig) -> psycopg2.extensions.connection:
    """
    Open a connection to the database described by `config`.

    Args:
        config: Login settings; validated before any network I/O.

    Returns:
        A psycopg2 connection (autocommit off, each repository call
        commits or rolls back its own transaction).

    Raises:
        ConfigurationError: If a login setting is missing.
        psycopg2.OperationalError: If the database is unreachable.
    """
    config.validate()
    try:
        conn = psycopg2.connect(**config.connect_kwargs())
        logger.info(f"Connected to {config.host}:{config.port}/{config.database}")
        return conn
    except psycopg2.OperationalError as e:
        logger.error(f"Failed to connect to {config.host}:{config.port}/{config.database}: {e}")
        raise


def close_connection(conn: psycopg2.extensions.connection) -> None:
    """Close a connection opened by open_connection()."""
    conn.close()
    logger.info("Database connection closed.")
