"""
config.py
---------
Central configuration module. Loads database login settings from the
environment (or a .env file) and exposes them as typed constants and as
a DatabaseConfig object that repositories are constructed with.
"""

import os
from dataclasses import dataclass, fields
from typing import Optional

from dotenv import load_dotenv

from exceptions import ConfigurationError

load_dotenv()


# ── PostgreSQL ────────────────────────────────────────────
DB_HOST: str = os.getenv("DB_HOST", "localhost")
DB_PORT: int = int(os.getenv("DB_PORT", "5432"))
DB_NAME: str = os.getenv("DB_NAME", "")
DB_USER: str = os.getenv("DB_USER", "")
DB_PASS: str = os.getenv("DB_PASS", "")

# ── Logging ───────────────────────────────────────────────
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()


@dataclass
class DatabaseConfig:
    """
    Login information for a single PostgreSQL session.

    Attributes:
        host: Server host name or IP.
        port: Server port.
        username: Login role.
        password: Login password.
        database: Database name.
    """
    host: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None
    database: Optional[str] = None

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Build a config from the DB_* environment variables."""
        return cls(
            host=DB_HOST,
            port=DB_PORT,
            username=DB_USER,
            password=DB_PASS,
            database=DB_NAME,
        )

    def validate(self) -> None:
        """
        Check that every login field is present.

        Raises:
            ConfigurationError: Listing the fields that are missing.
        """
        missing = [
            f.name for f in fields(self)
            if getattr(self, f.name) is None or getattr(self, f.name) == ""
        ]
        if missing:
            raise ConfigurationError(
                f"Missing database login settings: {', '.join(missing)}"
            )
        if not isinstance(self.port, int) or isinstance(self.port, bool):
            raise ConfigurationError(f"Database port must be an integer, got {self.port!r}")

    def connect_kwargs(self) -> dict:
        """Keyword arguments accepted by both psycopg2.connect and asyncpg.connect."""
        return {
            "host": self.host,
            "port": self.port,
            "user": self.username,
            "password": self.password,
            "database": self.database,
        }

    def __repr__(self) -> str:
        return (
            f"DatabaseConfig(host={self.host!r}, port={self.port!r}, "
            f"username={self.username!r}, password='***', database={self.database!r})"
        )
