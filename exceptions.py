"""
exceptions.py
-------------
Error taxonomy shared by every layer.

Validation errors (configuration and argument problems) are raised before
any network I/O. Errors reported by the database driver itself are never
wrapped: psycopg2 / asyncpg exceptions reach the caller unchanged.
"""


class PgMapperError(Exception):
    """Base class for errors raised by pgmapper itself."""


class ConfigurationError(PgMapperError):
    """Malformed entity annotations or missing login settings."""


class ArgumentError(PgMapperError):
    """Caller input that cannot be turned into a valid statement."""


class ResourceStateError(PgMapperError):
    """Operation attempted on a repository whose connection is not open."""


class OperationCancelled(Exception):
    """
    An asynchronous operation was cancelled through its CancellationToken.

    Not a PgMapperError: a cancelled call is an outcome the caller asked
    for, not a failure.
    """
