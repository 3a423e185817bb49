"""
repositories/ - Execution Facade
================================
EntityRepository (psycopg2, blocking) and AsyncEntityRepository (asyncpg,
asyncio with cancellation) expose the same CRUD operations over one
PostgreSQL session. SQL is generated from entity dataclasses or supplied
by the caller with ``@name`` placeholders.
"""

from repositories.async_entity_repo import AsyncEntityRepository, AsyncRowStream
from repositories.entity_repo import EntityRepository, RowStream

__all__ = ["EntityRepository", "RowStream", "AsyncEntityRepository", "AsyncRowStream"]
