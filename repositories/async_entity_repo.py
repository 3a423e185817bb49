"""
repositories/async_entity_repo.py
---------------------------------
Asynchronous execution facade over a single asyncpg connection.

Mirrors EntityRepository. Every coroutine accepts an optional
CancellationToken that is checked at each I/O suspension point (connect,
statement dispatch, row fetch); a token that fires while the driver is
waiting aborts the call with OperationCancelled.
"""

from typing import Any, Generic, Optional, Sequence, TypeVar, Union

import asyncpg

from config import DatabaseConfig
from db.async_connection import close_async_connection, open_async_connection
from db.params import Params, SqlValue, to_numeric, validate_params
from db.sql_builder import (
    Statement,
    build_create_table,
    build_delete,
    build_insert,
    build_insert_many,
    build_select_all,
    build_select_one,
    build_update,
)
from exceptions import ResourceStateError
from models.row_mapper import map_row, map_rows, new_entity, row_to_dict
from models.schema import ResolvedSchema, resolve_schema, table_name_of
from utils.cancellation import CancellationToken, run_cancellable
from utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def prepare_async_sql(sql: str, params: Optional[Params]) -> tuple[str, list[SqlValue]]:
    """
    Validate `params` against `sql` and rewrite it for asyncpg.

    Returns:
        (sql, args); without parameters the SQL is sent unchanged, which
        lets asyncpg run several ``;``-separated statements at once.

    Raises:
        ArgumentError: On a placeholder/parameter mismatch.
    """
    bound = validate_params(sql, params)
    rewritten, args = to_numeric(sql, bound)
    if not bound:
        return sql, []
    return rewritten, args


def affected_rows(status: Optional[str]) -> int:
    """
    Row count from a command status tag (``"INSERT 0 3"`` -> 3).

    Tags without a count (``"CREATE TABLE"``) give -1.
    """
    if not status:
        return -1
    last = status.rsplit(" ", 1)[-1]
    return int(last) if last.isdigit() else -1


class AsyncRowStream(Generic[T]):
    """
    Lazily mapped rows backed by an asyncpg cursor inside a transaction.

    Drain it or close it; the transaction stays open until then::

        async with await repo.stream(Teacher, cancel=token) as teachers:
            async for teacher in teachers:
                ...
    """

    def __init__(
        self,
        repo: "AsyncEntityRepository",
        conn: asyncpg.Connection,
        schema: ResolvedSchema,
        cancel: Optional[CancellationToken],
    ):
        self._repo = repo
        self._conn = conn
        self._schema = schema
        self._cancel = cancel
        self._tx = None
        self._cursor = None
        self.closed = False

    async def _open(self, query: str, args: list[SqlValue]) -> None:
        self._tx = self._conn.transaction()
        try:
            await run_cancellable(self._tx.start(), self._cancel)
        except BaseException:
            self.closed = True
            self._repo._release_stream(self)
            raise
        try:
            self._cursor = await run_cancellable(self._conn.cursor(query, *args), self._cancel)
        except BaseException:
            await self._abort()
            raise

    def __aiter__(self) -> "AsyncRowStream[T]":
        return self

    async def __anext__(self) -> T:
        if self.closed:
            raise StopAsyncIteration
        try:
            record = await run_cancellable(self._cursor.fetchrow(), self._cancel)
        except BaseException:
            await self._abort()
            raise
        if record is None:
            await self.aclose()
            raise StopAsyncIteration
        item = new_entity(self._schema.entity_type)
        return map_row(record.items(), item, self._schema)

    async def aclose(self) -> None:
        """Commit the read transaction. Safe to call twice."""
        if self.closed:
            return
        self.closed = True
        try:
            await self._tx.commit()
        finally:
            self._repo._release_stream(self)

    async def _abort(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self._tx.rollback()
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            logger.warning(f"Rollback of aborted row stream failed: {e}")
        finally:
            self._repo._release_stream(self)

    async def __aenter__(self) -> "AsyncRowStream[T]":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            await self.aclose()
        else:
            await self._abort()


class AsyncEntityRepository:
    """
    Asynchronous CRUD operations for dataclass entities on one session.

    Example::

        async with AsyncEntityRepository(DatabaseConfig.from_env()) as repo:
            token = CancellationToken()
            token.cancel_after(5)
            teachers = await repo.fetch(Teacher, cancel=token)
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._conn: Optional[asyncpg.Connection] = None
        self._stream: Optional[AsyncRowStream] = None

    # ── CONNECTION ────────────────────────────────────────

    @property
    def is_open(self) -> bool:
        return self._conn is not None and not self._conn.is_closed()

    async def connect(self, cancel: Optional[CancellationToken] = None) -> None:
        """
        Open the session.

        Raises:
            ResourceStateError: If the repository is already connected.
            ConfigurationError: If a login setting is missing.
            OperationCancelled: If `cancel` fires before the connection is made.
        """
        if self.is_open:
            raise ResourceStateError("Repository is already connected")
        self._conn = await run_cancellable(open_async_connection(self.config), cancel)

    async def close(self) -> None:
        """
        Close the session, aborting any open row stream first.

        Raises:
            ResourceStateError: If the repository is not connected.
        """
        if not self.is_open:
            raise ResourceStateError("Repository is not connected")
        if self._stream is not None:
            await self._stream._abort()
        conn, self._conn = self._conn, None
        await close_async_connection(conn)

    async def __aenter__(self) -> "AsyncEntityRepository":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self.is_open:
            await self.close()

    def _require_conn(self) -> asyncpg.Connection:
        if not self.is_open:
            raise ResourceStateError("Repository is not connected. Call connect() first.")
        if self._stream is not None:
            raise ResourceStateError("A row stream is still open; drain or close it first")
        return self._conn

    def _release_stream(self, stream: AsyncRowStream) -> None:
        if self._stream is stream:
            self._stream = None

    async def _call(self, method: str, query: str, args: list[SqlValue], cancel) -> Any:
        """Run conn.<method>(query, *args), logging driver errors before re-raising."""
        conn = self._require_conn()
        try:
            return await run_cancellable(getattr(conn, method)(query, *args), cancel)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"Statement failed: {e}")
            raise

    # ── READ ──────────────────────────────────────────────

    async def fetch(
        self,
        entity_type: type[T],
        sql: Optional[str] = None,
        params: Optional[Params] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> list[T]:
        """
        Run a query and map every row onto a new `entity_type` instance.

        Defaults to ``SELECT * FROM <table>``.
        """
        resolve_schema(entity_type)
        if sql is None:
            sql = build_select_all(entity_type).sql
        query, args = prepare_async_sql(sql, params)
        logger.debug(f"fetch {entity_type.__name__}: {sql}")
        records = await self._call("fetch", query, args, cancel)
        return map_rows((record.items() for record in records), entity_type)

    async def fetch_one(
        self,
        entity_type: type[T],
        sql: Optional[str] = None,
        params: Optional[Params] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> Optional[T]:
        """
        Run a query and map its first row, or return None when there is none.

        Defaults to ``SELECT * FROM <table> LIMIT 1``.
        """
        schema = resolve_schema(entity_type)
        if sql is None:
            sql = build_select_one(entity_type).sql
        query, args = prepare_async_sql(sql, params)
        logger.debug(f"fetch_one {entity_type.__name__}: {sql}")
        record = await self._call("fetchrow", query, args, cancel)
        if record is None:
            return None
        return map_row(record.items(), new_entity(entity_type), schema)

    async def stream(
        self,
        entity_type: type[T],
        sql: Optional[str] = None,
        params: Optional[Params] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> AsyncRowStream[T]:
        """
        Open a cursor over a query and return rows lazily as entities.

        The stream holds a transaction until drained or closed; no other call
        can use the repository meanwhile.
        """
        schema = resolve_schema(entity_type)
        if sql is None:
            sql = build_select_all(entity_type).sql
        query, args = prepare_async_sql(sql, params)
        conn = self._require_conn()
        logger.debug(f"stream {entity_type.__name__}: {sql}")
        stream: AsyncRowStream[T] = AsyncRowStream(self, conn, schema, cancel)
        self._stream = stream
        await stream._open(query, args)
        return stream

    async def dump(
        self,
        sql: str,
        params: Optional[Params] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> list[dict[str, Any]]:
        """Run a query and return its rows as ``{column: value}`` dicts."""
        query, args = prepare_async_sql(sql, params)
        logger.debug(f"dump: {sql}")
        records = await self._call("fetch", query, args, cancel)
        return [row_to_dict(record.items()) for record in records]

    async def last_inserted_id(self, cancel: Optional[CancellationToken] = None) -> int:
        """The session's most recent sequence value, or -1 if it is not an integer."""
        value = await self._call("fetchval", "SELECT lastval() AS id", [], cancel)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        return -1

    # ── WRITE ─────────────────────────────────────────────

    async def execute_non_query(
        self,
        sql: str,
        params: Optional[Params] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> int:
        """
        Execute a statement that returns no result set.

        Returns:
            The affected row count from the command tag, or -1 when the
            statement reports none.
        """
        query, args = prepare_async_sql(sql, params)
        logger.debug(f"execute: {sql}")
        status = await self._call("execute", query, args, cancel)
        return affected_rows(status)

    async def insert(self, entity: Any, cancel: Optional[CancellationToken] = None) -> int:
        """Insert one entity; returns the affected row count."""
        return await self._execute_statement(build_insert(entity), cancel)

    async def insert_returning(
        self, entity: T, cancel: Optional[CancellationToken] = None
    ) -> Optional[T]:
        """Insert one entity and return the stored row as a new instance."""
        statement = build_insert(entity).returning()
        return await self.fetch_one(type(entity), statement.sql, statement.params, cancel)

    async def insert_many(
        self, entities: Sequence[Any], cancel: Optional[CancellationToken] = None
    ) -> int:
        """Insert a batch with one multi-row INSERT; returns the affected row count."""
        return await self._execute_statement(build_insert_many(entities), cancel)

    async def insert_many_returning(
        self, entities: Sequence[T], cancel: Optional[CancellationToken] = None
    ) -> list[T]:
        """Insert a batch and return the stored rows."""
        statement = build_insert_many(entities).returning()
        return await self.fetch(type(entities[0]), statement.sql, statement.params, cancel)

    async def update(
        self,
        entity: Any,
        where: Optional[str] = None,
        where_params: Optional[Params] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> int:
        """Update the entity's table from its non-None fields; see EntityRepository.update."""
        return await self._execute_statement(build_update(entity, where, where_params), cancel)

    async def delete(
        self,
        target: Union[str, type],
        where: Optional[str] = None,
        where_params: Optional[Params] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> int:
        """Delete rows from a table given by name or by entity type."""
        table = target if isinstance(target, str) else table_name_of(target)
        return await self._execute_statement(build_delete(table, where, where_params), cancel)

    async def create_table(
        self,
        entity_type: type,
        drop_if_exists: bool = False,
        temporary: bool = False,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        """Create the entity's table from its field declarations."""
        statement = build_create_table(entity_type, drop_if_exists, temporary)
        logger.debug(f"create_table: {statement.sql}")
        await self._call("execute", statement.sql, [], cancel)
        logger.info(f"Created table {table_name_of(entity_type)}")

    async def _execute_statement(
        self, statement: Statement, cancel: Optional[CancellationToken]
    ) -> int:
        return await self.execute_non_query(statement.sql, statement.params, cancel)
