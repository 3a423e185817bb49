"""
repositories/entity_repo.py
---------------------------
Synchronous execution facade over a single psycopg2 connection.

Every public call validates its input before touching the network, runs
in its own transaction, commits on success and rolls back on failure.
Driver errors are logged and re-raised unchanged.
"""

import itertools
from contextlib import contextmanager
from typing import Any, Generic, Iterator, Optional, Sequence, TypeVar, Union

import psycopg2
import psycopg2.extensions

from config import DatabaseConfig
from db.connection import close_connection, open_connection
from db.params import Params, to_pyformat, validate_params
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
from utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_stream_ids = itertools.count(1)


def prepare_sql(sql: str, params: Optional[Params]) -> tuple[str, Optional[dict]]:
    """
    Validate `params` against `sql` and rewrite it for psycopg2.

    Returns:
        (sql, params) ready for cursor.execute(); params is None when the
        statement has none, so literal ``%`` signs are left untouched.

    Raises:
        ArgumentError: On a placeholder/parameter mismatch.
    """
    bound = validate_params(sql, params)
    rewritten = to_pyformat(sql, bound)
    if not bound:
        return sql, None
    return rewritten, bound


def _columns(cursor) -> list[str]:
    return [column[0] for column in cursor.description]


class RowStream(Generic[T]):
    """
    Lazily mapped rows backed by a server-side cursor.

    The stream holds a transaction open until it is exhausted or closed.
    Use it as a context manager, or call close(), to release it early::

        with repo.stream(Teacher) as teachers:
            for teacher in teachers:
                ...
    """

    def __init__(self, repo: "EntityRepository", cursor, schema: ResolvedSchema):
        self._repo = repo
        self._cursor = cursor
        self._schema = schema
        self._rows = iter(cursor)
        self._names: Optional[list[str]] = None
        self.closed = False

    def __iter__(self) -> "RowStream[T]":
        return self

    def __next__(self) -> T:
        if self.closed:
            raise StopIteration
        try:
            row = next(self._rows)
        except StopIteration:
            self.close()
            raise
        except Exception:
            self._abort()
            raise
        if self._names is None:
            self._names = _columns(self._cursor)
        item = new_entity(self._schema.entity_type)
        return map_row(zip(self._names, row), item, self._schema)

    def close(self) -> None:
        """Close the cursor and end its transaction. Safe to call twice."""
        if self.closed:
            return
        self.closed = True
        conn = self._cursor.connection
        try:
            self._cursor.close()
            conn.commit()
        finally:
            self._repo._release_stream(self)

    def _abort(self) -> None:
        if self.closed:
            return
        self.closed = True
        conn = self._cursor.connection
        try:
            if not self._cursor.closed:
                self._cursor.close()
            if not conn.closed:
                conn.rollback()
        finally:
            self._repo._release_stream(self)

    def __enter__(self) -> "RowStream[T]":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
        else:
            self._abort()


class EntityRepository:
    """
    CRUD operations for dataclass entities on one PostgreSQL session.

    Example::

        repo = EntityRepository(DatabaseConfig.from_env())
        repo.connect()
        repo.insert(Teacher(first_name="Ada", salary=250))
        for teacher in repo.fetch(Teacher, "SELECT * FROM teachers WHERE id<@id", {"id": 23}):
            print(teacher.first_name)
        repo.close()
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._conn: Optional[psycopg2.extensions.connection] = None
        self._stream: Optional[RowStream] = None

    # ── CONNECTION ────────────────────────────────────────

    @property
    def is_open(self) -> bool:
        return self._conn is not None and not self._conn.closed

    def connect(self) -> None:
        """
        Open the session.

        Raises:
            ResourceStateError: If the repository is already connected.
            ConfigurationError: If a login setting is missing.
        """
        if self.is_open:
            raise ResourceStateError("Repository is already connected")
        self._conn = open_connection(self.config)

    def close(self) -> None:
        """
        Close the session, ending any open row stream first.

        Raises:
            ResourceStateError: If the repository is not connected.
        """
        if not self.is_open:
            raise ResourceStateError("Repository is not connected")
        if self._stream is not None:
            self._stream._abort()
        conn, self._conn = self._conn, None
        close_connection(conn)

    def __enter__(self) -> "EntityRepository":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.is_open:
            self.close()

    def _require_conn(self) -> psycopg2.extensions.connection:
        if not self.is_open:
            raise ResourceStateError("Repository is not connected. Call connect() first.")
        if self._stream is not None:
            raise ResourceStateError("A row stream is still open; drain or close it first")
        return self._conn

    def _release_stream(self, stream: RowStream) -> None:
        if self._stream is stream:
            self._stream = None

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        """Cursor in its own transaction: commit on success, rollback and re-raise on failure."""
        conn = self._require_conn()
        try:
            with conn.cursor() as cur:
                yield cur
            conn.commit()
        except Exception as e:
            if not conn.closed:
                conn.rollback()
            logger.error(f"Statement failed: {e}")
            raise

    # ── READ ──────────────────────────────────────────────

    def fetch(
        self, entity_type: type[T], sql: Optional[str] = None, params: Optional[Params] = None
    ) -> list[T]:
        """
        Run a query and map every row onto a new `entity_type` instance.

        Args:
            entity_type: Entity dataclass to map rows onto.
            sql: Query with ``@name`` placeholders. Defaults to
                ``SELECT * FROM <table>``.
            params: Placeholder values.

        Returns:
            The mapped entities, in result order. Statements that return no
            result set give an empty list.
        """
        resolve_schema(entity_type)
        if sql is None:
            sql = build_select_all(entity_type).sql
        query, bound = prepare_sql(sql, params)
        logger.debug(f"fetch {entity_type.__name__}: {sql}")
        with self._cursor() as cur:
            cur.execute(query, bound)
            if cur.description is None:
                return []
            names = _columns(cur)
            return map_rows((zip(names, row) for row in cur.fetchall()), entity_type)

    def fetch_one(
        self, entity_type: type[T], sql: Optional[str] = None, params: Optional[Params] = None
    ) -> Optional[T]:
        """
        Run a query and map its first row.

        Defaults to ``SELECT * FROM <table> LIMIT 1``. Remaining rows are
        discarded and the cursor is closed.

        Returns:
            The mapped entity, or None when the query returned no rows.
        """
        schema = resolve_schema(entity_type)
        if sql is None:
            sql = build_select_one(entity_type).sql
        query, bound = prepare_sql(sql, params)
        logger.debug(f"fetch_one {entity_type.__name__}: {sql}")
        with self._cursor() as cur:
            cur.execute(query, bound)
            if cur.description is None:
                return None
            row = cur.fetchone()
            if row is None:
                return None
            return map_row(zip(_columns(cur), row), new_entity(entity_type), schema)

    def stream(
        self, entity_type: type[T], sql: Optional[str] = None, params: Optional[Params] = None
    ) -> RowStream[T]:
        """
        Run a SELECT through a server-side cursor and map rows as they are read.

        The returned RowStream keeps a transaction open until it is drained
        or closed; no other call can use the repository meanwhile.
        """
        schema = resolve_schema(entity_type)
        if sql is None:
            sql = build_select_all(entity_type).sql
        query, bound = prepare_sql(sql, params)
        conn = self._require_conn()
        logger.debug(f"stream {entity_type.__name__}: {sql}")
        cursor = conn.cursor(name=f"pgmapper_stream_{next(_stream_ids)}")
        try:
            cursor.execute(query, bound)
        except Exception as e:
            cursor.close()
            if not conn.closed:
                conn.rollback()
            logger.error(f"Statement failed: {e}")
            raise
        stream: RowStream[T] = RowStream(self, cursor, schema)
        self._stream = stream
        return stream

    def dump(self, sql: str, params: Optional[Params] = None) -> list[dict[str, Any]]:
        """
        Run a query and return its rows as ``{column: value}`` dicts.

        No entity type is involved; useful for exploratory queries.
        """
        query, bound = prepare_sql(sql, params)
        logger.debug(f"dump: {sql}")
        with self._cursor() as cur:
            cur.execute(query, bound)
            if cur.description is None:
                return []
            names = _columns(cur)
            return [row_to_dict(zip(names, row)) for row in cur.fetchall()]

    @property
    def last_inserted_id(self) -> int:
        """
        The session's most recent sequence value (``lastval()``).

        Returns -1 when the server reports something other than an integer.
        """
        with self._cursor() as cur:
            cur.execute("SELECT lastval() AS id")
            row = cur.fetchone()
        value = row[0] if row else None
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        return -1

    # ── WRITE ─────────────────────────────────────────────

    def execute_non_query(self, sql: str, params: Optional[Params] = None) -> int:
        """
        Execute a statement that returns no result set.

        Returns:
            The number of affected rows, or -1 when the statement reports none
            (DDL, CALL, ...).
        """
        query, bound = prepare_sql(sql, params)
        logger.debug(f"execute: {sql}")
        return self._execute(query, bound)

    def _execute(self, query: str, bound: Optional[dict]) -> int:
        with self._cursor() as cur:
            cur.execute(query, bound)
            return cur.rowcount

    def insert(self, entity: Any) -> int:
        """Insert one entity; returns the affected row count."""
        return self._execute_statement(build_insert(entity))

    def insert_returning(self, entity: T) -> Optional[T]:
        """Insert one entity and return the stored row as a new instance."""
        statement = build_insert(entity).returning()
        return self.fetch_one(type(entity), statement.sql, statement.params)

    def insert_many(self, entities: Sequence[Any]) -> int:
        """Insert a batch with one multi-row INSERT; returns the affected row count."""
        return self._execute_statement(build_insert_many(entities))

    def insert_many_returning(self, entities: Sequence[T]) -> list[T]:
        """Insert a batch and return the stored rows."""
        statement = build_insert_many(entities).returning()
        return self.fetch(type(entities[0]), statement.sql, statement.params)

    def update(
        self,
        entity: Any,
        where: Optional[str] = None,
        where_params: Optional[Params] = None,
    ) -> int:
        """
        Update the entity's table from its non-None fields.

        Args:
            entity: Instance whose non-None, non-update_ignore fields are SET.
            where: Condition, with or without a leading ``WHERE``. Without one
                every row is updated.
            where_params: Values for placeholders in `where`; names must not
                clash with the entity's field names.

        Returns:
            The number of updated rows.
        """
        return self._execute_statement(build_update(entity, where, where_params))

    def delete(
        self,
        target: Union[str, type],
        where: Optional[str] = None,
        where_params: Optional[Params] = None,
    ) -> int:
        """
        Delete rows from a table.

        Args:
            target: Table name, or an entity type whose table is used.
            where: Condition, with or without a leading ``WHERE``.
            where_params: Values for placeholders in `where`.

        Returns:
            The number of deleted rows.
        """
        table = target if isinstance(target, str) else table_name_of(target)
        return self._execute_statement(build_delete(table, where, where_params))

    def create_table(
        self, entity_type: type, drop_if_exists: bool = False, temporary: bool = False
    ) -> None:
        """
        Create the entity's table from its field declarations.

        Args:
            entity_type: Entity dataclass.
            drop_if_exists: Drop an existing table of the same name first.
            temporary: Create a TEMP table that disappears with the session.
        """
        statement = build_create_table(entity_type, drop_if_exists, temporary)
        logger.debug(f"create_table: {statement.sql}")
        self._execute(statement.sql, None)
        logger.info(f"Created table {table_name_of(entity_type)}")

    def _execute_statement(self, statement: Statement) -> int:
        return self.execute_non_query(statement.sql, statement.params)
