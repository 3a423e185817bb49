"""
db/sql_builder.py
-----------------
Builds parameterized statements from entity instances and their resolved
schemas. Every function is pure: it takes explicit inputs and returns a
Statement (SQL text plus an ordered parameter map). Nothing here talks to
the database.
"""

import math
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional, Sequence

from db.params import Params, SqlValue
from exceptions import ArgumentError, ConfigurationError
from models.schema import FieldMeta, ResolvedSchema, resolve_schema

_LEADING_WHERE = re.compile(r"^\s*where\b\s*", re.IGNORECASE)
_TEXT_TYPE_PREFIXES = ("char", "varchar", "text", "bpchar")


@dataclass(frozen=True)
class Statement:
    """An immutable (sql, params) pair, consumed once by a repository call."""
    sql: str
    params: dict[str, SqlValue] = field(default_factory=dict)

    def returning(self) -> "Statement":
        """Same statement with ``RETURNING *`` appended."""
        return Statement(f"{self.sql} RETURNING *", dict(self.params))


# ── INSERT ────────────────────────────────────────────────

def _qualifying(schema: ResolvedSchema, entity: Any, skip_attr: str) -> list[tuple[FieldMeta, Any]]:
    """Fields with a non-None value that are not excluded by `skip_attr`."""
    result = []
    for meta in schema.fields:
        if getattr(meta, skip_attr):
            continue
        value = getattr(entity, meta.name)
        if value is None:
            continue
        result.append((meta, value))
    return result


def build_insert(entity: Any) -> Statement:
    """
    Build ``INSERT INTO table (col,...) VALUES(@field,...)`` for one entity.

    Fields whose value is None or that are marked insert_ignore are skipped.
    Parameters are keyed by field name, columns use the resolved column name.

    Raises:
        ArgumentError: If `entity` is None or no field qualifies.
    """
    if entity is None:
        raise ArgumentError("Nothing to insert: entity is None")
    schema = resolve_schema(type(entity))
    qualifying = _qualifying(schema, entity, "insert_ignore")
    if not qualifying:
        raise ArgumentError("There are no non-null fields to insert.")

    columns = ",".join(meta.column_name for meta, _ in qualifying)
    placeholders = ",".join(f"@{meta.name}" for meta, _ in qualifying)
    params = {meta.name: value for meta, value in qualifying}
    return Statement(f"INSERT INTO {schema.table} ({columns}) VALUES({placeholders})", params)


def build_insert_many(entities: Sequence[Any]) -> Statement:
    """
    Build a single multi-row INSERT for a batch of entities.

    Placeholders are suffixed with the element's position (``@name_0``,
    ``@name_1``, ...). Every element must be of the same type and have the
    same set of qualifying fields as the first one.

    Raises:
        ArgumentError: If the batch is empty, holds None, mixes types, or its
            elements do not share one shape.
    """
    if not entities:
        raise ArgumentError("Nothing to insert: the list is empty")
    if any(entity is None for entity in entities):
        raise ArgumentError("Nothing to insert: the list contains None")

    entity_type = type(entities[0])
    schema = resolve_schema(entity_type)
    first = _qualifying(schema, entities[0], "insert_ignore")
    if not first:
        raise ArgumentError("There are no non-null fields to insert.")
    shape = [meta.name for meta, _ in first]

    rows = []
    params: dict[str, SqlValue] = {}
    for i, entity in enumerate(entities):
        if type(entity) is not entity_type:
            raise ArgumentError(
                f"Element {i} is a {type(entity).__name__}, expected {entity_type.__name__}"
            )
        qualifying = _qualifying(schema, entity, "insert_ignore")
        if [meta.name for meta, _ in qualifying] != shape:
            raise ArgumentError(
                f"Element {i} has non-null fields {[m.name for m, _ in qualifying]}, "
                f"expected {shape}"
            )
        placeholders = []
        for meta, value in qualifying:
            key = f"{meta.name}_{i}"
            params[key] = value
            placeholders.append(f"@{key}")
        rows.append(f"({','.join(placeholders)})")

    if len(params) != len(shape) * len(entities):
        raise ArgumentError("List of arguments don't match objects to insert")

    columns = ",".join(meta.column_name for meta, _ in first)
    return Statement(f"INSERT INTO {schema.table} ({columns}) VALUES{','.join(rows)}", params)


# ── UPDATE / DELETE ───────────────────────────────────────

def normalize_where(sql: str, where: Optional[str]) -> str:
    """
    Append ``WHERE <where>`` to `sql`, dropping a leading WHERE the caller wrote.

    Raises:
        ArgumentError: If `where` is given but holds no condition.
    """
    if where is None:
        return sql
    condition = _LEADING_WHERE.sub("", where, count=1).strip()
    if not condition:
        raise ArgumentError("Empty WHERE condition")
    return f"{sql} WHERE {condition}"


def build_update(
    entity: Any,
    where: Optional[str] = None,
    where_params: Optional[Params] = None,
) -> Statement:
    """
    Build ``UPDATE table SET col = @field, ... WHERE ...`` for one entity.

    Raises:
        ArgumentError: If `entity` is None, no field qualifies, or a WHERE
            parameter reuses a SET parameter name.
    """
    if entity is None:
        raise ArgumentError("Nothing to update: entity is None")
    schema = resolve_schema(type(entity))
    qualifying = _qualifying(schema, entity, "update_ignore")
    if not qualifying:
        raise ArgumentError("There are no non-null fields to update.")

    assignments = ", ".join(f"{meta.column_name} = @{meta.name}" for meta, _ in qualifying)
    params: dict[str, SqlValue] = {meta.name: value for meta, value in qualifying}
    for key, value in (where_params or {}).items():
        if key in params:
            raise ArgumentError(f"{key} is not unique")
        params[key] = value

    sql = normalize_where(f"UPDATE {schema.table} SET {assignments}", where)
    return Statement(sql, params)


def build_delete(
    table: str,
    where: Optional[str] = None,
    where_params: Optional[Params] = None,
) -> Statement:
    """Build ``DELETE FROM table [WHERE ...]``."""
    return Statement(normalize_where(f"DELETE FROM {table}", where), dict(where_params or {}))


# ── SELECT ────────────────────────────────────────────────

def build_select_all(entity_type: type) -> Statement:
    return Statement(f"SELECT * FROM {resolve_schema(entity_type).table}")


def build_select_one(entity_type: type) -> Statement:
    return Statement(f"SELECT * FROM {resolve_schema(entity_type).table} LIMIT 1")


# ── CREATE TABLE ──────────────────────────────────────────

def build_create_table(
    entity_type: type,
    drop_if_exists: bool = False,
    temporary: bool = False,
) -> Statement:
    """
    Build CREATE TABLE for an entity type.

    Args:
        entity_type: The entity dataclass.
        drop_if_exists: Prefix the statement with ``DROP TABLE IF EXISTS``.
        temporary: Create a session-scoped ``TEMP`` table.

    Raises:
        ConfigurationError: If a primary-key field has no column type, or a
            field's type cannot be derived.
    """
    schema = resolve_schema(entity_type)
    definitions = []
    for meta in schema.fields:
        if meta.primary_key and not meta.explicit_type:
            raise ConfigurationError(
                f"{entity_type.__name__}.{meta.name} is a primary key without a column type; "
                f"name and type must be declared together"
            )
        if meta.column_type is None:
            raise ConfigurationError(
                f"Cannot derive a column type for {entity_type.__name__}.{meta.name}; "
                f"declare one with column(type=...)"
            )
        definition = f"{meta.column_name} {meta.column_type}"
        if meta.not_null:
            definition += " NOT NULL"
        if meta.default is not None:
            definition += f" DEFAULT {format_default(meta.default, meta.column_type)}"
        definitions.append(definition)

    primary_key = [meta.column_name for meta in schema.primary_key]
    if primary_key:
        definitions.append(f"PRIMARY KEY({','.join(primary_key)})")

    kind = "TEMP TABLE" if temporary else "TABLE"
    sql = f"CREATE {kind} {schema.table}({', '.join(definitions)})"
    if drop_if_exists:
        sql = f"DROP TABLE IF EXISTS {schema.table}; {sql}"
    return Statement(sql)


def format_default(value: Any, column_type: str) -> str:
    """
    Render a DEFAULT literal.

    Text-family column types always get a quoted literal. Otherwise numbers
    are written with a ``.`` decimal separator, booleans as TRUE/FALSE and
    anything else (dates, UUIDs) quoted.
    """
    if column_type.strip().lower().startswith(_TEXT_TYPE_PREFIXES):
        return _quote(str(value))
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float, Decimal)):
        return _numeric_literal(value)
    if isinstance(value, bytes):
        return f"'\\x{value.hex()}'"
    return _quote(value.isoformat() if hasattr(value, "isoformat") else str(value))


def _numeric_literal(value: Any) -> str:
    if isinstance(value, Decimal):
        if value.is_nan():
            return "'NaN'"
        if value.is_infinite():
            return "'-Infinity'" if value.is_signed() else "'Infinity'"
        return format(value, "f")
    if isinstance(value, float) and not math.isfinite(value):
        # PostgreSQL only accepts non-finite numbers as quoted literals
        if math.isnan(value):
            return "'NaN'"
        return "'-Infinity'" if value < 0 else "'Infinity'"
    if isinstance(value, float):
        return repr(value)
    return str(value)


def _quote(text: str) -> str:
    return "'" + text.replace("'", "''") + "'"
