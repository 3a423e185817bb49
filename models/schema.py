"""
models/schema.py
----------------
Metadata resolver: turns an entity dataclass into a ResolvedSchema that
the SQL builder and the row mapper work from.

A schema is computed once per entity type and cached for the lifetime of
the process. Population happens under a lock; afterwards the cache is only
read.
"""

import dataclasses
import math
import threading
import types
import typing
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from exceptions import ConfigurationError
from models.fields import TABLE_NAME_ATTR, get_annotation
from utils.logger import get_logger

logger = get_logger(__name__)

# Runtime type -> column type used when a field carries no explicit type.
# bool must be looked up by identity, it is a subclass of int.
_INFERRED_TYPES: dict[type, str] = {
    str: "text",
    int: "integer",
    float: "double precision",
    Decimal: "numeric",
    bool: "boolean",
    datetime: "timestamp",
    date: "date",
    time: "time",
    timedelta: "interval",
    bytes: "bytea",
    UUID: "uuid",
}

_schemas: dict[type, "ResolvedSchema"] = {}
_schemas_lock = threading.Lock()


@dataclasses.dataclass(frozen=True)
class FieldMeta:
    """
    Resolved mapping rules for one entity field.

    Attributes:
        name: The dataclass field name (used as the placeholder identifier).
        column_name: Column the field maps to.
        column_type: Type for CREATE TABLE, or None if it cannot be derived.
        not_null: Emit NOT NULL.
        primary_key: Part of the primary key.
        insert_ignore: Excluded from INSERT.
        update_ignore: Excluded from UPDATE.
        default: Value of the field on a fresh instance, or None.
        explicit_type: True when the column type came from column(type=...).
    """
    name: str
    column_name: str
    column_type: Optional[str]
    not_null: bool = False
    primary_key: bool = False
    insert_ignore: bool = False
    update_ignore: bool = False
    default: Any = None
    explicit_type: bool = False


@dataclasses.dataclass(frozen=True)
class ResolvedSchema:
    """Read-only mapping rules for one entity type."""
    entity_type: type
    table: str
    fields: tuple[FieldMeta, ...]
    columns: dict[str, FieldMeta] = dataclasses.field(
        default_factory=dict, compare=False, repr=False
    )

    def by_column(self, column_name: str) -> Optional[FieldMeta]:
        """
        Find the field a result column maps to.

        Resolved column names win; an exact field-name match is the fallback.
        """
        return self.columns.get(column_name)

    @property
    def primary_key(self) -> tuple[FieldMeta, ...]:
        return tuple(meta for meta in self.fields if meta.primary_key)


def table_name_of(entity_type: type) -> str:
    """
    Resolve the table an entity type maps to.

    Either the @table_name override declared on the type itself or the
    class name, with spaces replaced by underscores.
    """
    override = vars(entity_type).get(TABLE_NAME_ATTR)
    name = override if override else entity_type.__name__
    return name.replace(" ", "_")


def resolve_schema(entity_type: type) -> ResolvedSchema:
    """
    Return the cached ResolvedSchema for `entity_type`, computing it on first use.

    Raises:
        ConfigurationError: If the type is not a mutable dataclass that can be
            constructed without arguments.
    """
    schema = _schemas.get(entity_type)
    if schema is not None:
        return schema
    with _schemas_lock:
        schema = _schemas.get(entity_type)
        if schema is None:
            schema = _build_schema(entity_type)
            _schemas[entity_type] = schema
            logger.debug(
                f"Resolved schema for {entity_type.__name__}: table={schema.table}, "
                f"columns={[m.column_name for m in schema.fields]}"
            )
    return schema


def clear_schema_cache() -> None:
    """Forget every resolved schema. Intended for tests."""
    with _schemas_lock:
        _schemas.clear()


def _build_schema(entity_type: type) -> ResolvedSchema:
    if not isinstance(entity_type, type) or not dataclasses.is_dataclass(entity_type):
        raise ConfigurationError(f"{entity_type!r} is not a dataclass entity type")
    if entity_type.__dataclass_params__.frozen:
        raise ConfigurationError(
            f"{entity_type.__name__} is frozen; result rows cannot be mapped onto it"
        )
    try:
        blank = entity_type()
    except TypeError as e:
        raise ConfigurationError(
            f"{entity_type.__name__} must be constructible without arguments: {e}"
        ) from e

    try:
        hints = typing.get_type_hints(entity_type)
    except (NameError, TypeError):
        hints = {}

    metas = []
    for field in dataclasses.fields(entity_type):
        annotation = get_annotation(field)
        runtime_type = hints.get(field.name, field.type)
        default = getattr(blank, field.name, None)
        if _is_absent(default):
            default = None

        if annotation is None:
            metas.append(FieldMeta(
                name=field.name,
                column_name=field.name,
                column_type=infer_column_type(runtime_type),
                default=default,
            ))
            continue

        metas.append(FieldMeta(
            name=field.name,
            column_name=annotation.name or field.name,
            column_type=annotation.type or infer_column_type(runtime_type),
            not_null=annotation.not_null,
            primary_key=annotation.primary_key,
            insert_ignore=annotation.insert_ignore,
            update_ignore=annotation.update_ignore,
            default=default,
            explicit_type=annotation.type is not None,
        ))

    # field names first so resolved column names overwrite them; reversed so
    # the first declaring field wins a shared name
    columns = {meta.name: meta for meta in reversed(metas)}
    columns.update({meta.column_name: meta for meta in reversed(metas)})

    return ResolvedSchema(
        entity_type=entity_type,
        table=table_name_of(entity_type),
        fields=tuple(metas),
        columns=columns,
    )


def infer_column_type(runtime_type: Any) -> Optional[str]:
    """
    Derive a PostgreSQL column type from a field's runtime type.

    ``Optional[X]`` unwraps to ``X``; unknown types give None.
    """
    origin = typing.get_origin(runtime_type)
    if origin is typing.Union or origin is types.UnionType:
        args = [a for a in typing.get_args(runtime_type) if a is not type(None)]
        if len(args) != 1:
            return None
        runtime_type = args[0]
    if not isinstance(runtime_type, type):
        return None
    for candidate, column_type in _INFERRED_TYPES.items():
        if runtime_type is candidate:
            return column_type
    return None


def _is_absent(value: Any) -> bool:
    """None and NaN (float or Decimal) mean "no value"."""
    if value is None:
        return True
    if isinstance(value, float):
        return math.isnan(value)
    if isinstance(value, Decimal):
        return value.is_nan()
    return False
