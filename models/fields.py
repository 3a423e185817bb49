"""
models/fields.py
----------------
Annotation surface for entity dataclasses.

Example::

    @table_name("teachers")
    @dataclass
    class Teacher:
        id: Optional[int] = column("id", "serial", primary_key=True, insert_ignore=True)
        first_name: Optional[str] = column("first_name", "varchar(50)", not_null=True)
        salary: Optional[Decimal] = column(type="numeric(15,2) CHECK (salary >= 0)")
        created_at: Optional[datetime] = update_ignore()
"""

import dataclasses
from typing import Any, Callable, Optional

# Key under which the annotation is stored in dataclasses.Field.metadata
COLUMN_KEY = "pgmapper.column"
TABLE_NAME_ATTR = "__table_name__"


@dataclasses.dataclass(frozen=True)
class ColumnAnnotation:
    """Explicit per-field settings supplied through column()."""
    name: Optional[str] = None
    type: Optional[str] = None
    not_null: bool = False
    primary_key: bool = False
    insert_ignore: bool = False
    update_ignore: bool = False


def column(
    name: Optional[str] = None,
    type: Optional[str] = None,
    *,
    not_null: bool = False,
    primary_key: bool = False,
    insert_ignore: bool = False,
    update_ignore: bool = False,
    default: Any = None,
    default_factory: Any = dataclasses.MISSING,
):
    """
    Declare an entity field with column settings.

    Args:
        name: Column name in the database. Defaults to the field name.
        type: Literal column type used by CREATE TABLE; may carry
            constraint clauses such as ``"numeric(15,2) CHECK (price >= 0)"``.
        not_null: Emit NOT NULL in CREATE TABLE.
        primary_key: Include the column in the PRIMARY KEY clause.
        insert_ignore: Never include the field in INSERT statements.
        update_ignore: Never include the field in UPDATE statements.
        default: Field default (also the CREATE TABLE DEFAULT when not None).
        default_factory: Alternative to `default` for mutable values.

    Returns:
        A dataclasses.Field carrying the annotation in its metadata.
    """
    annotation = ColumnAnnotation(
        name=name,
        type=type,
        not_null=not_null,
        primary_key=primary_key,
        insert_ignore=insert_ignore,
        update_ignore=update_ignore,
    )
    if default_factory is not dataclasses.MISSING:
        return dataclasses.field(
            default_factory=default_factory, metadata={COLUMN_KEY: annotation}
        )
    return dataclasses.field(default=default, metadata={COLUMN_KEY: annotation})


def insert_ignore(default: Any = None):
    """Field that is skipped by INSERT (e.g. a serial id or a server timestamp)."""
    return column(insert_ignore=True, default=default)


def update_ignore(default: Any = None):
    """Field that is skipped by UPDATE."""
    return column(update_ignore=True, default=default)


def table_name(name: str) -> Callable[[type], type]:
    """
    Class decorator overriding the table an entity maps to.

    Spaces in `name` are replaced by underscores.
    """
    def decorator(cls: type) -> type:
        setattr(cls, TABLE_NAME_ATTR, name.replace(" ", "_"))
        return cls

    return decorator


def get_annotation(field: dataclasses.Field) -> Optional[ColumnAnnotation]:
    """Return the ColumnAnnotation attached to `field`, if any."""
    return field.metadata.get(COLUMN_KEY)
