"""
models/row_mapper.py
--------------------
Maps result rows onto entity instances.

A row is any iterable of ``(column_name, value)`` pairs in result order.
Values are assigned as the driver returned them; SQL NULL arrives as None.
Columns that match no field are ignored, so ad hoc queries such as
``SELECT COUNT(*) AS num FROM teachers`` can target narrower types.
"""

from typing import Any, Iterable, TypeVar

from models.schema import ResolvedSchema, resolve_schema

T = TypeVar("T")

Row = Iterable[tuple[str, Any]]


def new_entity(entity_type: type[T]) -> T:
    """Create a blank instance of an entity type."""
    resolve_schema(entity_type)
    return entity_type()


def map_row(row: Row, target: T, schema: ResolvedSchema) -> T:
    """
    Copy the values of `row` onto `target` and return the same instance.

    Args:
        row: ``(column_name, value)`` pairs.
        target: Entity instance to populate; mutated in place.
        schema: Resolved schema of the target's type.
    """
    for column_name, value in row:
        meta = schema.by_column(column_name)
        if meta is None:
            continue
        setattr(target, meta.name, value)
    return target


def map_rows(rows: Iterable[Row], entity_type: type[T]) -> list[T]:
    """Map every row into a fresh instance of `entity_type`."""
    schema = resolve_schema(entity_type)
    return [map_row(row, new_entity(entity_type), schema) for row in rows]


def row_to_dict(row: Row) -> dict[str, Any]:
    """Schema-agnostic row dump: column name -> value, in result order."""
    return {column_name: value for column_name, value in row}
