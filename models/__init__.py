"""
models/ - Entity Mapping Layer
==============================
Declares how caller-defined dataclasses map onto database tables:
per-field column annotations, the per-type resolved schema, and the
row mapper that fills entity instances from result rows.
"""

from models.fields import column, insert_ignore, table_name, update_ignore
from models.row_mapper import map_row, map_rows, new_entity, row_to_dict
from models.schema import FieldMeta, ResolvedSchema, resolve_schema, table_name_of

__all__ = [
    "column",
    "insert_ignore",
    "update_ignore",
    "table_name",
    "FieldMeta",
    "ResolvedSchema",
    "resolve_schema",
    "table_name_of",
    "map_row",
    "map_rows",
    "row_to_dict",
    "new_entity",
]
