"""
db/params.py
------------
Parameter binder and validator.

SQL handed to the repositories uses ``@name`` placeholders. Before anything
is sent to the server the placeholder count is checked against the
parameter map, the values are checked against the closed set of bindable
types, and the placeholders are rewritten into the driver's own style:
``%(name)s`` for psycopg2 and ``$1, $2, ...`` for asyncpg.
"""

import re
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Mapping, Optional, Union
from uuid import UUID

from exceptions import ArgumentError

# Every value a parameter map may carry.
SqlValue = Union[None, bool, int, float, Decimal, str, bytes, date, datetime, time, timedelta, UUID]

Params = Mapping[str, SqlValue]

_BINDABLE_TYPES = (bool, int, float, Decimal, str, bytes, date, datetime, time, timedelta, UUID)

# A comparison operator or list separator followed by a placeholder.
# Placeholders in other positions, such as after BETWEEN or a keyword, are
# not counted.
_PLACEHOLDER_PATTERN = re.compile(r"[=<>,(]+\s*@")

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def count_placeholders(sql: str) -> int:
    """Count ``@name`` placeholders that follow a comparison or list separator."""
    return len(_PLACEHOLDER_PATTERN.findall(sql))


def validate_params(sql: str, params: Optional[Params]) -> dict[str, SqlValue]:
    """
    Check a parameter map against a SQL string.

    Args:
        sql: SQL text with ``@name`` placeholders.
        params: Placeholder name -> value. None means no parameters.

    Returns:
        The parameters as a plain dict, in their original order.

    Raises:
        ArgumentError: If the placeholder count and the map size differ, or a
            value is not a supported SQL value.
    """
    bound = dict(params) if params else {}
    expected = count_placeholders(sql)
    if expected != len(bound):
        raise ArgumentError(
            f"List of arguments don't match the sql query: "
            f"{expected} placeholder(s), {len(bound)} parameter(s)"
        )
    for key, value in bound.items():
        check_value(key, value)
    return bound


def check_value(key: str, value: Any) -> None:
    """
    Raises:
        ArgumentError: If `value` is outside the SqlValue set.
    """
    if value is None or isinstance(value, _BINDABLE_TYPES):
        return
    raise ArgumentError(
        f"Parameter '{key}' has unsupported type {type(value).__name__}"
    )


def to_pyformat(sql: str, params: Mapping[str, SqlValue]) -> str:
    """
    Rewrite ``@name`` placeholders to psycopg2's ``%(name)s`` style.

    Literal ``%`` characters are doubled because psycopg2 always runs the
    query through its formatter when a parameter mapping is given.

    Raises:
        ArgumentError: If a placeholder has no value in `params`.
    """
    def placeholder(name: str) -> str:
        if name not in params:
            raise ArgumentError(f"No value supplied for placeholder @{name}")
        return f"%({name})s"

    return _rewrite(sql, placeholder, escape_percent=True)


def to_numeric(sql: str, params: Mapping[str, SqlValue]) -> tuple[str, list[SqlValue]]:
    """
    Rewrite ``@name`` placeholders to asyncpg's ``$N`` style.

    A name used more than once keeps the number it got first.

    Returns:
        A tuple of (rewritten_sql, positional_args).

    Raises:
        ArgumentError: If a placeholder has no value in `params`.
    """
    numbers: dict[str, int] = {}
    args: list[SqlValue] = []

    def placeholder(name: str) -> str:
        if name not in params:
            raise ArgumentError(f"No value supplied for placeholder @{name}")
        if name not in numbers:
            args.append(params[name])
            numbers[name] = len(args)
        return f"${numbers[name]}"

    return _rewrite(sql, placeholder, escape_percent=False), args


def _rewrite(sql: str, placeholder, escape_percent: bool) -> str:
    """
    Replace each ``@identifier`` outside single-quoted literals.

    ``@@`` and ``@`` operators not followed by an identifier are left alone.
    """
    result: list[str] = []
    in_string = False
    i = 0
    while i < len(sql):
        ch = sql[i]

        if ch == "'":
            if in_string and i + 1 < len(sql) and sql[i + 1] == "'":
                # escaped quote inside a literal
                result.append("''")
                i += 2
                continue
            in_string = not in_string
            result.append(ch)
        elif ch == "%" and escape_percent:
            result.append("%%")
        elif ch == "@" and not in_string:
            prev = sql[i - 1] if i > 0 else ""
            match = _IDENTIFIER.match(sql, i + 1)
            if match and prev != "@" and not (prev.isalnum() or prev == "_"):
                result.append(placeholder(match.group(0)))
                i = match.end()
                continue
            result.append(ch)
        else:
            result.append(ch)

        i += 1

    return "".join(result)
