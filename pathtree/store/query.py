"""Translate document selectors and sort specs into SQL fragments.

Selectors are dicts whose keys AND together. Values are either a scalar
(equality, ``None`` meaning absent) or a dict of operators:

    {"parent": "r"}                     equality
    {"parent": None}                    absent / null
    {"name": {"$in": ["a", "b"]}}       membership
    {"name": {"$ne": "a"}}              inequality (also matches absent)
    {"path": {"$prefix": "r#"}}         string prefix, index-usable range
    {"path": {"$ancestor": "c1"}}       id is a non-terminal path segment

A top-level ``"$or"`` key takes a list of selectors and matches when any
of them does: ``{"$or": [{"id": "c1"}, {"path": {"$prefix": "r#c1#"}}]}``.

``id``, ``parent`` and ``path`` map to real columns; any other field is
read out of the JSON ``data`` column.
"""

import re
from typing import Any

from pathtree.errors import InvalidArgumentError

_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")

_COLUMNS = {"id": "doc_id", "parent": "parent", "path": "path"}

_SCALARS = (str, int, float, bool)


def prefix_upper_bound(prefix: str) -> str:
    """Smallest string greater than every string starting with ``prefix``."""
    return prefix[:-1] + chr(ord(prefix[-1]) + 1)


def column_for(field: str) -> tuple[str, list[Any]]:
    """Return the SQL expression (and its params) that reads ``field``."""
    if field in _COLUMNS:
        return _COLUMNS[field], []
    if not isinstance(field, str) or not _FIELD_RE.match(field):
        raise InvalidArgumentError(f"Invalid field name: {field!r}")
    return "json_extract(data, ?)", [f"$.{field}"]


def compile_selector(selector: dict[str, Any], separator: str) -> tuple[str, list[Any]]:
    """Compile a selector into a WHERE fragment (without the keyword)."""
    if not isinstance(selector, dict):
        raise InvalidArgumentError("selector must be a dict")

    clauses: list[str] = []
    params: list[Any] = []
    for field, condition in selector.items():
        if field == "$or":
            sql, or_params = _compile_or(condition, separator)
            clauses.append(sql)
            params.extend(or_params)
            continue
        column, column_params = column_for(field)
        if isinstance(condition, dict):
            if not condition:
                raise InvalidArgumentError(f"Empty operator block for {field!r}")
            for op, arg in condition.items():
                sql, op_params = _compile_operator(column, column_params, op, arg, separator)
                clauses.append(sql)
                params.extend(op_params)
        else:
            sql, op_params = _compile_operator(column, column_params, "$eq", condition, separator)
            clauses.append(sql)
            params.extend(op_params)

    if not clauses:
        return "1", []
    return " AND ".join(clauses), params


def _compile_or(branches: Any, separator: str) -> tuple[str, list[Any]]:
    if not isinstance(branches, (list, tuple)) or not branches:
        raise InvalidArgumentError("$or requires a non-empty list of selectors")
    parts: list[str] = []
    params: list[Any] = []
    for branch in branches:
        where, branch_params = compile_selector(branch, separator)
        parts.append(f"({where})")
        params.extend(branch_params)
    return "(" + " OR ".join(parts) + ")", params


def _compile_operator(
    column: str, column_params: list[Any], op: str, arg: Any, separator: str,
) -> tuple[str, list[Any]]:
    if op == "$eq":
        if arg is None:
            return f"{column} IS NULL", list(column_params)
        _require_scalar(op, arg)
        return f"{column} = ?", [*column_params, arg]

    if op == "$ne":
        if arg is None:
            return f"{column} IS NOT NULL", list(column_params)
        _require_scalar(op, arg)
        return (
            f"({column} IS NULL OR {column} != ?)",
            [*column_params, *column_params, arg],
        )

    if op == "$in":
        if not isinstance(arg, (list, tuple, set, frozenset)):
            raise InvalidArgumentError("$in requires a list")
        values = [v for v in arg if v is not None]
        for value in values:
            _require_scalar(op, value)
        parts: list[str] = []
        params: list[Any] = []
        if values:
            placeholders = ", ".join("?" for _ in values)
            parts.append(f"{column} IN ({placeholders})")
            params.extend([*column_params, *values])
        if len(values) != len(arg):
            parts.append(f"{column} IS NULL")
            params.extend(column_params)
        if not parts:
            return "0", []
        return "(" + " OR ".join(parts) + ")", params

    if op == "$prefix":
        if not isinstance(arg, str) or not arg:
            raise InvalidArgumentError("$prefix requires a non-empty string")
        return (
            f"({column} >= ? AND {column} < ?)",
            [*column_params, arg, *column_params, prefix_upper_bound(arg)],
        )

    if op == "$ancestor":
        if not isinstance(arg, str) or not arg:
            raise InvalidArgumentError("$ancestor requires a non-empty id")
        return (
            f"instr(? || {column}, ?) > 0",
            [separator, *column_params, f"{separator}{arg}{separator}"],
        )

    raise InvalidArgumentError(f"Unsupported operator: {op}")


def _require_scalar(op: str, value: Any) -> None:
    if not isinstance(value, _SCALARS):
        raise InvalidArgumentError(f"{op} expects a scalar value, got {type(value).__name__}")


def compile_sort(sort: list[tuple[str, int]] | None) -> tuple[str, list[Any]]:
    """Compile ``[(field, 1 | -1), ...]`` into an ORDER BY fragment."""
    if not sort:
        return "", []
    parts: list[str] = []
    params: list[Any] = []
    for field, direction in sort:
        if direction not in (1, -1):
            raise InvalidArgumentError(f"Sort direction must be 1 or -1, got {direction!r}")
        column, column_params = column_for(field)
        parts.append(f"{column} {'ASC' if direction == 1 else 'DESC'}")
        params.extend(column_params)
    return "ORDER BY " + ", ".join(parts), params
