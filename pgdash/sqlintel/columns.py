"""Best-effort column name inference for raw diagnostic SQL.

Drivers that hand back bare row tuples give no column metadata. For those rows
the names are read out of the SELECT list, parsed with sqlglot. Text sqlglot
cannot tokenize or parse goes through a lexical splitter instead. Anything
neither can make sense of yields ``None`` and the caller degrades to
positional ``col_N`` names.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Mapping, Sequence

import sqlglot
from sqlglot import exp
from sqlglot.errors import ParseError, TokenError

DEFAULT_COLUMNS: Mapping[str, tuple[str, ...]] = {
    "deadlock": (
        "pid",
        "usename",
        "application_name",
        "client_addr",
        "query_start",
        "state",
        "wait_event",
        "wait_event_type",
        "query",
    ),
    "idle": ("pid", "usename", "query_start", "state"),
    "long_tables": ("schemaname", "relname", "n_live_tup"),
    "index_usage": ("relname", "idx_scan", "idx_tup_read", "idx_tup_fetch"),
    "large_tables": ("relname", "total_size"),
    "large_indices": ("relname", "total_size"),
    "blocked_queries": ("pid", "usename", "query_start", "state", "wait_event", "query"),
    "max_connections": ("max_connections",),
}

_WHITESPACE = re.compile(r"\s+")
_SELECT_STAR = re.compile(r"\bselect\s+\*", re.IGNORECASE)
_SELECT = re.compile(r"\bselect\b", re.IGNORECASE)
_ALIAS = re.compile(r".*\s+as\s+([^\s,()]+)$", re.IGNORECASE | re.DOTALL)
_IDENTIFIER = re.compile(r'^"?[A-Za-z_][A-Za-z0-9_$]*"?(?:\."?[A-Za-z_][A-Za-z0-9_$]*"?)*$')
_CALL = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\s*\(.*\)$", re.DOTALL)
_CAST = re.compile(r"::[A-Za-z_][A-Za-z0-9_ ]*(?:\[\])?$")


@dataclass(frozen=True, slots=True)
class ColumnSet:
    """Column names resolved for a result, flagged when they are placeholders."""

    names: tuple[str, ...]
    positional: bool = False


def infer_columns(sql: str, key: str | None = None) -> tuple[str, ...] | None:
    """Derive output column names from a SELECT statement."""

    text = _WHITESPACE.sub(" ", sql or "").strip()
    if not text:
        return None
    try:
        parsed = sqlglot.parse_one(text, read="postgres")
    except (ParseError, TokenError):
        return _lexical_columns(text, key)
    select = _leftmost_select(parsed)
    if select is None or not (select.args.get("from") or select.args.get("from_")):
        return None
    expressions = select.expressions
    if any(_is_star(expression) for expression in expressions):
        return DEFAULT_COLUMNS.get(key) if key is not None else None
    names = tuple(_expression_name(expression) for expression in expressions)
    if not names or any(not name for name in names):
        return None
    return names


def resolve_columns(sql: str, key: str | None, width: int | None = None) -> ColumnSet:
    """Return usable names for ``width`` values, padding with ``col_N``.

    Without a ``width`` (no rows to size against) the inferred names are
    returned as they are.
    """

    inferred = infer_columns(sql, key)
    if not inferred:
        return ColumnSet(names=positional_columns(width or 0), positional=True)
    if width is None:
        return ColumnSet(names=unique_columns(inferred))
    names = list(inferred[:width])
    for index in range(len(names), width):
        names.append(f"col_{index}")
    return ColumnSet(names=unique_columns(names))


def positional_columns(width: int) -> tuple[str, ...]:
    return tuple(f"col_{index}" for index in range(width))


def unique_columns(names: Sequence[str]) -> tuple[str, ...]:
    """Suffix repeated names so every column is addressable in a row map."""

    seen: dict[str, int] = {}
    result: list[str] = []
    for name in names:
        if name not in seen:
            seen[name] = 0
            result.append(name)
            continue
        seen[name] += 1
        candidate = f"{name}_{seen[name]}"
        while candidate in seen:
            seen[name] += 1
            candidate = f"{name}_{seen[name]}"
        seen[candidate] = 0
        result.append(candidate)
    return tuple(result)


def _leftmost_select(expression: exp.Expression | None) -> exp.Select | None:
    # Set operations take their output names from the first branch.
    while isinstance(expression, (exp.Union, exp.Intersect, exp.Except, exp.Subquery)):
        expression = expression.this
    return expression if isinstance(expression, exp.Select) else None


def _is_star(expression: exp.Expression) -> bool:
    return isinstance(expression, exp.Star) or (
        isinstance(expression, exp.Column) and isinstance(expression.this, exp.Star)
    )


def _expression_name(expression: exp.Expression) -> str:
    """The name PostgreSQL gives an output column (alias, column, then function)."""

    if isinstance(expression, exp.Alias):
        return expression.alias
    while isinstance(expression, exp.Cast):
        expression = expression.this
    if isinstance(expression, exp.Column):
        return expression.name
    if isinstance(expression, exp.Anonymous):
        return expression.name.lower()
    if isinstance(expression, exp.Func):
        return expression.sql_name().lower()
    return expression.alias_or_name


def _lexical_columns(text: str, key: str | None) -> tuple[str, ...] | None:
    if _SELECT_STAR.search(text):
        return DEFAULT_COLUMNS.get(key) if key is not None else None
    select_list = _select_list(text)
    if not select_list:
        return None
    names = tuple(_column_name(expression) for expression in _split_top_level(select_list))
    if not names or any(not name for name in names):
        return None
    return names


def _select_list(text: str) -> str | None:
    match = _SELECT.search(text)
    if match is None:
        return None
    start = match.end()
    depth = 0
    lowered = text.lower()
    index = start
    while index < len(text):
        char = text[index]
        if char in "({":
            depth += 1
        elif char in ")}":
            depth -= 1
        elif depth == 0 and lowered.startswith("from", index):
            before = text[index - 1] if index > 0 else " "
            after = text[index + 4] if index + 4 < len(text) else " "
            if not (before.isalnum() or before == "_") and not (after.isalnum() or after == "_"):
                return text[start:index].strip()
        index += 1
    return None


def _split_top_level(section: str) -> list[str]:
    columns: list[str] = []
    depth = 0
    current: list[str] = []
    for char in section:
        if char in "({":
            depth += 1
        elif char in ")}":
            depth -= 1
        if char == "," and depth == 0:
            columns.append("".join(current).strip())
            current = []
        else:
            current.append(char)
    tail = "".join(current).strip()
    if tail:
        columns.append(tail)
    return columns


def _column_name(expression: str) -> str:
    expression = expression.strip()
    alias = _ALIAS.match(expression)
    if alias:
        return _unquote(alias.group(1))
    expression = _CAST.sub("", expression).strip()
    if _IDENTIFIER.match(expression):
        return _unquote(expression.split(".")[-1])
    call = _CALL.match(expression)
    if call:
        return call.group(1).lower()
    parts = [part for part in re.split(r"[.\s]", expression) if part]
    if not parts:
        return ""
    return _unquote(parts[-1])


def _unquote(name: str) -> str:
    return name.replace('"', "").replace("'", "")


__all__ = [
    "ColumnSet",
    "DEFAULT_COLUMNS",
    "infer_columns",
    "positional_columns",
    "resolve_columns",
    "unique_columns",
]
