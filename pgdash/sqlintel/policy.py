"""Read-only guard for ad hoc statements submitted through the API."""

from __future__ import annotations

import re

import sqlglot
from sqlglot import exp
from sqlglot.errors import ParseError, TokenError


class PolicyViolationError(PermissionError):
    """Raised when a statement is not a single read-only SELECT."""


_READ_ROOTS: tuple[type[exp.Expression], ...] = (
    exp.Select,
    exp.Union,
    exp.Intersect,
    exp.Except,
    exp.Subquery,
)

# Node names moved between sqlglot releases (AlterTable -> Alter).
_WRITE_NODES: tuple[type[exp.Expression], ...] = tuple(
    getattr(exp, name)
    for name in (
        "Insert",
        "Update",
        "Delete",
        "Merge",
        "Drop",
        "Create",
        "Alter",
        "AlterTable",
        "TruncateTable",
        "Command",
    )
    if hasattr(exp, name)
)

_LINE_COMMENT = re.compile(r"--[^\n]*")
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)

SELECT_ONLY_MESSAGE = "Only a single SELECT statement is allowed through this API."


def ensure_read_only(sql: str, *, dialect: str = "postgres") -> exp.Expression | None:
    """Validate ``sql`` against the SELECT-only allow-list.

    Returns the parsed statement when sqlglot could read it, ``None`` when the
    lexical fallback accepted it instead.
    """

    statement = (sql or "").strip()
    if not statement:
        raise PolicyViolationError("Provide SQL to execute.")
    try:
        parsed = [expr for expr in sqlglot.parse(statement, read=dialect) if expr is not None]
    except (ParseError, TokenError):
        _lexical_check(statement)
        return None
    if len(parsed) != 1:
        raise PolicyViolationError(SELECT_ONLY_MESSAGE)
    expression = parsed[0]
    if not isinstance(expression, _READ_ROOTS):
        raise PolicyViolationError(SELECT_ONLY_MESSAGE)
    if any(True for _ in expression.find_all(*_WRITE_NODES)):
        raise PolicyViolationError("Data-modifying statements are not allowed through this API.")
    for select in expression.find_all(exp.Select):
        if select.args.get("into"):
            raise PolicyViolationError("SELECT ... INTO is not allowed through this API.")
        if select.args.get("locks"):
            raise PolicyViolationError("Row-locking clauses are not allowed through this API.")
    return expression


def _lexical_check(statement: str) -> None:
    stripped = _BLOCK_COMMENT.sub(" ", _LINE_COMMENT.sub(" ", statement)).strip().rstrip(";").strip()
    head = stripped.split(None, 1)[0].lower() if stripped else ""
    if head != "select" or ";" in stripped:
        raise PolicyViolationError(SELECT_ONLY_MESSAGE)


__all__ = ["PolicyViolationError", "SELECT_ONLY_MESSAGE", "ensure_read_only"]
