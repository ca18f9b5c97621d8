"""SQL text helpers: column inference and the ad hoc statement policy."""

from __future__ import annotations

from .columns import (
    DEFAULT_COLUMNS,
    ColumnSet,
    infer_columns,
    positional_columns,
    resolve_columns,
    unique_columns,
)
from .policy import SELECT_ONLY_MESSAGE, PolicyViolationError, ensure_read_only

__all__ = [
    "ColumnSet",
    "DEFAULT_COLUMNS",
    "PolicyViolationError",
    "SELECT_ONLY_MESSAGE",
    "ensure_read_only",
    "infer_columns",
    "positional_columns",
    "resolve_columns",
    "unique_columns",
]
