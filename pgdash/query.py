"""Ad hoc read-only query execution for the query console."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Iterable

import asyncpg

from .connections import Pool, is_connection_lost
from .sqlintel import ensure_read_only, positional_columns, unique_columns

LOG = logging.getLogger(__name__)


class QueryExecutionError(RuntimeError):
    """Raised when a query fails to execute."""


@dataclass(frozen=True, slots=True)
class QueryResult:
    """Normalized query output returned to the console."""

    columns: tuple[str, ...]
    rows: tuple[tuple[object, ...], ...]
    status: str
    elapsed_ms: int
    row_count: int | None = None

    def records(self) -> list[dict[str, object]]:
        return [dict(zip(self.columns, row)) for row in self.rows]


async def run_adhoc(pool: Pool, sql: str) -> QueryResult:
    """Validate ``sql`` against the SELECT-only policy and run it read-only.

    Policy violations raise before anything reaches the database. Driver
    errors surface as :class:`QueryExecutionError`, except connection loss,
    which propagates unchanged.
    """

    ensure_read_only(sql)
    statement = sql.strip()
    started = time.perf_counter()
    try:
        async with pool.acquire() as conn:
            async with conn.transaction(readonly=True):
                records = await conn.fetch(statement)
    except asyncpg.PostgresError as exc:
        if is_connection_lost(exc):
            raise
        raise QueryExecutionError(str(exc) or type(exc).__name__) from exc
    elapsed_ms = int((time.perf_counter() - started) * 1000)
    columns, rows = _records_to_rows(records)
    LOG.debug("Ad hoc query returned %d row(s) in %d ms", len(rows), elapsed_ms)
    return QueryResult(
        columns=columns,
        rows=rows,
        status=f"{len(rows)} row(s)",
        elapsed_ms=elapsed_ms,
        row_count=len(rows),
    )


def _records_to_rows(records: Iterable[Any]) -> tuple[tuple[str, ...], tuple[tuple[object, ...], ...]]:
    rows: list[tuple[object, ...]] = []
    columns: tuple[str, ...] = ()
    for record in records:
        if not columns:
            if hasattr(record, "keys"):
                columns = unique_columns([str(key) for key in record.keys()])
            else:
                columns = positional_columns(len(record))
        rows.append(tuple(record.values()) if hasattr(record, "values") else tuple(record))
    return columns, tuple(rows)


__all__ = ["QueryExecutionError", "QueryResult", "run_adhoc"]
