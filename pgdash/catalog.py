"""Catalog of named diagnostic probes run against a session's pool."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence

import asyncpg

from .connections import Pool, is_connection_lost
from .models import DiagnosticResult
from .sqlintel import resolve_columns, unique_columns

LOG = logging.getLogger(__name__)


class UnknownDiagnosticError(LookupError):
    """Raised when a diagnostic key is not in the catalog."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Unknown diagnostic '{key}'")
        self.key = key


class ProbeExecutionError(RuntimeError):
    """Raised when a single probe's SQL fails."""

    def __init__(self, key: str, cause: BaseException) -> None:
        super().__init__(f"Probe '{key}' failed: {cause}")
        self.key = key
        self.cause = cause


class ProbeCategory(str, Enum):
    """Grouping used by the analysis screen."""

    LOCKS = "locks"
    ACTIVITY = "activity"
    SIZE = "size"
    INDEXES = "indexes"
    VACUUM = "vacuum"
    QUERIES = "queries"
    SETTINGS = "settings"


@dataclass(frozen=True, slots=True)
class DiagnosticProbe:
    """A fixed, parameterless SQL probe with its expected output columns."""

    key: str
    title: str
    category: ProbeCategory
    sql: str
    columns: tuple[str, ...] | None = None
    extension: str | None = None

    async def run(self, pool: Pool) -> DiagnosticResult:
        """Execute the probe and normalize rows into a columnar result."""

        records = await pool.fetch(self.sql)
        return self.to_result(records)

    def to_result(self, records: Sequence[Any]) -> DiagnosticResult:
        columns, positional = self._columns_for(records)
        rows = tuple(_row_values(record, columns) for record in records)
        return DiagnosticResult(
            key=self.key,
            columns=columns,
            rows=rows,
            timestamp=datetime.now(tz=timezone.utc),
            positional=positional,
        )

    def _columns_for(self, records: Sequence[Any]) -> tuple[tuple[str, ...], bool]:
        first = records[0] if records else None
        if first is not None and hasattr(first, "keys"):
            return unique_columns([str(key) for key in first.keys()]), False
        width = len(first) if first is not None else None
        if self.columns and (width is None or width == len(self.columns)):
            return self.columns, False
        resolved = resolve_columns(self.sql, self.key, width)
        return resolved.names, resolved.positional


def _row_values(record: Any, columns: Sequence[str]) -> tuple[Any, ...]:
    if hasattr(record, "keys"):
        return tuple(record.values())
    values = tuple(record)
    if len(values) < len(columns):
        values = values + (None,) * (len(columns) - len(values))
    return values[: len(columns)] if columns else values


_PROBES: tuple[DiagnosticProbe, ...] = (
    DiagnosticProbe(
        key="deadlock",
        title="Sessions waiting on locks",
        category=ProbeCategory.LOCKS,
        sql="SELECT * FROM pg_stat_activity WHERE wait_event_type = 'Lock'",
    ),
    DiagnosticProbe(
        key="total_tables",
        title="Tables in the public schema",
        category=ProbeCategory.SIZE,
        sql="SELECT count(*) FROM information_schema.tables WHERE table_schema = 'public'",
        columns=("count",),
    ),
    DiagnosticProbe(
        key="idle",
        title="Idle in transaction",
        category=ProbeCategory.ACTIVITY,
        sql=(
            "SELECT pid, usename, query_start, state FROM pg_stat_activity "
            "WHERE state = 'idle in transaction'"
        ),
        columns=("pid", "usename", "query_start", "state"),
    ),
    DiagnosticProbe(
        key="long_tables",
        title="Tables with the most live rows",
        category=ProbeCategory.SIZE,
        sql=(
            "SELECT schemaname, relname, n_live_tup FROM pg_stat_user_tables "
            "ORDER BY n_live_tup DESC LIMIT 10"
        ),
        columns=("schemaname", "relname", "n_live_tup"),
    ),
    DiagnosticProbe(
        key="index_usage",
        title="Most scanned indexes",
        category=ProbeCategory.INDEXES,
        sql=(
            "SELECT relname, idx_scan, idx_tup_read, idx_tup_fetch FROM pg_stat_user_indexes "
            "ORDER BY idx_scan DESC LIMIT 10"
        ),
        columns=("relname", "idx_scan", "idx_tup_read", "idx_tup_fetch"),
    ),
    DiagnosticProbe(
        key="large_tables",
        title="Largest tables",
        category=ProbeCategory.SIZE,
        sql=(
            "SELECT relname, pg_size_pretty(pg_total_relation_size(relid)) AS total_size "
            "FROM pg_catalog.pg_statio_user_tables "
            "ORDER BY pg_total_relation_size(relid) DESC LIMIT 10"
        ),
        columns=("relname", "total_size"),
    ),
    DiagnosticProbe(
        key="large_indices",
        title="Largest indexes",
        category=ProbeCategory.SIZE,
        sql=(
            "SELECT indexrelname AS relname, pg_size_pretty(pg_relation_size(indexrelid)) AS total_size "
            "FROM pg_catalog.pg_statio_user_indexes "
            "ORDER BY pg_relation_size(indexrelid) DESC LIMIT 10"
        ),
        columns=("relname", "total_size"),
    ),
    DiagnosticProbe(
        key="blocked_queries",
        title="Queries waiting on an event",
        category=ProbeCategory.LOCKS,
        sql=(
            "SELECT pid, usename, query_start, state, wait_event, query FROM pg_stat_activity "
            "WHERE wait_event IS NOT NULL"
        ),
        columns=("pid", "usename", "query_start", "state", "wait_event", "query"),
    ),
    DiagnosticProbe(
        key="max_connections",
        title="Connection limit",
        category=ProbeCategory.SETTINGS,
        sql="SHOW max_connections",
        columns=("max_connections",),
    ),
    DiagnosticProbe(
        key="high_dead_tuple",
        title="Tables with many dead tuples",
        category=ProbeCategory.VACUUM,
        sql=(
            "SELECT relname, n_dead_tup, last_autovacuum FROM pg_stat_user_tables "
            "WHERE n_dead_tup > 1000 ORDER BY n_dead_tup DESC"
        ),
        columns=("relname", "n_dead_tup", "last_autovacuum"),
    ),
    DiagnosticProbe(
        key="vacuum_progress",
        title="Running vacuums",
        category=ProbeCategory.VACUUM,
        sql="SELECT * FROM pg_stat_progress_vacuum",
    ),
    DiagnosticProbe(
        key="frequent_queries",
        title="Most frequently called statements",
        category=ProbeCategory.QUERIES,
        sql="SELECT query, calls FROM pg_stat_statements ORDER BY calls DESC LIMIT 10",
        columns=("query", "calls"),
        extension="pg_stat_statements",
    ),
    DiagnosticProbe(
        key="index_bloat",
        title="Index block reads",
        category=ProbeCategory.INDEXES,
        sql=(
            "SELECT schemaname, relname, indexrelname, idx_blks_read, idx_blks_hit, "
            "idx_blks_read + idx_blks_hit AS total_reads, "
            "CASE WHEN (idx_blks_read + idx_blks_hit) = 0 THEN 0 "
            "ELSE idx_blks_read::numeric / (idx_blks_read + idx_blks_hit) END AS read_pct "
            "FROM pg_statio_user_indexes ORDER BY total_reads DESC LIMIT 10"
        ),
        columns=(
            "schemaname",
            "relname",
            "indexrelname",
            "idx_blks_read",
            "idx_blks_hit",
            "total_reads",
            "read_pct",
        ),
    ),
    DiagnosticProbe(
        key="slow_queries",
        title="Slowest statements by mean time",
        category=ProbeCategory.QUERIES,
        sql=(
            "SELECT query, total_exec_time, calls, mean_exec_time FROM pg_stat_statements "
            "ORDER BY mean_exec_time DESC LIMIT 10"
        ),
        columns=("query", "total_exec_time", "calls", "mean_exec_time"),
        extension="pg_stat_statements",
    ),
    DiagnosticProbe(
        key="index_hit_rate",
        title="Index scan ratio",
        category=ProbeCategory.INDEXES,
        sql=(
            "SELECT CASE WHEN sum(seq_scan + idx_scan) = 0 THEN 0 "
            "ELSE sum(idx_scan)::numeric / sum(seq_scan + idx_scan) END AS index_hit_rate "
            "FROM pg_stat_user_tables"
        ),
        columns=("index_hit_rate",),
    ),
    DiagnosticProbe(
        key="background_worker",
        title="Non-client backends",
        category=ProbeCategory.ACTIVITY,
        sql="SELECT * FROM pg_stat_activity WHERE backend_type != 'client backend'",
    ),
    DiagnosticProbe(
        key="active_locks",
        title="Ungranted locks",
        category=ProbeCategory.LOCKS,
        sql="SELECT pid, locktype, relation::regclass, mode, granted FROM pg_locks WHERE NOT granted",
        columns=("pid", "locktype", "relation", "mode", "granted"),
    ),
)


class DiagnosticCatalog:
    """Lookup over the fixed probe table."""

    def __init__(self, probes: Iterable[DiagnosticProbe] = _PROBES) -> None:
        self._probes: dict[str, DiagnosticProbe] = {probe.key: probe for probe in probes}

    @classmethod
    def default(cls) -> "DiagnosticCatalog":
        return cls(_PROBES)

    def __contains__(self, key: object) -> bool:
        return key in self._probes

    def keys(self) -> tuple[str, ...]:
        return tuple(self._probes)

    def probes(self) -> tuple[DiagnosticProbe, ...]:
        return tuple(self._probes.values())

    def get(self, key: str) -> DiagnosticProbe:
        try:
            return self._probes[key]
        except KeyError:
            raise UnknownDiagnosticError(key) from None

    async def run(self, key: str, pool: Pool) -> DiagnosticResult:
        """Run one probe; SQL errors surface as :class:`ProbeExecutionError`."""

        probe = self.get(key)
        LOG.debug("Running diagnostic %s", key)
        try:
            return await probe.run(pool)
        except asyncpg.PostgresError as exc:
            if is_connection_lost(exc):
                raise
            raise ProbeExecutionError(key, exc) from exc

    async def run_many(self, keys: Iterable[str], pool: Pool) -> dict[str, DiagnosticResult]:
        """Run several probes; a failing probe is logged and left out."""

        results: dict[str, DiagnosticResult] = {}
        for key in keys:
            try:
                results[key] = await self.run(key, pool)
            except (ProbeExecutionError, UnknownDiagnosticError) as exc:
                LOG.warning("%s", exc)
        return results


class AnalysisCache:
    """Short-lived cache of diagnostic results per (session, key)."""

    def __init__(self, ttl: float = 10.0, *, clock=time.monotonic) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[tuple[str, str], tuple[float, DiagnosticResult]] = {}

    def get(self, session_id: str, key: str) -> DiagnosticResult | None:
        entry = self._entries.get((session_id, key))
        if entry is None:
            return None
        stored_at, result = entry
        if self._clock() - stored_at >= self._ttl:
            self._entries.pop((session_id, key), None)
            return None
        return result

    def put(self, session_id: str, result: DiagnosticResult) -> None:
        if self._ttl <= 0:
            return
        self._entries[(session_id, result.key)] = (self._clock(), result)

    def forget_session(self, session_id: str) -> None:
        for cache_key in [cache_key for cache_key in self._entries if cache_key[0] == session_id]:
            self._entries.pop(cache_key, None)


def describe(catalog: DiagnosticCatalog) -> list[Mapping[str, str]]:
    """Catalog listing for clients."""

    return [
        {"key": probe.key, "title": probe.title, "category": probe.category.value}
        for probe in catalog.probes()
    ]


__all__ = [
    "AnalysisCache",
    "DiagnosticCatalog",
    "DiagnosticProbe",
    "ProbeCategory",
    "ProbeExecutionError",
    "UnknownDiagnosticError",
    "describe",
]
