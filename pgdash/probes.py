"""Composite probes behind the stats, resource, table and query-log views.

Every sub-query is isolated: a SQL error is logged and replaced with a zero or
empty default. Errors that mean the connection itself is gone are re-raised
for the caller to handle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, TypeVar

import asyncpg

from .catalog import ProbeExecutionError
from .connections import Pool, is_connection_lost
from .models import QueryLogEntry
from .sizes import bytes_to_mb, parse_size

LOG = logging.getLogger(__name__)

T = TypeVar("T")

# Arbitrary scale: each running query counts as 5% "CPU".
CPU_PERCENT_PER_ACTIVE_QUERY = 5.0


class ExtensionUnavailableError(RuntimeError):
    """Raised when an optional statistics extension cannot be queried."""

    def __init__(self, extension: str, cause: BaseException) -> None:
        super().__init__(f"{extension} is not available: {cause}")
        self.extension = extension
        self.cause = cause


@dataclass(frozen=True, slots=True)
class DatabaseStats:
    size: str = "0 kB"
    table_count: int = 0
    connections: int = 0

    @property
    def size_mb(self) -> float:
        return parse_size(self.size)

    def as_dict(self) -> dict[str, Any]:
        return {
            "size": self.size,
            "sizeMb": self.size_mb,
            "tableCount": self.table_count,
            "connections": self.connections,
        }


@dataclass(frozen=True, slots=True)
class ResourceStats:
    active_queries: int = 0
    active_query_time: float = 0.0
    shared_buffers: str = "0 kB"
    cache_hit_ratio: float = 0.0
    size_bytes: int = 0
    heap_read: int = 0
    heap_hit: int = 0
    idx_read: int = 0
    idx_hit: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @property
    def cpu_usage(self) -> float:
        return min(self.active_queries * CPU_PERCENT_PER_ACTIVE_QUERY, 100.0)

    @property
    def shared_buffers_mb(self) -> float:
        return parse_size(self.shared_buffers)

    @property
    def io_hit_ratio(self) -> float:
        hits = self.heap_hit + self.idx_hit
        total = hits + self.heap_read + self.idx_read
        return hits / total if total else 0.0

    def metrics(self) -> dict[str, float]:
        """Values appended to the chart histories on each fast tick."""

        return {
            "cpu": self.cpu_usage,
            "memory": self.shared_buffers_mb,
            "disk": bytes_to_mb(self.size_bytes),
            "io": self.io_hit_ratio * 100.0,
        }

    def as_dict(self) -> dict[str, Any]:
        return {
            "cpu": {
                "activeQueries": self.active_queries,
                "activeQueryTime": self.active_query_time,
                "usage": self.cpu_usage,
            },
            "memory": {
                "sharedBuffers": self.shared_buffers,
                "sharedBuffersMb": self.shared_buffers_mb,
                "cacheHitRatio": self.cache_hit_ratio,
            },
            "disk": {
                "sizeBytes": self.size_bytes,
                "sizeMb": bytes_to_mb(self.size_bytes),
            },
            "io": {
                "heapRead": self.heap_read,
                "heapHit": self.heap_hit,
                "idxRead": self.idx_read,
                "idxHit": self.idx_hit,
                "hitRatio": self.io_hit_ratio,
            },
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class TableStats:
    table_sizes: tuple[dict[str, Any], ...] = ()
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    def as_dict(self) -> dict[str, Any]:
        return {"tableSizes": list(self.table_sizes), "timestamp": self.timestamp.isoformat()}


_SIZE_SQL = "SELECT pg_size_pretty(pg_database_size(current_database())) AS size"
_TABLE_COUNT_SQL = (
    "SELECT count(*) AS table_count FROM information_schema.tables WHERE table_schema = 'public'"
)
_CONNECTIONS_SQL = "SELECT count(*) AS connections FROM pg_stat_activity"

_ACTIVE_QUERIES_SQL = (
    "SELECT count(*) AS active_queries FROM pg_stat_activity "
    "WHERE state = 'active' AND pid <> pg_backend_pid()"
)
_ACTIVE_TIME_SQL = (
    "SELECT COALESCE(sum(EXTRACT(EPOCH FROM (now() - query_start))), 0) AS active_query_time "
    "FROM pg_stat_activity WHERE state = 'active' AND pid <> pg_backend_pid()"
)
_SHARED_BUFFERS_SQL = "SHOW shared_buffers"
_CACHE_HIT_SQL = (
    "SELECT CASE WHEN sum(blks_hit + blks_read) = 0 THEN 0 "
    "ELSE sum(blks_hit)::float8 / sum(blks_hit + blks_read) END AS cache_hit_ratio "
    "FROM pg_stat_database"
)
_DB_BYTES_SQL = "SELECT pg_database_size(current_database()) AS db_size_bytes"
_IO_SQL = (
    "SELECT COALESCE(sum(heap_blks_read), 0) AS heap_read, "
    "COALESCE(sum(heap_blks_hit), 0) AS heap_hit, "
    "COALESCE(sum(idx_blks_read), 0) AS idx_read, "
    "COALESCE(sum(idx_blks_hit), 0) AS idx_hit "
    "FROM pg_statio_user_tables"
)

_TABLE_SIZES_SQL = (
    "SELECT schemaname || '.' || tablename AS table_name, "
    "pg_size_pretty(pg_total_relation_size(quote_ident(schemaname) || '.' || quote_ident(tablename))) "
    "AS total_size "
    "FROM pg_tables "
    "WHERE schemaname NOT IN ('pg_catalog', 'information_schema') "
    "ORDER BY pg_total_relation_size(quote_ident(schemaname) || '.' || quote_ident(tablename)) DESC"
)

_STATEMENTS_SQL = (
    "SELECT s.query, s.calls, s.total_exec_time AS total_time, s.min_exec_time AS min_time, "
    "s.max_exec_time AS max_time, s.mean_exec_time AS mean_time, s.rows, d.datname "
    "FROM pg_stat_statements s LEFT JOIN pg_database d ON d.oid = s.dbid "
    "ORDER BY s.total_exec_time DESC LIMIT $1"
)
_LEGACY_STATEMENTS_SQL = (
    "SELECT s.query, s.calls, s.total_time, s.min_time, s.max_time, s.mean_time, s.rows, d.datname "
    "FROM pg_stat_statements s LEFT JOIN pg_database d ON d.oid = s.dbid "
    "ORDER BY s.total_time DESC LIMIT $1"
)
_ACTIVITY_SQL = (
    "SELECT query, state, EXTRACT(EPOCH FROM now() - query_start) AS duration, datname, "
    "query_start, usename, client_addr::text AS client_addr, application_name "
    "FROM pg_stat_activity "
    "WHERE query_start IS NOT NULL AND state IS NOT NULL "
    "AND query <> '<insufficient privilege>' AND pid <> pg_backend_pid() "
    "ORDER BY query_start DESC LIMIT $1"
)


async def fetch_connection_status(pool: Pool) -> dict[str, str]:
    """Read the server version; failures propagate to the caller."""

    version = await pool.fetchval("SELECT version()")
    return {"version": str(version)}


async def fetch_database_stats(pool: Pool) -> DatabaseStats:
    size = await _isolated("database_size", lambda: pool.fetchval(_SIZE_SQL), "0 kB")
    tables = await _isolated("table_count", lambda: pool.fetchval(_TABLE_COUNT_SQL), 0)
    connections = await _isolated("connection_count", lambda: pool.fetchval(_CONNECTIONS_SQL), 0)
    return DatabaseStats(size=str(size), table_count=_as_int(tables), connections=_as_int(connections))


async def fetch_resource_stats(pool: Pool) -> ResourceStats:
    active = await _isolated("cpu_active_queries", lambda: pool.fetchval(_ACTIVE_QUERIES_SQL), 0)
    active_time = await _isolated("cpu_active_time", lambda: pool.fetchval(_ACTIVE_TIME_SQL), 0.0)
    buffers = await _isolated("memory_shared_buffers", lambda: pool.fetchval(_SHARED_BUFFERS_SQL), "0 kB")
    hit_ratio = await _isolated("memory_cache_hit", lambda: pool.fetchval(_CACHE_HIT_SQL), 0.0)
    size_bytes = await _isolated("disk_size", lambda: pool.fetchval(_DB_BYTES_SQL), 0)
    io_row = await _isolated("io_blocks", lambda: pool.fetchrow(_IO_SQL), None)
    io = dict(io_row) if io_row is not None else {}
    return ResourceStats(
        active_queries=_as_int(active),
        active_query_time=_as_float(active_time),
        shared_buffers=str(buffers),
        cache_hit_ratio=_as_float(hit_ratio),
        size_bytes=_as_int(size_bytes),
        heap_read=_as_int(io.get("heap_read")),
        heap_hit=_as_int(io.get("heap_hit")),
        idx_read=_as_int(io.get("idx_read")),
        idx_hit=_as_int(io.get("idx_hit")),
    )


async def fetch_table_stats(pool: Pool) -> TableStats:
    rows = await _isolated("table_sizes", lambda: pool.fetch(_TABLE_SIZES_SQL), [])
    sizes = tuple(
        {
            "table_name": row["table_name"],
            "total_size": row["total_size"],
            "size_mb": parse_size(row["total_size"]),
        }
        for row in rows
    )
    return TableStats(table_sizes=sizes)


async def fetch_query_logs(pool: Pool, limit: int = 50) -> list[QueryLogEntry]:
    """Aggregate statement stats when available, else a live activity snapshot."""

    try:
        return await _fetch_statement_logs(pool, limit)
    except ExtensionUnavailableError as exc:
        LOG.warning("pg_stat_statements not available, falling back to pg_stat_activity: %s", exc.cause)
    try:
        rows = await pool.fetch(_ACTIVITY_SQL, limit)
    except asyncpg.PostgresError as exc:
        if is_connection_lost(exc):
            raise
        raise ProbeExecutionError("query_logs", exc) from exc
    return [_activity_entry(row) for row in rows]


async def _fetch_statement_logs(pool: Pool, limit: int) -> list[QueryLogEntry]:
    try:
        try:
            rows = await pool.fetch(_STATEMENTS_SQL, limit)
        except asyncpg.UndefinedColumnError:
            rows = await pool.fetch(_LEGACY_STATEMENTS_SQL, limit)
    except asyncpg.PostgresError as exc:
        if is_connection_lost(exc):
            raise
        raise ExtensionUnavailableError("pg_stat_statements", exc) from exc
    snapshot = datetime.now(tz=timezone.utc)
    return [_statement_entry(row, snapshot) for row in rows]


def _statement_entry(row: Any, snapshot: datetime) -> QueryLogEntry:
    mean_ms = _as_float(row["mean_time"])
    return QueryLogEntry(
        query=str(row["query"] or ""),
        timestamp=snapshot,
        execution_time_seconds=mean_ms / 1000.0,
        database=row["datname"],
        status="completed",
        state="aggregate",
        calls=_as_int(row["calls"]),
        total_time=_as_float(row["total_time"]),
        mean_time=mean_ms,
        min_time=_as_float(row["min_time"]),
        max_time=_as_float(row["max_time"]),
        rows=_as_int(row["rows"]),
    )


def _activity_entry(row: Any) -> QueryLogEntry:
    state = str(row["state"] or "unknown")
    if state == "active":
        status = "running"
    elif "aborted" in state:
        status = "error"
    else:
        status = "completed"
    return QueryLogEntry(
        query=str(row["query"] or "Unknown query"),
        timestamp=row["query_start"],
        execution_time_seconds=_as_float(row["duration"]),
        database=row["datname"],
        status=status,
        state=state,
        application_name=row["application_name"] or None,
        client_address=row["client_addr"] or "local",
        error="Transaction aborted" if status == "error" else None,
    )


async def _isolated(key: str, call: Callable[[], Awaitable[T]], default: T) -> T:
    try:
        value = await call()
    except asyncpg.PostgresError as exc:
        if is_connection_lost(exc):
            raise
        LOG.warning("%s", ProbeExecutionError(key, exc))
        return default
    return default if value is None else value


def _as_int(value: Any) -> int:
    if value is None:
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _as_float(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, Decimal):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


__all__ = [
    "CPU_PERCENT_PER_ACTIVE_QUERY",
    "DatabaseStats",
    "ExtensionUnavailableError",
    "ResourceStats",
    "TableStats",
    "fetch_connection_status",
    "fetch_database_stats",
    "fetch_query_logs",
    "fetch_resource_stats",
    "fetch_table_stats",
]
