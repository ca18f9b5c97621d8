"""Tests for the composite stats probes."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import asyncpg
import pytest

from conftest import FakePool
from pgdash.probes import (
    fetch_connection_status,
    fetch_database_stats,
    fetch_query_logs,
    fetch_resource_stats,
    fetch_table_stats,
)

STATEMENTS = "total_exec_time"
LEGACY_STATEMENTS = "s.total_time DESC"
ACTIVITY = "ORDER BY query_start DESC"


def _resource_pool(**overrides: object) -> FakePool:
    responses: dict[str, object] = {
        "AS active_queries": 3,
        "AS active_query_time": Decimal("1.5"),
        "SHOW shared_buffers": "128MB",
        "AS cache_hit_ratio": 0.99,
        "AS db_size_bytes": 8 * 1024 * 1024,
        "AS heap_read": {"heap_read": Decimal(10), "heap_hit": Decimal(90), "idx_read": Decimal(0), "idx_hit": Decimal(100)},
    }
    responses.update(overrides)
    return FakePool(responses)


@pytest.mark.anyio
async def test_connection_status_reads_version() -> None:
    assert await fetch_connection_status(FakePool(version="PostgreSQL 14.9")) == {"version": "PostgreSQL 14.9"}


@pytest.mark.anyio
async def test_database_stats() -> None:
    pool = FakePool(
        {
            "pg_size_pretty(pg_database_size": "7496 kB",
            "AS table_count": 12,
            "AS connections": 4,
        }
    )

    stats = await fetch_database_stats(pool)

    payload = stats.as_dict()
    assert payload["size"] == "7496 kB"
    assert payload["sizeMb"] == pytest.approx(7.32, abs=0.01)
    assert payload["tableCount"] == 12
    assert payload["connections"] == 4


@pytest.mark.anyio
async def test_database_stats_isolates_failing_subqueries(caplog: pytest.LogCaptureFixture) -> None:
    pool = FakePool(
        {
            "pg_size_pretty(pg_database_size": "1 MB",
            "AS table_count": asyncpg.InsufficientPrivilegeError("permission denied for schema"),
            "AS connections": 2,
        }
    )

    stats = await fetch_database_stats(pool)

    assert stats.table_count == 0
    assert stats.connections == 2
    assert stats.size_mb == 1.0
    assert "table_count" in caplog.text


@pytest.mark.anyio
async def test_database_stats_propagates_connection_loss() -> None:
    pool = FakePool({"pg_size_pretty(pg_database_size": ConnectionResetError("reset by peer")})

    with pytest.raises(ConnectionResetError):
        await fetch_database_stats(pool)


@pytest.mark.anyio
async def test_resource_stats_payload() -> None:
    stats = await fetch_resource_stats(_resource_pool())

    payload = stats.as_dict()
    assert payload["cpu"] == {"activeQueries": 3, "activeQueryTime": 1.5, "usage": 15.0}
    assert payload["memory"] == {"sharedBuffers": "128MB", "sharedBuffersMb": 128.0, "cacheHitRatio": 0.99}
    assert payload["disk"] == {"sizeBytes": 8 * 1024 * 1024, "sizeMb": 8.0}
    assert payload["io"]["hitRatio"] == pytest.approx(190 / 200)
    assert stats.metrics() == {
        "cpu": 15.0,
        "memory": 128.0,
        "disk": 8.0,
        "io": pytest.approx(95.0),
    }


@pytest.mark.anyio
async def test_resource_stats_caps_cpu_and_defaults_on_errors() -> None:
    pool = _resource_pool(
        **{
            "AS active_queries": 40,
            "SHOW shared_buffers": asyncpg.InsufficientPrivilegeError("denied"),
            "AS heap_read": asyncpg.UndefinedTableError("missing"),
        }
    )

    stats = await fetch_resource_stats(pool)

    assert stats.cpu_usage == 100.0
    assert stats.shared_buffers_mb == 0.0
    assert stats.io_hit_ratio == 0.0


@pytest.mark.anyio
async def test_table_stats_adds_sizes_in_mb() -> None:
    rows = [
        {"table_name": "public.orders", "total_size": "2 GB"},
        {"table_name": "public.accounts", "total_size": "512 kB"},
    ]

    stats = await fetch_table_stats(FakePool({"pg_total_relation_size": rows}))

    payload = stats.as_dict()
    assert payload["tableSizes"] == [
        {"table_name": "public.orders", "total_size": "2 GB", "size_mb": 2048.0},
        {"table_name": "public.accounts", "total_size": "512 kB", "size_mb": 0.5},
    ]
    assert "timestamp" in payload


@pytest.mark.anyio
async def test_table_stats_default_to_empty() -> None:
    stats = await fetch_table_stats(FakePool({"pg_total_relation_size": asyncpg.InsufficientPrivilegeError("no")}))

    assert stats.table_sizes == ()


def _statement_row(**overrides: object) -> dict[str, object]:
    row: dict[str, object] = {
        "query": "SELECT * FROM orders WHERE id = $1",
        "calls": 120,
        "total_time": 600.0,
        "min_time": 0.5,
        "max_time": 40.0,
        "mean_time": 5.0,
        "rows": 120,
        "datname": "app",
    }
    row.update(overrides)
    return row


@pytest.mark.anyio
async def test_query_logs_prefer_pg_stat_statements() -> None:
    seen: list[object] = []

    def _statements(query: str, limit: int) -> list[dict[str, object]]:
        seen.append(limit)
        return [_statement_row()]

    pool = FakePool({STATEMENTS: _statements})

    entries = await fetch_query_logs(pool, limit=25)

    assert seen == [25]
    assert len(entries) == 1
    payload = entries[0].as_dict()
    assert payload["status"] == "completed"
    assert payload["execution_time"] == pytest.approx(0.005)
    assert payload["calls"] == 120
    assert payload["database"] == "app"
    assert not any(ACTIVITY in query for query in pool.queries())


@pytest.mark.anyio
async def test_query_logs_use_legacy_statement_columns() -> None:
    pool = FakePool(
        {
            STATEMENTS: asyncpg.UndefinedColumnError('column "total_exec_time" does not exist'),
            LEGACY_STATEMENTS: [_statement_row(mean_time=2000.0)],
        }
    )

    entries = await fetch_query_logs(pool)

    assert entries[0].execution_time_seconds == 2.0


@pytest.mark.anyio
async def test_query_logs_fall_back_to_activity(caplog: pytest.LogCaptureFixture) -> None:
    started = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    activity = [
        {
            "query": "SELECT pg_sleep(5)",
            "state": "active",
            "duration": Decimal("4.25"),
            "datname": "app",
            "query_start": started,
            "usename": "app",
            "client_addr": None,
            "application_name": "psql",
        },
        {
            "query": "UPDATE orders SET status = 'x'",
            "state": "idle in transaction (aborted)",
            "duration": 1.0,
            "datname": "app",
            "query_start": started,
            "usename": "app",
            "client_addr": "10.0.0.5/32",
            "application_name": "",
        },
    ]
    pool = FakePool(
        {
            STATEMENTS: asyncpg.UndefinedTableError('relation "pg_stat_statements" does not exist'),
            ACTIVITY: activity,
        }
    )

    entries = await fetch_query_logs(pool)

    assert [entry.status for entry in entries] == ["running", "error"]
    assert entries[0].execution_time_seconds == 4.25
    assert entries[0].client_address == "local"
    assert entries[0].timestamp == started
    assert entries[1].error == "Transaction aborted"
    assert entries[1].application_name is None
    assert "calls" not in entries[0].as_dict()
    assert "falling back to pg_stat_activity" in caplog.text


@pytest.mark.anyio
async def test_query_logs_connection_loss_is_not_a_fallback() -> None:
    pool = FakePool({STATEMENTS: asyncpg.AdminShutdownError("terminating connection")})

    with pytest.raises(asyncpg.AdminShutdownError):
        await fetch_query_logs(pool)
