"""Tests for the diagnostic catalog."""

from __future__ import annotations

import asyncpg
import pytest

from conftest import FakePool
from pgdash.catalog import (
    AnalysisCache,
    DiagnosticCatalog,
    DiagnosticProbe,
    ProbeCategory,
    ProbeExecutionError,
    UnknownDiagnosticError,
    describe,
)

EXPECTED_KEYS = {
    "deadlock",
    "total_tables",
    "idle",
    "long_tables",
    "index_usage",
    "large_tables",
    "large_indices",
    "blocked_queries",
    "max_connections",
    "high_dead_tuple",
    "vacuum_progress",
    "frequent_queries",
    "index_bloat",
    "slow_queries",
    "index_hit_rate",
    "background_worker",
    "active_locks",
}


def test_default_catalog_contains_every_probe() -> None:
    catalog = DiagnosticCatalog.default()

    assert set(catalog.keys()) == EXPECTED_KEYS
    assert "deadlock" in catalog
    assert catalog.get("max_connections").category is ProbeCategory.SETTINGS


def test_unknown_key_raises() -> None:
    with pytest.raises(UnknownDiagnosticError) as excinfo:
        DiagnosticCatalog.default().get("not_a_probe")

    assert excinfo.value.key == "not_a_probe"


@pytest.mark.anyio
async def test_run_uses_record_keys_for_columns() -> None:
    rows = [
        {"relname": "orders", "total_size": "8192 kB"},
        {"relname": "accounts", "total_size": "64 kB"},
    ]
    pool = FakePool({"pg_statio_user_tables": rows})

    result = await DiagnosticCatalog.default().run("large_tables", pool)

    assert result.key == "large_tables"
    assert result.columns == ("relname", "total_size")
    assert result.rows == (("orders", "8192 kB"), ("accounts", "64 kB"))
    assert result.count == 2
    assert result.as_dict()["data"][0] == {"relname": "orders", "total_size": "8192 kB"}


@pytest.mark.anyio
async def test_tuple_rows_fall_back_to_declared_columns() -> None:
    pool = FakePool({"SHOW max_connections": [("100",)]})

    result = await DiagnosticCatalog.default().run("max_connections", pool)

    assert result.columns == ("max_connections",)
    assert result.records() == [{"max_connections": "100"}]


@pytest.mark.anyio
async def test_tuple_rows_fall_back_to_inferred_then_positional_columns() -> None:
    inferred = DiagnosticProbe(
        key="custom",
        title="Custom",
        category=ProbeCategory.ACTIVITY,
        sql="SELECT pid, state FROM pg_stat_activity",
    )
    opaque = DiagnosticProbe(
        key="opaque",
        title="Opaque",
        category=ProbeCategory.ACTIVITY,
        sql="SHOW all",
    )
    catalog = DiagnosticCatalog([inferred, opaque])
    pool = FakePool({"pg_stat_activity": [(1, "active", "extra")], "SHOW all": [("a", "b")]})

    custom = await catalog.run("custom", pool)
    fallback = await catalog.run("opaque", pool)

    assert custom.columns == ("pid", "state", "col_2")
    assert custom.positional is False
    assert fallback.columns == ("col_0", "col_1")
    assert fallback.positional is True


@pytest.mark.anyio
async def test_empty_result_keeps_declared_columns() -> None:
    pool = FakePool({"pg_stat_user_tables": []})

    result = await DiagnosticCatalog.default().run("high_dead_tuple", pool)

    assert result.count == 0
    assert result.columns == ("relname", "n_dead_tup", "last_autovacuum")


@pytest.mark.anyio
async def test_sql_errors_become_probe_errors() -> None:
    pool = FakePool({"pg_stat_statements": asyncpg.UndefinedTableError('relation "pg_stat_statements" does not exist')})

    with pytest.raises(ProbeExecutionError) as excinfo:
        await DiagnosticCatalog.default().run("frequent_queries", pool)

    assert excinfo.value.key == "frequent_queries"


@pytest.mark.anyio
async def test_connection_loss_is_not_wrapped() -> None:
    pool = FakePool({"pg_locks": asyncpg.AdminShutdownError("terminating connection")})

    with pytest.raises(asyncpg.AdminShutdownError):
        await DiagnosticCatalog.default().run("active_locks", pool)


@pytest.mark.anyio
async def test_run_many_isolates_failing_probes() -> None:
    pool = FakePool(
        {
            "pg_stat_statements": asyncpg.UndefinedTableError("missing extension"),
            "wait_event_type = 'Lock'": [{"pid": 42, "state": "active"}],
        }
    )

    results = await DiagnosticCatalog.default().run_many(["frequent_queries", "deadlock", "bogus"], pool)

    assert list(results) == ["deadlock"]
    assert results["deadlock"].records() == [{"pid": 42, "state": "active"}]


def test_analysis_cache_expires_after_ttl() -> None:
    now = [100.0]
    cache = AnalysisCache(ttl=10.0, clock=lambda: now[0])
    result = DiagnosticCatalog.default().get("total_tables").to_result([{"count": 3}])

    cache.put("s1", result)
    assert cache.get("s1", "total_tables") is result
    assert cache.get("s2", "total_tables") is None

    now[0] += 10.0
    assert cache.get("s1", "total_tables") is None


def test_analysis_cache_forgets_sessions() -> None:
    cache = AnalysisCache(ttl=60.0)
    result = DiagnosticCatalog.default().get("total_tables").to_result([{"count": 3}])
    cache.put("s1", result)

    cache.forget_session("s1")

    assert cache.get("s1", "total_tables") is None


def test_describe_lists_catalog() -> None:
    listing = describe(DiagnosticCatalog.default())

    assert {"key": "deadlock", "title": "Sessions waiting on locks", "category": "locks"} in listing
    assert len(listing) == len(EXPECTED_KEYS)
