"""Tests for the SELECT-only statement policy."""

from __future__ import annotations

import pytest

from pgdash.sqlintel import PolicyViolationError, ensure_read_only


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT 1",
        "  select * from accounts;  ",
        "SELECT id FROM a UNION SELECT id FROM b",
        "WITH recent AS (SELECT * FROM orders WHERE id > 10) SELECT count(*) FROM recent",
        "SELECT relname, n_live_tup FROM pg_stat_user_tables ORDER BY n_live_tup DESC LIMIT 10",
    ],
)
def test_read_only_statements_pass(sql: str) -> None:
    ensure_read_only(sql)


@pytest.mark.parametrize(
    "sql",
    [
        "DELETE FROM foo",
        "INSERT INTO foo VALUES (1)",
        "UPDATE foo SET a = 1",
        "DROP TABLE foo",
        "TRUNCATE foo",
        "CREATE TABLE foo (id int)",
        "SELECT 1; DROP TABLE foo",
        "SELECT * INTO copy_of_foo FROM foo",
        "SELECT * FROM foo FOR UPDATE",
        "WITH gone AS (DELETE FROM foo RETURNING *) SELECT * FROM gone",
        "VACUUM foo",
    ],
)
def test_writes_and_chained_statements_are_rejected(sql: str) -> None:
    with pytest.raises(PolicyViolationError):
        ensure_read_only(sql)


@pytest.mark.parametrize("sql", ["", "   ", None])
def test_empty_sql_is_rejected(sql: str | None) -> None:
    with pytest.raises(PolicyViolationError, match="Provide SQL"):
        ensure_read_only(sql)  # type: ignore[arg-type]


def test_policy_violation_is_a_permission_error() -> None:
    with pytest.raises(PermissionError):
        ensure_read_only("DELETE FROM foo")
