"""Shared models used across the registry, session and polling modules."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def new_connection_id() -> str:
    """Return an identifier for a newly registered connection."""

    return f"db_{uuid.uuid4().hex[:12]}"


class ConnectionConfig(BaseModel):
    """Named PostgreSQL connection settings, as stored in the registry."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(default_factory=new_connection_id)
    name: str
    host: str = "localhost"
    port: int = Field(default=5432, ge=1, le=65535)
    database: str = "postgres"
    username: str = "postgres"
    password: str = ""
    use_ssl: bool = Field(default=False, alias="useSSL")
    is_active: bool = Field(default=False, alias="isActive")
    dsn: str | None = None
    temporary: bool = False

    @property
    def label(self) -> str:
        """Short human label used in logs (never includes the password)."""

        if self.dsn:
            return f"{self.name} (dsn)"
        return f"{self.name} ({self.username}@{self.host}:{self.port}/{self.database})"

    def with_active(self, active: bool) -> "ConnectionConfig":
        return self.model_copy(update={"is_active": active})


@dataclass(frozen=True, slots=True)
class MetricSample:
    """One point of a metric time series."""

    timestamp: datetime
    value: float

    def as_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "value": self.value}


@dataclass(frozen=True, slots=True)
class DiagnosticResult:
    """Columnar output of a diagnostic probe."""

    key: str
    columns: tuple[str, ...]
    rows: tuple[tuple[Any, ...], ...]
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))
    positional: bool = False

    @property
    def count(self) -> int:
        return len(self.rows)

    def records(self) -> list[dict[str, Any]]:
        """Row maps keyed by column name, in SELECT order."""

        return [dict(zip(self.columns, row)) for row in self.rows]

    def as_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "key": self.key,
            "count": self.count,
            "data": self.records(),
            "columns": list(self.columns),
        }


QueryStatus = Literal["completed", "running", "error"]


@dataclass(frozen=True, slots=True)
class QueryLogEntry:
    """Normalized query log row from pg_stat_statements or pg_stat_activity."""

    query: str
    timestamp: datetime | None
    execution_time_seconds: float
    database: str | None
    status: QueryStatus
    state: str
    application_name: str | None = None
    client_address: str | None = None
    error: str | None = None
    calls: int | None = None
    total_time: float | None = None
    mean_time: float | None = None
    min_time: float | None = None
    max_time: float | None = None
    rows: int | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "query": self.query,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "execution_time": self.execution_time_seconds,
            "database": self.database,
            "status": self.status,
            "state": self.state,
            "application_name": self.application_name,
            "client_address": self.client_address,
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.calls is not None:
            payload.update(
                calls=self.calls,
                total_time=self.total_time,
                mean_time=self.mean_time,
                min_time=self.min_time,
                max_time=self.max_time,
                rows=self.rows,
            )
        return payload


__all__ = [
    "ConnectionConfig",
    "DiagnosticResult",
    "MetricSample",
    "QueryLogEntry",
    "QueryStatus",
    "new_connection_id",
]
