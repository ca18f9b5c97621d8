"""Dashboard service: the operations exposed over HTTP, independent of FastAPI."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, TypeVar
from urllib.parse import urlparse

from .catalog import AnalysisCache, DiagnosticCatalog, describe
from .connections import (
    DEFAULT_CONNECT_TIMEOUT,
    ConnectionCheck,
    Pool,
    check_connection,
    is_connection_lost,
)
from .models import ConnectionConfig, DiagnosticResult, new_connection_id
from .polling import PollingEngine
from .probes import (
    fetch_connection_status,
    fetch_database_stats,
    fetch_query_logs,
    fetch_resource_stats,
    fetch_table_stats,
)
from .query import QueryResult, run_adhoc
from .registry import ConnectionRegistry
from .session import SessionManager
from .sqlintel import ensure_read_only

LOG = logging.getLogger(__name__)

T = TypeVar("T")

ConnectionChecker = Callable[[ConnectionConfig], Awaitable[ConnectionCheck]]

_URI_SCHEMES = ("postgresql", "postgres")


class InputValidationError(ValueError):
    """Raised when a request is missing or has malformed fields."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field


def connection_from_params(
    *,
    host: str | None,
    port: int | str | None,
    database: str | None,
    username: str | None,
    password: str | None = None,
    name: str | None = None,
    use_ssl: bool = False,
) -> ConnectionConfig:
    """Validate individual connection fields and build a registry entry."""

    if not host:
        raise InputValidationError("Host is required", field="host")
    if port is None or port == "":
        raise InputValidationError("Port is required", field="port")
    try:
        port_number = int(port)
    except (TypeError, ValueError):
        raise InputValidationError("Port must be a number", field="port") from None
    if not 1 <= port_number <= 65535:
        raise InputValidationError("Port must be between 1 and 65535", field="port")
    if not database:
        raise InputValidationError("Database name is required", field="database")
    if not username:
        raise InputValidationError("Username is required", field="username")
    return ConnectionConfig(
        name=name or f"{database}@{host}",
        host=host,
        port=port_number,
        database=database,
        username=username,
        password=password or "",
        use_ssl=use_ssl,
    )


def connection_from_string(connection_string: str | None, *, name: str | None = None) -> ConnectionConfig:
    """Validate a ``postgresql://`` URI and build a registry entry around it."""

    if not connection_string or not connection_string.strip():
        raise InputValidationError("Connection string is required", field="connectionString")
    dsn = connection_string.strip()
    parsed = urlparse(dsn)
    if parsed.scheme not in _URI_SCHEMES:
        raise InputValidationError(
            "Connection string must start with postgresql://",
            field="connectionString",
        )
    try:
        port = parsed.port or 5432
    except ValueError:
        raise InputValidationError("Connection string has an invalid port", field="connectionString") from None
    host = parsed.hostname or "localhost"
    database = parsed.path.lstrip("/") or "postgres"
    connection_id = new_connection_id()
    return ConnectionConfig(
        id=connection_id,
        name=name or f"Connection {connection_id}",
        host=host,
        port=port,
        database=database,
        username=parsed.username or "postgres",
        use_ssl="sslmode=require" in parsed.query or "sslmode=verify" in parsed.query,
        dsn=dsn,
    )


class MonitorService:
    """Coordinates the registry, sessions, catalog and pollers for one server."""

    def __init__(
        self,
        sessions: SessionManager,
        *,
        catalog: DiagnosticCatalog | None = None,
        poller: PollingEngine | None = None,
        checker: ConnectionChecker | None = None,
        cache: AnalysisCache | None = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        query_log_limit: int = 50,
    ) -> None:
        self._sessions = sessions
        self._catalog = catalog or DiagnosticCatalog.default()
        self._poller = poller
        self._checker = checker or self._default_checker(connect_timeout)
        self._cache = cache or AnalysisCache()
        self._query_log_limit = query_log_limit
        self._unsubscribe = sessions.subscribe_expiry(self._cache.forget_session)

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @property
    def registry(self) -> ConnectionRegistry:
        return self._sessions.registry

    @property
    def catalog(self) -> DiagnosticCatalog:
        return self._catalog

    @property
    def poller(self) -> PollingEngine | None:
        return self._poller

    def resolve_session(self, candidate: str | None = None) -> str:
        return self._sessions.resolve_session(candidate)

    def list_connections(self) -> list[dict[str, Any]]:
        return [
            {"id": conn.id, "name": conn.name, "isDefault": conn.is_active}
            for conn in self.registry.list()
        ]

    async def test_params(self, **fields: Any) -> ConnectionCheck:
        return await self._checker(connection_from_params(**fields))

    async def test_string(self, connection_string: str | None) -> ConnectionCheck:
        return await self._checker(connection_from_string(connection_string))

    async def connect_params(
        self,
        session_id: str,
        *,
        save: bool = True,
        is_default: bool = False,
        **fields: Any,
    ) -> ConnectionCheck | dict[str, Any]:
        """Test, register and activate a connection given as individual fields.

        A failed test returns the :class:`ConnectionCheck` untouched and leaves
        the registry as it was.
        """

        config = connection_from_params(**fields)
        return await self._connect(session_id, config, save=save, is_default=is_default)

    async def connect_string(
        self,
        session_id: str,
        connection_string: str | None,
        *,
        name: str | None = None,
        save: bool = True,
        is_default: bool = False,
    ) -> ConnectionCheck | dict[str, Any]:
        config = connection_from_string(connection_string, name=name)
        return await self._connect(session_id, config, save=save, is_default=is_default)

    async def remove_connection(self, connection_id: str) -> dict[str, bool]:
        await self._sessions.close_connection(connection_id)
        self.registry.delete(connection_id)
        return {"success": True}

    async def set_active(self, session_id: str, connection_id: str) -> dict[str, str]:
        result = await self._sessions.set_active_database(connection_id, session_id)
        self._cache.forget_session(session_id)
        self._start_polling(session_id)
        return result

    async def connection_status(self, session_id: str) -> dict[str, Any]:
        connection_id, status = await self._on_pool(session_id, fetch_connection_status)
        return {
            "status": "connected",
            "version": status["version"],
            "databaseId": connection_id,
            "databaseName": self.registry.get(connection_id).name,
        }

    async def stats(self, session_id: str) -> dict[str, Any]:
        connection_id, stats = await self._on_pool(session_id, fetch_database_stats)
        payload = stats.as_dict()
        payload["databaseId"] = connection_id
        payload["databaseName"] = self.registry.get(connection_id).name
        return payload

    async def resource_stats(self, session_id: str) -> dict[str, Any]:
        _, stats = await self._on_pool(session_id, fetch_resource_stats)
        return stats.as_dict()

    def resource_history(self, session_id: str) -> dict[str, list[dict[str, object]]]:
        if self._poller is None:
            return {}
        return self._poller.history(session_id).as_dict()

    async def table_stats(self, session_id: str) -> dict[str, Any]:
        _, stats = await self._on_pool(session_id, fetch_table_stats)
        return stats.as_dict()

    async def query_logs(self, session_id: str) -> list[dict[str, Any]]:
        async def _fetch(pool: Pool):
            return await fetch_query_logs(pool, self._query_log_limit)

        _, entries = await self._on_pool(session_id, _fetch)
        return [entry.as_dict() for entry in entries]

    async def run_query(self, session_id: str, sql: str | None) -> QueryResult:
        if not sql or not sql.strip():
            raise InputValidationError("Query is required", field="query")
        ensure_read_only(sql)

        async def _run(pool: Pool) -> QueryResult:
            return await run_adhoc(pool, sql)

        _, result = await self._on_pool(session_id, _run)
        return result

    async def analyze(self, session_id: str, key: str | None) -> DiagnosticResult:
        if not key:
            raise InputValidationError("Diagnostic key is required", field="key")
        self._catalog.get(key)
        cached = self._cache.get(session_id, key)
        if cached is not None:
            LOG.debug("Serving cached diagnostic %s for session %s", key, session_id)
            return cached

        async def _run(pool: Pool) -> DiagnosticResult:
            return await self._catalog.run(key, pool)

        _, result = await self._on_pool(session_id, _run)
        self._cache.put(session_id, result)
        return result

    def diagnostics(self) -> list[dict[str, str]]:
        return [dict(entry) for entry in describe(self._catalog)]

    async def reap_sessions(self) -> list[str]:
        return await self._sessions.reap_expired()

    async def shutdown(self) -> None:
        if self._poller is not None:
            await self._poller.stop_all()
            self._poller.close()
        self._unsubscribe()
        await self._sessions.shutdown()

    async def _connect(
        self,
        session_id: str,
        config: ConnectionConfig,
        *,
        save: bool,
        is_default: bool,
    ) -> ConnectionCheck | dict[str, Any]:
        check = await self._checker(config)
        if not check.success:
            return check
        config = config.model_copy(update={"temporary": not save, "is_active": is_default})
        previous = self.registry.get_active()
        registered = self.registry.add(config)
        try:
            await self._sessions.set_active_database(registered.id, session_id)
        except Exception:
            self.registry.delete(registered.id)
            if previous is not None and previous.id in self.registry:
                self.registry.set_active(previous.id)
            raise
        self._cache.forget_session(session_id)
        self._start_polling(session_id)
        LOG.info("Session %s connected to %s", session_id, registered.label)
        return {
            "success": True,
            "sessionId": session_id,
            "connectionId": registered.id,
            "name": registered.name,
        }

    async def _on_pool(self, session_id: str, call: Callable[[Pool], Awaitable[T]]) -> tuple[str, T]:
        connection_id, pool = await self._sessions.current_pool(session_id)
        try:
            return connection_id, await call(pool)
        except Exception as exc:
            if is_connection_lost(exc):
                await self._sessions.discard_pool(session_id, connection_id)
            raise

    def _start_polling(self, session_id: str) -> None:
        if self._poller is not None:
            self._poller.start(session_id)

    @staticmethod
    def _default_checker(timeout: float) -> ConnectionChecker:
        async def _check(config: ConnectionConfig) -> ConnectionCheck:
            return await check_connection(config, timeout=timeout)

        return _check


__all__ = [
    "ConnectionChecker",
    "InputValidationError",
    "MonitorService",
    "connection_from_params",
    "connection_from_string",
]
