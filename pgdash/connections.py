"""asyncpg plumbing: connection tests, pool construction and error mapping."""

from __future__ import annotations

import asyncio
import logging
import ssl as ssl_module
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, Protocol, Sequence, runtime_checkable

import asyncpg

from .models import ConnectionConfig

LOG = logging.getLogger(__name__)

ErrorKind = Literal["auth", "network", "ssl", "timeout", "config", "unknown"]

DEFAULT_CONNECT_TIMEOUT = 5.0


class DatabaseConnectionError(RuntimeError):
    """Raised when a database cannot be reached or refuses the login."""

    def __init__(self, message: str, *, kind: ErrorKind = "unknown") -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind


class ConnectionTimeoutError(DatabaseConnectionError):
    """Raised when a connection attempt exceeds its timeout."""

    def __init__(self, message: str) -> None:
        super().__init__(message, kind="timeout")


@runtime_checkable
class Pool(Protocol):
    """Subset of :class:`asyncpg.Pool` used by the probes."""

    async def fetch(self, query: str, *args: Any) -> list[Any]: ...

    async def fetchrow(self, query: str, *args: Any) -> Any: ...

    async def fetchval(self, query: str, *args: Any) -> Any: ...

    async def execute(self, query: str, *args: Any) -> str: ...

    def acquire(self) -> Any: ...

    async def close(self) -> None: ...


PoolFactory = Callable[[ConnectionConfig], Awaitable[Pool]]


@dataclass(frozen=True, slots=True)
class ConnectionCheck:
    """Outcome of a one-off connection test."""

    success: bool
    version: str | None = None
    error: str | None = None
    kind: ErrorKind | None = None

    def as_dict(self) -> dict[str, object]:
        if self.success:
            return {"success": True, "version": self.version}
        return {"success": False, "error": self.error}


def connect_kwargs(config: ConnectionConfig, *, timeout: float = DEFAULT_CONNECT_TIMEOUT) -> dict[str, object]:
    """Translate a registry entry into asyncpg keyword arguments."""

    kwargs: dict[str, object] = {}
    if config.dsn:
        kwargs["dsn"] = config.dsn
    else:
        kwargs["host"] = config.host or "localhost"
        kwargs["port"] = config.port
        kwargs["user"] = config.username
        kwargs["database"] = config.database
        if config.password:
            kwargs["password"] = config.password
    if config.use_ssl:
        kwargs["ssl"] = "require"
    elif not config.dsn:
        kwargs["ssl"] = "disable"
    kwargs.setdefault("timeout", timeout)
    return kwargs


async def check_connection(
    config: ConnectionConfig,
    *,
    timeout: float = DEFAULT_CONNECT_TIMEOUT,
) -> ConnectionCheck:
    """Open a throwaway connection and read the server version. Never raises."""

    try:
        conn = await asyncpg.connect(**connect_kwargs(config, timeout=timeout))
    except Exception as exc:
        error = classify_connect_error(exc, config)
        LOG.info("Connection test failed for %s: %s", config.label, error.message)
        return ConnectionCheck(success=False, error=error.message, kind=error.kind)
    try:
        version = await conn.fetchval("SELECT version()")
    except Exception as exc:
        return ConnectionCheck(success=False, error=str(exc) or type(exc).__name__, kind="unknown")
    finally:
        try:
            await conn.close()
        except Exception:  # pragma: no cover - best effort cleanup
            LOG.debug("Ignoring error while closing test connection", exc_info=True)
    return ConnectionCheck(success=True, version=str(version))


async def create_pool(
    config: ConnectionConfig,
    *,
    timeout: float = DEFAULT_CONNECT_TIMEOUT,
    min_size: int = 1,
    max_size: int = 5,
) -> Pool:
    """Create an asyncpg pool, mapping failures to :class:`DatabaseConnectionError`."""

    try:
        pool = await asyncpg.create_pool(
            min_size=min_size,
            max_size=max_size,
            **connect_kwargs(config, timeout=timeout),
        )
    except Exception as exc:
        raise classify_connect_error(exc, config) from exc
    LOG.info("Opened pool for %s", config.label)
    return pool


def pool_factory(*, timeout: float = DEFAULT_CONNECT_TIMEOUT) -> PoolFactory:
    """Return a factory bound to the configured connect timeout."""

    async def _factory(config: ConnectionConfig) -> Pool:
        return await create_pool(config, timeout=timeout)

    return _factory


def classify_connect_error(exc: BaseException, config: ConnectionConfig) -> DatabaseConnectionError:
    """Wrap a driver exception, keeping its message and tagging the failure kind."""

    if isinstance(exc, DatabaseConnectionError):
        return exc
    message = str(exc) or type(exc).__name__
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ConnectionTimeoutError(f"Connection to {config.name} timed out")
    if isinstance(
        exc,
        (
            asyncpg.InvalidPasswordError,
            asyncpg.InvalidAuthorizationSpecificationError,
        ),
    ):
        return DatabaseConnectionError(message, kind="auth")
    if isinstance(exc, ssl_module.SSLError) or "ssl" in message.lower():
        return DatabaseConnectionError(message, kind="ssl")
    if isinstance(exc, OSError):
        return DatabaseConnectionError(message, kind="network")
    if isinstance(exc, (asyncpg.InvalidCatalogNameError, ValueError)):
        return DatabaseConnectionError(message, kind="config")
    return DatabaseConnectionError(message)


def is_connection_lost(exc: BaseException) -> bool:
    """True when ``exc`` means the link is gone rather than the SQL being wrong."""

    if isinstance(exc, DatabaseConnectionError):
        return True
    if isinstance(exc, (OSError, asyncio.TimeoutError, TimeoutError)):
        return True
    if isinstance(exc, (asyncpg.InterfaceError, asyncpg.PostgresConnectionError)):
        return True
    if isinstance(exc, asyncpg.PostgresError):
        return getattr(exc, "sqlstate", "") in _CONNECTION_SQLSTATES
    return False


# Operator intervention (admin_shutdown, crash_shutdown, cannot_connect_now).
_CONNECTION_SQLSTATES: Sequence[str] = ("57P01", "57P02", "57P03")


__all__ = [
    "ConnectionCheck",
    "ConnectionTimeoutError",
    "DEFAULT_CONNECT_TIMEOUT",
    "DatabaseConnectionError",
    "ErrorKind",
    "Pool",
    "PoolFactory",
    "check_connection",
    "classify_connect_error",
    "connect_kwargs",
    "create_pool",
    "is_connection_lost",
    "pool_factory",
]
