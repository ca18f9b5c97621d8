"""Shared fakes standing in for asyncpg pools."""

from __future__ import annotations

from typing import Any, Callable

import pytest

from pgdash.models import ConnectionConfig

DEFAULT_VERSION = "PostgreSQL 16.2 on x86_64-pc-linux-musl"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeTransaction:
    def __init__(self, connection: "FakeConnection", readonly: bool) -> None:
        self._connection = connection
        self.readonly = readonly

    async def __aenter__(self) -> "FakeTransaction":
        self._connection.transactions.append(self.readonly)
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None


class FakeConnection:
    def __init__(self, pool: "FakePool") -> None:
        self._pool = pool
        self.transactions: list[bool] = []

    def transaction(self, *, readonly: bool = False) -> FakeTransaction:
        return FakeTransaction(self, readonly)

    async def fetch(self, query: str, *args: Any) -> list[Any]:
        return await self._pool.fetch(query, *args)


class _Acquire:
    def __init__(self, pool: "FakePool") -> None:
        self._pool = pool

    async def __aenter__(self) -> FakeConnection:
        connection = FakeConnection(self._pool)
        self._pool.connections.append(connection)
        return connection

    async def __aexit__(self, *exc_info: object) -> None:
        return None


class FakePool:
    """Answers queries by matching SQL fragments against ``responses``.

    A response may be a plain value, an exception instance (raised) or a
    callable receiving the query and its arguments. Fragments are checked in
    insertion order.
    """

    def __init__(
        self,
        responses: dict[str, Any] | None = None,
        *,
        version: str = DEFAULT_VERSION,
    ) -> None:
        self.responses: dict[str, Any] = dict(responses or {})
        self.version = version
        self.calls: list[tuple[str, str, tuple[Any, ...]]] = []
        self.connections: list[FakeConnection] = []
        self.closed = False

    def _answer(self, method: str, query: str, args: tuple[Any, ...]) -> Any:
        self.calls.append((method, query, args))
        for fragment, value in self.responses.items():
            if fragment in query:
                if isinstance(value, BaseException):
                    raise value
                if callable(value):
                    return value(query, *args)
                return value
        return None

    def queries(self, method: str | None = None) -> list[str]:
        return [query for called, query, _ in self.calls if method is None or called == method]

    async def fetch(self, query: str, *args: Any) -> list[Any]:
        rows = self._answer("fetch", query, args)
        return [] if rows is None else rows

    async def fetchrow(self, query: str, *args: Any) -> Any:
        return self._answer("fetchrow", query, args)

    async def fetchval(self, query: str, *args: Any) -> Any:
        value = self._answer("fetchval", query, args)
        if value is None and "version()" in query:
            return self.version
        return value

    async def execute(self, query: str, *args: Any) -> str:
        self._answer("execute", query, args)
        return "OK"

    def acquire(self) -> _Acquire:
        return _Acquire(self)

    async def close(self) -> None:
        self.closed = True


class FakePoolFactory:
    """Pool factory handing out :class:`FakePool` instances per connection id."""

    def __init__(
        self,
        pools: dict[str, FakePool] | None = None,
        *,
        make: Callable[[ConnectionConfig], FakePool] | None = None,
        error: BaseException | None = None,
    ) -> None:
        self.pools = dict(pools or {})
        self._make = make or (lambda config: FakePool())
        self.error = error
        self.calls: list[str] = []
        self.created: list[FakePool] = []

    async def __call__(self, config: ConnectionConfig) -> FakePool:
        self.calls.append(config.id)
        if self.error is not None:
            raise self.error
        pool = self.pools.get(config.id) or self._make(config)
        self.created.append(pool)
        return pool


@pytest.fixture
def fake_pool() -> FakePool:
    return FakePool()


@pytest.fixture
def pool_factory() -> FakePoolFactory:
    return FakePoolFactory()
