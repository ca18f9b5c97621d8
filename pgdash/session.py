"""Session manager mapping client sessions onto per-connection pools."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

import asyncpg

from .connections import DEFAULT_CONNECT_TIMEOUT, Pool, PoolFactory, pool_factory
from .registry import ConnectionNotFoundError, ConnectionRegistry

LOG = logging.getLogger(__name__)

SessionListener = Callable[[str], None]

DEFAULT_SESSION_TIMEOUT = timedelta(minutes=30)

_STATEMENTS_EXTENSION = "CREATE EXTENSION IF NOT EXISTS pg_stat_statements"


@dataclass(slots=True)
class Session:
    """Server-side handle correlating a client with its active database."""

    session_id: str
    created_at: datetime
    last_activity: datetime
    active_connection_id: str | None = None

    def touch(self, now: datetime) -> None:
        self.last_activity = now


class SessionManager:
    """Owns client sessions and the asyncpg pools opened on their behalf."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        *,
        factory: PoolFactory | None = None,
        session_timeout: timedelta = DEFAULT_SESSION_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self._factory = factory or pool_factory(timeout=connect_timeout)
        self._timeout = session_timeout
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))
        self._sessions: dict[str, Session] = {}
        self._pools: dict[tuple[str, str], Pool] = {}
        self._pool_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._expiry_listeners: set[SessionListener] = set()

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    @property
    def sessions(self) -> tuple[Session, ...]:
        """Live sessions, oldest first."""

        return tuple(self._sessions.values())

    def resolve_session(self, candidate: str | None = None) -> str:
        """Return ``candidate`` if it names a live session, otherwise mint one."""

        now = self._clock()
        if candidate:
            session = self._sessions.get(candidate)
            if session is not None and not self._is_expired(session, now):
                session.touch(now)
                return candidate
        session_id = str(uuid.uuid4())
        self._sessions[session_id] = Session(session_id=session_id, created_at=now, last_activity=now)
        LOG.debug("Created session %s", session_id)
        return session_id

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def has_pool(self, connection_id: str, session_id: str) -> bool:
        return (session_id, connection_id) in self._pools

    async def get_pool(self, connection_id: str, session_id: str) -> Pool:
        """Return the session's pool for ``connection_id``, creating it on first use."""

        config = self._registry.get(connection_id)
        key = (session_id, connection_id)
        pool = self._pools.get(key)
        if pool is not None:
            return pool
        lock = self._pool_locks.setdefault(key, asyncio.Lock())
        try:
            async with lock:
                pool = self._pools.get(key)
                if pool is not None:
                    return pool
                pool = await self._factory(config)
                try:
                    await self._enable_statements_extension(pool, connection_id)
                except BaseException:
                    await _close_pool(pool)
                    raise
                self._pools[key] = pool
        finally:
            self._pool_locks.pop(key, None)
        LOG.info("Pool ready for session %s on connection '%s'", session_id, connection_id)
        return pool

    async def set_active_database(self, connection_id: str, session_id: str) -> dict[str, str]:
        """Make ``connection_id`` the session's current database."""

        config = self._registry.get(connection_id)
        await self.get_pool(connection_id, session_id)
        session = self._sessions.get(session_id)
        if session is None:
            now = self._clock()
            session = Session(session_id=session_id, created_at=now, last_activity=now)
            self._sessions[session_id] = session
        session.active_connection_id = connection_id
        return {"id": config.id, "name": config.name}

    def get_current_database(self, session_id: str) -> str | None:
        """The session's active connection id, falling back to the registry default."""

        session = self._sessions.get(session_id)
        if session is not None and session.active_connection_id in self._registry:
            return session.active_connection_id
        active = self._registry.get_active()
        return active.id if active else None

    async def current_pool(self, session_id: str) -> tuple[str, Pool]:
        """Resolve the current connection for a session and return its pool."""

        connection_id = self.get_current_database(session_id)
        if connection_id is None:
            raise ConnectionNotFoundError("default")
        return connection_id, await self.get_pool(connection_id, session_id)

    async def discard_pool(self, session_id: str, connection_id: str) -> None:
        """Tear down one pool, e.g. after the server dropped the link."""

        pool = self._pools.pop((session_id, connection_id), None)
        if pool is not None:
            await _close_pool(pool)
            LOG.info("Discarded pool for session %s on connection '%s'", session_id, connection_id)

    async def close_connection(self, connection_id: str) -> None:
        """Close every session's pool for a connection that is going away."""

        for key in [key for key in self._pools if key[1] == connection_id]:
            await _close_pool(self._pools.pop(key))
        for session in self._sessions.values():
            if session.active_connection_id == connection_id:
                session.active_connection_id = None

    async def end_session(self, session_id: str) -> None:
        """Drop a session together with its pools."""

        self._sessions.pop(session_id, None)
        for key in [key for key in self._pools if key[0] == session_id]:
            await _close_pool(self._pools.pop(key))
        for key in [key for key in self._pool_locks if key[0] == session_id]:
            del self._pool_locks[key]
        for listener in tuple(self._expiry_listeners):
            listener(session_id)

    async def reap_expired(self, now: datetime | None = None) -> list[str]:
        """End sessions idle for longer than the timeout; returns their ids."""

        now = now or self._clock()
        expired = [
            session.session_id
            for session in self._sessions.values()
            if self._is_expired(session, now)
        ]
        for session_id in expired:
            await self.end_session(session_id)
        if expired:
            LOG.info("Reaped %d idle session(s)", len(expired))
        return expired

    def subscribe_expiry(self, listener: SessionListener) -> Callable[[], None]:
        """Subscribe to session teardown; returns an unsubscribe handle."""

        self._expiry_listeners.add(listener)

        def _unsubscribe() -> None:
            self._expiry_listeners.discard(listener)

        return _unsubscribe

    async def shutdown(self) -> None:
        """Close every pool across every session."""

        pools = list(self._pools.values())
        self._pools.clear()
        for pool in pools:
            await _close_pool(pool)
        LOG.info("Closed %d pool(s)", len(pools))

    def _is_expired(self, session: Session, now: datetime) -> bool:
        return now - session.last_activity > self._timeout

    async def _enable_statements_extension(self, pool: Pool, connection_id: str) -> None:
        try:
            await pool.execute(_STATEMENTS_EXTENSION)
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            LOG.warning(
                "Unable to enable pg_stat_statements extension for database %s: %s",
                connection_id,
                exc,
            )


async def _close_pool(pool: Pool) -> None:
    try:
        await pool.close()
    except Exception:  # pragma: no cover - best effort cleanup
        LOG.debug("Ignoring error while closing pool", exc_info=True)


__all__ = [
    "DEFAULT_SESSION_TIMEOUT",
    "Session",
    "SessionListener",
    "SessionManager",
]
