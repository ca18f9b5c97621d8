"""Background pollers that refresh a session's dashboard data."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from .catalog import DiagnosticCatalog, ProbeExecutionError
from .connections import DatabaseConnectionError, Pool, is_connection_lost
from .history import DEFAULT_CAPACITY, MetricHistorySet
from .models import DiagnosticResult, QueryLogEntry
from .probes import (
    DatabaseStats,
    ResourceStats,
    TableStats,
    fetch_database_stats,
    fetch_query_logs,
    fetch_resource_stats,
    fetch_table_stats,
)
from .registry import ConnectionNotFoundError
from .session import SessionManager

LOG = logging.getLogger(__name__)

METRICS = ("cpu", "memory", "disk", "io")


@dataclass(slots=True)
class PollSnapshot:
    """Latest values gathered for one session."""

    session_id: str
    history: MetricHistorySet
    connection_id: str | None = None
    connected: bool = False
    error: str | None = None
    database_stats: DatabaseStats | None = None
    resource_stats: ResourceStats | None = None
    table_stats: TableStats | None = None
    query_logs: tuple[QueryLogEntry, ...] = ()
    diagnostics: dict[str, DiagnosticResult] = field(default_factory=dict)
    updated_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "connectionId": self.connection_id,
            "connected": self.connected,
            "error": self.error,
            "stats": self.database_stats.as_dict() if self.database_stats else None,
            "resources": self.resource_stats.as_dict() if self.resource_stats else None,
            "tables": self.table_stats.as_dict() if self.table_stats else None,
            "queryLogs": [entry.as_dict() for entry in self.query_logs],
            "diagnostics": {key: result.as_dict() for key, result in self.diagnostics.items()},
            "history": self.history.as_dict(),
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


PollListener = Callable[[PollSnapshot], None]


@dataclass(slots=True)
class _SessionPoller:
    snapshot: PollSnapshot
    active: bool = False
    slow_task: asyncio.Task[None] | None = None
    fast_task: asyncio.Task[None] | None = None
    slow_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    fast_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def cancel(self) -> list[asyncio.Task[None]]:
        tasks = [task for task in (self.slow_task, self.fast_task) if task is not None]
        for task in tasks:
            task.cancel()
        self.slow_task = None
        self.fast_task = None
        self.active = False
        return tasks


class PollingEngine:
    """Runs a slow and a fast refresh loop per session."""

    def __init__(
        self,
        sessions: SessionManager,
        catalog: DiagnosticCatalog | None = None,
        *,
        slow_interval: float = 10.0,
        fast_interval: float = 2.0,
        history_size: int = DEFAULT_CAPACITY,
        query_log_limit: int = 50,
        watch_probes: Iterable[str] = ("deadlock",),
    ) -> None:
        self._sessions = sessions
        self._catalog = catalog or DiagnosticCatalog.default()
        self._slow_interval = slow_interval
        self._fast_interval = fast_interval
        self._history_size = history_size
        self._query_log_limit = query_log_limit
        self._watch_probes = tuple(watch_probes)
        self._pollers: dict[str, _SessionPoller] = {}
        self._listeners: set[PollListener] = set()
        self._unsubscribe_expiry = sessions.subscribe_expiry(self._on_session_expired)

    def start(self, session_id: str) -> None:
        """Start (or restart) both loops for a session."""

        poller = self._poller(session_id)
        poller.cancel()
        loop = asyncio.get_running_loop()
        poller.active = True
        poller.slow_task = loop.create_task(self._slow_loop(session_id))
        poller.fast_task = loop.create_task(self._fast_loop(session_id))
        LOG.info(
            "Started pollers for session %s (slow %.1fs, fast %.1fs)",
            session_id,
            self._slow_interval,
            self._fast_interval,
        )

    async def stop(self, session_id: str) -> None:
        poller = self._pollers.pop(session_id, None)
        if poller is None:
            return
        await _await_cancelled(poller.cancel())
        LOG.info("Stopped pollers for session %s", session_id)

    async def stop_all(self) -> None:
        for session_id in list(self._pollers):
            await self.stop(session_id)

    def close(self) -> None:
        """Detach from the session manager."""

        self._unsubscribe_expiry()

    def is_running(self, session_id: str) -> bool:
        poller = self._pollers.get(session_id)
        return bool(poller and poller.slow_task and not poller.slow_task.done())

    def snapshot(self, session_id: str) -> PollSnapshot | None:
        poller = self._pollers.get(session_id)
        return poller.snapshot if poller else None

    def history(self, session_id: str) -> MetricHistorySet:
        poller = self._pollers.get(session_id)
        if poller is None:
            return MetricHistorySet(METRICS, self._history_size)
        return poller.snapshot.history

    def subscribe(self, listener: PollListener) -> Callable[[], None]:
        """Receive the session snapshot after every completed cycle."""

        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    async def poll_slow(self, session_id: str) -> PollSnapshot | None:
        """One slow cycle: stats, query logs, table sizes and watched probes."""

        poller = self._poller(session_id)
        if poller.slow_lock.locked():
            LOG.debug("Slow cycle still running for session %s; skipping", session_id)
            return None
        async with poller.slow_lock:
            resolved = await self._resolve_pool(poller)
            if resolved is None:
                return poller.snapshot
            connection_id, pool = resolved
            try:
                await self._refresh_slow(poller.snapshot, pool)
            except Exception as exc:
                if not is_connection_lost(exc):
                    raise
                await self._connection_lost(poller, connection_id, exc)
                return poller.snapshot
            if poller.active and poller.fast_task is None:
                LOG.info("Connection restored for session %s; resuming fast poller", session_id)
                poller.fast_task = asyncio.get_running_loop().create_task(self._fast_loop(session_id))
            self._publish(poller.snapshot)
            return poller.snapshot

    async def poll_fast(self, session_id: str) -> PollSnapshot | None:
        """One fast cycle: resource proxies appended to the metric histories."""

        poller = self._poller(session_id)
        if poller.fast_lock.locked():
            LOG.debug("Fast cycle still running for session %s; skipping", session_id)
            return None
        async with poller.fast_lock:
            resolved = await self._resolve_pool(poller)
            if resolved is None:
                return poller.snapshot
            connection_id, pool = resolved
            try:
                stats = await fetch_resource_stats(pool)
            except Exception as exc:
                if not is_connection_lost(exc):
                    raise
                await self._connection_lost(poller, connection_id, exc)
                return poller.snapshot
            snapshot = poller.snapshot
            snapshot.resource_stats = stats
            snapshot.updated_at = stats.timestamp
            snapshot.history.record(stats.metrics(), stats.timestamp)
            LOG.debug("Recorded resource sample for session %s", session_id)
            self._publish(snapshot)
            return snapshot

    async def _refresh_slow(self, snapshot: PollSnapshot, pool: Pool) -> None:
        snapshot.database_stats = await fetch_database_stats(pool)
        try:
            snapshot.query_logs = tuple(await fetch_query_logs(pool, self._query_log_limit))
        except ProbeExecutionError as exc:
            LOG.warning("%s", exc)
        snapshot.table_stats = await fetch_table_stats(pool)
        if self._watch_probes:
            snapshot.diagnostics = await self._catalog.run_many(self._watch_probes, pool)
        snapshot.updated_at = datetime.now(tz=timezone.utc)
        LOG.debug("Slow cycle complete for session %s", snapshot.session_id)

    async def _resolve_pool(self, poller: _SessionPoller) -> tuple[str, Pool] | None:
        snapshot = poller.snapshot
        try:
            connection_id, pool = await self._sessions.current_pool(snapshot.session_id)
        except (ConnectionNotFoundError, DatabaseConnectionError) as exc:
            if snapshot.connected:
                LOG.warning("Session %s lost its database: %s", snapshot.session_id, exc)
            snapshot.connected = False
            snapshot.error = str(exc)
            self._stop_fast(poller)
            self._publish(snapshot)
            return None
        if snapshot.connection_id != connection_id:
            snapshot.history = MetricHistorySet(METRICS, self._history_size)
            snapshot.diagnostics = {}
            snapshot.connection_id = connection_id
        snapshot.connected = True
        snapshot.error = None
        return connection_id, pool

    async def _connection_lost(self, poller: _SessionPoller, connection_id: str, exc: BaseException) -> None:
        snapshot = poller.snapshot
        LOG.warning(
            "Connection '%s' lost for session %s: %s",
            connection_id,
            snapshot.session_id,
            exc,
        )
        snapshot.connected = False
        snapshot.error = str(exc) or type(exc).__name__
        await self._sessions.discard_pool(snapshot.session_id, connection_id)
        self._stop_fast(poller)
        self._publish(snapshot)

    @staticmethod
    def _stop_fast(poller: _SessionPoller) -> None:
        """Halt the fast loop until a slow tick reconnects."""

        fast = poller.fast_task
        poller.fast_task = None
        if fast is not None and fast is not asyncio.current_task():
            fast.cancel()

    async def _slow_loop(self, session_id: str) -> None:
        while True:
            await asyncio.sleep(self._slow_interval)
            try:
                await self.poll_slow(session_id)
            except Exception:
                LOG.exception("Slow poll failed for session %s", session_id)

    async def _fast_loop(self, session_id: str) -> None:
        while True:
            await asyncio.sleep(self._fast_interval)
            try:
                await self.poll_fast(session_id)
            except Exception:
                LOG.exception("Fast poll failed for session %s", session_id)
            poller = self._pollers.get(session_id)
            if poller is None or poller.fast_task is not asyncio.current_task():
                return

    def _poller(self, session_id: str) -> _SessionPoller:
        poller = self._pollers.get(session_id)
        if poller is None:
            history = MetricHistorySet(METRICS, self._history_size)
            poller = _SessionPoller(snapshot=PollSnapshot(session_id=session_id, history=history))
            self._pollers[session_id] = poller
        return poller

    def _publish(self, snapshot: PollSnapshot) -> None:
        for listener in tuple(self._listeners):
            listener(snapshot)

    def _on_session_expired(self, session_id: str) -> None:
        poller = self._pollers.pop(session_id, None)
        if poller is not None:
            poller.cancel()
            LOG.info("Stopped pollers for expired session %s", session_id)


async def _await_cancelled(tasks: list[asyncio.Task[None]]) -> None:
    for task in tasks:
        if task is asyncio.current_task():
            continue
        try:
            await task
        except asyncio.CancelledError:
            pass


__all__ = ["METRICS", "PollListener", "PollSnapshot", "PollingEngine"]
