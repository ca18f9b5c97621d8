"""Durable registry of named connection configurations."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Iterable

from pydantic import TypeAdapter, ValidationError

from .models import ConnectionConfig

LOG = logging.getLogger(__name__)

RegistryListener = Callable[[tuple[ConnectionConfig, ...]], None]

_STORAGE = TypeAdapter(list[ConnectionConfig])


class ConnectionNotFoundError(LookupError):
    """Raised when a connection id is not registered."""

    def __init__(self, connection_id: str) -> None:
        super().__init__(f"Database connection '{connection_id}' not found")
        self.connection_id = connection_id


class ConnectionRegistry:
    """Ordered connection configs with exactly one active entry when non-empty.

    Every mutation re-establishes the single-active invariant and writes the
    non-temporary entries to ``path``. Without a path the registry only lives
    in memory.
    """

    def __init__(
        self,
        path: Path | None = None,
        *,
        default: ConnectionConfig | None = None,
    ) -> None:
        self._path = path
        self._default = default
        self._connections: list[ConnectionConfig] = []
        self._listeners: set[RegistryListener] = set()
        self._load()

    @property
    def path(self) -> Path | None:
        return self._path

    def list(self) -> tuple[ConnectionConfig, ...]:
        """Registered connections in insertion order."""

        return tuple(self._connections)

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        return any(conn.id == connection_id for conn in self._connections)

    def get(self, connection_id: str) -> ConnectionConfig:
        for connection in self._connections:
            if connection.id == connection_id:
                return connection
        raise ConnectionNotFoundError(connection_id)

    def get_active(self) -> ConnectionConfig | None:
        for connection in self._connections:
            if connection.is_active:
                return connection
        return None

    def add(self, config: ConnectionConfig) -> ConnectionConfig:
        """Register ``config``; an active newcomer deactivates everything else."""

        if config.id in self:
            raise ValueError(f"Database connection '{config.id}' already exists")
        if config.is_active:
            self._connections = [conn.with_active(False) for conn in self._connections]
        self._connections.append(config)
        self._commit()
        LOG.info("Registered connection %s", config.label)
        return self.get(config.id)

    def update(self, config: ConnectionConfig) -> ConnectionConfig:
        """Replace the entry with the same id."""

        index = self._index_of(config.id)
        if config.is_active:
            self._connections = [
                config if conn.id == config.id else conn.with_active(False)
                for conn in self._connections
            ]
        else:
            self._connections[index] = config
        self._commit()
        return self.get(config.id)

    def delete(self, connection_id: str) -> bool:
        """Remove a connection; unknown ids are ignored."""

        before = len(self._connections)
        self._connections = [conn for conn in self._connections if conn.id != connection_id]
        if len(self._connections) == before:
            return False
        self._commit()
        LOG.info("Removed connection '%s'", connection_id)
        return True

    def set_active(self, connection_id: str) -> ConnectionConfig:
        """Mark exactly one connection as the default."""

        self._index_of(connection_id)
        self._connections = [
            conn.with_active(conn.id == connection_id) for conn in self._connections
        ]
        self._commit()
        return self.get(connection_id)

    def subscribe(self, listener: RegistryListener) -> Callable[[], None]:
        """Subscribe to registry changes; returns an unsubscribe handle."""

        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def _index_of(self, connection_id: str) -> int:
        for index, connection in enumerate(self._connections):
            if connection.id == connection_id:
                return index
        raise ConnectionNotFoundError(connection_id)

    def _ensure_active_connection(self) -> None:
        active = [index for index, conn in enumerate(self._connections) if conn.is_active]
        if not self._connections:
            return
        if not active:
            self._connections[0] = self._connections[0].with_active(True)
        elif len(active) > 1:
            keep = active[0]
            self._connections = [
                conn.with_active(index == keep) for index, conn in enumerate(self._connections)
            ]

    def _commit(self) -> None:
        self._ensure_active_connection()
        self._save()
        snapshot = self.list()
        for listener in tuple(self._listeners):
            listener(snapshot)

    def _load(self) -> None:
        loaded: Iterable[ConnectionConfig] = ()
        if self._path is not None:
            try:
                loaded = _STORAGE.validate_json(self._path.read_bytes())
            except FileNotFoundError:
                loaded = ()
            except (OSError, ValidationError) as exc:
                LOG.warning("Ignoring unreadable connection registry %s: %s", self._path, exc)
                loaded = ()
        self._connections = list(loaded)
        if self._connections:
            LOG.info("Loaded %d database configurations", len(self._connections))
        elif self._default is not None:
            self._connections = [self._default.with_active(True)]
            LOG.info("Created default database configuration")
        else:
            return
        self._ensure_active_connection()
        self._save()

    def _save(self) -> None:
        if self._path is None:
            return
        durable = [conn for conn in self._connections if not conn.temporary]
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_bytes(_STORAGE.dump_json(durable, by_alias=True, indent=2))
        except OSError as exc:
            LOG.error("Error saving database configurations to %s: %s", self._path, exc)


__all__ = ["ConnectionNotFoundError", "ConnectionRegistry", "RegistryListener"]
