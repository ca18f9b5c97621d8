"""Tests for the connection registry."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from pgdash.models import ConnectionConfig
from pgdash.registry import ConnectionNotFoundError, ConnectionRegistry


def _config(conn_id: str, *, active: bool = False, temporary: bool = False) -> ConnectionConfig:
    return ConnectionConfig(
        id=conn_id,
        name=conn_id.title(),
        host="db.internal",
        database="app",
        username="app",
        password="secret",
        is_active=active,
        temporary=temporary,
    )


def _active_ids(registry: ConnectionRegistry) -> list[str]:
    return [conn.id for conn in registry.list() if conn.is_active]


def test_empty_registry_seeds_default(tmp_path: Path) -> None:
    default = _config("default")

    registry = ConnectionRegistry(tmp_path / "connections.json", default=default)

    assert [conn.id for conn in registry.list()] == ["default"]
    assert registry.get_active() is not None and registry.get_active().id == "default"
    assert (tmp_path / "connections.json").exists()


def test_first_entry_is_promoted_when_none_active() -> None:
    registry = ConnectionRegistry()

    registry.add(_config("alpha"))
    registry.add(_config("beta"))

    assert _active_ids(registry) == ["alpha"]


def test_adding_an_active_entry_deactivates_the_rest() -> None:
    registry = ConnectionRegistry()
    registry.add(_config("alpha", active=True))

    registry.add(_config("beta", active=True))

    assert _active_ids(registry) == ["beta"]
    assert [conn.id for conn in registry.list()] == ["alpha", "beta"]


def test_set_active_keeps_exactly_one_active() -> None:
    registry = ConnectionRegistry()
    for conn_id in ("alpha", "beta", "gamma"):
        registry.add(_config(conn_id))

    registry.set_active("gamma")
    registry.set_active("beta")

    assert _active_ids(registry) == ["beta"]


def test_set_active_unknown_raises() -> None:
    registry = ConnectionRegistry()
    registry.add(_config("alpha"))

    with pytest.raises(ConnectionNotFoundError) as excinfo:
        registry.set_active("missing")

    assert excinfo.value.connection_id == "missing"


def test_update_replaces_entry_and_honours_activation() -> None:
    registry = ConnectionRegistry()
    registry.add(_config("alpha"))
    registry.add(_config("beta"))

    updated = registry.update(_config("beta", active=True).model_copy(update={"name": "Renamed"}))

    assert updated.name == "Renamed"
    assert _active_ids(registry) == ["beta"]
    with pytest.raises(ConnectionNotFoundError):
        registry.update(_config("missing"))


def test_deleting_active_entry_promotes_first_remaining() -> None:
    registry = ConnectionRegistry()
    registry.add(_config("alpha"))
    registry.add(_config("beta"))
    registry.add(_config("gamma", active=True))

    assert registry.delete("gamma") is True

    assert _active_ids(registry) == ["alpha"]


def test_delete_is_idempotent() -> None:
    registry = ConnectionRegistry()
    registry.add(_config("alpha"))

    assert registry.delete("missing") is False
    assert registry.delete("alpha") is True
    assert registry.delete("alpha") is False
    assert registry.get_active() is None
    assert len(registry) == 0


def test_get_unknown_raises() -> None:
    registry = ConnectionRegistry()

    with pytest.raises(ConnectionNotFoundError):
        registry.get("missing")


def test_duplicate_ids_are_rejected() -> None:
    registry = ConnectionRegistry()
    registry.add(_config("alpha"))

    with pytest.raises(ValueError):
        registry.add(_config("alpha"))


def test_registry_persists_and_reloads(tmp_path: Path) -> None:
    path = tmp_path / "connections.json"
    registry = ConnectionRegistry(path)
    registry.add(_config("alpha"))
    registry.add(_config("beta", active=True))

    reloaded = ConnectionRegistry(path)

    assert [conn.id for conn in reloaded.list()] == ["alpha", "beta"]
    assert _active_ids(reloaded) == ["beta"]
    stored = json.loads(path.read_text())
    assert stored[1]["isActive"] is True
    assert stored[0]["useSSL"] is False


def test_temporary_entries_are_not_persisted(tmp_path: Path) -> None:
    path = tmp_path / "connections.json"
    registry = ConnectionRegistry(path)
    registry.add(_config("alpha"))
    registry.add(_config("adhoc", temporary=True))

    assert "adhoc" in registry
    assert [entry["id"] for entry in json.loads(path.read_text())] == ["alpha"]


def test_unreadable_storage_falls_back_to_default(tmp_path: Path) -> None:
    path = tmp_path / "connections.json"
    path.write_text("{not json")

    registry = ConnectionRegistry(path, default=_config("default"))

    assert [conn.id for conn in registry.list()] == ["default"]


def test_subscribers_see_every_mutation() -> None:
    registry = ConnectionRegistry()
    seen: list[tuple[str, ...]] = []

    unsubscribe = registry.subscribe(lambda conns: seen.append(tuple(conn.id for conn in conns)))
    registry.add(_config("alpha"))
    registry.add(_config("beta"))
    unsubscribe()
    registry.delete("alpha")

    assert seen == [("alpha",), ("alpha", "beta")]
