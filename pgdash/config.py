"""App configuration loading helpers."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping
from urllib.parse import urlparse

import tomllib

from pydantic import BaseModel, Field, ValidationError

from .models import ConnectionConfig

CONFIG_FILE = Path.home() / ".config" / "pgdash" / "config.toml"
REGISTRY_FILE = Path.home() / ".config" / "pgdash" / "connections.json"

DEFAULT_PORT = 3001


class DefaultConnectionConfig(BaseModel):
    """Seed for the registry when no connections have been saved yet."""

    name: str = "Default Database"
    dsn: str | None = None
    host: str = "localhost"
    port: int = 5432
    database: str = "postgres"
    username: str = "postgres"
    password: str = "postgres"
    use_ssl: bool = False

    def to_connection(self) -> ConnectionConfig:
        """Build the registry entry seeded from this config."""

        return ConnectionConfig(
            id="default",
            name=self.name,
            dsn=self.dsn,
            host=self.host,
            port=self.port,
            database=self.database,
            username=self.username,
            password=self.password,
            use_ssl=self.use_ssl,
            is_active=True,
        )


class AppConfig(BaseModel):
    """Shape of the application configuration file."""

    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    log_level: str = "INFO"
    registry_file: Path = REGISTRY_FILE
    session_timeout: float = 30 * 60
    reap_interval: float = 5 * 60
    connect_timeout: float = 5.0
    slow_interval: float = 10.0
    fast_interval: float = 2.0
    history_size: int = Field(default=30, ge=1)
    query_log_limit: int = Field(default=50, ge=1)
    analysis_cache_ttl: float = 10.0
    polling_enabled: bool = True
    watch_probes: list[str] = Field(default_factory=lambda: ["deadlock"])
    default_connection: DefaultConnectionConfig = Field(default_factory=DefaultConnectionConfig)

    def with_default_connection(self, **updates: object) -> AppConfig:
        """Return a copy with default connection fields changed."""

        seed = self.default_connection.model_copy(update=updates)
        return self.model_copy(update={"default_connection": seed})


def load_config(environ: Mapping[str, str] | None = None) -> AppConfig:
    """Load configuration from disk and the environment; fall back to defaults."""

    try:
        data = _read_config_file()
    except FileNotFoundError:
        data = {}
    except (tomllib.TOMLDecodeError, OSError):
        data = {}
    try:
        config = AppConfig(**data)
    except ValidationError:
        config = AppConfig()
    return apply_environment(config, os.environ if environ is None else environ)


def apply_environment(config: AppConfig, environ: Mapping[str, str]) -> AppConfig:
    """Overlay ``PGDASH_*``, ``PORT``, ``DATABASE_URL`` and libpq ``PG*`` variables."""

    updates: dict[str, object] = {}
    host = environ.get("PGDASH_HOST")
    if host:
        updates["host"] = host
    port = _int_or_none(environ.get("PGDASH_PORT") or environ.get("PORT"))
    if port is not None:
        updates["port"] = port
    level = environ.get("PGDASH_LOG_LEVEL")
    if level:
        updates["log_level"] = level.upper()
    registry = environ.get("PGDASH_REGISTRY_FILE")
    if registry:
        updates["registry_file"] = Path(registry).expanduser()

    seed: dict[str, object] = {}
    url = environ.get("DATABASE_URL")
    if url:
        seed.update(_seed_from_url(url))
    for variable, key in (
        ("PGHOST", "host"),
        ("PGDATABASE", "database"),
        ("PGUSER", "username"),
        ("PGPASSWORD", "password"),
    ):
        value = environ.get(variable)
        if value:
            seed[key] = value
    pg_port = _int_or_none(environ.get("PGPORT"))
    if pg_port is not None:
        seed["port"] = pg_port
    sslmode = environ.get("PGSSLMODE")
    if sslmode:
        seed["use_ssl"] = sslmode not in {"disable", "allow", "prefer"}

    if updates:
        config = config.model_copy(update=updates)
    if seed:
        config = config.with_default_connection(**seed)
    return config


def save_config(config: AppConfig) -> None:
    """Persist configuration to disk."""

    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = [
        f'host = "{config.host}"',
        f"port = {config.port}",
        f'log_level = "{config.log_level}"',
        f'registry_file = "{config.registry_file.as_posix()}"',
        f"session_timeout = {config.session_timeout}",
        f"reap_interval = {config.reap_interval}",
        f"connect_timeout = {config.connect_timeout}",
        f"slow_interval = {config.slow_interval}",
        f"fast_interval = {config.fast_interval}",
        f"history_size = {config.history_size}",
        f"query_log_limit = {config.query_log_limit}",
        f"analysis_cache_ttl = {config.analysis_cache_ttl}",
        f"polling_enabled = {str(config.polling_enabled).lower()}",
        "watch_probes = [" + ", ".join(f'"{key}"' for key in config.watch_probes) + "]",
    ]
    seed = config.default_connection
    lines.append("")
    lines.append("[default_connection]")
    lines.append(f'name = "{seed.name}"')
    if seed.dsn:
        lines.append(f'dsn = "{seed.dsn}"')
    lines.append(f'host = "{seed.host}"')
    lines.append(f"port = {seed.port}")
    lines.append(f'database = "{seed.database}"')
    lines.append(f'username = "{seed.username}"')
    lines.append(f"use_ssl = {str(seed.use_ssl).lower()}")
    CONFIG_FILE.write_text("\n".join(lines) + "\n")


def _read_config_file() -> dict[str, object]:
    with CONFIG_FILE.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    if not isinstance(raw, dict):
        return data
    for key in ("host", "log_level"):
        value = raw.get(key)
        if isinstance(value, str):
            data[key] = value
    registry = raw.get("registry_file")
    if isinstance(registry, str):
        data["registry_file"] = Path(registry).expanduser()
    for key in ("port", "history_size", "query_log_limit"):
        value = raw.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            data[key] = value
    for key in (
        "session_timeout",
        "reap_interval",
        "connect_timeout",
        "slow_interval",
        "fast_interval",
        "analysis_cache_ttl",
    ):
        value = raw.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            data[key] = float(value)
    polling = raw.get("polling_enabled")
    if isinstance(polling, bool):
        data["polling_enabled"] = polling
    probes = raw.get("watch_probes")
    if isinstance(probes, list):
        data["watch_probes"] = [str(key) for key in probes if isinstance(key, str)]
    seed = raw.get("default_connection")
    if isinstance(seed, dict):
        parsed: dict[str, object] = {}
        for key in ("name", "dsn", "host", "database", "username", "password"):
            value = seed.get(key)
            if isinstance(value, str):
                parsed[key] = value
        port = seed.get("port")
        if isinstance(port, int):
            parsed["port"] = port
        use_ssl = seed.get("use_ssl")
        if isinstance(use_ssl, bool):
            parsed["use_ssl"] = use_ssl
        data["default_connection"] = DefaultConnectionConfig(**parsed)
    return data


def _seed_from_url(url: str) -> dict[str, object]:
    parsed = urlparse(url)
    seed: dict[str, object] = {"dsn": url}
    if parsed.hostname:
        seed["host"] = parsed.hostname
    if parsed.port:
        seed["port"] = parsed.port
    if parsed.path and parsed.path != "/":
        seed["database"] = parsed.path.lstrip("/")
    if parsed.username:
        seed["username"] = parsed.username
    if parsed.password:
        seed["password"] = parsed.password
    if "sslmode=require" in parsed.query or "sslmode=verify" in parsed.query:
        seed["use_ssl"] = True
    return seed


def _int_or_none(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


__all__ = [
    "AppConfig",
    "CONFIG_FILE",
    "DEFAULT_PORT",
    "DefaultConnectionConfig",
    "REGISTRY_FILE",
    "apply_environment",
    "load_config",
    "save_config",
]
