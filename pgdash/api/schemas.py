"""Request bodies accepted by the dashboard API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ConnectionParamsRequest(_Request):
    """Individual connection fields; required ones are checked by the service."""

    name: str | None = None
    host: str | None = None
    port: int | str | None = None
    database: str | None = None
    username: str | None = None
    password: str | None = None
    use_ssl: bool = Field(default=False, alias="useSSL")
    save: bool = True
    is_default: bool = Field(default=False, alias="isDefault")

    def connection_fields(self) -> dict[str, object]:
        return {
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "username": self.username,
            "password": self.password,
            "use_ssl": self.use_ssl,
        }


class ConnectionStringRequest(_Request):
    connection_string: str | None = Field(default=None, alias="connectionString")
    name: str | None = None
    save: bool = True
    is_default: bool = Field(default=False, alias="isDefault")


class SetActiveRequest(_Request):
    id: str | None = Field(default=None, alias="connectionId")


class RunQueryRequest(_Request):
    query: str | None = None


__all__ = [
    "ConnectionParamsRequest",
    "ConnectionStringRequest",
    "RunQueryRequest",
    "SetActiveRequest",
]
