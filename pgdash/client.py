"""Async HTTP client for the dashboard API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

LOG = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:3001"


class DashboardAPIError(RuntimeError):
    """Raised when the API answers with an error status."""

    def __init__(self, status_code: int, message: str, payload: Any = None) -> None:
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.payload = payload


@dataclass(frozen=True, slots=True)
class QueryResponse:
    rows: list[dict[str, Any]]
    elapsed_ms: int | None


class DashboardClient:
    """Talks to ``/api`` and carries the session id the server hands back."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        session_header: str = "X-Session-ID",
        session_id: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._session_header = session_header
        self._session_id = session_id
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/api",
            timeout=timeout,
            transport=transport,
        )

    @property
    def session_id(self) -> str | None:
        return self._session_id

    async def __aenter__(self) -> "DashboardClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def open_session(self) -> str:
        payload = await self._json("GET", "/session")
        self._session_id = payload["sessionId"]
        return self._session_id

    async def list_connections(self) -> list[dict[str, Any]]:
        return await self._json("GET", "/connections")

    async def test_connection(self, connection_string: str) -> dict[str, Any]:
        return await self._json("POST", "/test-connection", json={"connectionString": connection_string})

    async def test_connection_params(
        self,
        *,
        host: str,
        port: int,
        database: str,
        username: str,
        password: str = "",
        use_ssl: bool = False,
    ) -> dict[str, Any]:
        body = _params_body(host, port, database, username, password, use_ssl)
        return await self._json("POST", "/test-connection-params", json=body)

    async def connect(
        self,
        *,
        host: str,
        port: int,
        database: str,
        username: str,
        password: str = "",
        use_ssl: bool = False,
        name: str | None = None,
        save: bool = True,
        is_default: bool = False,
    ) -> dict[str, Any]:
        body = _params_body(host, port, database, username, password, use_ssl)
        body.update(name=name, save=save, isDefault=is_default)
        return await self._json("POST", "/connect", json=body)

    async def connect_string(
        self,
        connection_string: str,
        *,
        name: str | None = None,
        save: bool = True,
        is_default: bool = False,
    ) -> dict[str, Any]:
        body = {
            "connectionString": connection_string,
            "name": name,
            "save": save,
            "isDefault": is_default,
        }
        return await self._json("POST", "/connect-string", json=body)

    async def remove_connection(self, connection_id: str) -> dict[str, Any]:
        return await self._json("DELETE", f"/connections/{connection_id}")

    async def set_active_connection(self, connection_id: str) -> dict[str, Any]:
        return await self._json("POST", "/set-active-connection", json={"id": connection_id})

    async def connection_status(self) -> dict[str, Any]:
        """Current connection state; a disconnected answer is returned, not raised."""

        response = await self._send("GET", "/connection")
        payload = _decode(response)
        if response.status_code >= 400 and not (isinstance(payload, dict) and "status" in payload):
            raise _error_for(response, payload)
        return payload

    async def stats(self) -> dict[str, Any]:
        return await self._json("GET", "/stats")

    async def resource_stats(self) -> dict[str, Any]:
        return await self._json("GET", "/resource-stats")

    async def resource_history(self) -> dict[str, list[dict[str, Any]]]:
        return await self._json("GET", "/resource-history")

    async def table_stats(self) -> dict[str, Any]:
        return await self._json("GET", "/table-stats")

    async def query_logs(self) -> list[dict[str, Any]]:
        return await self._json("GET", "/query-logs")

    async def run_query(self, sql: str) -> QueryResponse:
        response = await self._checked("POST", "/run-query", json={"query": sql})
        elapsed = response.headers.get("X-Execution-Time-Ms")
        return QueryResponse(rows=response.json(), elapsed_ms=int(elapsed) if elapsed else None)

    async def analyze(self, key: str) -> dict[str, Any]:
        return await self._json("GET", "/analyze", params={"key": key})

    async def diagnostics(self) -> list[dict[str, str]]:
        return await self._json("GET", "/diagnostics")

    async def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._checked(method, path, **kwargs)
        return response.json()

    async def _checked(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        response = await self._send(method, path, **kwargs)
        if response.status_code >= 400:
            raise _error_for(response, _decode(response))
        return response

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = {self._session_header: self._session_id} if self._session_id else {}
        response = await self._client.request(method, path, headers=headers, **kwargs)
        returned = response.headers.get(self._session_header)
        if returned and returned != self._session_id:
            LOG.debug("Server assigned session %s", returned)
            self._session_id = returned
        return response


def _params_body(
    host: str,
    port: int,
    database: str,
    username: str,
    password: str,
    use_ssl: bool,
) -> dict[str, Any]:
    return {
        "host": host,
        "port": port,
        "database": database,
        "username": username,
        "password": password,
        "useSSL": use_ssl,
    }


def _decode(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _error_for(response: httpx.Response, payload: Any) -> DashboardAPIError:
    message = response.text or response.reason_phrase
    if isinstance(payload, dict) and payload.get("error"):
        message = str(payload["error"])
    return DashboardAPIError(response.status_code, message, payload)


__all__ = ["DEFAULT_BASE_URL", "DashboardAPIError", "DashboardClient", "QueryResponse"]
