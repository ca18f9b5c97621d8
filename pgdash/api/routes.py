"""HTTP routes for the dashboard, mounted under ``/api``."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ..connections import ConnectionCheck, DatabaseConnectionError
from ..service import InputValidationError, MonitorService
from .schemas import (
    ConnectionParamsRequest,
    ConnectionStringRequest,
    RunQueryRequest,
    SetActiveRequest,
)

LOG = logging.getLogger(__name__)

SESSION_HEADER = "X-Session-ID"
EXECUTION_TIME_HEADER = "X-Execution-Time-Ms"

router = APIRouter()


def get_service(request: Request) -> MonitorService:
    return request.app.state.service


def current_session(
    request: Request,
    header_id: str | None = Header(default=None, alias=SESSION_HEADER),
    query_id: str | None = Query(default=None, alias="sessionId"),
) -> str:
    """Resolve the caller's session, minting one for missing or expired ids."""

    session_id = get_service(request).resolve_session(header_id or query_id)
    request.state.session_id = session_id
    return session_id


@router.get("/session")
async def get_session(session_id: str = Depends(current_session)):
    return {"sessionId": session_id}


@router.get("/connections")
async def list_connections(
    service: MonitorService = Depends(get_service),
    _session: str = Depends(current_session),
):
    return service.list_connections()


@router.post("/test-connection")
async def test_connection(
    body: ConnectionStringRequest,
    service: MonitorService = Depends(get_service),
    _session: str = Depends(current_session),
):
    check = await service.test_string(body.connection_string)
    return check.as_dict()


@router.post("/test-connection-params")
async def test_connection_params(
    body: ConnectionParamsRequest,
    service: MonitorService = Depends(get_service),
    _session: str = Depends(current_session),
):
    check = await service.test_params(**body.connection_fields())
    return check.as_dict()


@router.post("/connect")
async def connect(
    body: ConnectionParamsRequest,
    service: MonitorService = Depends(get_service),
    session_id: str = Depends(current_session),
):
    try:
        result = await service.connect_params(
            session_id,
            save=body.save,
            is_default=body.is_default,
            **body.connection_fields(),
        )
    except DatabaseConnectionError as exc:
        return _connect_failed(exc.message)
    return _connect_response(result)


@router.post("/connect-string")
async def connect_string(
    body: ConnectionStringRequest,
    service: MonitorService = Depends(get_service),
    session_id: str = Depends(current_session),
):
    try:
        result = await service.connect_string(
            session_id,
            body.connection_string,
            name=body.name,
            save=body.save,
            is_default=body.is_default,
        )
    except DatabaseConnectionError as exc:
        return _connect_failed(exc.message)
    return _connect_response(result)


@router.delete("/connections/{connection_id}")
async def remove_connection(
    connection_id: str,
    service: MonitorService = Depends(get_service),
    _session: str = Depends(current_session),
):
    return await service.remove_connection(connection_id)


@router.post("/set-active-connection")
async def set_active_connection(
    body: SetActiveRequest,
    service: MonitorService = Depends(get_service),
    session_id: str = Depends(current_session),
):
    if not body.id:
        raise InputValidationError("Connection id is required", field="id")
    return await service.set_active(session_id, body.id)


@router.get("/connection")
async def connection_status(
    service: MonitorService = Depends(get_service),
    session_id: str = Depends(current_session),
):
    try:
        return await service.connection_status(session_id)
    except Exception as exc:
        LOG.warning("Connection check failed for session %s: %s", session_id, exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"status": "disconnected", "error": str(exc) or type(exc).__name__},
        )


@router.get("/stats")
async def database_stats(
    service: MonitorService = Depends(get_service),
    session_id: str = Depends(current_session),
):
    return await service.stats(session_id)


@router.get("/resource-stats")
async def resource_stats(
    service: MonitorService = Depends(get_service),
    session_id: str = Depends(current_session),
):
    return await service.resource_stats(session_id)


@router.get("/resource-history")
async def resource_history(
    service: MonitorService = Depends(get_service),
    session_id: str = Depends(current_session),
):
    return service.resource_history(session_id)


@router.get("/table-stats")
async def table_stats(
    service: MonitorService = Depends(get_service),
    session_id: str = Depends(current_session),
):
    return await service.table_stats(session_id)


@router.get("/query-logs")
async def query_logs(
    service: MonitorService = Depends(get_service),
    session_id: str = Depends(current_session),
):
    return jsonable_encoder(await service.query_logs(session_id))


@router.post("/run-query")
async def run_query(
    body: RunQueryRequest,
    service: MonitorService = Depends(get_service),
    session_id: str = Depends(current_session),
):
    result = await service.run_query(session_id, body.query)
    return JSONResponse(
        content=jsonable_encoder(result.records()),
        headers={EXECUTION_TIME_HEADER: str(result.elapsed_ms)},
    )


@router.get("/analyze")
async def analyze(
    key: str | None = None,
    service: MonitorService = Depends(get_service),
    session_id: str = Depends(current_session),
):
    result = await service.analyze(session_id, key)
    return jsonable_encoder(result.as_dict())


@router.get("/diagnostics")
async def diagnostics(
    service: MonitorService = Depends(get_service),
    _session: str = Depends(current_session),
):
    return service.diagnostics()


def _connect_response(result: ConnectionCheck | dict[str, Any]):
    if isinstance(result, ConnectionCheck):
        return _connect_failed(result.error or "Connection failed")
    return result


def _connect_failed(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": message},
    )


__all__ = [
    "EXECUTION_TIME_HEADER",
    "SESSION_HEADER",
    "current_session",
    "get_service",
    "router",
]
