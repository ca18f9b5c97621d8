"""FastAPI application factory and server entrypoint."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..catalog import AnalysisCache, DiagnosticCatalog, ProbeExecutionError, UnknownDiagnosticError
from ..config import AppConfig, load_config
from ..connections import DatabaseConnectionError, PoolFactory
from ..polling import PollingEngine
from ..query import QueryExecutionError
from ..registry import ConnectionNotFoundError, ConnectionRegistry
from ..service import ConnectionChecker, InputValidationError, MonitorService
from ..session import SessionManager
from ..sqlintel import PolicyViolationError
from .routes import EXECUTION_TIME_HEADER, SESSION_HEADER, router

LOG = logging.getLogger(__name__)

VERSION = "0.1.0"


async def _session_reaper_loop(service: MonitorService, interval: float) -> None:
    """Sleeps first, then ends idle sessions every ``interval`` seconds."""

    while True:
        await asyncio.sleep(interval)
        try:
            await service.reap_sessions()
        except Exception as exc:
            LOG.warning("Session reaper error: %s", exc)


def create_app(
    config: AppConfig | None = None,
    *,
    registry: ConnectionRegistry | None = None,
    factory: PoolFactory | None = None,
    checker: ConnectionChecker | None = None,
) -> FastAPI:
    """Build the API with its services on ``app.state``."""

    config = config or load_config()
    if registry is None:
        registry = ConnectionRegistry(
            config.registry_file,
            default=config.default_connection.to_connection(),
        )
    sessions = SessionManager(
        registry,
        factory=factory,
        session_timeout=timedelta(seconds=config.session_timeout),
        connect_timeout=config.connect_timeout,
    )
    catalog = DiagnosticCatalog.default()
    poller = None
    if config.polling_enabled:
        poller = PollingEngine(
            sessions,
            catalog,
            slow_interval=config.slow_interval,
            fast_interval=config.fast_interval,
            history_size=config.history_size,
            query_log_limit=config.query_log_limit,
            watch_probes=config.watch_probes,
        )
    service = MonitorService(
        sessions,
        catalog=catalog,
        poller=poller,
        checker=checker,
        cache=AnalysisCache(config.analysis_cache_ttl),
        connect_timeout=config.connect_timeout,
        query_log_limit=config.query_log_limit,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        reaper = asyncio.create_task(_session_reaper_loop(service, config.reap_interval))
        LOG.info("Started session reaper (every %.0fs)", config.reap_interval)

        yield

        reaper.cancel()
        try:
            await reaper
        except asyncio.CancelledError:
            pass
        await service.shutdown()
        LOG.info("Dashboard API stopped")

    app = FastAPI(
        title="pgdash",
        description="PostgreSQL monitoring dashboard API.",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[SESSION_HEADER, EXECUTION_TIME_HEADER],
    )

    @app.middleware("http")
    async def echo_session_header(request: Request, call_next):
        response = await call_next(request)
        session_id = getattr(request.state, "session_id", None)
        if session_id:
            response.headers[SESSION_HEADER] = session_id
        return response

    _register_exception_handlers(app)
    app.include_router(router, prefix="/api")
    return app


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(InputValidationError)
    async def validation_error_handler(request: Request, exc: InputValidationError):
        return _error(status.HTTP_400_BAD_REQUEST, exc.message)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return _error(status.HTTP_400_BAD_REQUEST, str(message))

    @app.exception_handler(PolicyViolationError)
    async def policy_violation_handler(request: Request, exc: PolicyViolationError):
        return _error(status.HTTP_403_FORBIDDEN, str(exc))

    @app.exception_handler(UnknownDiagnosticError)
    async def unknown_diagnostic_handler(request: Request, exc: UnknownDiagnosticError):
        return _error(status.HTTP_404_NOT_FOUND, "Key not found")

    @app.exception_handler(ConnectionNotFoundError)
    async def connection_not_found_handler(request: Request, exc: ConnectionNotFoundError):
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))

    @app.exception_handler(DatabaseConnectionError)
    async def database_connection_handler(request: Request, exc: DatabaseConnectionError):
        LOG.warning("Database unavailable: %s", exc.message)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, exc.message)

    @app.exception_handler(ProbeExecutionError)
    async def probe_error_handler(request: Request, exc: ProbeExecutionError):
        LOG.warning("%s", exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc.cause))

    @app.exception_handler(QueryExecutionError)
    async def query_error_handler(request: Request, exc: QueryExecutionError):
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        LOG.exception("Unhandled exception: %s", exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "An internal error occurred")


def main() -> None:
    """Run the API server with uvicorn."""

    config = load_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    LOG.info("Starting pgdash on %s:%d", config.host, config.port)
    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )


__all__ = ["VERSION", "create_app", "main"]
