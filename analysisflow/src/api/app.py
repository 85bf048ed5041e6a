"""
FastAPI Application - HTTP server for the analysis coordinator.

This module provides:
- Health check endpoints
- The coordinator endpoint (routes_coordinator.py)
- User API key issuance (routes_api_keys.py)
- Lifespan wiring of database, repository, message bus, invokers and coordinator

All endpoints except health require a Bearer token; see security.py.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

try:
    from fastapi import FastAPI, HTTPException, Request
    from fastapi.responses import JSONResponse
    from fastapi.exceptions import RequestValidationError
    FASTAPI_AVAILABLE = True
except ImportError:
    FASTAPI_AVAILABLE = False
    FastAPI = None

from ..data.api_keys import PostgresApiKeyStore
from ..data.database import DatabasePool, create_pool_from_config
from ..data.repository import PostgresAnalysisRepository
from ..orchestration.context import BrokerPortfolioClient
from ..orchestration.coordinator import AnalysisCoordinator
from ..orchestration.invocation import AgentInvoker, FunctionInvoker
from ..orchestration.message_bus import MessageBus
from ..utils.config import CoordinatorSettings, get_config_loader
from .security import setup_security, get_security_config

logger = logging.getLogger(__name__)

# Global instances (set during lifespan)
_db_pool: Optional[DatabasePool] = None
_message_bus: Optional[MessageBus] = None
_agent_invoker: Optional[AgentInvoker] = None
_broker_client: Optional[BrokerPortfolioClient] = None
_coordinator: Optional[AnalysisCoordinator] = None
_app_state: dict = {}
_app: Optional['FastAPI'] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown."""
    global _db_pool, _message_bus, _agent_invoker, _broker_client, _coordinator

    try:
        config_loader = get_config_loader()
        db_config = config_loader.get_database_config()
        coordinator_config = config_loader.get_coordinator_config()
        settings = CoordinatorSettings.from_config(coordinator_config)

        _db_pool = create_pool_from_config(db_config)
        await _db_pool.connect()
        logger.info("Database pool connected")

        repository = PostgresAnalysisRepository(_db_pool)
        await repository.ensure_schema()

        api_key_store = PostgresApiKeyStore(_db_pool)
        await api_key_store.ensure_schema()
        _app_state['api_key_store'] = api_key_store

        _message_bus = MessageBus()
        await _message_bus.start()

        _agent_invoker = AgentInvoker(
            repository,
            FunctionInvoker.from_settings(settings),
            message_bus=_message_bus,
            default_max_retries=settings.agent_max_retries,
        )
        _broker_client = BrokerPortfolioClient(paper_base_url=settings.broker_base_url)

        _coordinator = AnalysisCoordinator(
            repository,
            _agent_invoker,
            settings,
            message_bus=_message_bus,
            broker_client=_broker_client,
        )
        await _coordinator.start()
        _app_state['coordinator'] = _coordinator
        logger.info(
            f"Analysis coordinator ready: functions={settings.invocation_base_url}, "
            f"debate_rounds={settings.default_debate_rounds}"
        )

        yield

    except Exception as e:
        logger.error(f"Failed to initialize application: {e}")
        # Still yield to allow graceful shutdown
        yield

    finally:
        _app_state.pop('coordinator', None)
        _app_state.pop('api_key_store', None)
        if _coordinator:
            await _coordinator.stop()
        if _agent_invoker:
            await _agent_invoker.close()
            logger.info("Agent invoker closed")
        if _broker_client:
            await _broker_client.close()
        if _message_bus:
            await _message_bus.stop()
        if _db_pool:
            await _db_pool.disconnect()
            logger.info("Database pool disconnected")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    if not FASTAPI_AVAILABLE:
        raise RuntimeError("FastAPI is not installed. Install with: pip install fastapi")

    app = FastAPI(
        title="AnalysisFlow API",
        description="Multi-agent stock analysis workflow coordinator",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Security first; middleware order matters
    setup_security(app, get_security_config())

    _register_exception_handlers(app)

    register_health_routes(app)
    register_coordinator_routes(app, _app_state)
    register_api_key_routes(app, _app_state)

    return app


def _register_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            location = " -> ".join(str(loc) for loc in error["loc"])
            errors.append({
                "field": location,
                "message": error["msg"],
                "type": error["type"],
            })

        return JSONResponse(
            status_code=422,
            content={
                "detail": "Validation error",
                "errors": errors,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": exc.detail,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """
        Handle all unhandled exceptions.

        Logs the full traceback but returns a generic error to the client.
        """
        logger.error(
            f"Unhandled exception on {request.method} {request.url.path}: {exc}",
            exc_info=True,
        )

        if get_security_config().debug:
            detail = f"{type(exc).__name__}: {str(exc)}"
        else:
            detail = "An internal server error occurred"

        return JSONResponse(
            status_code=500,
            content={
                "detail": detail,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )


def register_health_routes(app: FastAPI):
    """Register health check endpoints."""

    @app.get("/health")
    async def health_check():
        """
        Basic health check endpoint.

        Returns:
            Health status with component statuses
        """
        status = {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": {}
        }

        if _db_pool:
            db_health = await _db_pool.check_health()
            status["components"]["database"] = db_health
            if db_health.get("status") != "healthy":
                status["status"] = "degraded"
        else:
            status["components"]["database"] = {"status": "not_initialized"}
            status["status"] = "degraded"

        if _message_bus:
            status["components"]["message_bus"] = {
                "status": "healthy" if _message_bus.is_running else "stopped",
                **_message_bus.get_stats(),
            }
        else:
            status["components"]["message_bus"] = {"status": "not_initialized"}

        if _coordinator:
            status["components"]["coordinator"] = {
                "status": "healthy",
                "pending_invocations": _agent_invoker.pending_tasks if _agent_invoker else 0,
            }
        else:
            status["components"]["coordinator"] = {"status": "not_initialized"}
            status["status"] = "degraded"

        return status

    @app.get("/health/live")
    async def liveness_check():
        """Kubernetes liveness probe endpoint."""
        return {"status": "alive"}

    @app.get("/health/ready")
    async def readiness_check():
        """Kubernetes readiness probe endpoint."""
        if _db_pool and _db_pool.is_connected and _coordinator:
            return {"status": "ready"}
        raise HTTPException(status_code=503, detail="Coordinator not ready")


def register_coordinator_routes(app: FastAPI, app_state: dict) -> None:
    """Register the coordinator endpoint."""
    from .routes_coordinator import get_coordinator_router

    router = get_coordinator_router(app_state)
    if router:
        app.include_router(router)
        logger.info("Coordinator routes registered")


def register_api_key_routes(app: FastAPI, app_state: dict) -> None:
    """Register the API key endpoints."""
    from .routes_api_keys import get_api_key_router

    router = get_api_key_router(app_state)
    if router:
        app.include_router(router)
        logger.info("API key routes registered")


def get_app() -> FastAPI:
    """Get or create the singleton FastAPI app instance."""
    global _app
    if _app is None:
        _app = create_app()
    return _app


def get_app_state() -> dict:
    """Get current application state dictionary."""
    return _app_state


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("analysisflow.src.api.app:get_app", host="0.0.0.0", port=8000, factory=True)
