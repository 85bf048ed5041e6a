"""
Coordinator API Routes - The single HTTP entry point of the workflow.

POST /api/v1/analysis-coordinator
    Body is the raw coordinator request (action / legacy shapes). The
    CoordinatorResponse body is returned as-is with its status code, so
    agent workers and the UI read the same envelope the handlers build.
"""

import json
import logging
from typing import Any, Dict, Optional

try:
    from fastapi import APIRouter, Depends, HTTPException, Request
    from fastapi.responses import JSONResponse
    FASTAPI_AVAILABLE = True
except ImportError:
    FASTAPI_AVAILABLE = False
    APIRouter = None

from ..orchestration.coordinator import RequestAuth
from ..orchestration.responses import error_response

if FASTAPI_AVAILABLE:
    from .security import request_auth_dependency

logger = logging.getLogger(__name__)


def create_coordinator_routes(app_state: Dict[str, Any]) -> 'APIRouter':
    """
    Create the coordinator router.

    Args:
        app_state: Application state holding the `coordinator` and `api_key_store`

    Returns:
        FastAPI router with the coordinator endpoint
    """
    if not FASTAPI_AVAILABLE:
        raise RuntimeError("FastAPI not available")

    router = APIRouter(prefix="/api/v1", tags=["Analysis Coordinator"])
    get_request_auth = request_auth_dependency(app_state)

    def get_coordinator():
        coordinator = app_state.get("coordinator")
        if coordinator is None:
            raise HTTPException(status_code=503, detail="Coordinator not initialized")
        return coordinator

    @router.post("/analysis-coordinator")
    async def analysis_coordinator(
        request: Request,
        auth: RequestAuth = Depends(get_request_auth),
    ):
        """Dispatch one coordinator request."""
        coordinator = get_coordinator()

        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            response = error_response('Invalid JSON body', status=400)
            return JSONResponse(status_code=response.status_code, content=response.body)

        if not isinstance(body, dict):
            response = error_response('Request body must be a JSON object', status=400)
            return JSONResponse(status_code=response.status_code, content=response.body)

        response = await coordinator.handle_request(body, auth)
        if response.status_code >= 500:
            logger.error(f"Coordinator returned {response.status_code}: {response.message}")
        return JSONResponse(status_code=response.status_code, content=response.body)

    return router


def get_coordinator_router(app_state: Dict[str, Any]) -> Optional['APIRouter']:
    """Coordinator router, or None if FastAPI is unavailable."""
    if not FASTAPI_AVAILABLE:
        logger.warning("FastAPI not available - coordinator routes disabled")
        return None

    return create_coordinator_routes(app_state)
