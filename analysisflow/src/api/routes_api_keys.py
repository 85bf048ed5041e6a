"""
API Key Routes - Issuing and revoking per-user coordinator keys.

POST /api/v1/api-keys
    Service token only. Issues a key for the user named in the body; the
    plain key is returned once and never stored.
DELETE /api/v1/api-keys
    Revokes the user key presented as the Bearer token.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

try:
    from fastapi import APIRouter, Depends, HTTPException
    from fastapi.security import HTTPAuthorizationCredentials
    from pydantic import BaseModel, Field
    FASTAPI_AVAILABLE = True
except ImportError:
    FASTAPI_AVAILABLE = False
    APIRouter = None
    BaseModel = object

from ..orchestration.coordinator import RequestAuth

if FASTAPI_AVAILABLE:
    from .security import (
        create_api_key,
        request_auth_dependency,
        revoke_api_key,
        security,
    )

logger = logging.getLogger(__name__)


if FASTAPI_AVAILABLE:
    class IssueApiKeyRequest(BaseModel):
        """Request to issue a user API key."""
        userId: str = Field(..., min_length=1, max_length=128, description="User the key belongs to")


def create_api_key_routes(app_state: Dict[str, Any]) -> 'APIRouter':
    """
    Create the API key router.

    Args:
        app_state: Application state holding the `api_key_store`
    """
    if not FASTAPI_AVAILABLE:
        raise RuntimeError("FastAPI not available")

    router = APIRouter(prefix="/api/v1", tags=["API Keys"])
    get_request_auth = request_auth_dependency(app_state)

    def get_store():
        store = app_state.get("api_key_store")
        if store is None:
            raise HTTPException(status_code=503, detail="API key store not initialized")
        return store

    @router.post("/api-keys", status_code=201)
    async def issue_api_key(
        request: IssueApiKeyRequest,
        auth: RequestAuth = Depends(get_request_auth),
    ):
        """Issue a key for a user (service token required)."""
        if not auth.is_service:
            status = 401 if auth.user_id is None else 403
            raise HTTPException(status_code=status, detail="Service token required")

        store = get_store()
        user_id = request.userId.strip()
        if not user_id:
            raise HTTPException(status_code=400, detail="userId must not be blank")

        api_key = await create_api_key(store, user_id)
        return {
            "userId": user_id,
            "apiKey": api_key,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }

    @router.delete("/api-keys")
    async def revoke_current_api_key(
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
        auth: RequestAuth = Depends(get_request_auth),
    ):
        """Revoke the user key used to call this endpoint."""
        if auth.user_id is None:
            raise HTTPException(status_code=401, detail="User API key required")

        revoked = await revoke_api_key(get_store(), credentials.credentials)
        logger.info(f"API key of user {auth.user_id} revoked")
        return {"userId": auth.user_id, "revoked": revoked}

    return router


def get_api_key_router(app_state: Dict[str, Any]) -> Optional['APIRouter']:
    """API key router, or None if FastAPI is unavailable."""
    if not FASTAPI_AVAILABLE:
        logger.warning("FastAPI not available - API key routes disabled")
        return None

    return create_api_key_routes(app_state)
