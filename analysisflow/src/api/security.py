"""
API Security - Caller authentication, rate limiting, and request limits.

Two kinds of callers reach the coordinator:
- users, authenticated with a per-user API key (Bearer) issued through
  POST /api/v1/api-keys
- agent workers and the rebalance coordinator, authenticated with the
  shared service token (Bearer); they must name the user in the body

Also protects the endpoints from:
- DDoS/abuse (rate limiting)
- CSRF attacks (CORS)
- Memory exhaustion (request size limits)
- Hung requests (async timeouts)
"""

import asyncio
import hashlib
import hmac
import logging
import os
import secrets
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Optional

try:
    from fastapi import FastAPI, Request, Depends
    from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
    from fastapi.middleware.cors import CORSMiddleware
    from starlette.middleware.base import BaseHTTPMiddleware
    from starlette.responses import JSONResponse
    FASTAPI_AVAILABLE = True
except ImportError:
    FASTAPI_AVAILABLE = False

from ..data.api_keys import ApiKeyOwner, ApiKeyStore
from ..orchestration.coordinator import RequestAuth

logger = logging.getLogger(__name__)


# =============================================================================
# Security Configuration
# =============================================================================

@dataclass
class SecurityConfig:
    """Security configuration with sensible defaults."""
    # Shared secret used by agent workers and other internal services
    service_token: str = ""

    # Rate Limiting (requests per minute)
    rate_limit_default: int = 60
    rate_limit_coordinator: int = 600  # callbacks arrive in bursts

    # CORS Settings
    cors_origins: list = None
    cors_allow_credentials: bool = True
    cors_allow_methods: list = None
    cors_allow_headers: list = None

    # Request Limits
    max_request_size_bytes: int = 1_048_576  # 1MB
    request_timeout_seconds: float = 60.0

    debug: bool = False

    public_endpoints: list = None

    def __post_init__(self):
        if self.cors_origins is None:
            self.cors_origins = []
        if self.cors_allow_methods is None:
            self.cors_allow_methods = ["GET", "POST", "OPTIONS"]
        if self.cors_allow_headers is None:
            self.cors_allow_headers = ["Authorization", "Content-Type", "apikey", "x-client-info"]
        if self.public_endpoints is None:
            self.public_endpoints = [
                "/health",
                "/health/live",
                "/health/ready",
                "/docs",
                "/openapi.json",
            ]


def get_security_config() -> SecurityConfig:
    """Load security config from environment."""
    origins = os.environ.get("ANALYSISFLOW_CORS_ORIGINS", "")
    return SecurityConfig(
        service_token=os.environ.get("ANALYSISFLOW_SERVICE_TOKEN", ""),
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        rate_limit_default=int(os.environ.get("ANALYSISFLOW_RATE_LIMIT", "60")),
        rate_limit_coordinator=int(os.environ.get("ANALYSISFLOW_COORDINATOR_RATE_LIMIT", "600")),
        max_request_size_bytes=int(os.environ.get("ANALYSISFLOW_MAX_REQUEST_SIZE", "1048576")),
        request_timeout_seconds=float(os.environ.get("ANALYSISFLOW_REQUEST_TIMEOUT", "60.0")),
        debug=os.environ.get("ANALYSISFLOW_DEBUG", "false").lower() == "true",
    )


# =============================================================================
# API keys
# =============================================================================

def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode()).hexdigest()


async def create_api_key(store: ApiKeyStore, user_id: str) -> str:
    """Issue a new API key for a user. Only its hash is persisted."""
    api_key = secrets.token_urlsafe(32)
    await store.save(hash_api_key(api_key), user_id)
    logger.info(f"Issued API key for user {user_id}")
    return api_key


async def validate_api_key(store: ApiKeyStore, api_key: str) -> Optional[ApiKeyOwner]:
    return await store.find_owner(hash_api_key(api_key))


async def revoke_api_key(store: ApiKeyStore, api_key: str) -> bool:
    return await store.revoke(hash_api_key(api_key))


def is_service_token(token: str, config: SecurityConfig) -> bool:
    if not config.service_token or not token:
        return False
    return hmac.compare_digest(token, config.service_token)


async def resolve_request_auth(
    token: Optional[str],
    config: SecurityConfig,
    store: Optional[ApiKeyStore] = None,
) -> RequestAuth:
    """
    Map a bearer token to a caller identity.

    Unknown or missing tokens yield an anonymous RequestAuth; the coordinator
    answers those with 401. Without a key store only the service token is
    recognized.
    """
    if not token:
        return RequestAuth()
    if is_service_token(token, config):
        return RequestAuth(is_service=True)
    if store is None:
        logger.warning("API key store not initialized - rejecting user key")
        return RequestAuth()
    owner = await validate_api_key(store, token)
    if owner is None:
        logger.warning("Rejected unknown API key")
        return RequestAuth()
    return RequestAuth(user_id=owner.user_id)


# =============================================================================
# Rate Limiting
# =============================================================================

class RateLimiter:
    """Sliding window rate limiter."""

    def __init__(self, max_requests: int = 60, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._requests: dict[str, list[float]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def is_allowed(self, client_id: str) -> tuple[bool, dict]:
        """
        Check if a request is allowed.

        Returns:
            Tuple of (is_allowed, rate_limit_info)
        """
        async with self._lock:
            now = time.monotonic()
            cutoff = now - self.window_seconds

            window = [t for t in self._requests[client_id] if t > cutoff]
            self._requests[client_id] = window
            current_count = len(window)

            info = {
                "limit": self.max_requests,
                "remaining": max(0, self.max_requests - current_count),
                "reset_seconds": int(self.window_seconds - (now - window[0])) if window else 0,
            }

            if current_count >= self.max_requests:
                return False, info

            window.append(now)
            info["remaining"] = max(0, self.max_requests - current_count - 1)
            return True, info


_rate_limiters: dict[str, RateLimiter] = {}


def get_rate_limiter(tier: str, config: SecurityConfig) -> RateLimiter:
    """Get or create a rate limiter for a tier."""
    if tier not in _rate_limiters:
        if tier == "coordinator":
            _rate_limiters[tier] = RateLimiter(config.rate_limit_coordinator, 60)
        else:
            _rate_limiters[tier] = RateLimiter(config.rate_limit_default, 60)
    return _rate_limiters[tier]


def reset_rate_limiters() -> None:
    _rate_limiters.clear()


# =============================================================================
# FastAPI Middleware
# =============================================================================

if FASTAPI_AVAILABLE:

    class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
        """Reject requests that exceed size limit."""

        def __init__(self, app, max_size: int):
            super().__init__(app)
            self.max_size = max_size

        async def dispatch(self, request: Request, call_next):
            content_length = request.headers.get("content-length")
            if content_length and content_length.isdigit() and int(content_length) > self.max_size:
                return JSONResponse(
                    status_code=413,
                    content={"detail": f"Request too large. Max size: {self.max_size} bytes"},
                )
            return await call_next(request)


    class TimeoutMiddleware(BaseHTTPMiddleware):
        """Add timeout to all requests."""

        def __init__(self, app, timeout: float):
            super().__init__(app)
            self.timeout = timeout

        async def dispatch(self, request: Request, call_next):
            try:
                return await asyncio.wait_for(call_next(request), timeout=self.timeout)
            except asyncio.TimeoutError:
                return JSONResponse(
                    status_code=504,
                    content={"detail": f"Request timeout after {self.timeout}s"},
                )


    class RateLimitMiddleware(BaseHTTPMiddleware):
        """Rate limit middleware."""

        def __init__(self, app, config: SecurityConfig):
            super().__init__(app)
            self.config = config
            self._coordinator_paths = {"/api/v1/analysis-coordinator"}

        async def dispatch(self, request: Request, call_next):
            client_ip = request.client.host if request.client else "unknown"
            auth_header = request.headers.get("authorization", "")
            client_id = f"{client_ip}:{hashlib.md5(auth_header.encode()).hexdigest()[:8]}"

            path = request.url.path
            if any(path.startswith(p) for p in self._coordinator_paths):
                limiter = get_rate_limiter("coordinator", self.config)
            else:
                limiter = get_rate_limiter("default", self.config)

            allowed, info = await limiter.is_allowed(client_id)

            if not allowed:
                return JSONResponse(
                    status_code=429,
                    content={
                        "detail": "Rate limit exceeded",
                        "limit": info["limit"],
                        "reset_seconds": info["reset_seconds"],
                    },
                    headers={
                        "X-RateLimit-Limit": str(info["limit"]),
                        "X-RateLimit-Remaining": str(info["remaining"]),
                        "X-RateLimit-Reset": str(info["reset_seconds"]),
                        "Retry-After": str(info["reset_seconds"]),
                    },
                )

            response = await call_next(request)
            response.headers["X-RateLimit-Limit"] = str(info["limit"])
            response.headers["X-RateLimit-Remaining"] = str(info["remaining"])
            return response


    # HTTP Bearer security scheme
    security = HTTPBearer(auto_error=False)


    def request_auth_dependency(app_state: dict):
        """
        Dependency resolving the caller identity.

        The key store is read from app_state per request; the lifespan sets it.
        """
        async def get_request_auth(
            credentials: HTTPAuthorizationCredentials = Depends(security),
        ) -> RequestAuth:
            token = credentials.credentials if credentials else None
            return await resolve_request_auth(token, get_security_config(), app_state.get("api_key_store"))

        return get_request_auth


def setup_security(app: 'FastAPI', config: Optional[SecurityConfig] = None) -> None:
    """
    Set up all security middleware for the FastAPI app.

    Args:
        app: FastAPI application instance
        config: Security configuration (uses defaults if None)
    """
    if not FASTAPI_AVAILABLE:
        raise RuntimeError("FastAPI not available")

    if config is None:
        config = get_security_config()

    app.add_middleware(RequestSizeLimitMiddleware, max_size=config.max_request_size_bytes)
    app.add_middleware(TimeoutMiddleware, timeout=config.request_timeout_seconds)
    app.add_middleware(RateLimitMiddleware, config=config)

    # CORS must wrap everything
    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=config.cors_allow_credentials,
            allow_methods=config.cors_allow_methods,
            allow_headers=config.cors_allow_headers,
        )
    else:
        logger.info("CORS not configured - cross-origin requests will be rejected")

    if not config.service_token:
        logger.warning(
            "ANALYSISFLOW_SERVICE_TOKEN not configured! Agent callbacks cannot authenticate."
        )

    logger.info(
        f"Security middleware configured: "
        f"rate_limit={config.rate_limit_default}/min, "
        f"coordinator_rate_limit={config.rate_limit_coordinator}/min, "
        f"max_request={config.max_request_size_bytes}B, "
        f"timeout={config.request_timeout_seconds}s, "
        f"cors_origins={len(config.cors_origins)}"
    )
