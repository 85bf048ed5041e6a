"""API module - FastAPI server for the analysis coordinator."""

from .app import create_app, get_app, get_app_state
from .routes_api_keys import get_api_key_router
from .routes_coordinator import get_coordinator_router

__all__ = [
    'create_app',
    'get_app',
    'get_app_state',
    'get_api_key_router',
    'get_coordinator_router',
]
