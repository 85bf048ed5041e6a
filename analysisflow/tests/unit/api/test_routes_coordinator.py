"""
Unit tests for the coordinator endpoint.

Tests validate:
- Caller identity resolution from Bearer tokens
- Body validation
- Pass-through of the coordinator envelope and status code
- Rate limiting and request size limits
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

try:
    from fastapi.testclient import TestClient
    from fastapi import FastAPI
    FASTAPI_AVAILABLE = True
except ImportError:
    FASTAPI_AVAILABLE = False
    TestClient = None
    FastAPI = None

from analysisflow.src.orchestration.coordinator import RequestAuth
from analysisflow.src.orchestration.responses import error_response, success_response

pytestmark = pytest.mark.skipif(not FASTAPI_AVAILABLE, reason="FastAPI not installed")

URL = "/api/v1/analysis-coordinator"
SERVICE_TOKEN = "service-secret"


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def security_env(monkeypatch):
    from analysisflow.src.api.security import reset_rate_limiters

    monkeypatch.setenv("ANALYSISFLOW_SERVICE_TOKEN", SERVICE_TOKEN)
    reset_rate_limiters()
    yield
    reset_rate_limiters()


@pytest.fixture
def mock_coordinator():
    mock = MagicMock()
    mock.handle_request = AsyncMock(return_value=success_response(
        'Analysis workflow started - will complete in multiple phases',
        analysisId='analysis-1',
        ticker='AAPL',
        workflow='chunked',
    ))
    return mock


@pytest.fixture
def app(mock_coordinator, api_key_store):
    from analysisflow.src.api.routes_coordinator import create_coordinator_routes

    app = FastAPI()
    app.include_router(create_coordinator_routes({'coordinator': mock_coordinator, 'api_key_store': api_key_store}))
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def user_key(api_key_store):
    from analysisflow.src.api.security import hash_api_key
    from analysisflow.src.data.api_keys import ApiKeyOwner

    key = 'user-1-key'
    api_key_store.keys[hash_api_key(key)] = ApiKeyOwner(user_id='user-1', api_key_hash=hash_api_key(key))
    return key


# =============================================================================
# Identity
# =============================================================================

class TestCallerIdentity:
    """Test Bearer token resolution for the endpoint."""

    def test_user_key(self, client, mock_coordinator, user_key):
        response = client.post(URL, json={'ticker': 'AAPL'}, headers={'Authorization': f'Bearer {user_key}'})

        assert response.status_code == 200
        body, auth = mock_coordinator.handle_request.call_args.args
        assert body == {'ticker': 'AAPL'}
        assert auth == RequestAuth(user_id='user-1', is_service=False)

    def test_service_token(self, client, mock_coordinator):
        client.post(
            URL,
            json={'phase': 'trading', 'agent': 'agent-trader', 'userId': 'user-1'},
            headers={'Authorization': f'Bearer {SERVICE_TOKEN}'},
        )

        _, auth = mock_coordinator.handle_request.call_args.args
        assert auth == RequestAuth(user_id=None, is_service=True)

    def test_missing_token_is_anonymous(self, client, mock_coordinator):
        client.post(URL, json={'ticker': 'AAPL'})

        _, auth = mock_coordinator.handle_request.call_args.args
        assert auth == RequestAuth()

    def test_unknown_token_is_anonymous(self, client, mock_coordinator):
        client.post(URL, json={'ticker': 'AAPL'}, headers={'Authorization': 'Bearer not-a-key'})

        _, auth = mock_coordinator.handle_request.call_args.args
        assert auth.user_id is None
        assert not auth.is_service


# =============================================================================
# Body handling
# =============================================================================

class TestRequestBody:
    """Test body validation and envelope pass-through."""

    def test_success_envelope(self, client, user_key):
        response = client.post(URL, json={'ticker': 'AAPL'}, headers={'Authorization': f'Bearer {user_key}'})

        data = response.json()
        assert data['success'] is True
        assert data['analysisId'] == 'analysis-1'
        assert data['workflow'] == 'chunked'

    def test_error_status_passed_through(self, client, mock_coordinator):
        mock_coordinator.handle_request.return_value = error_response('Authentication required', status=401)

        response = client.post(URL, json={'ticker': 'AAPL'})

        assert response.status_code == 401
        assert response.json() == {'error': 'Authentication required', 'status': 401}

    def test_error_envelope_with_200(self, client, mock_coordinator):
        mock_coordinator.handle_request.return_value = error_response('Unknown action: explode')

        response = client.post(URL, json={'action': 'explode'})

        assert response.status_code == 200
        assert response.json()['error'] == 'Unknown action: explode'

    def test_invalid_json(self, client, mock_coordinator):
        response = client.post(URL, content=b'{not json', headers={'Content-Type': 'application/json'})

        assert response.status_code == 400
        assert response.json()['error'] == 'Invalid JSON body'
        mock_coordinator.handle_request.assert_not_called()

    def test_non_object_body(self, client, mock_coordinator):
        response = client.post(URL, json=['AAPL'])

        assert response.status_code == 400
        assert response.json()['error'] == 'Request body must be a JSON object'

    def test_coordinator_not_initialized(self):
        from analysisflow.src.api.routes_coordinator import create_coordinator_routes

        app = FastAPI()
        app.include_router(create_coordinator_routes({}))

        response = TestClient(app).post(URL, json={'ticker': 'AAPL'})

        assert response.status_code == 503


# =============================================================================
# Middleware
# =============================================================================

class TestMiddleware:
    """Test the security middleware around the endpoint."""

    def _secured_app(self, mock_coordinator, **config_kwargs):
        from analysisflow.src.api.routes_coordinator import create_coordinator_routes
        from analysisflow.src.api.security import SecurityConfig, setup_security

        app = FastAPI()
        setup_security(app, SecurityConfig(service_token=SERVICE_TOKEN, **config_kwargs))
        app.include_router(create_coordinator_routes({'coordinator': mock_coordinator}))
        return app

    def test_rate_limit_headers(self, mock_coordinator):
        client = TestClient(self._secured_app(mock_coordinator))

        response = client.post(URL, json={'ticker': 'AAPL'})

        assert response.headers['X-RateLimit-Limit'] == '600'
        assert response.headers['X-RateLimit-Remaining'] == '599'

    def test_rate_limit_exceeded(self, mock_coordinator):
        client = TestClient(self._secured_app(mock_coordinator, rate_limit_coordinator=2))

        client.post(URL, json={'ticker': 'AAPL'})
        client.post(URL, json={'ticker': 'AAPL'})
        response = client.post(URL, json={'ticker': 'AAPL'})

        assert response.status_code == 429
        assert response.json()['detail'] == "Rate limit exceeded"
        assert mock_coordinator.handle_request.await_count == 2

    def test_request_too_large(self, mock_coordinator):
        client = TestClient(self._secured_app(mock_coordinator, max_request_size_bytes=50))

        response = client.post(URL, json={'ticker': 'AAPL', 'padding': 'x' * 200})

        assert response.status_code == 413
        mock_coordinator.handle_request.assert_not_called()
