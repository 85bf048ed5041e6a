"""
Unit tests for FastAPI app.

Tests validate:
- Health endpoints
- Exception handlers
- Lifespan wiring of the coordinator
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

try:
    from fastapi.testclient import TestClient
    from fastapi import FastAPI
    FASTAPI_AVAILABLE = True
except ImportError:
    FASTAPI_AVAILABLE = False
    TestClient = None
    FastAPI = None

pytestmark = pytest.mark.skipif(not FASTAPI_AVAILABLE, reason="FastAPI not installed")


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture
def mock_db_pool():
    """Create mock database pool."""
    mock = AsyncMock()
    mock.is_connected = True
    mock.check_health.return_value = {'status': 'healthy', 'latency_ms': 5}
    return mock


@pytest.fixture
def mock_message_bus():
    mock = MagicMock()
    mock.is_running = True
    mock.get_stats.return_value = {'running': True, 'total_published': 3}
    return mock


@pytest.fixture
def mock_agent_invoker():
    mock = MagicMock()
    mock.pending_tasks = 2
    return mock


@pytest.fixture
def client(mock_db_pool, mock_message_bus, mock_agent_invoker):
    """Client for an app whose components are all initialized."""
    from analysisflow.src.api import app as app_module

    with patch.object(app_module, '_db_pool', mock_db_pool), \
            patch.object(app_module, '_message_bus', mock_message_bus), \
            patch.object(app_module, '_agent_invoker', mock_agent_invoker), \
            patch.object(app_module, '_coordinator', MagicMock()):
        app = FastAPI()
        app_module.register_health_routes(app)
        yield TestClient(app)


@pytest.fixture
def client_not_initialized():
    """Client for an app whose lifespan never ran."""
    from analysisflow.src.api import app as app_module

    with patch.object(app_module, '_db_pool', None), \
            patch.object(app_module, '_message_bus', None), \
            patch.object(app_module, '_agent_invoker', None), \
            patch.object(app_module, '_coordinator', None):
        app = FastAPI()
        app_module.register_health_routes(app)
        yield TestClient(app)


# =============================================================================
# Health Endpoint Tests
# =============================================================================

class TestHealthEndpoints:
    """Test health check endpoints."""

    def test_health_check_healthy(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data['status'] == 'healthy'
        assert data['components']['database']['status'] == 'healthy'
        assert data['components']['message_bus']['status'] == 'healthy'
        assert data['components']['message_bus']['total_published'] == 3
        assert data['components']['coordinator'] == {'status': 'healthy', 'pending_invocations': 2}

    def test_health_check_not_initialized(self, client_not_initialized):
        response = client_not_initialized.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data['status'] == 'degraded'
        assert data['components']['database']['status'] == 'not_initialized'
        assert data['components']['coordinator']['status'] == 'not_initialized'

    def test_health_check_degraded_db(self, mock_message_bus, mock_agent_invoker):
        from analysisflow.src.api import app as app_module

        mock_db = AsyncMock()
        mock_db.check_health.return_value = {'status': 'unhealthy', 'error': 'Connection lost'}

        with patch.object(app_module, '_db_pool', mock_db), \
                patch.object(app_module, '_message_bus', mock_message_bus), \
                patch.object(app_module, '_agent_invoker', mock_agent_invoker), \
                patch.object(app_module, '_coordinator', MagicMock()):
            app = FastAPI()
            app_module.register_health_routes(app)

            response = TestClient(app).get("/health")

        assert response.json()['status'] == 'degraded'

    def test_liveness_check(self, client_not_initialized):
        response = client_not_initialized.get("/health/live")

        assert response.status_code == 200
        assert response.json()['status'] == 'alive'

    def test_readiness_check_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()['status'] == 'ready'

    def test_readiness_check_not_ready(self, client_not_initialized):
        response = client_not_initialized.get("/health/ready")

        assert response.status_code == 503


# =============================================================================
# App factory
# =============================================================================

class TestCreateApp:
    """Test the application factory."""

    @pytest.fixture(autouse=True)
    def _clean_rate_limiters(self):
        from analysisflow.src.api.security import reset_rate_limiters
        reset_rate_limiters()
        yield
        reset_rate_limiters()

    def test_routes_registered(self):
        from analysisflow.src.api.app import create_app

        app = create_app()
        paths = {route.path for route in app.routes}

        assert "/health" in paths
        assert "/api/v1/analysis-coordinator" in paths
        assert "/api/v1/api-keys" in paths

    def test_coordinator_unavailable_before_startup(self):
        from analysisflow.src.api.app import create_app

        client = TestClient(create_app())
        response = client.post("/api/v1/analysis-coordinator", json={'ticker': 'AAPL'})

        assert response.status_code == 503
        assert response.json()['detail'] == "Coordinator not initialized"
        assert 'timestamp' in response.json()

    def test_unhandled_exception_hidden(self, monkeypatch):
        from analysisflow.src.api import app as app_module

        monkeypatch.delenv("ANALYSISFLOW_DEBUG", raising=False)
        app = app_module.create_app()

        @app.get("/explode")
        async def explode():
            raise RuntimeError("secret detail")

        client = TestClient(app, raise_server_exceptions=False)
        response = client.get("/explode")

        assert response.status_code == 500
        assert response.json()['detail'] == "An internal server error occurred"


# =============================================================================
# Lifespan
# =============================================================================

class TestLifespan:
    """Test startup and shutdown wiring."""

    def test_coordinator_started_and_stopped(self):
        from analysisflow.src.api import app as app_module
        from analysisflow.src.orchestration.coordinator import AnalysisCoordinator

        config_loader = MagicMock()
        config_loader.get_database_config.return_value = {}
        config_loader.get_coordinator_config.return_value = {}

        pool = AsyncMock()
        pool.is_connected = True
        repository = AsyncMock()
        key_store = AsyncMock()

        app = FastAPI(lifespan=app_module.lifespan)

        with patch.object(app_module, '_db_pool', None), \
                patch.object(app_module, '_coordinator', None), \
                patch.object(app_module, '_message_bus', None), \
                patch.object(app_module, '_agent_invoker', None), \
                patch.object(app_module, '_broker_client', None), \
                patch.object(app_module, 'get_config_loader', return_value=config_loader), \
                patch.object(app_module, 'create_pool_from_config', return_value=pool), \
                patch.object(app_module, 'PostgresAnalysisRepository', return_value=repository), \
                patch.object(app_module, 'PostgresApiKeyStore', return_value=key_store):
            with TestClient(app):
                coordinator = app_module.get_app_state()['coordinator']
                assert isinstance(coordinator, AnalysisCoordinator)
                assert app_module.get_app_state()['api_key_store'] is key_store
                assert app_module._message_bus.is_running

            assert 'coordinator' not in app_module.get_app_state()
            assert 'api_key_store' not in app_module.get_app_state()
            assert not app_module._message_bus.is_running

        pool.connect.assert_awaited_once()
        repository.ensure_schema.assert_awaited_once()
        key_store.ensure_schema.assert_awaited_once()
        pool.disconnect.assert_awaited_once()

    def test_startup_failure_still_serves(self):
        from analysisflow.src.api import app as app_module

        config_loader = MagicMock()
        config_loader.get_database_config.return_value = {}
        config_loader.get_coordinator_config.return_value = {}
        pool = AsyncMock()
        pool.connect.side_effect = ConnectionError("refused")

        app = FastAPI(lifespan=app_module.lifespan)
        app_module.register_health_routes(app)

        with patch.object(app_module, '_db_pool', None), \
                patch.object(app_module, '_coordinator', None), \
                patch.object(app_module, '_message_bus', None), \
                patch.object(app_module, '_agent_invoker', None), \
                patch.object(app_module, '_broker_client', None), \
                patch.object(app_module, 'get_config_loader', return_value=config_loader), \
                patch.object(app_module, 'create_pool_from_config', return_value=pool):
            with TestClient(app) as client:
                response = client.get("/health/live")
                assert response.status_code == 200
                assert client.get("/health/ready").status_code == 503

        assert 'coordinator' not in app_module.get_app_state()
        pool.disconnect.assert_awaited_once()
