"""
Shared test fixtures for AnalysisFlow tests.

Provides an in-memory AnalysisRepository with the same write semantics as the
Postgres one (cancelled records are never overwritten, status preconditions,
atomic full_analysis updates), an in-memory API key store, a FunctionInvoker
that records calls instead of making HTTP requests, and factories for
analysis records in any state.
"""

import copy
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import pytest

from analysisflow.src.data.api_keys import ApiKeyOwner, ApiKeyStore
from analysisflow.src.data.repository import AnalysisRepository
from analysisflow.src.orchestration.coordinator import AnalysisCoordinator
from analysisflow.src.orchestration.invocation import AgentInvoker, FunctionInvoker, InvocationResult
from analysisflow.src.orchestration.message_bus import MessageBus
from analysisflow.src.orchestration.services import AnalysisRun, WorkflowServices
from analysisflow.src.utils.config import CoordinatorSettings, reset_config_loader
from analysisflow.src.workflow.agents import AgentId, Phase, phase_of
from analysisflow.src.workflow.models import (
    AnalysisRecord,
    AnalysisStatus,
    ApiSettings,
    Decision,
    StepStatus,
    WorkflowSteps,
    create_initial_full_analysis,
    now_iso,
)


# =============================================================================
# In-memory repository
# =============================================================================

class InMemoryAnalysisRepository(AnalysisRepository):
    """AnalysisRepository backed by dicts; returns copies like a real database."""

    def __init__(self):
        self.records: dict[str, AnalysisRecord] = {}
        self.messages: list[dict] = []
        self.rebalance_statuses: dict[str, str] = {}
        self.api_settings: dict[str, dict] = {}
        self.trade_orders: dict[tuple[str, str], list[dict]] = {}
        self.status_writes: list[tuple[str, AnalysisStatus]] = []
        self._next_id = 1

    # Test helpers ------------------------------------------------------------

    def add(self, record: AnalysisRecord) -> AnalysisRecord:
        self.records[record.id] = copy.deepcopy(record)
        return record

    def raw(self, analysis_id: str) -> AnalysisRecord:
        return self.records[analysis_id]

    def step_status(self, analysis_id: str, agent: AgentId) -> Optional[StepStatus]:
        return self.records[analysis_id].workflow_steps.status_of(phase_of(agent), agent)

    def set_step(self, analysis_id: str, agent: AgentId, status: StepStatus, error_type: Optional[str] = None):
        record = self.records[analysis_id]
        steps = record.workflow_steps
        steps.update_agent_status(phase_of(agent), agent, status, error_type=error_type)
        record.full_analysis['workflowSteps'] = steps.to_list()

    def _touch(self, record: AnalysisRecord) -> None:
        record.updated_at = datetime.now(timezone.utc)

    # Primitives --------------------------------------------------------------

    async def get_analysis(self, analysis_id: str) -> Optional[AnalysisRecord]:
        record = self.records.get(analysis_id)
        return copy.deepcopy(record) if record else None

    async def find_active_analyses(self, user_id: str, ticker: str) -> list[AnalysisRecord]:
        active = [
            r for r in self.records.values()
            if r.user_id == user_id and r.ticker == ticker and r.analysis_status.is_active
        ]
        active.sort(key=lambda r: r.created_at or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        return [copy.deepcopy(r) for r in active]

    async def create_analysis(
        self,
        user_id: str,
        ticker: str,
        full_analysis: dict,
        rebalance_request_id: Optional[str] = None,
        analysis_context: Optional[dict] = None,
        metadata: Optional[dict] = None,
    ) -> AnalysisRecord:
        analysis_id = f"analysis-{self._next_id}"
        self._next_id += 1
        now = datetime.now(timezone.utc)
        record = AnalysisRecord(
            id=analysis_id,
            user_id=user_id,
            ticker=ticker,
            full_analysis=copy.deepcopy(full_analysis),
            rebalance_request_id=rebalance_request_id,
            analysis_context=copy.deepcopy(analysis_context),
            metadata=copy.deepcopy(metadata) or {},
            created_at=now,
            updated_at=now,
        )
        self.records[analysis_id] = record
        return copy.deepcopy(record)

    async def update_fields(self, analysis_id: str, **fields: Any) -> None:
        record = self.records.get(analysis_id)
        if record is None:
            return
        for name, value in fields.items():
            setattr(record, name, copy.deepcopy(value))
        self._touch(record)

    async def update_status(
        self,
        analysis_id: str,
        status: AnalysisStatus,
        allowed_from: Optional[tuple[AnalysisStatus, ...]] = None,
        decision: Optional[str] = None,
        confidence: Optional[float] = None,
        full_analysis_patch: Optional[dict] = None,
        metadata_patch: Optional[dict] = None,
    ) -> bool:
        record = self.records.get(analysis_id)
        if record is None or record.analysis_status is AnalysisStatus.CANCELLED:
            return False
        if allowed_from is not None and record.analysis_status not in allowed_from:
            return False

        record.analysis_status = status
        if decision is not None:
            record.decision = decision
        if confidence is not None:
            record.confidence = confidence
        if full_analysis_patch:
            record.full_analysis.update(copy.deepcopy(full_analysis_patch))
        if metadata_patch:
            record.metadata.update(copy.deepcopy(metadata_patch))
        if status is AnalysisStatus.COMPLETED:
            record.completed_at = datetime.now(timezone.utc)
        self._touch(record)
        self.status_writes.append((analysis_id, status))
        return True

    async def update_full_analysis(self, analysis_id: str, mutator) -> bool:
        record = self.records.get(analysis_id)
        if record is None:
            return False
        working = copy.deepcopy(record.full_analysis)
        changed = mutator(working)
        if changed:
            record.full_analysis = working
            self._touch(record)
        return changed

    async def merge_agent_insights(self, analysis_id: str, patch: dict) -> None:
        record = self.records.get(analysis_id)
        if record is not None:
            record.agent_insights.update(copy.deepcopy(patch))
            self._touch(record)

    async def remove_agent_insights(self, analysis_id: str, keys: list[str]) -> None:
        record = self.records.get(analysis_id)
        if record is not None:
            for key in keys:
                record.agent_insights.pop(key, None)

    async def record_agent_error(self, analysis_id: str, agent_key: str, message: str, error_type: str) -> None:
        await self.merge_agent_insights(analysis_id, {
            f"{agent_key}_error": {'message': message, 'type': error_type, 'timestamp': now_iso()},
        })
        await self.append_message(analysis_id, agent_key, f"ERROR: {message}", 'error')

    async def append_message(self, analysis_id: str, agent_name: str, message: str, message_type: str = 'analysis') -> None:
        self.messages.append({
            'analysis_id': analysis_id,
            'agent_name': agent_name,
            'message': message,
            'message_type': message_type,
        })

    async def touch(self, analysis_id: str) -> None:
        record = self.records.get(analysis_id)
        if record is not None:
            self._touch(record)

    async def get_rebalance_status(self, rebalance_request_id: str) -> Optional[str]:
        return self.rebalance_statuses.get(rebalance_request_id)

    async def fetch_api_settings(self, user_id: str) -> Optional[dict]:
        settings = self.api_settings.get(user_id)
        return dict(settings) if settings else None

    async def fetch_pending_trade_orders(self, user_id: str, analysis_id: str) -> list[dict]:
        return list(self.trade_orders.get((user_id, analysis_id), []))


# =============================================================================
# In-memory API key store
# =============================================================================

class InMemoryApiKeyStore(ApiKeyStore):
    """ApiKeyStore keeping hashes in a dict; revoked hashes are kept aside."""

    def __init__(self):
        self.keys: dict[str, ApiKeyOwner] = {}
        self.revoked: set[str] = set()

    async def save(self, key_hash: str, user_id: str) -> ApiKeyOwner:
        owner = ApiKeyOwner(user_id=user_id, api_key_hash=key_hash, created_at=datetime.now(timezone.utc))
        self.keys[key_hash] = owner
        return owner

    async def find_owner(self, key_hash: str) -> Optional[ApiKeyOwner]:
        if key_hash in self.revoked:
            return None
        return self.keys.get(key_hash)

    async def revoke(self, key_hash: str) -> bool:
        if key_hash not in self.keys or key_hash in self.revoked:
            return False
        self.revoked.add(key_hash)
        return True


# =============================================================================
# Recording function invoker
# =============================================================================

class RecordingFunctionInvoker(FunctionInvoker):
    """FunctionInvoker that records every call and never touches the network."""

    def __init__(self):
        super().__init__(base_url='http://functions.test', max_retries=0, retry_delay_seconds=0)
        self.calls: list[tuple[str, dict]] = []
        self.failures: dict[str, str] = {}

    def fail(self, function_name: str, error: str = 'HTTP 500') -> None:
        self.failures[function_name] = error

    def succeed(self, function_name: str) -> None:
        self.failures.pop(function_name, None)

    def called(self, function_name: str) -> list[dict]:
        return [payload for name, payload in self.calls if name == function_name]

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    async def invoke_with_retry(self, function_name, payload, max_retries=None, retry_delay=None):
        self.calls.append((function_name, copy.deepcopy(payload)))
        if function_name in self.failures:
            return InvocationResult(
                success=False,
                error=f"Failed after 1 attempts: {self.failures[function_name]}",
                attempts=1,
            )
        return InvocationResult(success=True, data={'success': True}, attempts=1)


# =============================================================================
# Record factory
# =============================================================================

def build_record(
    analysis_id: str = 'analysis-1',
    user_id: str = 'user-1',
    ticker: str = 'AAPL',
    status: AnalysisStatus = AnalysisStatus.RUNNING,
    steps: Optional[dict[AgentId, StepStatus]] = None,
    error_types: Optional[dict[AgentId, str]] = None,
    completed_phases: tuple[Phase, ...] = (),
    rebalance_request_id: Optional[str] = None,
    full_analysis: Optional[dict] = None,
    agent_insights: Optional[dict] = None,
    metadata: Optional[dict] = None,
    updated_seconds_ago: float = 0,
    decision: str = Decision.PENDING.value,
    confidence: float = 0,
) -> AnalysisRecord:
    """AnalysisRecord with the given step statuses layered over a fresh workflow."""
    blob = create_initial_full_analysis()
    blob.update(full_analysis or {})
    workflow = WorkflowSteps.from_list(blob['workflowSteps'])

    from analysisflow.src.workflow.agents import WORKFLOW_PHASES
    for phase in completed_phases:
        for agent in WORKFLOW_PHASES[phase].all_step_agents():
            workflow.update_agent_status(phase, agent, StepStatus.COMPLETED)
    for agent, step_status in (steps or {}).items():
        workflow.update_agent_status(
            phase_of(agent), agent, step_status,
            error_type=(error_types or {}).get(agent),
        )
    blob['workflowSteps'] = workflow.to_list()

    updated = datetime.now(timezone.utc) - timedelta(seconds=updated_seconds_ago)
    return AnalysisRecord(
        id=analysis_id,
        user_id=user_id,
        ticker=ticker,
        analysis_status=status,
        decision=decision,
        confidence=confidence,
        agent_insights=agent_insights or {},
        full_analysis=blob,
        rebalance_request_id=rebalance_request_id,
        metadata=metadata or {},
        created_at=updated,
        updated_at=updated,
    )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def repository():
    return InMemoryAnalysisRepository()


@pytest.fixture
def functions():
    return RecordingFunctionInvoker()


@pytest.fixture
def api_key_store():
    return InMemoryApiKeyStore()


@pytest.fixture
def message_bus():
    return MessageBus()


@pytest.fixture
def settings():
    return CoordinatorSettings(
        default_debate_rounds=2,
        min_analysis_successes=3,
        agent_max_retries=0,
        invocation_base_url='http://functions.test',
        reactivate_after_seconds=210,
        active_window_days=7,
    )


@pytest.fixture
def agent_invoker(repository, functions, message_bus):
    return AgentInvoker(repository, functions, message_bus=message_bus, default_max_retries=0)


@pytest.fixture
def services(repository, agent_invoker, settings):
    return WorkflowServices(repository=repository, invoker=agent_invoker, settings=settings)


@pytest.fixture
def coordinator(repository, agent_invoker, settings, message_bus):
    return AnalysisCoordinator(repository, agent_invoker, settings, message_bus=message_bus)


@pytest.fixture
def api_settings():
    return ApiSettings(
        ai_provider='openai',
        ai_api_key='sk-test',
        ai_model='gpt-4o',
        research_debate_rounds=2,
    )


@pytest.fixture
def make_analysis(repository):
    """Store a record built with build_record() and return it."""
    def _make(**kwargs) -> AnalysisRecord:
        return repository.add(build_record(**kwargs))
    return _make


@pytest.fixture
def make_run(api_settings):
    def _make(record: AnalysisRecord, context=None) -> AnalysisRun:
        return AnalysisRun(record.id, record.ticker, record.user_id, api_settings, context)
    return _make


@pytest.fixture
def temp_config_dir():
    """Temporary config directory with database.yaml and coordinator.yaml."""
    with tempfile.TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir)

        (config_path / "database.yaml").write_text("""
database:
  connection:
    host: localhost
    port: 5432
    database: test_db
    user: test_user
    password: ${TEST_DB_PASSWORD:-secret}
  retry:
    max_retries: 2
""")

        (config_path / "coordinator.yaml").write_text("""
coordinator:
  workflow:
    default_debate_rounds: 3
    min_analysis_successes: 2
    agent_max_retries: 1
  invocation:
    base_url: ${TEST_FUNCTIONS_URL:-http://localhost:9999/functions/v1/}
    timeout_seconds: 10
    max_retries: 1
    retry_delay_seconds: 0.5
    service_token: test-token
  staleness:
    reactivate_after_seconds: 120
    active_window_days: 3
  context:
    default_preferences:
      profit_target: 30
      stop_loss: 5
      near_limit_threshold: 15
      near_position_threshold: 15
""")

        yield config_path


@pytest.fixture(autouse=True)
def _reset_config_loader():
    reset_config_loader()
    yield
    reset_config_loader()
