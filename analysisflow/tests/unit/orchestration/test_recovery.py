"""
Unit tests for error marking and recovery helpers.

Tests cover:
- The single Error funnel and its rebalance notification
- Recovery strategy table
- Phase recovery and resume
"""

import pytest

from analysisflow.src.orchestration.recovery import (
    RecoveryAction,
    attempt_phase_recovery,
    determine_recovery_strategy,
    mark_analysis_as_error_with_rebalance_check,
    resume_from_phase,
)
from analysisflow.src.workflow.agents import AgentId, Phase, WORKFLOW_PHASES
from analysisflow.src.workflow.models import AnalysisStatus, StepStatus

ANALYSTS = WORKFLOW_PHASES[Phase.ANALYSIS].agents


# =============================================================================
# Error funnel
# =============================================================================

class TestMarkAnalysisAsError:
    """Tests for mark_analysis_as_error_with_rebalance_check()."""

    @pytest.mark.asyncio
    async def test_marks_error_and_keeps_decision(self, services, repository, functions, make_analysis, make_run):
        record = make_analysis(analysis_id='a1', decision='BUY', confidence=0.8)

        result = await mark_analysis_as_error_with_rebalance_check(services, make_run(record), 'Trader failed')

        stored = repository.raw('a1')
        assert result.marked
        assert stored.analysis_status is AnalysisStatus.ERROR
        assert stored.decision == 'BUY'
        assert stored.confidence == 0.8
        assert stored.full_analysis['errorReason'] == 'Trader failed'
        assert functions.calls == []

    @pytest.mark.asyncio
    async def test_overrides_decision(self, services, repository, make_analysis, make_run):
        record = make_analysis(analysis_id='a1', decision='BUY', confidence=0.8)

        await mark_analysis_as_error_with_rebalance_check(
            services, make_run(record), 'boom', decision='PENDING', confidence=0,
        )

        assert repository.raw('a1').decision == 'PENDING'
        assert repository.raw('a1').confidence == 0

    @pytest.mark.asyncio
    async def test_error_details_stored(self, services, repository, make_analysis, make_run):
        record = make_analysis(analysis_id='a1')

        await mark_analysis_as_error_with_rebalance_check(
            services, make_run(record), 'boom', error_details={'retryable': True},
        )

        assert repository.raw('a1').full_analysis['errorDetails'] == {'retryable': True}

    @pytest.mark.asyncio
    async def test_notifies_rebalance(self, services, functions, make_analysis, make_run):
        record = make_analysis(analysis_id='a1', rebalance_request_id='rb-1')

        result = await mark_analysis_as_error_with_rebalance_check(services, make_run(record), 'boom')

        assert result.rebalance_notified
        payload = functions.called('rebalance-coordinator')[0]
        assert payload['action'] == 'analysis-completed'
        assert payload['rebalanceRequestId'] == 'rb-1'
        assert payload['success'] is False
        assert payload['error'] == 'boom'

    @pytest.mark.asyncio
    async def test_failed_notification_reported(self, services, functions, make_analysis, make_run):
        record = make_analysis(analysis_id='a1', rebalance_request_id='rb-1')
        functions.fail('rebalance-coordinator')

        result = await mark_analysis_as_error_with_rebalance_check(services, make_run(record), 'boom')

        assert result.marked
        assert not result.rebalance_notified
        assert 'HTTP 500' in result.error

    @pytest.mark.asyncio
    async def test_cancelled_analysis_not_marked(self, services, repository, make_analysis, make_run):
        record = make_analysis(analysis_id='a1', status=AnalysisStatus.CANCELLED)

        result = await mark_analysis_as_error_with_rebalance_check(services, make_run(record), 'boom')

        assert not result.marked
        assert repository.raw('a1').analysis_status is AnalysisStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_missing_analysis(self, services, make_run, api_settings):
        from analysisflow.src.orchestration.services import AnalysisRun

        run = AnalysisRun('missing', 'AAPL', 'user-1', api_settings)
        result = await mark_analysis_as_error_with_rebalance_check(services, run, 'boom')

        assert not result.marked
        assert result.error == 'Analysis not found'


# =============================================================================
# Recovery strategy
# =============================================================================

class TestDetermineRecoveryStrategy:
    """Tests for determine_recovery_strategy()."""

    def test_api_key_aborts(self):
        assert determine_recovery_strategy(AgentId.NEWS_ANALYST, 'api_key').action is RecoveryAction.ABORT

    def test_rate_limit_backoff(self):
        first = determine_recovery_strategy(AgentId.NEWS_ANALYST, 'rate_limit', attempt_count=1)
        assert first.action is RecoveryAction.RETRY
        assert first.wait_seconds == 5
        assert determine_recovery_strategy(AgentId.NEWS_ANALYST, 'rate_limit', 3).action is RecoveryAction.SKIP

    def test_critical_agent_retry_then_abort(self):
        assert determine_recovery_strategy(AgentId.TRADER, 'ai_error', 1).action is RecoveryAction.RETRY
        assert determine_recovery_strategy(AgentId.TRADER, 'ai_error', 2).action is RecoveryAction.ABORT
        assert determine_recovery_strategy(AgentId.TRADER, 'data_fetch', 1).action is RecoveryAction.ABORT

    def test_regular_agent_retry_then_skip(self):
        retry = determine_recovery_strategy(AgentId.MARKET_ANALYST, 'ai_error', 1)
        assert retry.action is RecoveryAction.RETRY
        assert retry.target_agent is AgentId.MARKET_ANALYST
        assert determine_recovery_strategy(AgentId.MARKET_ANALYST, 'ai_error', 2).action is RecoveryAction.SKIP

    def test_to_dict(self):
        data = determine_recovery_strategy(AgentId.TRADER, 'ai_error').to_dict()
        assert data['action'] == 'retry'
        assert data['target_agent'] == 'agent-trader'


# =============================================================================
# Phase recovery / resume
# =============================================================================

class TestAttemptPhaseRecovery:
    """Tests for attempt_phase_recovery()."""

    @pytest.mark.asyncio
    async def test_retries_failed_agents(self, services, agent_invoker, functions, make_analysis, make_run):
        record = make_analysis(
            analysis_id='a1',
            steps={
                ANALYSTS[0]: StepStatus.ERROR,
                ANALYSTS[1]: StepStatus.ERROR,
                ANALYSTS[2]: StepStatus.ERROR,
                ANALYSTS[3]: StepStatus.COMPLETED,
                ANALYSTS[4]: StepStatus.COMPLETED,
            },
            error_types={a: 'ai_error' for a in ANALYSTS[:3]},
        )

        result = await attempt_phase_recovery(services, make_run(record), Phase.ANALYSIS)
        await agent_invoker.drain()

        assert result.success
        assert "Partial recovery" in result.message
        assert set(functions.names()) == {a.function_id for a in ANALYSTS[:3]}

    @pytest.mark.asyncio
    async def test_api_key_error_aborts(self, services, agent_invoker, functions, make_analysis, make_run):
        record = make_analysis(
            analysis_id='a1',
            steps={a: StepStatus.ERROR for a in ANALYSTS},
            error_types={a: 'api_key' for a in ANALYSTS},
        )

        result = await attempt_phase_recovery(services, make_run(record), Phase.ANALYSIS)
        await agent_invoker.drain()

        assert not result.success
        assert "Recovery aborted" in result.message
        assert functions.calls == []

    @pytest.mark.asyncio
    async def test_healthy_phase_with_failures_not_advanced(self, services, agent_invoker, functions, make_analysis, make_run):
        record = make_analysis(
            analysis_id='a1',
            steps={a: StepStatus.COMPLETED for a in ANALYSTS[:3]} | {a: StepStatus.ERROR for a in ANALYSTS[3:]},
        )

        result = await attempt_phase_recovery(services, make_run(record), Phase.ANALYSIS)

        assert not result.success
        assert "2 failed agents" in result.message
        assert functions.calls == []

    @pytest.mark.asyncio
    async def test_healthy_phase_advances(self, services, agent_invoker, functions, repository, make_analysis, make_run):
        record = make_analysis(analysis_id='a1', completed_phases=(Phase.ANALYSIS,))

        result = await attempt_phase_recovery(services, make_run(record), Phase.ANALYSIS)
        await agent_invoker.drain()

        assert result.success
        assert functions.names() == [AgentId.BULL_RESEARCHER.function_id]
        assert repository.raw('a1').current_debate_count == 1

    @pytest.mark.asyncio
    async def test_missing_analysis(self, services, api_settings):
        from analysisflow.src.orchestration.services import AnalysisRun

        result = await attempt_phase_recovery(
            services, AnalysisRun('missing', 'AAPL', 'user-1', api_settings), Phase.ANALYSIS,
        )
        assert not result.success


class TestResumeFromPhase:
    """Tests for resume_from_phase()."""

    @pytest.mark.asyncio
    async def test_resumes_at_first_pending(self, services, agent_invoker, functions, make_analysis, make_run):
        record = make_analysis(
            analysis_id='a1',
            completed_phases=(Phase.ANALYSIS, Phase.RESEARCH, Phase.TRADING),
            steps={AgentId.RISKY_ANALYST: StepStatus.COMPLETED},
        )

        result = await resume_from_phase(services, make_run(record), Phase.RISK)
        await agent_invoker.drain()

        assert result.success
        assert functions.names() == [AgentId.SAFE_ANALYST.function_id]
        payload = functions.called(AgentId.SAFE_ANALYST.function_id)[0]
        assert payload['phase'] == 'risk'
        assert payload['analysisContext']['phase'] == 'risk'

    @pytest.mark.asyncio
    async def test_research_resume_carries_round(self, services, agent_invoker, functions, make_analysis, make_run):
        record = make_analysis(
            analysis_id='a1',
            completed_phases=(Phase.ANALYSIS,),
            full_analysis={'currentDebateCount': 2},
        )

        await resume_from_phase(services, make_run(record), Phase.RESEARCH)
        await agent_invoker.drain()

        payload = functions.called(AgentId.BULL_RESEARCHER.function_id)[0]
        assert payload['analysisContext']['round'] == 2
        assert payload['analysisContext']['maxRounds'] == 2

    @pytest.mark.asyncio
    async def test_running_agent_not_duplicated(self, services, agent_invoker, functions, make_analysis, make_run):
        record = make_analysis(
            analysis_id='a1',
            completed_phases=(Phase.ANALYSIS, Phase.RESEARCH),
            steps={AgentId.TRADER: StepStatus.RUNNING},
        )

        result = await resume_from_phase(services, make_run(record), Phase.TRADING)
        await agent_invoker.drain()

        # nothing pending: the first agent is forced
        assert result.success
        assert functions.names() == [AgentId.TRADER.function_id]

    @pytest.mark.asyncio
    async def test_persists_context(self, services, agent_invoker, repository, make_analysis, make_run):
        record = make_analysis(analysis_id='a1')

        await resume_from_phase(services, make_run(record), Phase.ANALYSIS)
        await agent_invoker.drain()

        context = repository.raw('a1').full_analysis['analysisContext']
        assert context['preferences']['profit_target'] == 25
        assert context['position'] == {
            'stock_in_holdings': False,
            'entry_price': 0.0,
            'current_price': 0.0,
            'shares': 0.0,
            'market_value': 0.0,
            'unrealized_pl': 0.0,
            'unrealized_pl_percent': 0.0,
            'days_held': None,
        }
