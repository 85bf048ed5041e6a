"""
Analysis Coordinator - Entry point for every coordinator request.

Dispatches on `action` (start-analysis, reactivate, agent-completion) or,
for older callers, on the shape of the body:
- no phase/agent, analysisId without ticker -> retry a failed analysis
- no phase/agent otherwise                  -> start a new analysis
- phase (+ agent)                           -> agent callback / phase start

The coordinator holds no per-analysis state; everything is reloaded from the
repository on each request. Invocation failures published by the AgentInvoker
are fed back through the same dispatcher as service callbacks.
"""

import logging
import re
from dataclasses import dataclass
from datetime import timedelta, timezone
from typing import Any, Optional, TYPE_CHECKING

from ..data.repository import AnalysisRepository
from ..workflow.agents import (
    AgentId,
    CRITICAL_AGENTS,
    PHASE_ORDER,
    Phase,
    WORKFLOW_PHASES,
    resolve_agent,
    resolve_phase,
)
from ..workflow.models import (
    AnalysisContext,
    AnalysisRecord,
    AnalysisStatus,
    ApiSettings,
    CompletionType,
    StepStatus,
    create_initial_full_analysis,
    now_iso,
    utc_now,
)
from .cancellation import check_and_handle_cancellation
from .completion import handle_agent_completion, handle_debate_progression
from .context import build_analysis_context, persist_analysis_context, resolve_context
from .invocation import AgentInvoker
from .message_bus import Message, MessageBus, MessageTopic
from .phase_manager import get_next_agent_in_phase, initialize_phase, route_portfolio
from .recovery import mark_analysis_as_error_with_rebalance_check, resume_from_phase
from .responses import CoordinatorResponse, error_response, success_response
from .services import AnalysisRun, WorkflowServices

if TYPE_CHECKING:
    from ..utils.config import CoordinatorSettings
    from .context import BrokerPortfolioClient

logger = logging.getLogger(__name__)


TICKER_PATTERN = re.compile(r'^[A-Z0-9.\-/]+$')
CHECK_DEBATE_ROUNDS = 'check-debate-rounds'
USER_ID_KEYS = ('id', 'user_id', 'userId', 'uuid', 'value')


@dataclass
class RequestAuth:
    """Caller identity resolved by the API layer."""
    user_id: Optional[str] = None
    is_service: bool = False


def normalize_user_id(value: Any) -> Optional[str]:
    """Accept a string, a number, or an object carrying the id under a common key."""
    if value is None or value == '' or isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, dict):
        for key in USER_ID_KEYS:
            candidate = value.get(key)
            if isinstance(candidate, str) and candidate.strip():
                return candidate
    return None


def _metadata_from_context(context: Optional[AnalysisContext]) -> dict:
    if context is None:
        return {}
    metadata = dict(context.metadata) if isinstance(context.metadata, dict) else {}
    if isinstance(context.near_limit_analysis, bool):
        metadata['near_limit_analysis'] = context.near_limit_analysis
    if context.triggered_by:
        metadata['triggered_by'] = context.triggered_by
    triggered_at = context.triggered_at or (
        metadata.get('triggered_at') if isinstance(metadata.get('triggered_at'), str) else None
    )
    if triggered_at:
        metadata['triggered_at'] = triggered_at
    elif context.near_limit_analysis:
        metadata['triggered_at'] = now_iso()
    return metadata


class AnalysisCoordinator:
    """
    Request dispatcher for the analysis workflow.

    Usage:
        coordinator = AnalysisCoordinator(repository, invoker, settings, bus)
        await coordinator.start()
        response = await coordinator.handle_request(body, RequestAuth(user_id, False))
    """

    SUBSCRIBER_ID = 'analysis_coordinator'

    def __init__(
        self,
        repository: AnalysisRepository,
        invoker: AgentInvoker,
        settings: 'CoordinatorSettings',
        message_bus: Optional[MessageBus] = None,
        broker_client: Optional['BrokerPortfolioClient'] = None,
    ):
        self.repository = repository
        self.invoker = invoker
        self.settings = settings
        self.message_bus = message_bus
        self.services = WorkflowServices(
            repository=repository,
            invoker=invoker,
            settings=settings,
            broker_client=broker_client,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self.message_bus is not None:
            await self.message_bus.subscribe(
                self.SUBSCRIBER_ID,
                MessageTopic.INVOCATION_FAILURES,
                self._on_invocation_failure,
            )
        logger.info("AnalysisCoordinator started")

    async def stop(self) -> None:
        if self.message_bus is not None:
            await self.message_bus.unsubscribe(self.SUBSCRIBER_ID)
        logger.info("AnalysisCoordinator stopped")

    async def _on_invocation_failure(self, message: Message) -> None:
        body = dict(message.payload)
        body['action'] = 'agent-completion'
        response = await self.handle_request(body, RequestAuth(is_service=True))
        logger.info(
            f"Invocation failure of {body.get('agent')} for {body.get('analysisId')} handled: "
            f"{response.message}"
        )

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def handle_request(self, body: dict, auth: RequestAuth) -> CoordinatorResponse:
        """
        Handle one coordinator request body.

        Args:
            body: Parsed JSON body
            auth: Caller identity (service callers must send userId)

        Returns:
            CoordinatorResponse; unexpected exceptions become a 500 response
        """
        try:
            return await self._dispatch(body or {}, auth)
        except Exception as e:
            logger.error(f"Coordinator request failed: {e}", exc_info=True)
            return error_response('Internal server error', status=500, details=str(e))

    async def _dispatch(self, body: dict, auth: RequestAuth) -> CoordinatorResponse:
        if auth.is_service:
            user_id = normalize_user_id(body.get('userId'))
            if not user_id:
                return error_response('Service requests must include userId')
        else:
            if not auth.user_id:
                return error_response('Authentication required', status=401)
            provided = normalize_user_id(body.get('userId'))
            if provided and provided != auth.user_id:
                return error_response('User mismatch', status=403)
            user_id = auth.user_id

        api_settings = await self._resolve_api_settings(body.get('apiSettings'), user_id)
        if api_settings is None:
            return error_response('No settings found for user', status=404)

        raw_context = body.get('analysisContext')
        context = AnalysisContext.from_dict(raw_context) if isinstance(raw_context, dict) else None

        action = body.get('action')
        analysis_id = body.get('analysisId')
        ticker = body.get('ticker')

        if action:
            if action == 'start-analysis':
                if not ticker:
                    return error_response('Missing required parameters for start-analysis')
                return await self.start_analysis(user_id, ticker, api_settings, context)
            if action == 'reactivate':
                if not analysis_id:
                    return error_response('Missing required parameters for reactivate action')
                return await self.reactivate(
                    analysis_id, user_id, api_settings, force=body.get('forceReactivate') is True,
                )
            if action == 'agent-completion':
                if not (analysis_id and ticker and body.get('phase') and body.get('agent')):
                    return error_response('Missing required parameters for agent-completion')
                return await self._handle_callback(body, user_id, api_settings, context)
            return error_response(f"Unknown action: {action}")

        if not body.get('phase') and not body.get('agent'):
            if analysis_id and not ticker:
                return await self.retry(analysis_id, user_id, api_settings)
            if not ticker:
                return error_response('Missing required parameters for new analysis')
            return await self.start_analysis(user_id, ticker, api_settings, context)

        if not (analysis_id and ticker and body.get('phase')):
            return error_response('Missing required parameters for agent callback')
        return await self._handle_callback(body, user_id, api_settings, context)

    async def _resolve_api_settings(self, passed: Any, user_id: str) -> Optional[ApiSettings]:
        if isinstance(passed, dict) and passed:
            return ApiSettings.from_dict(passed)
        row = await self.repository.fetch_api_settings(user_id)
        if not row:
            logger.warning(f"No api settings found for user {user_id}")
            return None
        return ApiSettings.from_dict(row)

    async def _handle_callback(
        self,
        body: dict,
        user_id: str,
        api_settings: ApiSettings,
        context: Optional[AnalysisContext],
    ) -> CoordinatorResponse:
        phase = resolve_phase(body.get('phase'))
        if phase is None:
            return error_response(f"Unknown phase: {body.get('phase')}")

        run = AnalysisRun(
            analysis_id=str(body['analysisId']),
            ticker=str(body['ticker']),
            user_id=user_id,
            api_settings=api_settings,
            context=context,
        )

        cancelled = await check_and_handle_cancellation(self.services, run)
        if cancelled is not None:
            return cancelled

        record = await self.repository.get_analysis(run.analysis_id)
        if record is None:
            return error_response('Analysis not found - it may have been deleted or completed')
        run = run.with_context(resolve_context(record, context))

        agent_name = body.get('agent')
        if phase is Phase.RESEARCH and agent_name == CHECK_DEBATE_ROUNDS:
            return await handle_debate_progression(self.services, run)

        if agent_name:
            agent = resolve_agent(agent_name)
            if agent is None:
                return error_response(f"Unknown agent: {agent_name}")
            failed_to_invoke = resolve_agent(body.get('failedToInvoke'))
            if body.get('failedToInvoke') and failed_to_invoke is None:
                logger.warning(f"Unknown failedToInvoke agent {body.get('failedToInvoke')!r}")
            return await handle_agent_completion(
                self.services,
                run,
                phase,
                agent,
                error=body.get('error'),
                error_type=body.get('errorType'),
                completion_type=CompletionType.parse(body.get('completionType')),
                failed_to_invoke=failed_to_invoke,
            )

        if phase is Phase.PORTFOLIO:
            if context is not None and context.source == 'risk-completion':
                return await route_portfolio(self.services, run)
            return success_response(
                'Analysis Portfolio Manager completed - analysis workflow finished',
                analysisComplete=True,
            )

        return await initialize_phase(self.services, run, phase)

    # -------------------------------------------------------------------------
    # Start analysis
    # -------------------------------------------------------------------------

    def _within_active_window(self, record: AnalysisRecord) -> bool:
        if record.created_at is None:
            return True
        created = record.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return utc_now() - created <= timedelta(days=self.settings.active_window_days)

    async def start_analysis(
        self,
        user_id: str,
        ticker: str,
        api_settings: ApiSettings,
        context: Optional[AnalysisContext] = None,
    ) -> CoordinatorResponse:
        """Create (or reuse) an analysis record and start its analysis phase."""
        ticker = str(ticker).strip()
        if not TICKER_PATTERN.match(ticker):
            return error_response('Invalid ticker symbol format')

        metadata = _metadata_from_context(context)
        active = [
            r for r in await self.repository.find_active_analyses(user_id, ticker)
            if self._within_active_window(r)
        ]

        if active:
            record = active[0]
            logger.info(f"Reusing active analysis {record.id} for {ticker}")

            fields: dict[str, Any] = {}
            if context is not None and context.rebalance_request_id and not record.rebalance_request_id:
                fields['rebalance_request_id'] = context.rebalance_request_id
            if context is not None:
                fields['analysis_context'] = {**(record.analysis_context or {}), **context.to_dict()}
                if metadata:
                    fields['metadata'] = {**(record.metadata or {}), **metadata}
            if fields:
                await self.repository.update_fields(record.id, **fields)

            for orphan in active[1:]:
                logger.warning(f"Superseding duplicate analysis {orphan.id} for {ticker}")
                await mark_analysis_as_error_with_rebalance_check(
                    self.services,
                    AnalysisRun(orphan.id, ticker, user_id, api_settings, orphan.stored_context),
                    'Analysis superseded by newer request',
                )
        else:
            record = await self.repository.create_analysis(
                user_id,
                ticker,
                create_initial_full_analysis(),
                rebalance_request_id=context.rebalance_request_id if context is not None else None,
                analysis_context=context.to_dict() if context is not None else None,
                metadata=metadata or None,
            )

        run = AnalysisRun(record.id, ticker, user_id, api_settings, context)
        try:
            response = await initialize_phase(self.services, run, Phase.ANALYSIS)
        except Exception as e:
            logger.error(f"Failed to start workflow for {record.id}: {e}", exc_info=True)
            await mark_analysis_as_error_with_rebalance_check(
                self.services, run, f"Failed to start coordinator workflow: {e}",
            )
            return error_response(f"Failed to start analysis workflow: {e}", status=500, analysisId=record.id)

        if response.is_error:
            await mark_analysis_as_error_with_rebalance_check(
                self.services, run, f"Failed to start coordinator workflow: {response.message}",
            )
            return error_response(
                f"Failed to start analysis workflow: {response.message}",
                status=500,
                analysisId=record.id,
            )

        return success_response(
            'Analysis workflow started - will complete in multiple phases',
            analysisId=record.id,
            ticker=ticker,
            workflow='chunked',
        )

    # -------------------------------------------------------------------------
    # Reactivate
    # -------------------------------------------------------------------------

    async def reactivate(
        self,
        analysis_id: str,
        user_id: str,
        api_settings: ApiSettings,
        force: bool = False,
    ) -> CoordinatorResponse:
        """Resume a Running analysis that stopped making progress."""
        record = await self.repository.get_analysis_for_user(analysis_id, user_id)
        if record is None:
            return error_response('Analysis not found', status=404)
        if record.analysis_status is not AnalysisStatus.RUNNING:
            return error_response(
                f"Analysis is not running (status: {record.analysis_status.value})",
            )

        last_update = record.updated_at or record.created_at
        seconds_since_update: Optional[float] = None
        if last_update is not None:
            if last_update.tzinfo is None:
                last_update = last_update.replace(tzinfo=timezone.utc)
            seconds_since_update = (utc_now() - last_update).total_seconds()

        if not force and seconds_since_update is not None:
            if seconds_since_update < self.settings.reactivate_after_seconds:
                return error_response(
                    f"Analysis was updated {round(seconds_since_update)} seconds ago and is not stale. "
                    f"Use forceReactivate=true to override."
                )

        target = _find_reactivation_target(record)
        if target is None:
            if record.workflow_steps.every_step_finished():
                await self.repository.update_status(analysis_id, AnalysisStatus.COMPLETED)
                return success_response('Analysis appears complete, status updated', analysisId=analysis_id)
            return error_response('Unable to determine next agent to run from workflow state')

        phase, agent, reason = target
        logger.info(f"Reactivating {analysis_id} at {agent.display_name} ({phase.value}): {reason}")

        run = AnalysisRun(analysis_id, record.ticker, user_id, api_settings)
        context = await build_analysis_context(
            user_id, record.ticker, api_settings, resolve_context(record),
            self.settings, self.services.broker_client,
        )
        await persist_analysis_context(self.repository, analysis_id, context)
        run = run.with_context(context)

        attempts = int((record.metadata or {}).get('reactivation_attempts') or 0) + 1
        await self.repository.update_fields(
            analysis_id,
            metadata={**(record.metadata or {}), 'reactivation_attempts': attempts, 'last_reactivated_at': now_iso()},
        )

        if phase is Phase.PORTFOLIO:
            response = await route_portfolio(self.services, run)
            if response.is_error:
                return response
        else:
            await self.repository.update_workflow_step(analysis_id, phase, agent, StepStatus.PENDING)
            await self.repository.touch(analysis_id)
            await self.invoker.invoke_agent_with_retry(
                run, agent, phase, context,
                context_extra=self._debate_context(record, phase, agent, api_settings),
            )

        return success_response(
            f"Analysis reactivated, continuing from {agent.display_name}",
            analysisId=analysis_id,
            phase=phase.value,
            agent=agent.function_id,
            agentName=agent.display_name,
            ticker=record.ticker,
            reactivationInfo={
                'reason': reason,
                'lastUpdate': last_update.isoformat() if last_update else None,
                'timeSinceUpdate': (
                    f"{round(seconds_since_update / 60)} minutes" if seconds_since_update is not None else None
                ),
            },
        )

    def _debate_context(
        self,
        record: AnalysisRecord,
        phase: Phase,
        agent: AgentId,
        api_settings: ApiSettings,
    ) -> Optional[dict]:
        if phase is not Phase.RESEARCH or agent not in (AgentId.BULL_RESEARCHER, AgentId.BEAR_RESEARCHER):
            return None
        return {
            'round': max(record.current_debate_count, 1),
            'maxRounds': self.services.max_debate_rounds(api_settings),
        }

    # -------------------------------------------------------------------------
    # Retry
    # -------------------------------------------------------------------------

    async def retry(self, analysis_id: str, user_id: str, api_settings: ApiSettings) -> CoordinatorResponse:
        """Re-invoke the failed step of an analysis in Error."""
        record = await self.repository.get_analysis_for_user(analysis_id, user_id)
        if record is None:
            return error_response('Analysis not found', status=404)
        if record.analysis_status is AnalysisStatus.CANCELLED:
            return error_response('Cannot retry a cancelled analysis')
        if record.analysis_status is not AnalysisStatus.ERROR:
            return error_response(
                f"Analysis is not in error state (status: {record.analysis_status.value})",
            )

        run = AnalysisRun(analysis_id, record.ticker, user_id, api_settings)
        await self.repository.update_fields(
            analysis_id,
            metadata={**(record.metadata or {}), 'max_reactivations_reached': False, 'reactivation_attempts': 0},
        )

        steps = record.workflow_steps
        failed: list[tuple[Phase, AgentId]] = []
        for phase in PHASE_ORDER:
            for agent in steps.agents_with_status(phase, StepStatus.ERROR, StepStatus.RUNNING):
                failed.append((phase, agent))

        target = next((f for f in failed if f[1] in CRITICAL_AGENTS), None) or (failed[0] if failed else None)

        if target is not None and target[1] is AgentId.PORTFOLIO_MANAGER and record.is_rebalance:
            await self.invoker.notify_rebalance(
                run, record.rebalance_request_id, success=False,
                error='Analysis failed - cannot retry portfolio manager for rebalance',
            )
            return error_response('Cannot retry portfolio manager for rebalance analysis')

        for phase, agent in failed:
            await self.repository.update_workflow_step(analysis_id, phase, agent, StepStatus.PENDING)
        if failed:
            keys = []
            for _, agent in failed:
                keys.extend([agent.insight_key, agent.error_key])
            await self.repository.remove_agent_insights(analysis_id, keys)

        if target is None:
            return await self._resume_without_failed_agent(run, record)

        phase, agent = target
        await self.repository.update_status(
            analysis_id, AnalysisStatus.RUNNING, allowed_from=(AnalysisStatus.ERROR,),
        )
        context = await build_analysis_context(
            user_id, record.ticker, api_settings, resolve_context(record),
            self.settings, self.services.broker_client,
        )
        await persist_analysis_context(self.repository, analysis_id, context)
        run = run.with_context(context)

        await self.invoker.invoke_agent_with_retry(
            run, agent, phase, context,
            context_extra=self._debate_context(record, phase, agent, api_settings),
            payload_extra={'retryCount': 1, 'isRetryFromCoordinator': True},
        )
        logger.info(f"Retrying {analysis_id} from {agent.display_name} ({phase.value})")
        return success_response(
            f"Analysis retry started from {agent.display_name}",
            analysisId=analysis_id,
            phase=phase.value,
            agent=agent.function_id,
        )

    async def _resume_without_failed_agent(self, run: AnalysisRun, record: AnalysisRecord) -> CoordinatorResponse:
        steps = record.workflow_steps
        resume_phase = next(
            (p for p in PHASE_ORDER if steps.agents_with_status(p, StepStatus.PENDING, StepStatus.ERROR)),
            None,
        )

        if resume_phase is not None:
            await self.repository.update_status(
                run.analysis_id, AnalysisStatus.RUNNING, allowed_from=(AnalysisStatus.ERROR,),
            )
            if resume_phase is Phase.PORTFOLIO:
                response = await route_portfolio(self.services, run)
                if response.is_error:
                    return response
            else:
                result = await resume_from_phase(self.services, run, resume_phase)
                if not result.success:
                    return error_response(result.message)
            return success_response(
                f"Analysis retry started - resuming from {resume_phase.value} phase",
                analysisId=run.analysis_id,
                phase=resume_phase.value,
            )

        if steps.every_step_finished():
            await self.repository.update_status(run.analysis_id, AnalysisStatus.COMPLETED)
            return success_response('Analysis already completed - no retry required', analysisId=run.analysis_id)

        return error_response('No failed agents found to retry')


def _find_reactivation_target(record: AnalysisRecord) -> Optional[tuple[Phase, AgentId, str]]:
    """Pick the agent a stale analysis should continue from."""
    steps = record.workflow_steps

    for phase in PHASE_ORDER:
        for agent in WORKFLOW_PHASES[phase].all_step_agents():
            if steps.status_of(phase, agent) is StepStatus.RUNNING and not record.has_insight(agent):
                return phase, agent, 'Agent was running but produced no output'

    for phase in PHASE_ORDER:
        for agent in WORKFLOW_PHASES[phase].all_step_agents():
            if (steps.status_of(phase, agent) or StepStatus.PENDING) is StepStatus.PENDING:
                return phase, agent, 'First pending agent'

    last_completed: Optional[tuple[Phase, AgentId]] = None
    for phase in PHASE_ORDER:
        for agent in WORKFLOW_PHASES[phase].all_step_agents():
            if steps.status_of(phase, agent) is StepStatus.COMPLETED:
                last_completed = (phase, agent)
    if last_completed is None:
        return None

    phase, agent = last_completed
    config = WORKFLOW_PHASES[phase]
    next_agent = get_next_agent_in_phase(phase, agent)
    if next_agent is not None:
        return phase, next_agent, f"Next agent after {agent.display_name}"
    if config.final_agent is not None and steps.status_of(phase, config.final_agent) is not StepStatus.COMPLETED:
        return phase, config.final_agent, f"Final agent of {phase.value} phase"
    if config.next_phase is not None:
        first = WORKFLOW_PHASES[config.next_phase].all_step_agents()[0]
        if steps.status_of(config.next_phase, first) is not StepStatus.COMPLETED:
            return config.next_phase, first, f"First agent of {config.next_phase.value} phase"
    return None
