"""
Phase Managers - Starting phases, advancing between them and portfolio routing.

Phases other than research start at their first incomplete agent so a
resumed run picks up where it stopped. Research is started through the
debate loop: each round invokes only the Bull researcher, and the Bear
researcher is chained by Bull itself.
"""

import logging
from typing import Optional

from ..workflow.agents import AgentId, Phase, PHASE_ORDER, WORKFLOW_PHASES
from ..workflow.models import AnalysisStatus, ContextType, DebateRound, StepStatus, WorkflowSteps, now_iso
from .context import build_analysis_context, persist_analysis_context, resolve_context
from .errors import PhaseNotReadyError
from .health import check_phase_health
from .recovery import mark_analysis_as_error_with_rebalance_check
from .responses import CoordinatorResponse, error_response, success_response
from .services import AnalysisRun, WorkflowServices

logger = logging.getLogger(__name__)


def get_next_agent_in_phase(phase: Phase, completed_agent: AgentId) -> Optional[AgentId]:
    """
    Agent configured after completed_agent, or None if it was the last one.

    Aggregators (Research Manager, Risk Manager) are not members of the
    ordered list and also return None.
    """
    agents = WORKFLOW_PHASES[phase].agents
    if completed_agent not in agents:
        return None
    index = agents.index(completed_agent)
    if index + 1 >= len(agents):
        return None
    return agents[index + 1]


async def _with_stored_context(services: WorkflowServices, run: AnalysisRun) -> AnalysisRun:
    if run.context is not None:
        return run
    record = await services.repository.get_analysis(run.analysis_id)
    if record is None:
        return run
    return run.with_context(resolve_context(record))


# =============================================================================
# Research debate
# =============================================================================

async def run_research_debate_round(services: WorkflowServices, run: AnalysisRun, round_number: int) -> bool:
    """
    Claim the Bull researcher step, record the round number and start Bull.

    Round bookkeeping is only written once the claim is won.

    Returns:
        True if Bull was invoked, False if its step was already claimed
    """
    if not await services.invoker.claim_step(run, AgentId.BULL_RESEARCHER, Phase.RESEARCH):
        logger.info(f"Debate round {round_number} for {run.analysis_id} not started: Bull already claimed")
        return False

    def mutate(full_analysis: dict) -> bool:
        full_analysis['currentDebateCount'] = round_number
        rounds = full_analysis.setdefault('debateRounds', [])
        if not any(isinstance(r, dict) and r.get('round') == round_number for r in rounds):
            rounds.append(DebateRound(round=round_number).to_dict())
        full_analysis['lastUpdated'] = now_iso()
        return True

    await services.repository.update_full_analysis(run.analysis_id, mutate)

    run = await _with_stored_context(services, run)
    max_rounds = services.max_debate_rounds(run.api_settings)
    logger.info(f"Starting debate round {round_number}/{max_rounds} for {run.ticker} ({run.analysis_id})")

    return await services.invoker.invoke_agent_with_retry(
        run,
        AgentId.BULL_RESEARCHER,
        Phase.RESEARCH,
        run.context,
        context_extra={'round': round_number, 'maxRounds': max_rounds},
        claimed=True,
    )


# =============================================================================
# Phase initialization
# =============================================================================

async def initialize_phase(services: WorkflowServices, run: AnalysisRun, phase: Phase) -> CoordinatorResponse:
    """Start a phase from its first incomplete agent."""
    repository = services.repository
    record = await repository.get_analysis(run.analysis_id)
    if record is None:
        return error_response('Analysis not found', status=404)

    if phase is Phase.ANALYSIS:
        if record.analysis_status is AnalysisStatus.CANCELLED:
            return error_response('Cannot start cancelled analysis')

        await repository.update_status(
            run.analysis_id,
            AnalysisStatus.RUNNING,
            allowed_from=(AnalysisStatus.PENDING, AnalysisStatus.ERROR),
        )

        seed = resolve_context(record, run.context)
        context = await build_analysis_context(
            run.user_id, run.ticker, run.api_settings, seed,
            services.settings, services.broker_client,
        )
        await persist_analysis_context(repository, run.analysis_id, context)
        run = run.with_context(context)

        agent = record.workflow_steps.first_incomplete(Phase.ANALYSIS)
        if agent is None:
            logger.info(f"Analysis phase of {run.analysis_id} already complete, advancing")
            try:
                await move_to_next_phase(services, run, Phase.ANALYSIS)
            except PhaseNotReadyError as e:
                return error_response(str(e), phase=phase.value)
            return success_response('Analysis phase already complete - advanced to next phase', phase=phase.value)

        await services.invoker.invoke_agent_with_retry(run, agent, Phase.ANALYSIS, context)
        return success_response('Analysis phase initiated', phase=phase.value, agent=agent.display_name)

    if run.context is None:
        run = run.with_context(resolve_context(record))

    if phase is Phase.RESEARCH:
        if not await run_research_debate_round(services, run, 1):
            return success_response('Research phase already started', phase=phase.value, duplicate=True)
        return success_response('Research phase initiated - debate round 1', phase=phase.value, round=1)

    if phase is Phase.TRADING:
        await services.invoker.invoke_agent_with_retry(run, AgentId.TRADER, Phase.TRADING, run.context)
        return success_response('Trading phase initiated', phase=phase.value, agent=AgentId.TRADER.display_name)

    if phase is Phase.RISK:
        agent = record.workflow_steps.first_incomplete(Phase.RISK) or AgentId.RISK_MANAGER
        await services.invoker.invoke_agent_with_retry(run, agent, Phase.RISK, run.context)
        return success_response('Risk phase initiated', phase=phase.value, agent=agent.display_name)

    return await route_portfolio(services, run)


# =============================================================================
# Phase transitions
# =============================================================================

def _phase_started(steps: WorkflowSteps, phase: Phase) -> bool:
    """True when any step of the phase has left pending."""
    return any(
        (steps.status_of(phase, agent) or StepStatus.PENDING) is not StepStatus.PENDING
        for agent in WORKFLOW_PHASES[phase].all_step_agents()
    )


def _first_started_phase_after(steps: WorkflowSteps, phase: Phase) -> Optional[Phase]:
    for later in PHASE_ORDER[PHASE_ORDER.index(phase) + 1:]:
        if _phase_started(steps, later):
            return later
    return None


async def _reset_phase_steps(services: WorkflowServices, run: AnalysisRun, phase: Phase) -> None:
    for agent in WORKFLOW_PHASES[phase].all_step_agents():
        await services.repository.update_workflow_step(run.analysis_id, phase, agent, StepStatus.PENDING)


async def move_to_next_phase(
    services: WorkflowServices,
    run: AnalysisRun,
    current_phase: Phase,
) -> Optional[CoordinatorResponse]:
    """
    Advance from a healthy phase to the next one.

    Raises:
        PhaseNotReadyError: current_phase failed its health re-check, or an
            already completed next phase cannot be skipped

    Returns:
        Response of the phase start, or None when current_phase is the last
    """
    repository = services.repository
    health = await check_phase_health(
        repository, run.analysis_id, current_phase, services.min_analysis_successes,
    )
    if not health.can_proceed:
        raise PhaseNotReadyError(current_phase.value, health.reason)

    next_phase = WORKFLOW_PHASES[current_phase].next_phase
    if next_phase is None:
        logger.info(f"No phase after {current_phase.value} for {run.analysis_id}")
        return None

    record = await repository.get_analysis(run.analysis_id)
    if record is None:
        raise PhaseNotReadyError(next_phase.value, 'Analysis not found')
    run = run if run.context is not None else run.with_context(resolve_context(record))
    steps = record.workflow_steps

    if steps.all_completed(next_phase):
        is_rebalance = record.is_rebalance or (run.context is not None and run.context.is_rebalance)
        if is_rebalance:
            started = _first_started_phase_after(steps, next_phase)
            if started is not None:
                logger.info(
                    f"Stale {current_phase.value} completion for {run.analysis_id}: "
                    f"{started.value} phase already started"
                )
                return success_response(
                    f"{next_phase.value} phase already processed",
                    phase=next_phase.value,
                    duplicate=True,
                )
            logger.warning(
                f"{next_phase.value} phase of rebalance analysis {run.analysis_id} is already "
                f"marked complete - re-initializing it"
            )
            await _reset_phase_steps(services, run, next_phase)
            return await initialize_phase(services, run, next_phase)

        next_health = await check_phase_health(
            repository, run.analysis_id, next_phase, services.min_analysis_successes,
        )
        if not next_health.can_proceed:
            raise PhaseNotReadyError(next_phase.value, next_health.reason)
        logger.info(f"{next_phase.value} phase already complete for {run.analysis_id}, skipping")
        return await move_to_next_phase(services, run, next_phase)

    if next_phase is Phase.RESEARCH and _phase_started(steps, next_phase):
        logger.info(f"Research phase of {run.analysis_id} already started, ignoring {current_phase.value} completion")
        return success_response('Research phase already started', phase=next_phase.value, duplicate=True)

    logger.info(f"Moving {run.analysis_id} from {current_phase.value} to {next_phase.value}")

    if next_phase is Phase.RESEARCH:
        return await initialize_phase(services, run, next_phase)
    if next_phase is Phase.PORTFOLIO:
        return await route_portfolio(services, run)

    agent = steps.first_incomplete(next_phase, WORKFLOW_PHASES[next_phase].all_step_agents())
    if agent is None:
        return await move_to_next_phase(services, run, next_phase)

    await services.invoker.invoke_agent_with_retry(run, agent, next_phase, run.context)
    return success_response(
        f"Moved to {next_phase.value} phase",
        phase=next_phase.value,
        agent=agent.display_name,
    )


# =============================================================================
# Fallback protocol
# =============================================================================

async def handle_failed_invocation_fallback(
    services: WorkflowServices,
    run: AnalysisRun,
    phase: Phase,
    completed_agent: AgentId,
    failed_to_invoke: Optional[AgentId],
) -> CoordinatorResponse:
    """
    Invoke the agent a worker failed to chain to.

    The expected next agent always comes from the phase layout; a mismatched
    failedToInvoke is logged and ignored. If the direct invocation fails the
    agent after it is tried, and if that fails too the analysis is marked
    Error with a retryable flag.
    """
    expected = get_next_agent_in_phase(phase, completed_agent)
    if expected is None:
        return error_response(
            f"No next agent found after {completed_agent.display_name} in {phase.value} phase",
        )

    if failed_to_invoke is not None and failed_to_invoke is not expected:
        logger.warning(
            f"Fallback for {run.analysis_id}: reported failed agent {failed_to_invoke.display_name} "
            f"does not match expected {expected.display_name}, using expected"
        )

    run = await _with_stored_context(services, run)
    invoker = services.invoker

    result = await invoker.invoke_agent_awaited(run, expected, phase, run.context, force=True)
    if result.success:
        return success_response(
            f"Fallback invocation of {expected.display_name} succeeded",
            fallbackSuccess=True,
            targetAgent=expected.display_name,
        )

    logger.error(f"Fallback invocation of {expected.display_name} failed: {result.error}")
    await services.repository.update_workflow_step(
        run.analysis_id, phase, expected, StepStatus.ERROR, error_type='other',
    )

    skip_to = get_next_agent_in_phase(phase, expected)
    if skip_to is not None:
        skip_result = await invoker.invoke_agent_awaited(run, skip_to, phase, run.context)
        if skip_result.success:
            return success_response(
                f"Skipped {expected.display_name}, continuing with {skip_to.display_name}",
                skippedAgent=expected.display_name,
                continueWithAgent=skip_to.display_name,
            )
        logger.error(f"Skip-ahead invocation of {skip_to.display_name} failed: {skip_result.error}")

    details = {
        'retryable': True,
        'failedAgent': expected.display_name,
        'failedPhase': phase.value,
    }
    await mark_analysis_as_error_with_rebalance_check(
        services, run, f"{expected.display_name} invocation failed after retries",
        error_details=details,
    )
    return error_response(
        f"Failed to invoke {expected.display_name} after fallback attempts",
        status=500,
        analysisId=run.analysis_id,
        **details,
    )


# =============================================================================
# Portfolio routing
# =============================================================================

async def route_portfolio(services: WorkflowServices, run: AnalysisRun) -> CoordinatorResponse:
    """
    Finish the workflow according to who started it.

    Rebalance members are completed here and handed back to the batch;
    individual analyses start the Analysis Portfolio Manager.
    """
    repository = services.repository
    record = await repository.get_analysis(run.analysis_id)
    if record is None:
        return error_response('Analysis not found', status=404)

    run = run if run.context is not None else run.with_context(resolve_context(record))
    context = run.context
    rebalance_request_id = record.rebalance_request_id or (context.rebalance_request_id if context else None)
    wants_rebalance = bool(record.rebalance_request_id) or (context is not None and context.type is ContextType.REBALANCE)

    if wants_rebalance and not rebalance_request_id:
        logger.warning(f"Rebalance context for {run.analysis_id} has no rebalanceRequestId - routing as individual")
        wants_rebalance = False

    if wants_rebalance:
        await repository.update_status(
            run.analysis_id,
            AnalysisStatus.COMPLETED,
            full_analysis_patch={'status': 'completed', 'completedAt': now_iso()},
        )
        await repository.append_message(
            run.analysis_id,
            'Analysis Coordinator',
            'Analysis complete - handed back to rebalance coordinator',
            'info',
        )

        notification = await services.invoker.notify_rebalance(run, rebalance_request_id, success=True)
        if not notification.success:
            reason = f"Failed to notify rebalance coordinator: {notification.error}"
            await mark_analysis_as_error_with_rebalance_check(services, run, reason)
            return error_response(reason, status=500, rebalanceRequestId=rebalance_request_id)

        return success_response(
            'Portfolio routing completed - rebalance-coordinator notified',
            rebalanceRequestId=rebalance_request_id,
        )

    status = record.workflow_steps.status_of(Phase.PORTFOLIO, AgentId.PORTFOLIO_MANAGER)
    if status not in (None, StepStatus.PENDING):
        return success_response(
            'Analysis Portfolio Manager already invoked',
            stepStatus=status.value,
        )

    invoked = await services.invoker.invoke_agent_with_retry(
        run, AgentId.PORTFOLIO_MANAGER, Phase.PORTFOLIO, context,
    )
    if not invoked:
        return success_response('Analysis Portfolio Manager already invoked')
    return success_response('Portfolio routing completed - Analysis Portfolio Manager started')
