"""
Completion Handlers - The routing state machine for agent callbacks.

Every agent reports back through handle_agent_completion(). The callback is
routed in this order:
1. Error-state guard (only a successful Research Manager may revive an
   analysis that is already in Error)
2. Error branch when the agent reported a failure
3. Agent-specific success rules (Bear researcher, Risk Manager, Analysis
   Portfolio Manager)
4. completionType routing for everything else

Agents mark their own step completed before calling back; the coordinator
only writes step status for errors and for agents it invokes itself.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from ..workflow.agents import AgentId, Phase, WORKFLOW_PHASES
from ..workflow.models import (
    AnalysisStatus,
    CompletionType,
    Decision,
    DebateRound,
    StepStatus,
    WorkflowSteps,
    now_iso,
)
from .context import persist_analysis_context, resolve_context
from .errors import PhaseNotReadyError
from .health import (
    categorize_agent_error,
    check_phase_health,
    evaluate_post_error_phase_health,
    should_continue_after_error,
)
from .invocation import EXECUTE_TRADE
from .phase_manager import (
    get_next_agent_in_phase,
    handle_failed_invocation_fallback,
    move_to_next_phase,
    route_portfolio,
    run_research_debate_round,
)
from .recovery import mark_analysis_as_error_with_rebalance_check
from .responses import CoordinatorResponse, error_response, success_response
from .services import AnalysisRun, WorkflowServices

logger = logging.getLogger(__name__)


async def handle_agent_completion(
    services: WorkflowServices,
    run: AnalysisRun,
    phase: Phase,
    agent: AgentId,
    error: Optional[str] = None,
    error_type: Optional[str] = None,
    completion_type: Optional[CompletionType] = None,
    failed_to_invoke: Optional[AgentId] = None,
) -> CoordinatorResponse:
    """
    Route one agent callback.

    Args:
        services: Shared collaborators
        run: Analysis the callback belongs to (context already reconstructed)
        phase: Phase the agent ran in
        agent: Reporting agent
        error: Failure message, None on success
        error_type: rate_limit, api_key, ai_error, data_fetch or other
        completion_type: Routing signal sent by the agent
        failed_to_invoke: Agent the worker failed to chain to (fallback)

    Returns:
        CoordinatorResponse for the callback
    """
    repository = services.repository
    record = await repository.get_analysis(run.analysis_id)
    if record is None:
        return error_response('Analysis not found', status=404)

    if record.analysis_status is AnalysisStatus.ERROR:
        if agent is AgentId.RESEARCH_MANAGER and not error:
            recovered = await repository.update_status(
                run.analysis_id,
                AnalysisStatus.RUNNING,
                allowed_from=(AnalysisStatus.ERROR,),
                full_analysis_patch={
                    'recoveredFromError': True,
                    'recoveryAgent': AgentId.RESEARCH_MANAGER.display_name,
                    'recoveryTime': now_iso(),
                },
            )
            if recovered:
                logger.info(f"Research Manager recovered analysis {run.analysis_id} from error state")
        else:
            logger.info(
                f"Analysis {run.analysis_id} is in error state - ignoring {agent.display_name} completion"
            )
            return success_response(
                f"Analysis already in error state - {agent.display_name} completion ignored",
                analysisId=run.analysis_id,
                status='error',
                agent=agent.function_id,
                phase=phase.value,
            )

    if error:
        handled = await _handle_agent_error(
            services, run, phase, agent, error, error_type, completion_type,
        )
        if handled is not None:
            return handled
        # last agent of the phase failed but the phase may still be healthy
        completion_type = CompletionType.LAST_IN_PHASE
    else:
        if agent is AgentId.RISK_MANAGER:
            return await handle_risk_completion(services, run)
        if agent is AgentId.BEAR_RESEARCHER:
            return await handle_debate_progression(services, run)
        if agent is AgentId.PORTFOLIO_MANAGER:
            return await _handle_portfolio_manager_completion(services, run)

    return await _route_by_completion_type(services, run, phase, agent, completion_type, failed_to_invoke)


# =============================================================================
# Error branch
# =============================================================================

async def _handle_agent_error(
    services: WorkflowServices,
    run: AnalysisRun,
    phase: Phase,
    agent: AgentId,
    error: str,
    error_type: Optional[str],
    completion_type: Optional[CompletionType],
) -> Optional[CoordinatorResponse]:
    """
    Handle a reported agent failure.

    Returns None when the failing agent was the last of its phase and the
    callback should continue through last_in_phase routing.
    """
    repository = services.repository
    logger.warning(
        f"{agent.display_name} reported error in {phase.value} phase for {run.analysis_id}: "
        f"{error} (type: {error_type or 'unknown'})"
    )

    await repository.record_agent_error(run.analysis_id, agent.insight_key, error, error_type or 'other')

    if completion_type is CompletionType.INVOCATION_FAILED:
        await repository.append_message(
            run.analysis_id,
            agent.display_name,
            f"Invocation failed for {agent.display_name} in {phase.value} phase: {error}",
            'warning',
        )
        return success_response(
            f"Invocation failure recorded for {agent.display_name}",
            invocationFailed=True,
            agent=agent.function_id,
            phase=phase.value,
        )

    await repository.update_workflow_step(run.analysis_id, phase, agent, StepStatus.ERROR, error_type=error_type)

    if phase is Phase.RESEARCH:
        return await _handle_research_error(services, run, agent)

    health = await check_phase_health(repository, run.analysis_id, phase, services.min_analysis_successes)
    verdict = evaluate_post_error_phase_health(phase, agent, health, services.min_analysis_successes)
    if verdict.abort:
        reason = verdict.reason or health.reason or 'phase health failure'
        await mark_analysis_as_error_with_rebalance_check(
            services, run, f"Phase {phase.value} cannot recover after {agent.display_name} error: {reason}",
        )
        return error_response(
            f"Phase {phase.value} cannot proceed after {agent.display_name} error",
            status=500,
            details={'phaseHealth': health.to_dict(), 'reason': reason},
        )

    is_last = completion_type is CompletionType.LAST_IN_PHASE
    decision = await should_continue_after_error(
        repository, run.analysis_id, phase, agent, error_type,
        is_last_in_phase=is_last,
        min_analysis_successes=services.min_analysis_successes,
    )

    if not decision.should_continue:
        if categorize_agent_error(agent, error_type).should_stop_workflow:
            await mark_analysis_as_error_with_rebalance_check(
                services, run, f"{agent.display_name} failed: {error}",
                decision=Decision.PENDING.value, confidence=0,
            )
            return error_response(f"{agent.display_name} failed critically - {decision.reason}", status=500)
        if is_last:
            return success_response(
                f"Phase {phase.value} stopped due to errors",
                error=True,
                phaseCompleted=False,
                reason=decision.reason,
            )

    next_agent = get_next_agent_in_phase(phase, agent)
    if next_agent is not None:
        await services.invoker.invoke_agent_with_retry(run, next_agent, phase, run.context)
        return success_response(
            f"Continued to {next_agent.display_name} after {agent.display_name} error",
            continuedAfterError=True,
            nextAgent=next_agent.function_id,
        )

    return None


async def _handle_research_error(
    services: WorkflowServices,
    run: AnalysisRun,
    agent: AgentId,
) -> CoordinatorResponse:
    repository = services.repository
    record = await repository.get_analysis(run.analysis_id)
    completed_rounds = record.complete_debate_rounds if record else 0

    if agent is AgentId.RESEARCH_MANAGER:
        if completed_rounds == 0:
            await mark_analysis_as_error_with_rebalance_check(
                services, run, 'Research phase failed - Research Manager error and no debate content',
                decision=Decision.PENDING.value, confidence=0,
            )
            return error_response(
                'Research phase failed - Research Manager failed with no debate content',
                status=500,
            )
        logger.info(
            f"Research Manager failed for {run.analysis_id} - continuing with "
            f"{completed_rounds} debate round(s)"
        )
        return await handle_phase_completion(services, run, Phase.RESEARCH, agent)

    if completed_rounds == 0:
        await mark_analysis_as_error_with_rebalance_check(
            services, run,
            f"Research phase failed - no debate rounds completed due to {agent.display_name} failure",
            decision=Decision.PENDING.value, confidence=0,
        )
        return error_response(
            f"Research phase failed - {agent.display_name} failed and no debate rounds were completed",
            status=500,
        )

    await repository.update_status(
        run.analysis_id,
        AnalysisStatus.RUNNING,
        allowed_from=(AnalysisStatus.ERROR,),
        full_analysis_patch={
            'partialDebateRecovery': True,
            'completedDebateRounds': completed_rounds,
            'recoveryTime': now_iso(),
        },
    )
    await services.invoker.invoke_agent_with_retry(
        run, AgentId.RESEARCH_MANAGER, Phase.RESEARCH, run.context,
    )
    return success_response(
        f"{agent.display_name} failed but proceeding with {completed_rounds} debate rounds to Research Manager",
        analysisId=run.analysis_id,
        phase=Phase.RESEARCH.value,
        decision='skip_to_research_manager',
        continueWithPartialDebate=True,
    )


# =============================================================================
# completionType routing
# =============================================================================

async def _route_by_completion_type(
    services: WorkflowServices,
    run: AnalysisRun,
    phase: Phase,
    agent: AgentId,
    completion_type: Optional[CompletionType],
    failed_to_invoke: Optional[AgentId],
) -> CoordinatorResponse:
    logger.info(
        f"Routing {agent.display_name} completion: type={completion_type.value if completion_type else 'default'}, "
        f"phase={phase.value}"
    )

    if completion_type is CompletionType.INVOCATION_FAILED:
        return success_response(
            f"Invocation failure noted for {agent.display_name}",
            invocationFailed=True,
            agent=agent.function_id,
            phase=phase.value,
        )

    if completion_type is CompletionType.AGENT_ERROR:
        return success_response(
            f"Agent {agent.display_name} error handled",
            error=True,
            completionType=completion_type.value,
        )

    if completion_type is CompletionType.FALLBACK_INVOCATION_FAILED:
        if failed_to_invoke is None:
            return error_response('Fallback scenario detected but no failed agent specified')
        return await handle_failed_invocation_fallback(services, run, phase, agent, failed_to_invoke)

    if completion_type is CompletionType.LAST_IN_PHASE:
        health = await check_phase_health(
            services.repository, run.analysis_id, phase, services.min_analysis_successes,
        )
        if health.can_proceed:
            return await handle_phase_completion(services, run, phase, agent)

        logger.warning(f"Phase {phase.value} of {run.analysis_id} cannot proceed: {health.reason}")
        if phase is Phase.RESEARCH:
            record = await services.repository.get_analysis(run.analysis_id)
            should_error = record is None or not record.has_debate_content
        else:
            should_error = phase is Phase.TRADING or any(
                a is not AgentId.RESEARCH_MANAGER for a in health.critical_failures
            )

        if should_error:
            await mark_analysis_as_error_with_rebalance_check(
                services, run, f"Phase {phase.value} failed: {health.reason}",
            )

        return success_response(
            f"Phase {phase.value} cannot proceed due to failures",
            error=True,
            phaseCompleted=False,
            phaseHealth=health.to_dict(),
            reason=health.reason,
        )

    logger.warning(
        f"{agent.display_name} completed in {phase.value} without a phase-advancing completion type"
    )
    return success_response(
        f"Agent {agent.display_name} completed without explicit completion type",
        warning='No phase transition triggered - completionType not specified',
        agent=agent.function_id,
        phase=phase.value,
        completionType=completion_type.value if completion_type else 'undefined',
    )


async def handle_phase_completion(
    services: WorkflowServices,
    run: AnalysisRun,
    phase: Phase,
    agent: AgentId,
) -> CoordinatorResponse:
    """
    Advance a phase whose agents have resolved.

    Health is checked again here since two near-simultaneous callbacks can
    both reach this point.
    """
    repository = services.repository

    if agent is AgentId.RESEARCH_MANAGER and phase is Phase.RESEARCH:
        record = await repository.get_analysis(run.analysis_id)
        if record is None or not record.has_debate_content:
            await mark_analysis_as_error_with_rebalance_check(
                services, run, 'Research phase failed - no debate content despite Research Manager completion',
            )
            return error_response('Research phase cannot proceed without debate content', status=500)

    health = await check_phase_health(repository, run.analysis_id, phase, services.min_analysis_successes)
    if not health.can_proceed:
        if health.critical_failures:
            await mark_analysis_as_error_with_rebalance_check(
                services, run, f"Phase {phase.value} cannot proceed: {health.reason}",
            )
            return error_response(
                f"Phase {phase.value} cannot proceed: {health.reason}",
                status=500,
                details={'phaseHealth': health.to_dict()},
            )
        return success_response(
            f"Phase {phase.value} completed with warnings",
            warning=health.reason,
            phaseHealth=health.to_dict(),
        )

    config = WORKFLOW_PHASES[phase]
    if config.final_agent is not None:
        record = await repository.get_analysis(run.analysis_id)
        final_status = record.workflow_steps.status_of(phase, config.final_agent) if record else None
        if final_status is not StepStatus.COMPLETED:
            await services.invoker.invoke_agent_with_retry(run, config.final_agent, phase, run.context)
            return success_response(
                f"Phase {phase.value} completed - started final agent {config.final_agent.display_name}",
            )

    if config.next_phase is not None:
        try:
            await move_to_next_phase(services, run, phase)
        except PhaseNotReadyError as e:
            logger.warning(f"Phase transition for {run.analysis_id} refused: {e}")
            return error_response(str(e), phase=phase.value)
        return success_response(f"Phase {phase.value} completed - moved to phase {config.next_phase.value}")

    return success_response('All phases completed - analysis finished')


# =============================================================================
# Agent-specific success rules
# =============================================================================

async def handle_debate_progression(services: WorkflowServices, run: AnalysisRun) -> CoordinatorResponse:
    """
    Start the next debate round or hand over to the Research Manager.

    The decision is taken inside one locked full_analysis update that also
    re-arms Bull and Bear, so a duplicate Bear callback finds the Bear step
    no longer completed and does nothing.
    """
    max_rounds = services.max_debate_rounds(run.api_settings)
    outcome: dict = {}

    def mutate(full_analysis: dict) -> bool:
        steps = WorkflowSteps.from_list(full_analysis.get('workflowSteps'))
        if steps.status_of(Phase.RESEARCH, AgentId.BEAR_RESEARCHER) is not StepStatus.COMPLETED:
            outcome['duplicate'] = True
            return False

        current = int(full_analysis.get('currentDebateCount') or 1)
        outcome['round'] = current
        if current >= max_rounds:
            return False

        next_round = current + 1
        steps.update_agent_status(Phase.RESEARCH, AgentId.BULL_RESEARCHER, StepStatus.PENDING)
        steps.update_agent_status(Phase.RESEARCH, AgentId.BEAR_RESEARCHER, StepStatus.PENDING)
        full_analysis['workflowSteps'] = steps.to_list()
        full_analysis['currentDebateCount'] = next_round
        rounds = full_analysis.setdefault('debateRounds', [])
        if not any(isinstance(r, dict) and r.get('round') == next_round for r in rounds):
            rounds.append(DebateRound(round=next_round).to_dict())
        full_analysis['lastUpdated'] = now_iso()
        outcome['next_round'] = next_round
        return True

    await services.repository.update_full_analysis(run.analysis_id, mutate)

    if outcome.get('duplicate'):
        logger.info(f"Duplicate Bear researcher completion for {run.analysis_id} ignored")
        return success_response('Bear researcher completion already processed', duplicate=True)

    current = outcome.get('round', 1)
    message = f"Bear researcher completed - round {current}/{max_rounds}"

    next_round = outcome.get('next_round')
    if next_round is not None:
        started = await run_research_debate_round(services, run, next_round)
        return success_response(message, nextRound=next_round, bullStarted=started)

    started = await services.invoker.invoke_agent_with_retry(
        run, AgentId.RESEARCH_MANAGER, Phase.RESEARCH, run.context,
    )
    return success_response(message, researchManagerStarted=started)


async def handle_risk_completion(services: WorkflowServices, run: AnalysisRun) -> CoordinatorResponse:
    """Attach the Risk Manager decision to the context and route to portfolio."""
    repository = services.repository
    record = await repository.get_analysis(run.analysis_id)
    if record is None:
        return error_response('Analysis not found', status=404)

    pm_status = record.workflow_steps.status_of(Phase.PORTFOLIO, AgentId.PORTFOLIO_MANAGER)
    if record.analysis_status is AnalysisStatus.COMPLETED or pm_status is StepStatus.COMPLETED:
        logger.info(f"Risk completion for {run.analysis_id} already routed")
        return success_response('Risk Manager completion already processed', duplicate=True)

    insight = record.agent_insights.get(AgentId.RISK_MANAGER.insight_key) or {}
    context = resolve_context(record, run.context)
    context.risk_manager_decision = {
        'decision': record.decision,
        'confidence': record.confidence,
        'assessment': insight.get('finalAssessment') if isinstance(insight, dict) else None,
    }
    context.source = 'risk-completion'
    await persist_analysis_context(repository, run.analysis_id, context)

    return await route_portfolio(services, run.with_context(context))


@dataclass
class AutoTradeResult:
    enabled: bool
    orders_executed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'enabled': self.enabled,
            'orders_executed': self.orders_executed,
            'errors': self.errors,
        }


async def check_and_execute_auto_trades(services: WorkflowServices, run: AnalysisRun) -> AutoTradeResult:
    """
    Approve the analysis' pending trade orders when the user enabled auto-execution.

    Failures are reported in the result and never block completion.
    """
    if not run.api_settings.auto_execute_trades:
        return AutoTradeResult(enabled=False)

    orders = await services.repository.fetch_pending_trade_orders(run.user_id, run.analysis_id)
    if not orders:
        logger.info(f"No pending trade orders to auto-execute for {run.analysis_id}")
        return AutoTradeResult(enabled=True)

    functions = services.invoker.functions
    results = await asyncio.gather(*[
        functions.invoke_with_retry(EXECUTE_TRADE, {
            'tradeActionId': order['id'],
            'action': 'approve',
            'userId': run.user_id,
            'isServerCall': True,
        })
        for order in orders
    ])

    result = AutoTradeResult(enabled=True)
    for order, outcome in zip(orders, results):
        if outcome.success:
            result.orders_executed += 1
        else:
            result.errors.append(f"Order {order['id']}: {outcome.error}")

    logger.info(
        f"Auto-executed {result.orders_executed}/{len(orders)} orders for {run.analysis_id}"
        + (f" ({len(result.errors)} failed)" if result.errors else "")
    )
    return result


async def _handle_portfolio_manager_completion(services: WorkflowServices, run: AnalysisRun) -> CoordinatorResponse:
    repository = services.repository
    record = await repository.get_analysis(run.analysis_id)
    if record is None:
        return error_response('Analysis not found', status=404)

    context = run.context
    rebalance_request_id = record.rebalance_request_id or (
        context.rebalance_request_id if context is not None and context.is_rebalance else None
    )
    completion_patch = {'status': 'completed', 'completedAt': now_iso()}

    if rebalance_request_id:
        logger.error(
            f"Analysis Portfolio Manager completed for rebalance analysis {run.analysis_id} - "
            f"it should have been routed to the rebalance coordinator"
        )
        await repository.update_status(
            run.analysis_id, AnalysisStatus.COMPLETED, full_analysis_patch=completion_patch,
        )
        notification = await services.invoker.notify_rebalance(run, rebalance_request_id, success=True)
        if not notification.success:
            reason = f"Failed to notify rebalance coordinator: {notification.error}"
            await mark_analysis_as_error_with_rebalance_check(services, run, reason)
            return error_response(reason, status=500, rebalanceRequestId=rebalance_request_id)
        return success_response(
            'Analysis Portfolio Manager completed for rebalance analysis - rebalance-coordinator notified',
            warning='Analysis Portfolio Manager should not run for rebalance analyses',
            rebalanceRequestId=rebalance_request_id,
        )

    auto_trade = await check_and_execute_auto_trades(services, run)
    await repository.update_status(
        run.analysis_id, AnalysisStatus.COMPLETED, full_analysis_patch=completion_patch,
    )
    logger.info(f"Analysis {run.analysis_id} ({run.ticker}) completed")
    return success_response(
        'Analysis Portfolio Manager completed - analysis workflow finished',
        analysisId=run.analysis_id,
        autoTrade=auto_trade.to_dict(),
    )
