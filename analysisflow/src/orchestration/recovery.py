"""
Error and Recovery Utilities.

mark_analysis_as_error_with_rebalance_check() is the only place an analysis
moves to Error. It keeps a previously known decision/confidence unless the
caller overrides them, and tells the parent rebalance batch about the
failure when the analysis belongs to one.

The recovery helpers (strategy table, phase recovery, resume) are used by
the retry path and by operators re-driving a stuck run.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, TYPE_CHECKING

from ..workflow.agents import AgentId, CRITICAL_AGENTS, Phase, WORKFLOW_PHASES
from ..workflow.models import AnalysisStatus, Decision, ErrorType, StepStatus, now_iso
from .context import build_analysis_context, persist_analysis_context, resolve_context
from .health import categorize_agent_error, check_phase_health
from .services import AnalysisRun, WorkflowServices

if TYPE_CHECKING:
    from ..workflow.models import AnalysisContext

logger = logging.getLogger(__name__)


# =============================================================================
# Error funnel
# =============================================================================

@dataclass
class ErrorMarkResult:
    """Outcome of an Error transition; callers check both flags."""
    marked: bool
    rebalance_notified: bool = False
    error: Optional[str] = None


async def mark_analysis_as_error_with_rebalance_check(
    services: WorkflowServices,
    run: AnalysisRun,
    reason: str,
    decision: Optional[str] = None,
    confidence: Optional[float] = None,
    error_details: Optional[dict] = None,
) -> ErrorMarkResult:
    """
    Move an analysis to Error and notify its rebalance batch.

    Args:
        services: Shared collaborators
        run: Analysis being failed
        reason: Stored as full_analysis.errorReason and sent to the batch
        decision: Explicit decision override (default: keep existing)
        confidence: Explicit confidence override (default: keep existing)
        error_details: Extra structured details stored with the reason

    Returns:
        ErrorMarkResult with marked (status written) and rebalance_notified
    """
    repository = services.repository
    record = await repository.get_analysis(run.analysis_id)
    if record is None:
        logger.error(f"Cannot mark missing analysis {run.analysis_id} as error: {reason}")
        return ErrorMarkResult(marked=False, error='Analysis not found')

    final_decision = decision or record.decision or Decision.PENDING.value
    if confidence is not None:
        final_confidence = confidence
    else:
        final_confidence = record.confidence or 0

    patch = {'errorReason': reason, 'errorAt': now_iso()}
    if error_details:
        patch['errorDetails'] = error_details

    marked = await repository.update_status(
        run.analysis_id,
        AnalysisStatus.ERROR,
        decision=final_decision,
        confidence=final_confidence,
        full_analysis_patch=patch,
    )
    if marked:
        logger.error(f"Analysis {run.analysis_id} ({run.ticker}) marked as error: {reason}")
    else:
        logger.warning(f"Analysis {run.analysis_id} was not marked as error (cancelled or missing): {reason}")

    result = ErrorMarkResult(marked=marked)

    if record.rebalance_request_id:
        notification = await services.invoker.notify_rebalance(
            run, record.rebalance_request_id, success=False, error=reason,
        )
        result.rebalance_notified = notification.success
        if not notification.success:
            result.error = notification.error
            logger.error(
                f"Rebalance {record.rebalance_request_id} was not told about failed analysis "
                f"{run.analysis_id}: {notification.error}"
            )

    return result


# =============================================================================
# Recovery strategy
# =============================================================================

class RecoveryAction(Enum):
    RETRY = "retry"
    SKIP = "skip"
    ABORT = "abort"


@dataclass
class RecoveryStrategy:
    action: RecoveryAction
    reason: str
    target_agent: Optional[AgentId] = None
    wait_seconds: float = 0

    def to_dict(self) -> dict:
        return {
            'action': self.action.value,
            'reason': self.reason,
            'target_agent': self.target_agent.value if self.target_agent else None,
            'wait_seconds': self.wait_seconds,
        }


def determine_recovery_strategy(
    agent: AgentId,
    error_type: Optional[str] = None,
    attempt_count: int = 1,
) -> RecoveryStrategy:
    """Pick retry/skip/abort for one failed agent."""
    kind = ErrorType.parse(error_type)
    category = categorize_agent_error(agent, kind)

    if kind is ErrorType.API_KEY:
        return RecoveryStrategy(RecoveryAction.ABORT, 'API key error - user intervention required')

    if kind is ErrorType.RATE_LIMIT:
        if attempt_count < 3:
            return RecoveryStrategy(
                RecoveryAction.RETRY,
                'Rate limit - retrying with backoff',
                target_agent=agent,
                wait_seconds=min(attempt_count * 5, 15),
            )
        return RecoveryStrategy(RecoveryAction.SKIP, 'Rate limit persists - skipping agent')

    if agent in CRITICAL_AGENTS:
        if attempt_count < 2 and category.is_retryable:
            return RecoveryStrategy(
                RecoveryAction.RETRY,
                f"Critical agent {agent.display_name} failed - retrying",
                target_agent=agent,
                wait_seconds=3,
            )
        return RecoveryStrategy(RecoveryAction.ABORT, f"Critical agent {agent.display_name} failed after retry")

    if attempt_count < 2 and category.is_retryable:
        return RecoveryStrategy(
            RecoveryAction.RETRY,
            f"{agent.display_name} failed - retrying once",
            target_agent=agent,
            wait_seconds=2,
        )
    return RecoveryStrategy(RecoveryAction.SKIP, f"{agent.display_name} failed - continuing without it")


# =============================================================================
# Phase recovery / resume
# =============================================================================

@dataclass
class RecoveryResult:
    success: bool
    message: str


async def _refresh_context(services: WorkflowServices, run: AnalysisRun) -> Optional['AnalysisContext']:
    record = await services.repository.get_analysis(run.analysis_id)
    if record is None:
        return None
    seed = resolve_context(record, run.context)
    context = await build_analysis_context(
        run.user_id, run.ticker, run.api_settings, seed,
        services.settings, services.broker_client,
    )
    await persist_analysis_context(services.repository, run.analysis_id, context)
    return context


async def attempt_phase_recovery(
    services: WorkflowServices,
    run: AnalysisRun,
    phase: Phase,
) -> RecoveryResult:
    """
    Re-invoke the failed/pending agents of one phase.

    A healthy phase with nothing failed is advanced instead. Retries follow
    determine_recovery_strategy(); health is re-checked once the batch of
    retries has been scheduled.
    """
    # imported here: phase_manager depends on this module for its error funnel
    from .phase_manager import move_to_next_phase

    context = await _refresh_context(services, run)
    if context is None:
        return RecoveryResult(False, 'Analysis not found')
    run = run.with_context(context)

    health = await check_phase_health(
        services.repository, run.analysis_id, phase, services.min_analysis_successes,
    )
    if health.can_proceed:
        if health.failed == 0:
            await move_to_next_phase(services, run, phase)
            return RecoveryResult(True, f"Phase {phase.value} healthy - advanced to next phase")
        return RecoveryResult(False, f"Phase {phase.value} can proceed with {health.failed} failed agents")

    record = await services.repository.get_analysis(run.analysis_id)
    steps = record.workflow_steps
    retried: list[AgentId] = []
    aborted: Optional[str] = None

    for agent in WORKFLOW_PHASES[phase].agents:
        step = steps.find_step(phase, agent)
        status = step.status if step else StepStatus.PENDING
        if status not in (StepStatus.ERROR, StepStatus.PENDING):
            continue

        if status is StepStatus.PENDING:
            if await services.invoker.invoke_agent_with_retry(run, agent, phase, context):
                retried.append(agent)
            continue

        strategy = determine_recovery_strategy(agent, step.error_type)
        logger.info(f"Recovery strategy for {agent.display_name}: {strategy.to_dict()}")
        if strategy.action is RecoveryAction.ABORT:
            aborted = strategy.reason
            break
        if strategy.action is RecoveryAction.RETRY:
            if await services.invoker.invoke_agent_with_retry(run, agent, phase, context):
                retried.append(agent)

    if aborted:
        return RecoveryResult(False, f"Recovery aborted: {aborted}")

    health = await check_phase_health(
        services.repository, run.analysis_id, phase, services.min_analysis_successes,
    )
    if health.can_proceed:
        return RecoveryResult(True, f"Phase {phase.value} recovered")
    if retried:
        names = ", ".join(a.display_name for a in retried)
        return RecoveryResult(True, f"Partial recovery of {phase.value}: retrying {names}")
    return RecoveryResult(False, f"Phase {phase.value} could not be recovered: {health.reason}")


async def resume_from_phase(
    services: WorkflowServices,
    run: AnalysisRun,
    phase: Phase,
) -> RecoveryResult:
    """Restart a phase at its first pending or failed agent."""
    context = await _refresh_context(services, run)
    if context is None:
        return RecoveryResult(False, 'Analysis not found')
    run = run.with_context(context)

    record = await services.repository.get_analysis(run.analysis_id)
    steps = record.workflow_steps
    config = WORKFLOW_PHASES[phase]

    target: Optional[AgentId] = None
    for agent in config.all_step_agents():
        if (steps.status_of(phase, agent) or StepStatus.PENDING) in (StepStatus.PENDING, StepStatus.ERROR):
            target = agent
            break
    force = target is None
    if target is None:
        target = config.agents[0]

    context_extra = None
    if phase is Phase.RESEARCH and target in (AgentId.BULL_RESEARCHER, AgentId.BEAR_RESEARCHER):
        context_extra = {
            'round': max(record.current_debate_count, 1),
            'maxRounds': services.max_debate_rounds(run.api_settings),
        }

    invoked = await services.invoker.invoke_agent_with_retry(
        run, target, phase, context, context_extra=context_extra, force=force,
    )
    if not invoked:
        return RecoveryResult(False, f"{target.display_name} is already running")
    return RecoveryResult(True, f"Resumed {phase.value} phase at {target.display_name}")
