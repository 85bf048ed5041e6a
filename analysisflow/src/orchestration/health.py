"""
Phase Health Checker - Readiness verdicts computed from persisted step status.

Counts are taken over a phase's configured agents; a configured agent with no
step yet counts as pending. Aggregator steps (Research Manager, Risk Manager)
are not part of the counts and are inspected separately by the phase rules.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, TYPE_CHECKING

from ..workflow.agents import (
    AgentId,
    CRITICAL_AGENTS,
    IMPORTANT_AGENTS,
    Phase,
    WORKFLOW_PHASES,
)
from ..workflow.models import ErrorType, StepStatus, WorkflowSteps

if TYPE_CHECKING:
    from ..data.repository import AnalysisRepository

logger = logging.getLogger(__name__)


DEFAULT_MIN_ANALYSIS_SUCCESSES = 3
AGENTS_STILL_RUNNING = "Agents still running"


@dataclass
class AgentErrorCategory:
    """Severity of one agent failure."""
    is_critical: bool
    is_retryable: bool
    should_stop_phase: bool
    should_stop_workflow: bool


def categorize_agent_error(agent: AgentId, error_type: Optional[str | ErrorType] = None) -> AgentErrorCategory:
    """
    Classify an agent failure.

    api_key is always workflow-fatal and rate_limit is always retryable;
    otherwise severity comes from the critical/important agent tables.
    """
    kind = error_type if isinstance(error_type, ErrorType) else ErrorType.parse(error_type)

    if kind is ErrorType.API_KEY:
        return AgentErrorCategory(True, False, True, True)

    if kind is ErrorType.RATE_LIMIT:
        return AgentErrorCategory(False, True, False, False)

    if agent in CRITICAL_AGENTS:
        return AgentErrorCategory(
            is_critical=True,
            is_retryable=kind is not ErrorType.DATA_FETCH,
            should_stop_phase=True,
            should_stop_workflow=agent is AgentId.RISK_MANAGER,
        )

    if agent in IMPORTANT_AGENTS:
        return AgentErrorCategory(
            is_critical=False,
            is_retryable=True,
            should_stop_phase=agent is not AgentId.RESEARCH_MANAGER,
            should_stop_workflow=False,
        )

    return AgentErrorCategory(False, True, False, False)


@dataclass
class PhaseHealth:
    """Health verdict for one phase."""
    phase: Phase
    total_agents: int = 0
    completed: int = 0
    successful: int = 0
    failed: int = 0
    running: int = 0
    pending: int = 0
    critical_failures: list[AgentId] = field(default_factory=list)
    can_proceed: bool = False
    reason: Optional[str] = None

    @property
    def remaining(self) -> int:
        return self.pending + self.running

    def to_dict(self) -> dict:
        return {
            'phase': self.phase.value,
            'total_agents': self.total_agents,
            'completed': self.completed,
            'successful': self.successful,
            'failed': self.failed,
            'running': self.running,
            'pending': self.pending,
            'critical_failures': [a.value for a in self.critical_failures],
            'can_proceed': self.can_proceed,
            'reason': self.reason,
        }


def evaluate_phase_health(
    phase: Phase,
    steps: WorkflowSteps,
    min_analysis_successes: int = DEFAULT_MIN_ANALYSIS_SUCCESSES,
) -> PhaseHealth:
    """Compute a PhaseHealth from an already loaded workflowSteps structure."""
    config = WORKFLOW_PHASES[phase]
    health = PhaseHealth(phase=phase, total_agents=len(config.agents))

    for agent in config.agents:
        step = steps.find_step(phase, agent)
        status = step.status if step else StepStatus.PENDING

        if status in (StepStatus.COMPLETED, StepStatus.SKIPPED):
            health.completed += 1
            health.successful += 1
        elif status is StepStatus.ERROR:
            health.completed += 1
            health.failed += 1
            if categorize_agent_error(agent, step.error_type).is_critical:
                health.critical_failures.append(agent)
        elif status is StepStatus.RUNNING:
            health.running += 1
        else:
            health.pending += 1

    # Risk Manager failure is critical even though it is not a counted member
    if config.final_agent is not None:
        final_step = steps.find_step(phase, config.final_agent)
        if final_step is not None and final_step.status is StepStatus.ERROR:
            if categorize_agent_error(config.final_agent, final_step.error_type).is_critical:
                health.critical_failures.append(config.final_agent)

    health.can_proceed = _evaluate_readiness(phase, health, steps, min_analysis_successes)
    return health


def _evaluate_readiness(
    phase: Phase,
    health: PhaseHealth,
    steps: WorkflowSteps,
    min_analysis_successes: int,
) -> bool:
    if health.running > 0:
        health.reason = AGENTS_STILL_RUNNING
        return False

    if health.critical_failures:
        names = ", ".join(a.display_name for a in health.critical_failures)
        health.reason = f"Critical agents failed: {names}"

    if phase is Phase.ANALYSIS:
        required = min(min_analysis_successes, health.total_agents)
        if health.pending > 0:
            health.reason = "Pending agents remaining in analysis phase"
            return False
        if health.successful < required:
            health.reason = (
                f"Insufficient successful agents: {health.successful}/{health.total_agents} "
                f"(need {required})"
            )
            return False
        return True

    if phase is Phase.RESEARCH:
        manager = steps.status_of(Phase.RESEARCH, AgentId.RESEARCH_MANAGER)
        if manager in (StepStatus.COMPLETED, StepStatus.RUNNING):
            return True
        if manager is StepStatus.ERROR:
            health.reason = "Research Manager failed but debate content exists"
        return True

    if phase is Phase.TRADING:
        if health.failed > 0:
            health.reason = "Trading phase has failures"
            return False
        return True

    if phase is Phase.RISK:
        if AgentId.RISK_MANAGER in health.critical_failures:
            health.reason = "Risk Manager failed"
            return False
        if health.successful == 0:
            health.reason = "No risk analysts succeeded"
            return False
        return True

    if phase is Phase.PORTFOLIO:
        if health.failed > 0:
            health.reason = "Analysis Portfolio Manager failed"
            return False
        if health.pending > 0 or health.successful == 0:
            health.reason = "Analysis Portfolio Manager not completed"
            return False
        return True

    return True


async def check_phase_health(
    repository: 'AnalysisRepository',
    analysis_id: str,
    phase: Phase,
    min_analysis_successes: int = DEFAULT_MIN_ANALYSIS_SUCCESSES,
) -> PhaseHealth:
    """Reload the analysis and compute the health of one phase."""
    record = await repository.get_analysis(analysis_id)
    if record is None:
        logger.error(f"Analysis {analysis_id} not found for health check of {phase.value}")
        return PhaseHealth(
            phase=phase,
            total_agents=len(WORKFLOW_PHASES[phase].agents),
            can_proceed=False,
            reason="Failed to fetch analysis data",
        )

    health = evaluate_phase_health(phase, record.workflow_steps, min_analysis_successes)
    logger.debug(f"Phase health {analysis_id}/{phase.value}: {health.to_dict()}")
    return health


@dataclass
class PostErrorVerdict:
    abort: bool
    reason: Optional[str] = None


def evaluate_post_error_phase_health(
    phase: Phase,
    failing_agent: AgentId,
    health: PhaseHealth,
    min_analysis_successes: int = DEFAULT_MIN_ANALYSIS_SUCCESSES,
) -> PostErrorVerdict:
    """
    Decide right after one agent error whether the phase is already lost.

    Only aborts when no outcome of the remaining agents can make the phase
    healthy; a phase with agents still running is never aborted here.
    """
    if health.can_proceed or health.reason == AGENTS_STILL_RUNNING:
        return PostErrorVerdict(abort=False)

    if health.critical_failures:
        names = ", ".join(a.display_name for a in health.critical_failures)
        return PostErrorVerdict(True, health.reason or f"Critical agents failed: {names}")

    if phase is Phase.ANALYSIS:
        required = min(min_analysis_successes, health.total_agents)
        max_possible = health.successful + health.remaining
        if max_possible < required:
            return PostErrorVerdict(
                True,
                f"Insufficient agents remaining to reach {required}/{health.total_agents} success threshold",
            )
        return PostErrorVerdict(False)

    if phase is Phase.TRADING:
        if health.failed > 0:
            return PostErrorVerdict(True, health.reason or f"Trading agent {failing_agent.display_name} failed")
        return PostErrorVerdict(False)

    if phase is Phase.RISK:
        if health.successful == 0 and health.remaining == 0:
            return PostErrorVerdict(True, "All risk analysts failed to produce input for Risk Manager")
        return PostErrorVerdict(False)

    if phase is Phase.PORTFOLIO:
        if health.failed > 0:
            return PostErrorVerdict(True, health.reason or "Analysis Portfolio Manager failed")
        return PostErrorVerdict(False)

    return PostErrorVerdict(False)


@dataclass
class ContinueDecision:
    should_continue: bool
    reason: str


async def should_continue_after_error(
    repository: 'AnalysisRepository',
    analysis_id: str,
    phase: Phase,
    agent: AgentId,
    error_type: Optional[str] = None,
    is_last_in_phase: bool = False,
    min_analysis_successes: int = DEFAULT_MIN_ANALYSIS_SUCCESSES,
) -> ContinueDecision:
    """Combine the error category with phase health."""
    category = categorize_agent_error(agent, error_type)

    if category.should_stop_workflow:
        return ContinueDecision(False, f"Critical agent {agent.display_name} failed - workflow cannot continue")

    if category.should_stop_phase and is_last_in_phase:
        return ContinueDecision(False, f"Agent {agent.display_name} failed - phase cannot complete")

    if is_last_in_phase:
        health = await check_phase_health(repository, analysis_id, phase, min_analysis_successes)
        if not health.can_proceed:
            return ContinueDecision(False, health.reason or "Phase cannot proceed due to failures")

    return ContinueDecision(True, "Error is non-critical or recoverable")
