"""
Workflow model - phases, agents, and the persisted analysis state.

- agents: phase/agent registry and name resolution
- models: statuses, workflowSteps, analysis context, settings, records
"""

from .agents import (
    AgentId,
    Phase,
    PhaseConfig,
    PHASE_ORDER,
    WORKFLOW_PHASES,
    CRITICAL_AGENTS,
    IMPORTANT_AGENTS,
    get_phase_config,
    phase_of,
    resolve_agent,
    resolve_phase,
)
from .models import (
    AnalysisContext,
    AnalysisRecord,
    AnalysisStatus,
    ApiSettings,
    CompletionType,
    ContextType,
    Decision,
    ErrorType,
    StepStatus,
    WorkflowSteps,
    create_initial_full_analysis,
)

__all__ = [
    'AgentId',
    'Phase',
    'PhaseConfig',
    'PHASE_ORDER',
    'WORKFLOW_PHASES',
    'CRITICAL_AGENTS',
    'IMPORTANT_AGENTS',
    'get_phase_config',
    'phase_of',
    'resolve_agent',
    'resolve_phase',
    'AnalysisContext',
    'AnalysisRecord',
    'AnalysisStatus',
    'ApiSettings',
    'CompletionType',
    'ContextType',
    'Decision',
    'ErrorType',
    'StepStatus',
    'WorkflowSteps',
    'create_initial_full_analysis',
]
