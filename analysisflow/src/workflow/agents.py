"""
Agent Registry - Identity and phase layout of the analysis workflow.

Every agent can be addressed three ways:
- function id: the worker endpoint (e.g. "agent-risk-manager")
- short id: the function id without its "agent-" prefix (e.g. "risk-manager")
- display name: the name stored in workflow steps (e.g. "Risk Manager")

resolve_agent() maps any of these, plus a small set of legacy aliases, back to
one AgentId using exact lookups only.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class Phase(Enum):
    """Workflow phases in execution order."""
    ANALYSIS = "analysis"
    RESEARCH = "research"
    TRADING = "trading"
    RISK = "risk"
    PORTFOLIO = "portfolio"


class AgentId(Enum):
    """
    Agents known to the coordinator.

    Values are the worker function ids. Display names, settings prefixes and
    insight keys are derived from AGENT_DISPLAY_NAMES and AGENT_TEAMS.
    """
    MACRO_ANALYST = "agent-macro-analyst"
    MARKET_ANALYST = "agent-market-analyst"
    NEWS_ANALYST = "agent-news-analyst"
    SOCIAL_MEDIA_ANALYST = "agent-social-media-analyst"
    FUNDAMENTALS_ANALYST = "agent-fundamentals-analyst"
    BULL_RESEARCHER = "agent-bull-researcher"
    BEAR_RESEARCHER = "agent-bear-researcher"
    RESEARCH_MANAGER = "agent-research-manager"
    TRADER = "agent-trader"
    RISKY_ANALYST = "agent-risky-analyst"
    SAFE_ANALYST = "agent-safe-analyst"
    NEUTRAL_ANALYST = "agent-neutral-analyst"
    RISK_MANAGER = "agent-risk-manager"
    PORTFOLIO_MANAGER = "analysis-portfolio-manager"

    @property
    def function_id(self) -> str:
        return self.value

    @property
    def short_id(self) -> str:
        if self.value.startswith("agent-"):
            return self.value[len("agent-"):]
        return self.value

    @property
    def display_name(self) -> str:
        return AGENT_DISPLAY_NAMES[self]

    @property
    def insight_key(self) -> str:
        """Key under which the agent's output is stored in agent_insights."""
        return self.display_name.lower().replace(" ", "")

    @property
    def error_key(self) -> str:
        return f"{self.insight_key}_error"

    @property
    def settings_prefix(self) -> str:
        """Prefix of the per-team provider/model fields in ApiSettings."""
        return AGENT_TEAMS[self]


AGENT_DISPLAY_NAMES: dict[AgentId, str] = {
    AgentId.MACRO_ANALYST: "Macro Analyst",
    AgentId.MARKET_ANALYST: "Market Analyst",
    AgentId.NEWS_ANALYST: "News Analyst",
    AgentId.SOCIAL_MEDIA_ANALYST: "Social Media Analyst",
    AgentId.FUNDAMENTALS_ANALYST: "Fundamentals Analyst",
    AgentId.BULL_RESEARCHER: "Bull Researcher",
    AgentId.BEAR_RESEARCHER: "Bear Researcher",
    AgentId.RESEARCH_MANAGER: "Research Manager",
    AgentId.TRADER: "Trader",
    AgentId.RISKY_ANALYST: "Risky Analyst",
    AgentId.SAFE_ANALYST: "Safe Analyst",
    AgentId.NEUTRAL_ANALYST: "Neutral Analyst",
    AgentId.RISK_MANAGER: "Risk Manager",
    AgentId.PORTFOLIO_MANAGER: "Analysis Portfolio Manager",
}

AGENT_TEAMS: dict[AgentId, str] = {
    AgentId.MACRO_ANALYST: "analysis_team",
    AgentId.MARKET_ANALYST: "analysis_team",
    AgentId.NEWS_ANALYST: "analysis_team",
    AgentId.SOCIAL_MEDIA_ANALYST: "analysis_team",
    AgentId.FUNDAMENTALS_ANALYST: "analysis_team",
    AgentId.BULL_RESEARCHER: "research_team",
    AgentId.BEAR_RESEARCHER: "research_team",
    AgentId.RESEARCH_MANAGER: "research_team",
    AgentId.TRADER: "trading_team",
    AgentId.RISKY_ANALYST: "risk_team",
    AgentId.SAFE_ANALYST: "risk_team",
    AgentId.NEUTRAL_ANALYST: "risk_team",
    AgentId.RISK_MANAGER: "risk_team",
    AgentId.PORTFOLIO_MANAGER: "portfolio_manager",
}

# Older records and callers use these names for the portfolio manager
LEGACY_ALIASES: dict[str, AgentId] = {
    "Portfolio Manager": AgentId.PORTFOLIO_MANAGER,
    "portfolio-manager": AgentId.PORTFOLIO_MANAGER,
}


def _build_lookup() -> dict[str, AgentId]:
    lookup: dict[str, AgentId] = {}
    for agent in AgentId:
        lookup[agent.function_id] = agent
        lookup[agent.short_id] = agent
        lookup[agent.display_name] = agent
    lookup.update(LEGACY_ALIASES)
    return lookup


_AGENT_LOOKUP = _build_lookup()


def resolve_agent(name: Optional[str]) -> Optional[AgentId]:
    """
    Resolve a function id, short id, display name or legacy alias to an AgentId.

    Returns None for unknown names.
    """
    if not name:
        return None
    if isinstance(name, AgentId):
        return name
    return _AGENT_LOOKUP.get(name.strip())


@dataclass(frozen=True)
class PhaseConfig:
    """
    Static layout of a phase.

    agents are the configured members in invocation order. final_agent is an
    aggregator invoked once the members resolve. next_phase is None for the
    last phase.
    """
    phase: Phase
    title: str
    agents: tuple[AgentId, ...]
    final_agent: Optional[AgentId] = None
    next_phase: Optional[Phase] = None
    # Steps created in workflowSteps for this phase, in display order
    step_agents: tuple[AgentId, ...] = field(default=())

    def all_step_agents(self) -> tuple[AgentId, ...]:
        return self.step_agents or self.agents

    def contains(self, agent: AgentId) -> bool:
        return agent in self.all_step_agents()


WORKFLOW_PHASES: dict[Phase, PhaseConfig] = {
    Phase.ANALYSIS: PhaseConfig(
        phase=Phase.ANALYSIS,
        title="Market Analysis",
        agents=(
            AgentId.MACRO_ANALYST,
            AgentId.MARKET_ANALYST,
            AgentId.NEWS_ANALYST,
            AgentId.SOCIAL_MEDIA_ANALYST,
            AgentId.FUNDAMENTALS_ANALYST,
        ),
        next_phase=Phase.RESEARCH,
    ),
    Phase.RESEARCH: PhaseConfig(
        phase=Phase.RESEARCH,
        title="Research Team",
        agents=(AgentId.BULL_RESEARCHER, AgentId.BEAR_RESEARCHER),
        next_phase=Phase.TRADING,
        # Research Manager is started by the debate loop, not as a final agent
        step_agents=(
            AgentId.BULL_RESEARCHER,
            AgentId.BEAR_RESEARCHER,
            AgentId.RESEARCH_MANAGER,
        ),
    ),
    Phase.TRADING: PhaseConfig(
        phase=Phase.TRADING,
        title="Trading Decision",
        agents=(AgentId.TRADER,),
        next_phase=Phase.RISK,
    ),
    Phase.RISK: PhaseConfig(
        phase=Phase.RISK,
        title="Risk Management",
        agents=(
            AgentId.RISKY_ANALYST,
            AgentId.SAFE_ANALYST,
            AgentId.NEUTRAL_ANALYST,
        ),
        final_agent=AgentId.RISK_MANAGER,
        step_agents=(
            AgentId.RISKY_ANALYST,
            AgentId.SAFE_ANALYST,
            AgentId.NEUTRAL_ANALYST,
            AgentId.RISK_MANAGER,
        ),
    ),
    Phase.PORTFOLIO: PhaseConfig(
        phase=Phase.PORTFOLIO,
        title="Portfolio Management",
        agents=(AgentId.PORTFOLIO_MANAGER,),
    ),
}

PHASE_ORDER: tuple[Phase, ...] = tuple(WORKFLOW_PHASES.keys())


def resolve_phase(name) -> Optional[Phase]:
    """Resolve a phase id string to a Phase, or None if unknown."""
    if isinstance(name, Phase):
        return name
    try:
        return Phase(name)
    except ValueError:
        return None


def get_phase_config(phase: Phase) -> PhaseConfig:
    return WORKFLOW_PHASES[phase]


def phase_of(agent: AgentId) -> Phase:
    """Phase whose workflow steps contain the agent."""
    for config in WORKFLOW_PHASES.values():
        if config.contains(agent):
            return config.phase
    raise ValueError(f"Agent {agent.value} does not belong to any phase")


# Agents whose failure always blocks the phase they run in
CRITICAL_AGENTS = frozenset({
    AgentId.RISK_MANAGER,
    AgentId.TRADER,
    AgentId.PORTFOLIO_MANAGER,
})

# Agents whose failure matters but never stops the whole workflow
IMPORTANT_AGENTS = frozenset({
    AgentId.BULL_RESEARCHER,
    AgentId.BEAR_RESEARCHER,
    AgentId.RESEARCH_MANAGER,
})
