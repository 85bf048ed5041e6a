"""
Workflow Models - Typed records for analysis runs and their workflow state.

This module provides:
- Status enums for analyses, workflow steps, decisions and callbacks
- Typed workflowSteps structure with an indexed status update helper
- Analysis context, position and rebalance constraint records
- Per-request ApiSettings passed by value through every handler
- AnalysisRecord, the in-memory view of one analysis_history row

Wire format for JSON columns stays camelCase (workflowSteps, analysisContext,
rebalanceRequestId, ...) so existing readers of the table keep working.
"""

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from .agents import (
    AgentId,
    Phase,
    PHASE_ORDER,
    WORKFLOW_PHASES,
    resolve_agent,
)

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utc_now().isoformat()


class AnalysisStatus(Enum):
    """Authoritative status of an analysis run."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (AnalysisStatus.PENDING, AnalysisStatus.RUNNING)


class StepStatus(Enum):
    """Status of one agent inside workflowSteps."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    SKIPPED = "skipped"

    @classmethod
    def parse(cls, value: Any) -> 'StepStatus':
        try:
            return cls(value)
        except ValueError:
            logger.warning(f"Unknown step status {value!r}, treating as pending")
            return cls.PENDING


class Decision(Enum):
    """Recommendation stored on the analysis record."""
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"
    PENDING = "PENDING"
    CANCELED = "CANCELED"
    ERROR = "ERROR"


class CompletionType(Enum):
    """Routing signal sent by an agent with its callback."""
    NORMAL = "normal"
    LAST_IN_PHASE = "last_in_phase"
    FALLBACK_INVOCATION_FAILED = "fallback_invocation_failed"
    AGENT_ERROR = "agent_error"
    INVOCATION_FAILED = "invocation_failed"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional['CompletionType']:
        if value is None:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


class ErrorType(Enum):
    """Agent failure taxonomy."""
    RATE_LIMIT = "rate_limit"
    API_KEY = "api_key"
    AI_ERROR = "ai_error"
    DATA_FETCH = "data_fetch"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional['ErrorType']:
        if value is None:
            return None
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


class ContextType(Enum):
    """Who started the analysis."""
    INDIVIDUAL = "individual"
    REBALANCE = "rebalance"


# =============================================================================
# Workflow Steps
# =============================================================================

@dataclass
class AgentStep:
    """One agent entry inside a phase of workflowSteps."""
    name: str
    function_name: Optional[str] = None
    status: StepStatus = StepStatus.PENDING
    progress: int = 0
    error_type: Optional[str] = None
    updated_at: Optional[str] = None
    extra: dict = field(default_factory=dict)

    @property
    def agent(self) -> Optional[AgentId]:
        return resolve_agent(self.function_name) or resolve_agent(self.name)

    def matches(self, agent: AgentId) -> bool:
        return self.agent is agent

    def to_dict(self) -> dict:
        data = dict(self.extra)
        data.update({
            "name": self.name,
            "status": self.status.value,
            "progress": self.progress,
        })
        if self.function_name:
            data["functionName"] = self.function_name
        if self.error_type:
            data["error_type"] = self.error_type
        if self.updated_at:
            data["updatedAt"] = self.updated_at
        return data

    @classmethod
    def from_dict(cls, data: Mapping) -> 'AgentStep':
        known = {"name", "functionName", "status", "progress", "error_type", "updatedAt"}
        return cls(
            name=data.get("name", ""),
            function_name=data.get("functionName"),
            status=StepStatus.parse(data.get("status", "pending")),
            progress=int(data.get("progress") or 0),
            error_type=data.get("error_type"),
            updated_at=data.get("updatedAt"),
            extra={k: v for k, v in data.items() if k not in known},
        )

    @classmethod
    def pending(cls, agent: AgentId) -> 'AgentStep':
        return cls(name=agent.display_name, function_name=agent.function_id)


@dataclass
class PhaseStep:
    """One phase entry of workflowSteps."""
    id: str
    name: str
    status: str = "pending"
    agents: list[AgentStep] = field(default_factory=list)
    extra: dict = field(default_factory=dict)

    def find(self, agent: AgentId) -> Optional[AgentStep]:
        for step in self.agents:
            if step.matches(agent):
                return step
        return None

    def to_dict(self) -> dict:
        data = dict(self.extra)
        data.update({
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "agents": [a.to_dict() for a in self.agents],
        })
        return data

    @classmethod
    def from_dict(cls, data: Mapping) -> 'PhaseStep':
        known = {"id", "name", "status", "agents"}
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            status=data.get("status", "pending"),
            agents=[AgentStep.from_dict(a) for a in data.get("agents") or []],
            extra={k: v for k, v in data.items() if k not in known},
        )


@dataclass
class StepUpdate:
    """Result of WorkflowSteps.update_agent_status."""
    phase: Phase
    agent: AgentId
    previous: Optional[StepStatus]
    current: Optional[StepStatus]
    applied: bool
    step_found: bool

    @property
    def changed(self) -> bool:
        return self.applied and self.previous != self.current


@dataclass
class WorkflowSteps:
    """
    Typed view of full_analysis.workflowSteps.

    Mutations go through update_agent_status(), which returns the previous
    value so callers can compare-and-set against it.
    """
    phases: list[PhaseStep] = field(default_factory=list)

    @classmethod
    def initial(cls) -> 'WorkflowSteps':
        """Five phases with every agent pending."""
        return cls(phases=[
            PhaseStep(
                id=config.phase.value,
                name=config.title,
                agents=[AgentStep.pending(a) for a in config.all_step_agents()],
            )
            for config in WORKFLOW_PHASES.values()
        ])

    @classmethod
    def from_list(cls, data: Optional[list]) -> 'WorkflowSteps':
        return cls(phases=[PhaseStep.from_dict(p) for p in data or [] if isinstance(p, Mapping)])

    def to_list(self) -> list[dict]:
        return [p.to_dict() for p in self.phases]

    def get_phase(self, phase: Phase) -> Optional[PhaseStep]:
        for step in self.phases:
            if step.id == phase.value:
                return step
        return None

    def find_step(self, phase: Phase, agent: AgentId) -> Optional[AgentStep]:
        phase_step = self.get_phase(phase)
        if phase_step is None:
            return None
        return phase_step.find(agent)

    def status_of(self, phase: Phase, agent: AgentId) -> Optional[StepStatus]:
        step = self.find_step(phase, agent)
        return step.status if step else None

    def update_agent_status(
        self,
        phase: Phase,
        agent: AgentId,
        status: StepStatus,
        error_type: Optional[str] = None,
        allowed_from: Optional[tuple[StepStatus, ...]] = None,
        create_missing: bool = True,
    ) -> StepUpdate:
        """
        Set one agent's status in place.

        Args:
            phase: Phase holding the agent
            agent: Agent to update
            status: New status
            error_type: Stored alongside an ERROR status, cleared otherwise
            allowed_from: Only apply when the current status is one of these
                (a missing step counts as PENDING)
            create_missing: Create the phase/agent entry if absent

        Returns:
            StepUpdate with the previous status and whether it was applied
        """
        phase_step = self.get_phase(phase)
        if phase_step is None:
            if not create_missing:
                return StepUpdate(phase, agent, None, None, False, False)
            phase_step = PhaseStep(id=phase.value, name=WORKFLOW_PHASES[phase].title)
            self.phases.append(phase_step)
            self.phases.sort(key=lambda p: _phase_index(p.id))

        step = phase_step.find(agent)
        step_found = step is not None
        previous = step.status if step else None

        effective_previous = previous or StepStatus.PENDING
        if allowed_from is not None and effective_previous not in allowed_from:
            return StepUpdate(phase, agent, previous, previous, False, step_found)

        if step is None:
            if not create_missing:
                return StepUpdate(phase, agent, None, None, False, False)
            step = AgentStep.pending(agent)
            phase_step.agents.append(step)

        step.status = status
        step.updated_at = now_iso()
        step.error_type = error_type if status is StepStatus.ERROR else None
        if status is StepStatus.COMPLETED:
            step.progress = 100
        elif status is StepStatus.PENDING:
            step.progress = 0

        return StepUpdate(phase, agent, previous, status, True, step_found)

    def all_completed(self, phase: Phase) -> bool:
        """True when every configured step of the phase is completed."""
        config = WORKFLOW_PHASES[phase]
        for agent in config.all_step_agents():
            if self.status_of(phase, agent) not in (StepStatus.COMPLETED, StepStatus.SKIPPED):
                return False
        return True

    def first_incomplete(self, phase: Phase, agents: Optional[tuple[AgentId, ...]] = None) -> Optional[AgentId]:
        """First agent (configured order) whose step is not completed."""
        candidates = agents if agents is not None else WORKFLOW_PHASES[phase].agents
        for agent in candidates:
            if self.status_of(phase, agent) not in (StepStatus.COMPLETED, StepStatus.SKIPPED):
                return agent
        return None

    def agents_with_status(self, phase: Phase, *statuses: StepStatus) -> list[AgentId]:
        config = WORKFLOW_PHASES[phase]
        return [
            agent for agent in config.all_step_agents()
            if (self.status_of(phase, agent) or StepStatus.PENDING) in statuses
        ]

    def every_step_finished(self) -> bool:
        """True when every step in every phase is completed or skipped."""
        for phase_step in self.phases:
            for step in phase_step.agents:
                if step.status not in (StepStatus.COMPLETED, StepStatus.SKIPPED):
                    return False
        return True


def _phase_index(phase_id: str) -> int:
    for index, phase in enumerate(PHASE_ORDER):
        if phase.value == phase_id:
            return index
    return len(PHASE_ORDER)


def create_initial_full_analysis() -> dict:
    """full_analysis blob for a freshly created analysis."""
    return {
        "startedAt": now_iso(),
        "messages": [],
        "workflowSteps": WorkflowSteps.initial().to_list(),
    }


# =============================================================================
# Debate Rounds
# =============================================================================

@dataclass
class DebateRound:
    """One Bull-then-Bear exchange."""
    round: int
    bull: Optional[Any] = None
    bear: Optional[Any] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.bull) and bool(self.bear)

    def to_dict(self) -> dict:
        return {"round": self.round, "bull": self.bull, "bear": self.bear}

    @classmethod
    def from_dict(cls, data: Mapping) -> 'DebateRound':
        return cls(
            round=int(data.get("round") or 0),
            bull=data.get("bull"),
            bear=data.get("bear"),
        )


def debate_rounds_from(full_analysis: Optional[Mapping]) -> list[DebateRound]:
    rounds = (full_analysis or {}).get("debateRounds") or []
    return [DebateRound.from_dict(r) for r in rounds if isinstance(r, Mapping)]


def count_complete_debate_rounds(full_analysis: Optional[Mapping]) -> int:
    return sum(1 for r in debate_rounds_from(full_analysis) if r.is_complete)


def has_debate_content(full_analysis: Optional[Mapping]) -> bool:
    """True once either researcher has written any round."""
    return any(r.bull or r.bear for r in debate_rounds_from(full_analysis))


# =============================================================================
# Analysis Context
# =============================================================================

@dataclass
class PositionContext:
    """Current holding in the analysed ticker."""
    stock_in_holdings: bool = False
    entry_price: float = 0.0
    current_price: float = 0.0
    shares: float = 0.0
    market_value: float = 0.0
    unrealized_pl: float = 0.0
    unrealized_pl_percent: float = 0.0
    days_held: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "stock_in_holdings": self.stock_in_holdings,
            "entry_price": self.entry_price,
            "current_price": self.current_price,
            "shares": self.shares,
            "market_value": self.market_value,
            "unrealized_pl": self.unrealized_pl,
            "unrealized_pl_percent": self.unrealized_pl_percent,
            "days_held": self.days_held,
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> 'PositionContext':
        return cls(
            stock_in_holdings=bool(data.get("stock_in_holdings", False)),
            entry_price=float(data.get("entry_price") or 0),
            current_price=float(data.get("current_price") or 0),
            shares=float(data.get("shares") or 0),
            market_value=float(data.get("market_value") or 0),
            unrealized_pl=float(data.get("unrealized_pl") or 0),
            unrealized_pl_percent=float(data.get("unrealized_pl_percent") or 0),
            days_held=data.get("days_held"),
        )


@dataclass
class RebalanceConstraints:
    """Constraints a rebalance batch imposes on its member analyses."""
    max_position_size: Optional[float] = None
    min_position_size: Optional[float] = None
    max_new_positions: Optional[int] = None
    sell_losers_first: Optional[bool] = None
    tax_strategy: Optional[str] = None
    risk_tolerance: Optional[str] = None

    _WIRE = {
        "max_position_size": "maxPositionSize",
        "min_position_size": "minPositionSize",
        "max_new_positions": "maxNewPositions",
        "sell_losers_first": "sellLosersFirst",
        "tax_strategy": "taxStrategy",
        "risk_tolerance": "riskTolerance",
    }

    def to_dict(self) -> dict:
        return {
            wire: getattr(self, attr)
            for attr, wire in self._WIRE.items()
            if getattr(self, attr) is not None
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> 'RebalanceConstraints':
        return cls(**{attr: data.get(wire) for attr, wire in cls._WIRE.items()})


@dataclass
class AnalysisContext:
    """
    Cross-cutting context threaded through every agent invocation.

    Unknown keys are kept in extra so nothing a caller sends is dropped when
    the context is merged and persisted again.
    """
    type: ContextType = ContextType.INDIVIDUAL
    rebalance_request_id: Optional[str] = None
    ticker_index: Optional[int] = None
    total_tickers: Optional[int] = None
    portfolio_data: Optional[dict] = None
    skip_opportunity_agent: Optional[bool] = None
    rebalance_threshold: Optional[float] = None
    constraints: Optional[RebalanceConstraints] = None
    source: Optional[str] = None
    preferences: Optional[dict] = None
    target_allocations: Optional[dict] = None
    position: Optional[PositionContext] = None
    near_limit_analysis: Optional[bool] = None
    triggered_by: Optional[str] = None
    triggered_at: Optional[str] = None
    metadata: Optional[dict] = None
    phase: Optional[str] = None
    risk_manager_decision: Optional[Any] = None
    extra: dict = field(default_factory=dict)

    _WIRE = {
        "rebalance_request_id": "rebalanceRequestId",
        "ticker_index": "tickerIndex",
        "total_tickers": "totalTickers",
        "portfolio_data": "portfolioData",
        "skip_opportunity_agent": "skipOpportunityAgent",
        "rebalance_threshold": "rebalanceThreshold",
        "source": "source",
        "preferences": "preferences",
        "target_allocations": "targetAllocations",
        "near_limit_analysis": "near_limit_analysis",
        "triggered_by": "triggered_by",
        "triggered_at": "triggered_at",
        "metadata": "metadata",
        "phase": "phase",
        "risk_manager_decision": "riskManagerDecision",
    }

    @property
    def is_rebalance(self) -> bool:
        return self.type is ContextType.REBALANCE and bool(self.rebalance_request_id)

    def to_dict(self) -> dict:
        data = dict(self.extra)
        data["type"] = self.type.value
        for attr, wire in self._WIRE.items():
            value = getattr(self, attr)
            if value is not None:
                data[wire] = value
        if self.constraints is not None:
            data["constraints"] = self.constraints.to_dict()
        if self.position is not None:
            data["position"] = self.position.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Optional[Mapping]) -> 'AnalysisContext':
        data = dict(data or {})
        try:
            context_type = ContextType(data.get("type") or "individual")
        except ValueError:
            context_type = ContextType.INDIVIDUAL
        kwargs = {attr: data.get(wire) for attr, wire in cls._WIRE.items()}
        constraints = data.get("constraints")
        position = data.get("position")
        known = set(cls._WIRE.values()) | {"type", "constraints", "position"}
        return cls(
            type=context_type,
            constraints=RebalanceConstraints.from_dict(constraints) if isinstance(constraints, Mapping) else None,
            position=PositionContext.from_dict(position) if isinstance(position, Mapping) else None,
            extra={k: v for k, v in data.items() if k not in known},
            **kwargs,
        )

    def merged_with(self, other: Optional['AnalysisContext']) -> 'AnalysisContext':
        """New context with other's non-empty fields layered over this one."""
        if other is None:
            return replace(self, extra=dict(self.extra))
        merged = self.to_dict()
        overlay = other.to_dict()
        # an individual overlay never downgrades a rebalance context
        if other.type is ContextType.INDIVIDUAL:
            overlay.pop("type")
        merged.update(overlay)
        return AnalysisContext.from_dict(merged)

    def with_phase(self, phase: Phase, **extra) -> dict:
        """Invocation payload form of the context for one phase."""
        data = self.to_dict()
        data["phase"] = phase.value
        data.update(extra)
        return data


# =============================================================================
# API Settings
# =============================================================================

DEFAULT_DEBATE_ROUNDS = 2


@dataclass(frozen=True)
class ApiSettings:
    """
    User settings resolved once per request.

    Frozen and passed by value; handlers never look settings up again.
    """
    ai_provider: Optional[str] = None
    ai_api_key: Optional[str] = None
    ai_model: Optional[str] = None
    alpaca_paper_api_key: Optional[str] = None
    alpaca_paper_secret_key: Optional[str] = None
    alpaca_live_api_key: Optional[str] = None
    alpaca_live_secret_key: Optional[str] = None
    alpaca_paper_trading: bool = True
    research_debate_rounds: Optional[int] = None
    auto_execute_trades: bool = False
    extra: Mapping = field(default_factory=dict)

    _FIELDS = (
        "ai_provider", "ai_api_key", "ai_model",
        "alpaca_paper_api_key", "alpaca_paper_secret_key",
        "alpaca_live_api_key", "alpaca_live_secret_key",
    )

    def debate_rounds(self, default: int = DEFAULT_DEBATE_ROUNDS) -> int:
        rounds = self.research_debate_rounds
        if isinstance(rounds, int) and rounds > 0:
            return rounds
        return default

    def broker_credentials(self) -> Optional[tuple[str, str, bool]]:
        """(key, secret, paper) for the active broker account, or None."""
        if self.alpaca_paper_trading:
            key, secret = self.alpaca_paper_api_key, self.alpaca_paper_secret_key
        else:
            key, secret = self.alpaca_live_api_key, self.alpaca_live_secret_key
        if key and secret:
            return key, secret, self.alpaca_paper_trading
        return None

    def to_dict(self) -> dict:
        data = dict(self.extra)
        for name in self._FIELDS:
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        data["alpaca_paper_trading"] = self.alpaca_paper_trading
        data["auto_execute_trades"] = self.auto_execute_trades
        if self.research_debate_rounds is not None:
            data["research_debate_rounds"] = self.research_debate_rounds
        return data

    def for_agent(self, agent: AgentId) -> dict:
        """
        Settings payload for one agent.

        Team-level provider, model and key override the defaults when set
        (e.g. risk_team_ai / risk_team_model for the risk agents).
        """
        data = self.to_dict()
        prefix = agent.settings_prefix
        provider = self.extra.get(f"{prefix}_ai")
        model = self.extra.get(f"{prefix}_model")
        api_key = self.extra.get(f"{prefix}_api_key")
        if provider:
            data["ai_provider"] = provider
        if model:
            data["ai_model"] = model
        if api_key:
            data["ai_api_key"] = api_key
        return data

    @classmethod
    def from_dict(cls, data: Optional[Mapping]) -> 'ApiSettings':
        data = dict(data or {})
        rounds = data.pop("research_debate_rounds", None)
        try:
            rounds = int(rounds) if rounds is not None else None
        except (TypeError, ValueError):
            rounds = None
        kwargs = {name: data.pop(name, None) for name in cls._FIELDS}
        paper = data.pop("alpaca_paper_trading", True)
        auto = data.pop("auto_execute_trades", False)
        return cls(
            alpaca_paper_trading=paper is not False,
            research_debate_rounds=rounds,
            auto_execute_trades=auto is True,
            extra=data,
            **kwargs,
        )


# =============================================================================
# Analysis Record
# =============================================================================

def _json_column(value: Any, default: Any) -> Any:
    """asyncpg returns JSONB as text unless a codec is registered."""
    if value is None:
        return default
    if isinstance(value, (str, bytes)):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            logger.warning("Invalid JSON in analysis_history column")
            return default
    return value


@dataclass
class AnalysisRecord:
    """One row of analysis_history."""
    id: str
    user_id: str
    ticker: str
    analysis_status: AnalysisStatus = AnalysisStatus.PENDING
    decision: str = Decision.PENDING.value
    confidence: float = 0
    agent_insights: dict = field(default_factory=dict)
    full_analysis: dict = field(default_factory=dict)
    rebalance_request_id: Optional[str] = None
    analysis_context: Optional[dict] = None
    metadata: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def workflow_steps(self) -> WorkflowSteps:
        return WorkflowSteps.from_list(self.full_analysis.get("workflowSteps"))

    @property
    def stored_context(self) -> Optional[AnalysisContext]:
        data = self.full_analysis.get("analysisContext") or self.analysis_context
        return AnalysisContext.from_dict(data) if data else None

    @property
    def current_debate_count(self) -> int:
        return int(self.full_analysis.get("currentDebateCount") or 0)

    @property
    def complete_debate_rounds(self) -> int:
        return count_complete_debate_rounds(self.full_analysis)

    @property
    def has_debate_content(self) -> bool:
        return has_debate_content(self.full_analysis)

    @property
    def is_rebalance(self) -> bool:
        return bool(self.rebalance_request_id)

    def has_insight(self, agent: AgentId) -> bool:
        return bool(self.agent_insights.get(agent.insight_key))

    @classmethod
    def from_row(cls, row: Mapping) -> 'AnalysisRecord':
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            ticker=row["ticker"],
            analysis_status=AnalysisStatus(row.get("analysis_status") or "pending"),
            decision=row.get("decision") or Decision.PENDING.value,
            confidence=float(row.get("confidence") or 0),
            agent_insights=_json_column(row.get("agent_insights"), {}),
            full_analysis=_json_column(row.get("full_analysis"), {}),
            rebalance_request_id=str(row["rebalance_request_id"]) if row.get("rebalance_request_id") else None,
            analysis_context=_json_column(row.get("analysis_context"), None),
            metadata=_json_column(row.get("metadata"), {}),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            completed_at=row.get("completed_at"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "ticker": self.ticker,
            "analysis_status": self.analysis_status.value,
            "decision": self.decision,
            "confidence": self.confidence,
            "agent_insights": self.agent_insights,
            "full_analysis": self.full_analysis,
            "rebalance_request_id": self.rebalance_request_id,
            "analysis_context": self.analysis_context,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
