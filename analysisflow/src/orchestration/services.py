"""
Shared handler inputs.

WorkflowServices bundles the long-lived collaborators (storage, invoker,
settings); AnalysisRun is the per-request identity of one analysis. Both
are passed explicitly to every handler; nothing is looked up globally.
"""

from dataclasses import dataclass, replace
from typing import Optional, TYPE_CHECKING

from ..workflow.models import AnalysisContext, ApiSettings

if TYPE_CHECKING:
    from ..data.repository import AnalysisRepository
    from ..utils.config import CoordinatorSettings
    from .context import BrokerPortfolioClient
    from .invocation import AgentInvoker


@dataclass
class WorkflowServices:
    repository: 'AnalysisRepository'
    invoker: 'AgentInvoker'
    settings: 'CoordinatorSettings'
    broker_client: Optional['BrokerPortfolioClient'] = None

    @property
    def min_analysis_successes(self) -> int:
        return self.settings.min_analysis_successes

    def max_debate_rounds(self, api_settings: ApiSettings) -> int:
        return api_settings.debate_rounds(self.settings.default_debate_rounds)


@dataclass(frozen=True)
class AnalysisRun:
    """Identity of one analysis for the duration of a request."""
    analysis_id: str
    ticker: str
    user_id: str
    api_settings: ApiSettings
    context: Optional[AnalysisContext] = None

    def with_context(self, context: Optional[AnalysisContext]) -> 'AnalysisRun':
        return replace(self, context=context)
