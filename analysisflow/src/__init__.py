"""AnalysisFlow source modules."""

# Re-export commonly used components for convenience
from .orchestration import AnalysisCoordinator, RequestAuth, CoordinatorResponse
from .utils.config import CoordinatorSettings

__all__ = [
    'AnalysisCoordinator',
    'RequestAuth',
    'CoordinatorResponse',
    'CoordinatorSettings',
]
