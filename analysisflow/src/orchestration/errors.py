"""
Workflow exceptions raised inside the coordinator.

Handlers convert these into CoordinatorResponse values; none of them should
reach the HTTP layer.
"""

from typing import Optional


class WorkflowError(Exception):
    """Base class for coordinator workflow errors."""
    pass


class PhaseNotReadyError(WorkflowError):
    """A phase transition was requested but the phase health re-check failed."""

    def __init__(self, phase: str, reason: Optional[str] = None):
        self.phase = phase
        self.reason = reason
        super().__init__(f"Phase {phase} is not ready to advance: {reason or 'unknown reason'}")


class InvocationError(WorkflowError):
    """One HTTP attempt to reach a function failed."""

    def __init__(self, function_name: str, message: str, status: Optional[int] = None):
        self.function_name = function_name
        self.status = status
        super().__init__(message)
