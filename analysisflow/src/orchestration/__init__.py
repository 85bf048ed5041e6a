"""
Orchestration module - drives an analysis through its phases.

Components:
- AnalysisCoordinator: request dispatcher (start, reactivate, retry, callbacks)
- AgentInvoker / FunctionInvoker: fire-and-forget agent invocation with retry
- MessageBus: in-process pub/sub for invocation events
- phase_manager / completion: phase transitions and agent completion handling
"""

from .message_bus import (
    Message,
    MessageBus,
    MessageTopic,
)
from .responses import CoordinatorResponse
from .invocation import AgentInvoker, FunctionInvoker, InvocationResult
from .coordinator import AnalysisCoordinator, RequestAuth

__all__ = [
    'Message',
    'MessageBus',
    'MessageTopic',
    'CoordinatorResponse',
    'AgentInvoker',
    'FunctionInvoker',
    'InvocationResult',
    'AnalysisCoordinator',
    'RequestAuth',
]
