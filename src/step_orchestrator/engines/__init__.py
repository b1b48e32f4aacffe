"""Engine package initialization."""

from step_orchestrator.engines.factory import EngineFactory
from step_orchestrator.engines.invoker import AgentInvoker, InvocationResult

__all__ = [
    "AgentInvoker",
    "EngineFactory",
    "InvocationResult",
]
