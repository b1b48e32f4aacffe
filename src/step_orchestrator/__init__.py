"""Step Orchestrator.

Drives multi-step, multi-agent automation from the command line:
- workflow templates resolved against an agent catalog
- loop, checkpoint and trigger behaviors signalled by the agents
- orchestration scripts with sequential (`&&`) and parallel (`&`) stages
"""

__version__ = "0.1.0"

from step_orchestrator.orchestrator.config import OrchestratorSettings

__all__ = ["__version__", "OrchestratorSettings"]
