"""Factory for creating agent engines."""

import logging

from step_orchestrator.engines.invoker import AgentInvoker
from step_orchestrator.engines.subprocess_invoker import SubprocessAgentInvoker
from step_orchestrator.orchestrator.config import OrchestratorSettings

logger = logging.getLogger(__name__)


class EngineFactory:
    """Factory for creating agent engine instances."""

    @staticmethod
    def create(settings: OrchestratorSettings) -> AgentInvoker:
        """Create the agent engine described by the settings.

        Args:
            settings: Orchestrator settings carrying the agent command.

        Returns:
            Configured agent engine instance.
        """
        logger.info(f"Creating agent engine: {settings.agent_command}")

        return SubprocessAgentInvoker(
            settings.agent_command,
            model_flag=settings.agent_model_flag or None,
            reasoning_flag=settings.agent_reasoning_flag or None,
            engine_commands=settings.agent_engines,
        )
