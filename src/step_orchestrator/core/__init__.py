"""Core package initialization."""

from step_orchestrator.core.orchestrator import StepOrchestrator, run_script, run_workflow

__all__ = [
    "StepOrchestrator",
    "run_script",
    "run_workflow",
]
