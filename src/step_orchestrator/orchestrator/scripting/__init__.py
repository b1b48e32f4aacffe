"""Orchestration scripts: `a 'x' && b 'y' & c 'z'`."""

from step_orchestrator.orchestrator.scripting.interpreter import (
    ScriptInterpreter,
    ScriptResult,
    TaskResult,
)
from step_orchestrator.orchestrator.scripting.parser import Parallel, Sequential, Task, parse_script

__all__ = [
    "Parallel",
    "ScriptInterpreter",
    "ScriptResult",
    "Sequential",
    "Task",
    "TaskResult",
    "parse_script",
]
