"""Error taxonomy for the orchestrator.

Resolution and parsing errors fail fast before any step runs. Execution errors
abort a run but leave already-persisted completion markers in place. Signal
parse errors never escape the behavior evaluation boundary.
"""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class CatalogError(OrchestratorError):
    """The agent/module catalog is malformed (duplicate ids, bad behavior config)."""


class TemplateError(OrchestratorError):
    """A workflow template file could not be loaded or validated."""


class UnknownReferenceError(OrchestratorError, LookupError):
    """A template or trigger referenced an id that the catalog does not know."""

    def __init__(self, reference: str, *, kind: str = "agent") -> None:
        super().__init__(f"Unknown {kind}: {reference}")
        self.reference = reference
        self.kind = kind


class MissingFieldError(OrchestratorError, ValueError):
    """A required step field is still unset after merging overrides."""

    def __init__(self, reference: str, fields: list[str]) -> None:
        joined = ", ".join(fields)
        super().__init__(f"{reference} is missing required fields ({joined})")
        self.reference = reference
        self.fields = fields


class ScriptSyntaxError(OrchestratorError, ValueError):
    """An orchestration script is malformed."""

    def __init__(self, message: str, *, position: int | None = None) -> None:
        if position is not None:
            message = f"{message} (at offset {position})"
        super().__init__(message)
        self.position = position


class ExecutionError(OrchestratorError):
    """The invoked agent process failed."""

    def __init__(self, message: str, *, agent_id: str | None = None, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.agent_id = agent_id
        self.exit_code = exit_code


class CancelledError(ExecutionError):
    """The run was cancelled while an agent was executing."""


class SignalParseError(OrchestratorError):
    """The behavior signal side-channel could not be read or parsed."""
