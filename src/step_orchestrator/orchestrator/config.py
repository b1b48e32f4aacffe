"""Configuration for the step orchestrator.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

Paths that describe per-project state (`ORCHESTRATOR_STATE_DIR`) are resolved
relative to the working directory a workflow runs in, so one settings object
can drive several workspaces.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrchestratorSettings(BaseSettings):
    """Settings for the local orchestrator.

    Environment variables:
    - LOG_LEVEL                          (optional)
    - ORCHESTRATOR_LOG_FORMAT            (optional, `json` or `text`)
    - ORCHESTRATOR_STATE_DIR             (optional)
    - ORCHESTRATOR_CATALOG_PATH          (optional)
    - ORCHESTRATOR_AGENT_COMMAND         (optional)
    - ORCHESTRATOR_AGENT_MODEL_FLAG      (optional)
    - ORCHESTRATOR_AGENT_REASONING_FLAG  (optional)
    - ORCHESTRATOR_AGENT_ENGINES         (optional, JSON object)
    - ORCHESTRATOR_AGENT_TIMEOUT_SECONDS (optional)
    - ORCHESTRATOR_MAX_PARALLEL          (optional)
    - ORCHESTRATOR_DEBUG_LOOPS           (optional)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `OrchestratorSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        validation_alias="ORCHESTRATOR_LOG_FORMAT",
        description="Structured JSON logs or plain text logs",
    )

    state_dir: Path = Field(
        default=Path(".orchestrator"),
        validation_alias="ORCHESTRATOR_STATE_DIR",
        description="Directory (relative to the working directory) where run state is persisted",
    )
    catalog_path: Path = Field(
        default=Path("config/catalog.json"),
        validation_alias="ORCHESTRATOR_CATALOG_PATH",
        description="JSON catalog of known agents and modules",
    )

    agent_command: str = Field(
        default="codex exec --profile {profile} -C {cwd}",
        validation_alias="ORCHESTRATOR_AGENT_COMMAND",
        description=(
            "Command line used to launch an agent. `{profile}` is replaced by the agent id and "
            "`{cwd}` by the working directory; the prompt is written to stdin."
        ),
    )
    agent_model_flag: str = Field(
        default="--model",
        validation_alias="ORCHESTRATOR_AGENT_MODEL_FLAG",
        description="Flag used to pass a model override to the agent command (empty disables it)",
    )
    agent_reasoning_flag: str = Field(
        default="--config",
        validation_alias="ORCHESTRATOR_AGENT_REASONING_FLAG",
        description=(
            "Flag used to pass `model_reasoning_effort=<level>` to the agent command (empty disables it)"
        ),
    )
    agent_engines: dict[str, str] = Field(
        default_factory=dict,
        validation_alias="ORCHESTRATOR_AGENT_ENGINES",
        description="JSON object mapping engine names to command templates for steps that select an engine",
    )
    agent_timeout_seconds: float = Field(
        default=600.0,
        ge=0.0,
        validation_alias="ORCHESTRATOR_AGENT_TIMEOUT_SECONDS",
        description="Per-invocation timeout passed to the engine (0 means no timeout)",
    )

    max_parallel: int = Field(
        default=8,
        ge=1,
        validation_alias="ORCHESTRATOR_MAX_PARALLEL",
        description="Upper bound on concurrently running tasks within one script stage",
    )

    debug_loops: bool = Field(
        default=False,
        validation_alias="ORCHESTRATOR_DEBUG_LOOPS",
        description="Log loop and skip diagnostics for every step",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def agent_timeout(self) -> float | None:
        return self.agent_timeout_seconds or None

    def state_path(self, working_dir: Path) -> Path:
        """Directory where run state for `working_dir` is persisted."""

        if self.state_dir.is_absolute():
            return self.state_dir
        return working_dir / self.state_dir

    def tracking_file(self, working_dir: Path) -> Path:
        return self.state_path(working_dir) / "template.json"

    def registry_file(self, working_dir: Path) -> Path:
        return self.state_path(working_dir) / "registry.json"
