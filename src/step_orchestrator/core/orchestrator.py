"""Main orchestrator implementation."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Literal

from step_orchestrator.engines.factory import EngineFactory
from step_orchestrator.engines.invoker import AgentInvoker
from step_orchestrator.orchestrator.catalog import AgentCatalog
from step_orchestrator.orchestrator.config import OrchestratorSettings
from step_orchestrator.orchestrator.scripting.interpreter import ScriptInterpreter, ScriptResult
from step_orchestrator.orchestrator.scripting.parser import Sequential
from step_orchestrator.orchestrator.templates import (
    StepOverrides,
    WorkflowTemplate,
    load_template,
    resolve_step,
    resolve_template,
)
from step_orchestrator.orchestrator.workflow.executor import StepExecutor
from step_orchestrator.orchestrator.workflow.runner import WorkflowRunner
from step_orchestrator.orchestrator.workflow.signals import (
    BehaviorSignalSource,
    FileBehaviorSignalSource,
)
from step_orchestrator.orchestrator.workflow.steps import RunOutcome
from step_orchestrator.state.run_registry import RunRegistry
from step_orchestrator.state.tracking import TrackingStore

logger = logging.getLogger(__name__)


class StepOrchestrator:
    """Wire settings, catalog, engine and state into runnable workflows.

    The orchestrator is the composition root used by the CLI and by
    programmatic callers. Collaborators can be injected for tests; anything
    omitted is built from the settings.
    """

    def __init__(
        self,
        settings: OrchestratorSettings | None = None,
        *,
        invoker: AgentInvoker | None = None,
        signal_source: BehaviorSignalSource | None = None,
        catalog: AgentCatalog | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            settings: Configuration object. If None, loads from environment.
            invoker: Agent engine. If None, created by `EngineFactory`.
            signal_source: Behavior signal source. Defaults to the state-dir file.
            catalog: Agent catalog. If None, loaded lazily from `catalog_path`.
        """
        self.settings = settings or OrchestratorSettings()
        self.invoker = invoker or EngineFactory.create(self.settings)
        self.signal_source = signal_source or FileBehaviorSignalSource(self.settings.state_dir)
        self._catalog = catalog

    @property
    def catalog(self) -> AgentCatalog:
        if self._catalog is None:
            self._catalog = AgentCatalog.from_file(self.settings.catalog_path)
        return self._catalog

    def optional_catalog(self) -> AgentCatalog | None:
        """The catalog, or None when no catalog file exists (scripts can run without one)."""

        if self._catalog is None and not self.settings.catalog_path.exists():
            logger.info(f"No agent catalog at {self.settings.catalog_path}; running without one")
            return None
        return self.catalog

    def executor(self, working_dir: Path, *, catalog: AgentCatalog | None = None) -> StepExecutor:
        return StepExecutor(
            self.invoker,
            state_dir=self.settings.state_dir,
            catalog=catalog,
            registry=RunRegistry(self.settings.registry_file(working_dir)),
            timeout=self.settings.agent_timeout,
        )

    def tracking(self, working_dir: Path) -> TrackingStore:
        return TrackingStore(self.settings.tracking_file(working_dir))

    def run_template(
        self,
        template: WorkflowTemplate | Path,
        working_dir: Path,
        cancel_event: threading.Event | None = None,
        *,
        fresh: bool = False,
    ) -> RunOutcome:
        """Resolve and run a workflow template.

        Resolution errors are raised before any step runs.

        Args:
            template: A loaded template or the path of a template file.
            working_dir: Directory the agents work in.
            cancel_event: Optional cancellation signal.
            fresh: Discard completion tracking before running.

        Returns:
            The terminal run outcome.
        """
        if isinstance(template, Path):
            template = load_template(template)
        steps = resolve_template(template, catalog=self.catalog)

        tracking = self.tracking(working_dir)
        tracking.set_active_template(template.name)
        if fresh:
            tracking.clear()

        logger.info(f"Starting workflow {template.name!r}")
        runner = WorkflowRunner(
            self.executor(working_dir, catalog=self.catalog),
            self.signal_source,
            tracking,
            catalog=self.catalog,
            debug_loops=self.settings.debug_loops,
        )
        return runner.run(steps, working_dir, cancel_event)

    def run_script(
        self,
        script: str | Sequential,
        working_dir: Path,
        cancel_event: threading.Event | None = None,
    ) -> ScriptResult:
        executor = self.executor(working_dir, catalog=self.optional_catalog())
        interpreter = ScriptInterpreter(executor, max_parallel=self.settings.max_parallel)
        return interpreter.run(script, working_dir, cancel_event)

    def run_step(
        self,
        agent_id: str,
        working_dir: Path,
        cancel_event: threading.Event | None = None,
        *,
        model: str | None = None,
        reasoning_effort: Literal["low", "medium", "high"] | None = None,
    ) -> str:
        """Run a single catalog agent outside any workflow and return its output."""

        overrides = StepOverrides(model=model, model_reasoning_effort=reasoning_effort)
        step = resolve_step(agent_id, overrides, catalog=self.catalog)
        return self.executor(working_dir, catalog=self.catalog).execute(
            step, working_dir, cancel_event or threading.Event()
        )

    def reset(self, working_dir: Path) -> None:
        self.tracking(working_dir).clear()


def run_workflow(
    template: WorkflowTemplate | Path,
    working_dir: Path,
    cancel_event: threading.Event | None = None,
    *,
    settings: OrchestratorSettings | None = None,
    invoker: AgentInvoker | None = None,
    signal_source: BehaviorSignalSource | None = None,
    catalog: AgentCatalog | None = None,
) -> RunOutcome:
    orchestrator = StepOrchestrator(
        settings, invoker=invoker, signal_source=signal_source, catalog=catalog
    )
    return orchestrator.run_template(template, working_dir, cancel_event)


def run_script(
    script: str,
    working_dir: Path,
    cancel_event: threading.Event | None = None,
    *,
    settings: OrchestratorSettings | None = None,
    invoker: AgentInvoker | None = None,
    catalog: AgentCatalog | None = None,
) -> RunOutcome:
    orchestrator = StepOrchestrator(settings, invoker=invoker, catalog=catalog)
    return orchestrator.run_script(script, working_dir, cancel_event).outcome
