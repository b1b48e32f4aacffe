"""Step execution against the agent engine.

The executor is the single unit of work shared by the workflow runner and the
script interpreter. It loads the prompt, streams the agent's output to the
caller's sinks, and returns the captured text. Timeouts are passed straight
through to the engine; cancellation is the engine's job to honor.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from pathlib import Path

from step_orchestrator.engines.invoker import AgentInvoker, ChunkSink
from step_orchestrator.orchestrator.catalog import AgentCatalog
from step_orchestrator.orchestrator.errors import CancelledError, ExecutionError, OrchestratorError
from step_orchestrator.orchestrator.logging import agent_chunk_loggers
from step_orchestrator.state.run_registry import AgentRunStatus, RunRegistry

from .steps import Step

logger = logging.getLogger(__name__)

PromptLoader = Callable[[str, Path], str]
SinkFactory = Callable[[str], tuple[ChunkSink, ChunkSink]]

SCAFFOLD_AGENT_ID = "agents-builder"
SCAFFOLD_SUBDIRS: tuple[str, ...] = ("agents", "plan")


def read_prompt_file(prompt_path: str, working_dir: Path) -> str:
    """Default prompt loader: read the prompt file, relative to the working directory."""

    path = Path(prompt_path)
    if not path.is_absolute():
        path = working_dir / path
    return path.read_text(encoding="utf-8")


def load_input_files(paths: Sequence[str], working_dir: Path) -> str:
    """Concatenate input files with a header per file.

    Unreadable or non-UTF-8 files are logged and replaced by an error marker
    so the agent still sees which input is missing.
    """
    sections: list[str] = []
    rule = "=" * 60
    for raw in paths:
        path = Path(raw)
        if not path.is_absolute():
            path = working_dir / path
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Failed to load input file {raw}: {e}")
            sections.append(f"=== File: {raw} (FAILED TO LOAD) ===\nError: {e}\n{rule}")
            continue
        sections.append(f"=== File: {raw} ===\n{content}\n{rule}")
    return "\n\n".join(sections)


def compose_prompt(inputs: str, template: str, request: str) -> str:
    parts: list[str] = []
    if inputs.strip():
        parts.extend(["[INPUT FILES]", inputs, ""])
    if template.strip():
        parts.extend(["[SYSTEM]", template, ""])
    if request.strip():
        if parts:
            parts.append("[REQUEST]")
        parts.append(request)
    return "\n".join(parts).rstrip("\n")


def is_scaffold_step(step: Step) -> bool:
    return step.scaffold or step.agent_id == SCAFFOLD_AGENT_ID or "builder" in step.agent_name.lower()


class StepExecutor:
    """Run steps and ad-hoc tasks through an `AgentInvoker`."""

    def __init__(
        self,
        invoker: AgentInvoker,
        *,
        state_dir: Path = Path(".orchestrator"),
        catalog: AgentCatalog | None = None,
        prompt_loader: PromptLoader = read_prompt_file,
        sink_factory: SinkFactory = agent_chunk_loggers,
        registry: RunRegistry | None = None,
        timeout: float | None = None,
    ) -> None:
        self.invoker = invoker
        self.state_dir = state_dir
        self.catalog = catalog
        self.prompt_loader = prompt_loader
        self.sink_factory = sink_factory
        self.registry = registry
        self.timeout = timeout

    def ensure_scaffold(self, working_dir: Path) -> None:
        root = self.state_dir if self.state_dir.is_absolute() else working_dir / self.state_dir
        for name in SCAFFOLD_SUBDIRS:
            (root / name).mkdir(parents=True, exist_ok=True)

    def execute(
        self,
        step: Step,
        working_dir: Path,
        cancel_event: threading.Event,
        *,
        log_identity: str | None = None,
        parent_id: str | None = None,
    ) -> str:
        """Execute one workflow step and return its captured output.

        Args:
            step: The resolved step.
            working_dir: Directory the agent works in.
            cancel_event: Cancellation signal for the run.
            log_identity: Logger/registry identity; defaults to the step's agent id.
            parent_id: Optional registry id of the invoking run.

        Raises:
            ExecutionError: If the prompt cannot be loaded or the agent fails.
            CancelledError: If the run was cancelled.
        """
        scaffold = is_scaffold_step(step)
        if scaffold:
            self.ensure_scaffold(working_dir)

        try:
            prompt = self.prompt_loader(step.prompt_path, working_dir)
        except (OSError, UnicodeDecodeError) as e:
            raise ExecutionError(
                f"Failed to load prompt for {step.agent_name}: {e}", agent_id=step.agent_id
            ) from e

        output = self._invoke(
            agent_id=step.agent_id,
            display_name=step.agent_name,
            prompt=prompt,
            model=step.model,
            reasoning_effort=step.model_reasoning_effort,
            engine=step.engine,
            working_dir=working_dir,
            cancel_event=cancel_event,
            identity=log_identity or step.agent_id,
            parent_id=parent_id,
        )

        if scaffold:
            self.ensure_scaffold(working_dir)
        return output

    def run_task(
        self,
        name: str,
        prompt: str,
        working_dir: Path,
        cancel_event: threading.Event,
        *,
        input_files: Sequence[str] = (),
        log_identity: str | None = None,
        parent_id: str | None = None,
    ) -> str:
        """Run an ad-hoc named task (an orchestration script leaf).

        Known catalog agents contribute their model settings and their prompt template.
        The final prompt is composed from the input files, the template and the
        task's own request, in that order.
        """
        model: str | None = None
        reasoning_effort: str | None = None
        engine: str | None = None
        display_name = name
        template = ""
        entry = self.catalog.find(name) if self.catalog is not None else None
        if entry is not None:
            model = entry.model
            reasoning_effort = entry.model_reasoning_effort
            engine = entry.engine
            display_name = entry.name or name
            if entry.prompt_path:
                try:
                    template = self.prompt_loader(entry.prompt_path, working_dir)
                except (OSError, UnicodeDecodeError) as e:
                    raise ExecutionError(
                        f"Failed to load prompt template for {name}: {e}", agent_id=name
                    ) from e

        composite = compose_prompt(load_input_files(input_files, working_dir), template, prompt)

        return self._invoke(
            agent_id=name,
            display_name=display_name,
            prompt=composite,
            model=model,
            reasoning_effort=reasoning_effort,
            engine=engine,
            working_dir=working_dir,
            cancel_event=cancel_event,
            identity=log_identity or name,
            parent_id=parent_id,
        )

    def _invoke(
        self,
        *,
        agent_id: str,
        display_name: str,
        prompt: str,
        model: str | None,
        reasoning_effort: str | None,
        engine: str | None,
        working_dir: Path,
        cancel_event: threading.Event,
        identity: str,
        parent_id: str | None,
    ) -> str:
        if cancel_event.is_set():
            raise CancelledError(f"{display_name} not started: run cancelled", agent_id=agent_id)

        on_chunk, on_error_chunk = self.sink_factory(identity)
        run_id: str | None = None
        if self.registry is not None:
            run_id = self.registry.start(agent_id=identity, name=display_name, parent_id=parent_id).run_id

        logger.info(f"{display_name} started to work.", extra={"agent": identity})
        try:
            result = self.invoker.invoke(
                agent_id=agent_id,
                prompt=prompt,
                working_dir=working_dir,
                cancel_event=cancel_event,
                on_chunk=on_chunk,
                on_error_chunk=on_error_chunk,
                model=model,
                reasoning_effort=reasoning_effort,
                engine=engine,
                timeout=self.timeout,
            )
        except CancelledError as e:
            self._finish(run_id, AgentRunStatus.CANCELLED, str(e))
            raise
        except ExecutionError as e:
            self._finish(run_id, AgentRunStatus.FAILED, str(e))
            raise
        except OrchestratorError:
            self._finish(run_id, AgentRunStatus.FAILED, "orchestrator error")
            raise
        except Exception as e:
            self._finish(run_id, AgentRunStatus.FAILED, str(e))
            raise ExecutionError(f"{display_name} failed: {e}", agent_id=agent_id) from e

        self._finish(run_id, AgentRunStatus.COMPLETED, None)
        logger.info(f"{display_name} has completed their work.", extra={"agent": identity})
        return result.text

    def _finish(self, run_id: str | None, status: AgentRunStatus, error: str | None) -> None:
        if self.registry is None or run_id is None:
            return
        self.registry.finish(run_id, status=status, error=error)
