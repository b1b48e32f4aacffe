"""Run parsed orchestration scripts.

Stages run strictly in order. Tasks within a stage run concurrently on a
bounded thread pool and the stage joins on every task, even after a failure;
the first failure (in script order) then aborts the remaining stages.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from step_orchestrator.orchestrator.errors import CancelledError, OrchestratorError
from step_orchestrator.orchestrator.workflow.executor import StepExecutor
from step_orchestrator.orchestrator.workflow.steps import RunOutcome, RunStatus
from step_orchestrator.state.run_registry import AgentRunStatus

from .parser import Parallel, Sequential, Task, parse_script

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TaskResult:
    name: str
    success: bool
    output: str = ""
    error: str | None = None
    cancelled: bool = False
    tail_applied: int | None = None


@dataclass(frozen=True, slots=True)
class ScriptResult:
    """Outcome of one script run.

    `completed` maps each task name to its latest result; `results` keeps every
    task result in execution order.
    """

    outcome: RunOutcome
    results: tuple[TaskResult, ...] = ()
    completed: Mapping[str, TaskResult] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.outcome.ok


def apply_tail(output: str, tail: int | None) -> tuple[str, int | None]:
    if not tail:
        return output, None
    lines = output.split("\n")
    if len(lines) <= tail:
        return output, None
    return "\n".join(lines[-tail:]), tail


class ScriptInterpreter:
    """Execute `Sequential(Parallel(Task...))` plans through the step executor."""

    def __init__(self, executor: StepExecutor, *, max_parallel: int = 8) -> None:
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self.executor = executor
        self.max_parallel = max_parallel

    def run(
        self,
        script: str | Sequential,
        working_dir: Path,
        cancel_event: threading.Event | None = None,
    ) -> ScriptResult:
        """Parse (if needed) and execute a script.

        Raises:
            ScriptSyntaxError: If the script text is malformed. Nothing runs.
        """
        plan = parse_script(script) if isinstance(script, str) else script
        cancel_event = cancel_event or threading.Event()

        registry = self.executor.registry
        parent_id: str | None = None
        if registry is not None:
            parent_id = registry.start(agent_id="orchestrate", name="orchestration script").run_id

        results: list[TaskResult] = []
        try:
            outcome = self._run_stages(plan, working_dir, cancel_event, results, parent_id)
        except Exception as e:
            if registry is not None and parent_id is not None:
                registry.finish(parent_id, status=AgentRunStatus.FAILED, error=str(e))
            raise

        if registry is not None and parent_id is not None:
            status = {
                RunStatus.COMPLETED: AgentRunStatus.COMPLETED,
                RunStatus.STOPPED: AgentRunStatus.COMPLETED,
                RunStatus.ABORTED: AgentRunStatus.FAILED,
            }[outcome.status]
            if outcome.reason == "cancelled":
                status = AgentRunStatus.CANCELLED
            registry.finish(parent_id, status=status, error=outcome.reason)

        return ScriptResult(
            outcome=outcome,
            results=tuple(results),
            completed={result.name: result for result in results},
        )

    def _run_stages(
        self,
        plan: Sequential,
        working_dir: Path,
        cancel_event: threading.Event,
        results: list[TaskResult],
        parent_id: str | None,
    ) -> RunOutcome:
        total = len(plan.children)
        for number, stage in enumerate(plan.children, start=1):
            if cancel_event.is_set():
                logger.warning(f"Script cancelled before stage {number}/{total}")
                return RunOutcome(status=RunStatus.ABORTED, reason="cancelled")

            names = ", ".join(task.name for task in stage.children)
            logger.info(f"Executing stage {number}/{total}: {names}")
            stage_results = self._run_stage(stage, working_dir, cancel_event, parent_id)
            results.extend(stage_results)

            if cancel_event.is_set() or any(r.cancelled for r in stage_results):
                return RunOutcome(status=RunStatus.ABORTED, reason="cancelled")
            failed = next((r for r in stage_results if not r.success), None)
            if failed is not None:
                logger.error(f"Task {failed.name} failed, stopping script: {failed.error}")
                return RunOutcome(status=RunStatus.ABORTED, reason=f"{failed.name} failed: {failed.error}")

        return RunOutcome(status=RunStatus.COMPLETED)

    def _run_stage(
        self,
        stage: Parallel,
        working_dir: Path,
        cancel_event: threading.Event,
        parent_id: str | None,
    ) -> list[TaskResult]:
        if len(stage.children) == 1:
            return [self._run_task(stage.children[0], working_dir, cancel_event, parent_id)]

        workers = min(self.max_parallel, len(stage.children))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="script-task") as pool:
            futures = [
                pool.submit(self._run_task, task, working_dir, cancel_event, parent_id)
                for task in stage.children
            ]
            return [future.result() for future in futures]

    def _run_task(
        self,
        task: Task,
        working_dir: Path,
        cancel_event: threading.Event,
        parent_id: str | None,
    ) -> TaskResult:
        try:
            output = self.executor.run_task(
                task.name,
                task.argument,
                working_dir,
                cancel_event,
                input_files=task.input_files,
                parent_id=parent_id,
            )
        except CancelledError as e:
            return TaskResult(name=task.name, success=False, error=str(e), cancelled=True)
        except OrchestratorError as e:
            return TaskResult(name=task.name, success=False, error=str(e))

        output, tail_applied = apply_tail(output, task.tail)
        if tail_applied:
            logger.debug(f"Output of {task.name} limited to the last {tail_applied} lines")
        return TaskResult(name=task.name, success=True, output=output, tail_applied=tail_applied)
