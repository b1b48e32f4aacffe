"""Workflow runner.

Drives a resolved step list to a terminal `RunOutcome`:

- steps are executed in order through the `StepExecutor`;
- completion markers are written through to the tracking store so a resumed
  run skips `executeOnce` steps that already finished;
- after each step the behavior signal is read once and the evaluators decide
  whether to stop, loop back, or trigger another step.

All sequencing state lives in an immutable `ExecutionCursor`; the runner only
chains the transitions in `cursor.py`.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from pathlib import Path

from step_orchestrator.orchestrator.catalog import AgentCatalog, StepKind
from step_orchestrator.orchestrator.errors import (
    CancelledError,
    ExecutionError,
    OrchestratorError,
    UnknownReferenceError,
)
from step_orchestrator.orchestrator.templates import resolve_module, resolve_step
from step_orchestrator.state.tracking import TrackingStore

from .behaviors import BehaviorVerdict, evaluate_behaviors
from .cursor import (
    ExecutionCursor,
    advance,
    apply_loop_back,
    end_loop,
    enqueue_trigger,
    iteration_count,
    loop_key,
    mark_completed,
    mark_started,
    needs_fallback,
    pop_trigger,
    release,
    skip_reason,
)
from .executor import StepExecutor
from .signals import BehaviorSignalSource, read_signal_safely
from .steps import RunOutcome, RunStatus, SignalAction, Step

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"


class WorkflowRunner:
    """Execute a step list with resume, loop, checkpoint and trigger handling."""

    def __init__(
        self,
        executor: StepExecutor,
        signal_source: BehaviorSignalSource,
        tracking: TrackingStore | None = None,
        *,
        catalog: AgentCatalog | None = None,
        debug_loops: bool = False,
    ) -> None:
        self.executor = executor
        self.signal_source = signal_source
        self.tracking = tracking
        self.catalog = catalog
        self.debug_loops = debug_loops

    def run(
        self,
        steps: Sequence[Step],
        working_dir: Path,
        cancel_event: threading.Event | None = None,
    ) -> RunOutcome:
        """Run `steps` in `working_dir` until completion, a checkpoint or an abort.

        Args:
            steps: Resolved steps, in template order.
            working_dir: Directory the agents work in.
            cancel_event: Set it from another thread to abort the run.

        Returns:
            The terminal outcome. Checkpoint stops are `STOPPED`, failures and
            cancellation are `ABORTED`.
        """
        cancel_event = cancel_event or threading.Event()
        cursor = self._initial_cursor()
        messages: list[str] = []

        logger.info(f"Running workflow with {len(steps)} step(s) in {working_dir}")

        while True:
            if cancel_event.is_set():
                return self._aborted(CANCELLED_REASON, messages)

            cursor, target = pop_trigger(cursor)
            if target is not None:
                outcome = self._run_triggered(target, steps, working_dir, cancel_event, messages)
                cursor = release(cursor, target)
                if outcome is not None:
                    return outcome
                continue

            if cursor.index >= len(steps):
                break

            index = cursor.index
            step = steps[index]

            reason = skip_reason(cursor, step, index)
            if reason is not None:
                logger.info(reason, extra={"agent": step.agent_id, "step_index": index})
                cursor = advance(cursor)
                continue

            try:
                run_step, identity = self._select_step(cursor, step, index)
            except OrchestratorError as e:
                return self._aborted(str(e), messages)

            cursor = mark_started(cursor, index, step.agent_id)
            if self.tracking is not None:
                self.tracking.mark_started(index)

            try:
                output = self.executor.execute(
                    run_step, working_dir, cancel_event, log_identity=identity
                )
            except CancelledError:
                return self._aborted(CANCELLED_REASON, messages)
            except ExecutionError as e:
                cursor = release(cursor, step.agent_id)
                if not step.tolerant:
                    return self._aborted(str(e), messages)
                logger.warning(
                    f"{step.agent_name} failed; continuing (tolerant step): {e}",
                    extra={"agent": step.agent_id, "step_index": index},
                )
                messages.append(f"{step.agent_name} failed: {e}")
                # A failed step's signal is not acted on.
                read_signal_safely(self.signal_source, working_dir)
                cursor = advance(cursor)
                continue

            cursor = mark_completed(cursor, index)
            if self.tracking is not None:
                self.tracking.mark_completed(index)

            key = loop_key(step, index)
            signal = read_signal_safely(self.signal_source, working_dir)
            verdict = evaluate_behaviors(step.behavior, output, signal, iteration_count(cursor, key))
            if self.debug_loops:
                self._log_verdict(step, index, key, cursor, verdict)

            if verdict.checkpoint is not None:
                reason = verdict.checkpoint.reason or f"checkpoint requested by {step.agent_name}"
                logger.info(f"Workflow stopped at checkpoint: {reason}")
                return RunOutcome(status=RunStatus.STOPPED, reason=reason, messages=tuple(messages))

            loop = verdict.loop
            if loop is not None and loop.should_repeat:
                cursor = apply_loop_back(cursor, loop, key)
                cursor = release(cursor, step.agent_id)
                logger.info(
                    f"{step.agent_name} is looping back {loop.steps_back} step(s) "
                    f"(iteration {iteration_count(cursor, key)})",
                    extra={"agent": step.agent_id, "step_index": index},
                )
                continue

            if loop is not None:
                if loop.limit_reached and loop.reason:
                    logger.info(loop.reason, extra={"agent": step.agent_id, "step_index": index})
                    messages.append(f"{step.agent_name}: {loop.reason}")
                elif loop.reason:
                    logger.info(
                        f"{step.agent_name} loop ended: {loop.reason}",
                        extra={"agent": step.agent_id, "step_index": index},
                    )
                cursor = end_loop(cursor, key)

            trigger = verdict.trigger
            if trigger is not None and trigger.should_trigger:
                cursor, accepted = enqueue_trigger(cursor, trigger.target_step_id)
                if accepted:
                    logger.info(
                        f"{step.agent_name} triggered {trigger.target_step_id}",
                        extra={"agent": step.agent_id, "target": trigger.target_step_id},
                    )
                else:
                    logger.warning(
                        f"Ignoring trigger of {trigger.target_step_id}: already running or queued",
                        extra={"agent": step.agent_id, "target": trigger.target_step_id},
                    )

            cursor = release(cursor, step.agent_id)
            cursor = advance(cursor)

        logger.info("Workflow completed")
        return RunOutcome(status=RunStatus.COMPLETED, messages=tuple(messages))

    def _initial_cursor(self) -> ExecutionCursor:
        if self.tracking is None:
            return ExecutionCursor.initial()
        return ExecutionCursor.initial(
            completed=self.tracking.completed_steps(),
            not_completed=self.tracking.not_completed_steps(),
        )

    def _select_step(self, cursor: ExecutionCursor, step: Step, index: int) -> tuple[Step, str]:
        """Return the step to execute at `index` and its log identity."""

        reference = step.not_completed_fallback
        if reference is None or not needs_fallback(cursor, step, index):
            return step, step.agent_id

        fallback = self._resolve_reference(reference)
        logger.info(
            f"{step.agent_name} did not complete last time; running {fallback.agent_name} instead",
            extra={"agent": step.agent_id, "step_index": index},
        )
        return fallback, f"{step.agent_id}:fallback"

    def _resolve_reference(self, reference: str) -> Step:
        if self.catalog is None:
            raise UnknownReferenceError(reference)
        entry = self.catalog.find(reference)
        if entry is None:
            raise UnknownReferenceError(reference)
        if entry.kind == StepKind.MODULE:
            return resolve_module(reference, catalog=self.catalog)
        return resolve_step(reference, catalog=self.catalog)

    def _run_triggered(
        self,
        target: str,
        steps: Sequence[Step],
        working_dir: Path,
        cancel_event: threading.Event,
        messages: list[str],
    ) -> RunOutcome | None:
        """Execute a triggered step.

        The signal the triggered agent leaves behind is consumed here so it
        cannot be attributed to the next step. A checkpoint stops the run;
        any other action is logged and dropped.

        Returns:
            A terminal outcome on failure or checkpoint, otherwise None.
        """

        step = next((s for s in steps if target in (s.agent_id, s.module_id)), None)
        if step is None:
            try:
                step = self._resolve_reference(target)
            except OrchestratorError as e:
                return self._aborted(f"Cannot trigger {target}: {e}", messages)

        logger.info(f"Running triggered step {step.agent_name}", extra={"agent": step.agent_id})
        try:
            self.executor.execute(step, working_dir, cancel_event, log_identity=target)
        except CancelledError:
            return self._aborted(CANCELLED_REASON, messages)
        except ExecutionError as e:
            if not step.tolerant:
                return self._aborted(str(e), messages)
            logger.warning(f"Triggered step {step.agent_name} failed; continuing: {e}")
            messages.append(f"{step.agent_name} failed: {e}")
            return None

        signal = read_signal_safely(self.signal_source, working_dir)
        if signal is None:
            return None
        if signal.action == SignalAction.CHECKPOINT:
            reason = signal.reason or f"checkpoint requested by {step.agent_name}"
            logger.info(f"Workflow stopped at checkpoint: {reason}")
            return RunOutcome(status=RunStatus.STOPPED, reason=reason, messages=tuple(messages))
        logger.info(
            f"Ignoring {signal.action.value} signal from triggered step {step.agent_name}",
            extra={"agent": step.agent_id},
        )
        return None

    def _aborted(self, reason: str, messages: list[str]) -> RunOutcome:
        logger.error(f"Workflow aborted: {reason}")
        return RunOutcome(status=RunStatus.ABORTED, reason=reason, messages=tuple(messages))

    def _log_verdict(
        self,
        step: Step,
        index: int,
        key: str,
        cursor: ExecutionCursor,
        verdict: BehaviorVerdict,
    ) -> None:
        logger.info(
            "Behavior evaluation",
            extra={
                "agent": step.agent_id,
                "step_index": index,
                "loop_key": key,
                "iterations": iteration_count(cursor, key),
                "checkpoint": verdict.checkpoint is not None,
                "loop_repeat": bool(verdict.loop and verdict.loop.should_repeat),
                "trigger": verdict.trigger.target_step_id if verdict.trigger else None,
                "skip": sorted(cursor.active_loop.skip) if cursor.active_loop else [],
            },
        )
