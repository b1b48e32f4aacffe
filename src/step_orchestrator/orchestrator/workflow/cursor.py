"""Execution cursor for the workflow runner.

The cursor is an immutable value. Every state change goes through one of the
transition functions below, which keeps the sequencing rules testable without
running any agent.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace

from .behaviors import LoopDecision
from .steps import Step


@dataclass(frozen=True, slots=True)
class ActiveLoop:
    """A loop that is currently "hot": its skip set suppresses steps until it ends."""

    anchor_index: int
    skip: frozenset[str] = frozenset()


@dataclass(frozen=True, slots=True)
class ExecutionCursor:
    index: int = 0
    completed: frozenset[int] = frozenset()
    not_completed: frozenset[int] = frozenset()
    loop_counters: Mapping[str, int] = field(default_factory=dict)
    active_loop: ActiveLoop | None = None
    pending_triggers: tuple[str, ...] = ()
    in_flight: frozenset[str] = frozenset()

    @staticmethod
    def initial(
        *, completed: Iterable[int] = (), not_completed: Iterable[int] = ()
    ) -> ExecutionCursor:
        return ExecutionCursor(completed=frozenset(completed), not_completed=frozenset(not_completed))


def loop_key(step: Step, index: int) -> str:
    return f"{step.loop_key_prefix}:{index}"


def iteration_count(cursor: ExecutionCursor, key: str) -> int:
    return cursor.loop_counters.get(key, 0)


def skip_reason(cursor: ExecutionCursor, step: Step, index: int) -> str | None:
    """Return why the step at `index` must be skipped, or None to run it."""

    if step.execute_once and index in cursor.completed:
        return f"{step.agent_name} skipped (already completed)."
    if cursor.active_loop is not None and step.agent_id in cursor.active_loop.skip:
        return f"{step.agent_name} skipped (loop configuration)."
    return None


def needs_fallback(cursor: ExecutionCursor, step: Step, index: int) -> bool:
    return index in cursor.not_completed and bool(step.not_completed_fallback)


def mark_started(cursor: ExecutionCursor, index: int, step_id: str) -> ExecutionCursor:
    return replace(
        cursor,
        not_completed=cursor.not_completed | {index},
        in_flight=cursor.in_flight | {step_id},
    )


def mark_completed(cursor: ExecutionCursor, index: int) -> ExecutionCursor:
    return replace(
        cursor,
        completed=cursor.completed | {index},
        not_completed=cursor.not_completed - {index},
    )


def release(cursor: ExecutionCursor, step_id: str) -> ExecutionCursor:
    """Drop the in-flight marker once a step's post-processing is over."""

    return replace(cursor, in_flight=cursor.in_flight - {step_id})


def apply_loop_back(cursor: ExecutionCursor, decision: LoopDecision, key: str) -> ExecutionCursor:
    counters = dict(cursor.loop_counters)
    counters[key] = counters.get(key, 0) + 1
    return replace(
        cursor,
        index=max(0, cursor.index - decision.steps_back),
        active_loop=ActiveLoop(anchor_index=cursor.index, skip=decision.skip),
        loop_counters=counters,
    )


def end_loop(cursor: ExecutionCursor, key: str) -> ExecutionCursor:
    counters = dict(cursor.loop_counters)
    counters[key] = 0
    return replace(cursor, active_loop=None, loop_counters=counters)


def advance(cursor: ExecutionCursor) -> ExecutionCursor:
    next_index = cursor.index + 1
    active = cursor.active_loop
    if active is not None and next_index > active.anchor_index:
        active = None
    return replace(cursor, index=next_index, active_loop=active)


def enqueue_trigger(cursor: ExecutionCursor, target_id: str) -> tuple[ExecutionCursor, bool]:
    """Queue `target_id` to run next; refuse it while it is queued or running."""

    if target_id in cursor.in_flight or target_id in cursor.pending_triggers:
        return cursor, False
    return replace(cursor, pending_triggers=(target_id, *cursor.pending_triggers)), True


def pop_trigger(cursor: ExecutionCursor) -> tuple[ExecutionCursor, str | None]:
    if not cursor.pending_triggers:
        return cursor, None
    target, *rest = cursor.pending_triggers
    return replace(cursor, pending_triggers=tuple(rest), in_flight=cursor.in_flight | {target}), target
