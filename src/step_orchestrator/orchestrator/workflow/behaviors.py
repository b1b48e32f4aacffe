"""Behavior evaluators: pure decisions over a step's output and its signal.

* checkpoint: any step may halt the workflow by signalling `checkpoint`.
* loop: a step with a loop descriptor steps back when its output ends with
  the configured trigger token (or when the agent signals `loop`).
* trigger: a step with a trigger descriptor hands off to another step when
  the agent signals `trigger`.

Evaluation order is fixed: a checkpoint short-circuits everything; otherwise
the loop is consulted, and the trigger only when the loop did not repeat.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from .steps import BehaviorDescriptor, BehaviorSignal, LoopBehavior, SignalAction, TriggerBehavior

logger = logging.getLogger(__name__)

ANSI_ESCAPE_SEQUENCE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]|\x1b\][^\x07]*\x07")

# Footer lines engines print after the agent's answer.
TELEMETRY_PREFIXES: tuple[str, ...] = (
    "tokens used",
    "token usage",
    "usage:",
    "cost:",
    "duration:",
    "[telemetry",
    "[tokens",
)


@dataclass(frozen=True, slots=True)
class CheckpointDecision:
    should_stop: bool
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class LoopDecision:
    should_repeat: bool
    steps_back: int
    skip: frozenset[str] = frozenset()
    reason: str | None = None
    limit_reached: bool = False


@dataclass(frozen=True, slots=True)
class TriggerDecision:
    should_trigger: bool
    target_step_id: str
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class BehaviorVerdict:
    checkpoint: CheckpointDecision | None = None
    loop: LoopDecision | None = None
    trigger: TriggerDecision | None = None


def _is_telemetry(line: str) -> bool:
    lowered = line.lower()
    return any(lowered.startswith(prefix) for prefix in TELEMETRY_PREFIXES)


def last_meaningful_line(output: str) -> str:
    """Return the last non-empty, non-telemetry line of captured output."""

    cleaned = ANSI_ESCAPE_SEQUENCE.sub("", output)
    for raw in reversed(cleaned.replace("\r\n", "\n").replace("\r", "\n").split("\n")):
        line = raw.strip()
        if not line or _is_telemetry(line):
            continue
        return line
    return ""


def final_token(output: str) -> str | None:
    tokens = last_meaningful_line(output).split()
    return tokens[-1] if tokens else None


def evaluate_checkpoint(signal: BehaviorSignal | None) -> CheckpointDecision | None:
    if signal is None or signal.action != SignalAction.CHECKPOINT:
        return None
    return CheckpointDecision(should_stop=True, reason=signal.reason)


def evaluate_loop(
    behavior: BehaviorDescriptor | None,
    output: str,
    iteration_count: int,
    signal: BehaviorSignal | None = None,
) -> LoopDecision | None:
    if not isinstance(behavior, LoopBehavior) or not behavior.is_active:
        return None

    if signal is not None and signal.action == SignalAction.STOP:
        return LoopDecision(
            should_repeat=False,
            steps_back=behavior.steps_back,
            skip=behavior.skip,
            reason=signal.reason or "loop stopped by agent",
        )

    matched = final_token(output) == behavior.trigger
    signalled = signal is not None and signal.action == SignalAction.LOOP
    if not (matched or signalled):
        return LoopDecision(should_repeat=False, steps_back=behavior.steps_back, skip=behavior.skip)

    limit = behavior.max_iterations
    if limit is not None and iteration_count + 1 > limit:
        return LoopDecision(
            should_repeat=False,
            steps_back=behavior.steps_back,
            skip=behavior.skip,
            reason=f"loop limit reached ({limit})",
            limit_reached=True,
        )

    reason = signal.reason if signalled and signal is not None else None
    return LoopDecision(
        should_repeat=True, steps_back=behavior.steps_back, skip=behavior.skip, reason=reason
    )


def evaluate_trigger(
    behavior: BehaviorDescriptor | None, signal: BehaviorSignal | None
) -> TriggerDecision | None:
    if not isinstance(behavior, TriggerBehavior):
        return None
    if signal is None or signal.action != SignalAction.TRIGGER:
        return None

    target = signal.trigger_target_id or behavior.target_step_id
    if not target:
        logger.warning(
            "Trigger signalled without a target step id in the signal or the step configuration"
        )
        return None
    return TriggerDecision(should_trigger=True, target_step_id=target, reason=signal.reason)


def evaluate_behaviors(
    behavior: BehaviorDescriptor | None,
    output: str,
    signal: BehaviorSignal | None,
    iteration_count: int,
) -> BehaviorVerdict:
    checkpoint = evaluate_checkpoint(signal)
    if checkpoint is not None:
        return BehaviorVerdict(checkpoint=checkpoint)

    loop = evaluate_loop(behavior, output, iteration_count, signal)
    if loop is not None and loop.should_repeat:
        return BehaviorVerdict(loop=loop)

    return BehaviorVerdict(loop=loop, trigger=evaluate_trigger(behavior, signal))
