from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class SignalAction(str, Enum):
    LOOP = "loop"
    CHECKPOINT = "checkpoint"
    CONTINUE = "continue"
    TRIGGER = "trigger"
    STOP = "stop"


@dataclass(frozen=True, slots=True)
class LoopBehavior:
    """Step back `steps_back` positions when the step's output ends with `trigger`."""

    steps_back: int
    trigger: str
    max_iterations: int | None = None
    skip: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if self.steps_back <= 0:
            raise ValueError(f"steps_back must be positive, got {self.steps_back}")
        if self.max_iterations is not None and self.max_iterations <= 0:
            raise ValueError(f"max_iterations must be positive, got {self.max_iterations}")

    @property
    def is_active(self) -> bool:
        return bool(self.trigger and self.trigger.strip())


@dataclass(frozen=True, slots=True)
class TriggerBehavior:
    """Run another step when the agent signals `trigger`."""

    target_step_id: str | None = None


BehaviorDescriptor = LoopBehavior | TriggerBehavior


@dataclass(frozen=True, slots=True)
class Step:
    """A fully resolved workflow step.

    Steps are created once by the template resolver and never mutated; the
    runner refers to them by index.
    """

    agent_id: str
    agent_name: str
    prompt_path: str
    model: str | None = None
    model_reasoning_effort: str | None = None
    engine: str | None = None
    module_id: str | None = None
    behavior: BehaviorDescriptor | None = None
    execute_once: bool = False
    not_completed_fallback: str | None = None
    tolerant: bool = False
    scaffold: bool = False

    @property
    def loop_key_prefix(self) -> str:
        return self.module_id or self.agent_id


@dataclass(frozen=True, slots=True)
class BehaviorSignal:
    """Out-of-band control record written by an agent after it runs."""

    action: SignalAction
    reason: str | None = None
    trigger_target_id: str | None = None

    @staticmethod
    def from_json(obj: dict[str, object]) -> BehaviorSignal:
        action_raw = obj.get("action")
        if not isinstance(action_raw, str):
            raise ValueError("behavior signal requires a string 'action'")
        action = SignalAction(action_raw.strip().lower())

        reason_raw = obj.get("reason")
        reason = reason_raw if isinstance(reason_raw, str) and reason_raw.strip() else None

        # `triggerAgentId` is what agents have historically written.
        target_raw = obj.get("trigger_target_id", obj.get("triggerAgentId"))
        target = target_raw.strip() if isinstance(target_raw, str) and target_raw.strip() else None
        return BehaviorSignal(action=action, reason=reason, trigger_target_id=target)

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {"action": self.action.value}
        if self.reason is not None:
            out["reason"] = self.reason
        if self.trigger_target_id is not None:
            out["trigger_target_id"] = self.trigger_target_id
        return out


class RunStatus(str, Enum):
    COMPLETED = "completed"
    STOPPED = "stopped"
    ABORTED = "aborted"


@dataclass(frozen=True, slots=True)
class RunOutcome:
    status: RunStatus
    reason: str | None = None
    messages: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.status == RunStatus.COMPLETED
