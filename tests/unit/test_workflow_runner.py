"""Unit tests for the workflow runner.

The agent engine is a scripted fake and behavior signals go through an
in-memory source, so every sequencing rule is checked without processes.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any

import pytest

from step_orchestrator.orchestrator.catalog import AgentCatalog
from step_orchestrator.orchestrator.errors import CancelledError, ExecutionError
from step_orchestrator.orchestrator.templates import WorkflowTemplate, resolve_template
from step_orchestrator.orchestrator.workflow.executor import read_prompt_file
from step_orchestrator.orchestrator.workflow.runner import WorkflowRunner
from step_orchestrator.orchestrator.workflow.signals import FileBehaviorSignalSource
from step_orchestrator.orchestrator.workflow.steps import BehaviorSignal, RunStatus, SignalAction, Step
from step_orchestrator.state.tracking import TrackingStore


def _steps(catalog: AgentCatalog, *declarations: dict[str, Any]) -> list[Step]:
    template = WorkflowTemplate.model_validate({"name": "test", "steps": list(declarations)})
    return resolve_template(template, catalog=catalog)


@pytest.fixture
def tracking(tmp_path: Path) -> TrackingStore:
    return TrackingStore(tmp_path / ".orchestrator" / "template.json")


@pytest.fixture
def make_runner(make_executor, signal_source, catalog, tracking):
    def _make(invoker, **kwargs: Any) -> WorkflowRunner:
        executor = make_executor(invoker, sink_factory=kwargs.pop("sink_factory", _silent_sinks))
        return WorkflowRunner(
            executor,
            kwargs.pop("signals", signal_source),
            kwargs.pop("tracking", tracking),
            catalog=catalog,
            **kwargs,
        )

    return _make


def _silent_sinks(identity: str):
    return (lambda _chunk: None), (lambda _chunk: None)


def test_runs_steps_in_order_and_records_completion(
    tmp_path: Path, catalog, make_invoker, make_runner, tracking
) -> None:
    invoker = make_invoker()
    steps = _steps(catalog, {"id": "plan"}, {"id": "code"}, {"id": "review"})

    outcome = make_runner(invoker).run(steps, tmp_path)

    assert outcome.status == RunStatus.COMPLETED
    assert outcome.ok
    assert invoker.agent_ids == ["plan", "code", "review"]
    assert tracking.completed_steps() == {0, 1, 2}
    assert tracking.not_completed_steps() == set()


def test_step_model_is_passed_to_the_engine(tmp_path: Path, catalog, make_invoker, make_runner) -> None:
    invoker = make_invoker()
    steps = _steps(catalog, {"id": "code"}, {"id": "plan", "overrides": {"model": "o3"}})

    make_runner(invoker).run(steps, tmp_path)

    assert [call.model for call in invoker.calls] == ["gpt-5", "o3"]


def test_execute_once_steps_run_once_across_resumes(
    tmp_path: Path, catalog, make_invoker, make_runner, tracking
) -> None:
    steps = _steps(catalog, {"id": "plan", "overrides": {"executeOnce": True}}, {"id": "code"})

    first = make_invoker({"code": ExecutionError("boom", agent_id="code")})
    outcome = make_runner(first).run(steps, tmp_path)

    assert outcome.status == RunStatus.ABORTED
    assert outcome.reason == "boom"
    assert tracking.completed_steps() == {0}
    assert tracking.not_completed_steps() == {1}

    second = make_invoker()
    outcome = make_runner(second).run(steps, tmp_path)

    assert outcome.status == RunStatus.COMPLETED
    assert second.agent_ids == ["code"]

    third = make_invoker()
    make_runner(third).run(steps, tmp_path)
    assert third.agent_ids == ["code"]


def test_checkpoint_signal_stops_the_run(tmp_path: Path, catalog, make_invoker, make_runner) -> None:
    invoker = make_invoker(
        signals={"code": [BehaviorSignal(SignalAction.CHECKPOINT, reason="needs human review")]}
    )
    steps = _steps(catalog, {"id": "plan"}, {"id": "code"}, {"id": "review"})

    outcome = make_runner(invoker).run(steps, tmp_path)

    assert outcome.status == RunStatus.STOPPED
    assert outcome.reason == "needs human review"
    assert invoker.agent_ids == ["plan", "code"]


def test_checkpoint_wins_over_a_matching_loop(
    tmp_path: Path, catalog, make_invoker, make_runner, tracking
) -> None:
    invoker = make_invoker(
        {"check-tasks": "TASKS_REMAINING"},
        signals={"check-tasks": [BehaviorSignal(SignalAction.CHECKPOINT)]},
    )
    steps = _steps(catalog, {"id": "plan"}, {"id": "code"}, {"type": "module", "id": "check-tasks"})

    outcome = make_runner(invoker).run(steps, tmp_path)

    assert outcome.status == RunStatus.STOPPED
    assert invoker.agent_ids == ["plan", "code", "check-tasks"]
    assert tracking.completed_steps() == {0, 1, 2}


def test_loop_steps_back_skips_configured_steps_and_respects_limit(
    tmp_path: Path, catalog, make_invoker, make_runner
) -> None:
    invoker = make_invoker({"check-tasks": "3 tasks left\nTASKS_REMAINING\ntokens used: 1200"})
    steps = _steps(catalog, {"id": "plan"}, {"id": "code"}, {"type": "module", "id": "check-tasks"})

    outcome = make_runner(invoker).run(steps, tmp_path)

    assert outcome.status == RunStatus.COMPLETED
    # One initial pass plus three loop iterations; the planner is skipped while looping.
    assert invoker.agent_ids == ["plan"] + ["code", "check-tasks"] * 4
    assert outcome.messages == ("Task Checker: loop limit reached (3)",)


def test_loop_ends_when_trigger_token_is_absent(tmp_path: Path, catalog, make_invoker, make_runner) -> None:
    invoker = make_invoker({"check-tasks": ["TASKS_REMAINING", "all tasks completed"]})
    steps = _steps(
        catalog,
        {"id": "plan"},
        {"id": "code"},
        {"type": "module", "id": "check-tasks"},
        {"id": "review"},
    )

    outcome = make_runner(invoker).run(steps, tmp_path)

    assert outcome.status == RunStatus.COMPLETED
    assert outcome.messages == ()
    assert invoker.agent_ids == ["plan", "code", "check-tasks", "code", "check-tasks", "review"]


def test_skip_set_is_cleared_once_the_loop_is_over(tmp_path: Path, catalog, make_invoker, make_runner) -> None:
    invoker = make_invoker({"check-tasks": ["TASKS_REMAINING", "done"]})
    steps = _steps(
        catalog,
        {"id": "plan"},
        {"id": "code"},
        {"type": "module", "id": "check-tasks"},
        {"id": "plan"},
    )

    make_runner(invoker).run(steps, tmp_path)

    assert invoker.agent_ids == ["plan", "code", "check-tasks", "code", "check-tasks", "plan"]


def test_loop_signal_repeats_without_trigger_token(tmp_path: Path, catalog, make_invoker, make_runner) -> None:
    invoker = make_invoker(
        {"check-tasks": "no token here"},
        signals={"check-tasks": [BehaviorSignal(SignalAction.LOOP, reason="more work")]},
    )
    steps = _steps(catalog, {"id": "code"}, {"type": "module", "id": "check-tasks"})

    make_runner(invoker).run(steps, tmp_path)

    assert invoker.agent_ids == ["code", "check-tasks", "code", "check-tasks"]


def test_stop_signal_ends_a_matching_loop(tmp_path: Path, catalog, make_invoker, make_runner) -> None:
    invoker = make_invoker(
        {"check-tasks": "TASKS_REMAINING"},
        signals={"check-tasks": [BehaviorSignal(SignalAction.STOP, reason="good enough")]},
    )
    steps = _steps(catalog, {"id": "code"}, {"type": "module", "id": "check-tasks"}, {"id": "review"})

    outcome = make_runner(invoker).run(steps, tmp_path)

    assert outcome.status == RunStatus.COMPLETED
    assert invoker.agent_ids == ["code", "check-tasks", "review"]


def test_loop_overrides_from_the_template(tmp_path: Path, catalog, make_invoker, make_runner) -> None:
    invoker = make_invoker({"check-tasks": "TASKS_REMAINING"})
    steps = _steps(
        catalog,
        {"id": "plan"},
        {"id": "code"},
        {
            "type": "module",
            "id": "check-tasks",
            "overrides": {"loopSteps": 1, "loopMaxIterations": 1, "loopSkip": []},
        },
    )

    outcome = make_runner(invoker).run(steps, tmp_path)

    assert invoker.agent_ids == ["plan", "code", "check-tasks", "code", "check-tasks"]
    assert outcome.messages == ("Task Checker: loop limit reached (1)",)


def test_trigger_runs_descriptor_target_from_catalog(
    tmp_path: Path, catalog, make_invoker, make_runner
) -> None:
    invoker = make_invoker(signals={"dispatcher": [BehaviorSignal(SignalAction.TRIGGER)]})
    steps = _steps(catalog, {"type": "module", "id": "dispatcher"}, {"id": "review"})

    outcome = make_runner(invoker).run(steps, tmp_path)

    assert outcome.status == RunStatus.COMPLETED
    assert invoker.agent_ids == ["dispatcher", "fix", "review"]


def test_trigger_target_from_signal_runs_step_from_the_list(
    tmp_path: Path, catalog, make_invoker, make_runner
) -> None:
    invoker = make_invoker(
        signals={"dispatcher": [BehaviorSignal(SignalAction.TRIGGER, trigger_target_id="code")]}
    )
    steps = _steps(
        catalog,
        {"type": "module", "id": "dispatcher"},
        {"id": "review"},
        {"id": "code", "overrides": {"model": "o3"}},
    )

    make_runner(invoker).run(steps, tmp_path)

    assert invoker.agent_ids == ["dispatcher", "code", "review", "code"]
    assert invoker.calls[1].model == "o3"


def test_signal_from_a_triggered_step_is_not_applied_to_the_next_step(
    tmp_path: Path, catalog, make_invoker, make_runner
) -> None:
    invoker = make_invoker(
        signals={
            "dispatcher": [BehaviorSignal(SignalAction.TRIGGER)],
            "fix": [BehaviorSignal(SignalAction.LOOP)],
        }
    )
    steps = _steps(
        catalog,
        {"type": "module", "id": "dispatcher"},
        {"type": "module", "id": "check-tasks"},
        {"id": "plan"},
    )

    outcome = make_runner(invoker).run(steps, tmp_path)

    assert outcome.status == RunStatus.COMPLETED
    assert invoker.agent_ids == ["dispatcher", "fix", "check-tasks", "plan"]


def test_checkpoint_from_a_triggered_step_stops_the_run(
    tmp_path: Path, catalog, make_invoker, make_runner
) -> None:
    invoker = make_invoker(
        signals={
            "dispatcher": [BehaviorSignal(SignalAction.TRIGGER)],
            "fix": [BehaviorSignal(SignalAction.CHECKPOINT, reason="from fix")],
        }
    )
    steps = _steps(catalog, {"type": "module", "id": "dispatcher"}, {"id": "review"}, {"id": "plan"})

    outcome = make_runner(invoker).run(steps, tmp_path)

    assert outcome.status == RunStatus.STOPPED
    assert outcome.reason == "from fix"
    assert invoker.agent_ids == ["dispatcher", "fix"]


def test_signal_from_a_failed_tolerant_step_is_discarded(
    tmp_path: Path, catalog, signal_source, make_invoker, make_runner
) -> None:
    def fail_after_checkpoint(**_kwargs: Any) -> BaseException:
        signal_source.publish(tmp_path, BehaviorSignal(SignalAction.CHECKPOINT, reason="stale"))
        return ExecutionError("exit 1", agent_id="code")

    invoker = make_invoker({"code": fail_after_checkpoint})
    steps = _steps(catalog, {"id": "code", "overrides": {"tolerant": True}}, {"id": "review"})

    outcome = make_runner(invoker).run(steps, tmp_path)

    assert outcome.status == RunStatus.COMPLETED
    assert invoker.agent_ids == ["code", "review"]


def test_self_trigger_is_rejected(tmp_path: Path, catalog, make_invoker, make_runner) -> None:
    invoker = make_invoker(
        signals={
            "dispatcher": [BehaviorSignal(SignalAction.TRIGGER, trigger_target_id="dispatcher")]
        }
    )
    steps = _steps(catalog, {"type": "module", "id": "dispatcher"}, {"id": "review"})

    outcome = make_runner(invoker).run(steps, tmp_path)

    assert outcome.status == RunStatus.COMPLETED
    assert invoker.agent_ids == ["dispatcher", "review"]


def test_trigger_signal_is_ignored_on_steps_without_trigger_behavior(
    tmp_path: Path, catalog, make_invoker, make_runner
) -> None:
    invoker = make_invoker(
        signals={"plan": [BehaviorSignal(SignalAction.TRIGGER, trigger_target_id="fix")]}
    )
    steps = _steps(catalog, {"id": "plan"}, {"id": "review"})

    make_runner(invoker).run(steps, tmp_path)

    assert invoker.agent_ids == ["plan", "review"]


def test_unknown_trigger_target_aborts(tmp_path: Path, catalog, make_invoker, make_runner) -> None:
    invoker = make_invoker(
        signals={"dispatcher": [BehaviorSignal(SignalAction.TRIGGER, trigger_target_id="nope")]}
    )
    steps = _steps(catalog, {"type": "module", "id": "dispatcher"}, {"id": "review"})

    outcome = make_runner(invoker).run(steps, tmp_path)

    assert outcome.status == RunStatus.ABORTED
    assert "nope" in (outcome.reason or "")
    assert invoker.agent_ids == ["dispatcher"]


def test_fallback_runs_in_place_of_an_interrupted_step(
    tmp_path: Path, catalog, make_invoker, make_runner, tracking
) -> None:
    tracking.mark_started(0)
    identities: list[str] = []

    def recording_sinks(identity: str):
        identities.append(identity)
        return _silent_sinks(identity)

    invoker = make_invoker()
    steps = _steps(
        catalog,
        {"id": "plan", "overrides": {"notCompletedFallback": "plan-recovery"}},
        {"id": "code"},
    )

    outcome = make_runner(invoker, sink_factory=recording_sinks).run(steps, tmp_path)

    assert outcome.status == RunStatus.COMPLETED
    assert invoker.agent_ids == ["plan-recovery", "code"]
    assert identities == ["plan:fallback", "code"]
    assert tracking.not_completed_steps() == set()
    assert tracking.completed_steps() == {0, 1}


def test_signal_from_a_fallback_step_is_evaluated_in_its_place(
    tmp_path: Path, catalog, make_invoker, make_runner, tracking
) -> None:
    tracking.mark_started(0)
    invoker = make_invoker(
        signals={"plan-recovery": [BehaviorSignal(SignalAction.CHECKPOINT, reason="recovered")]}
    )
    steps = _steps(
        catalog,
        {"id": "plan", "overrides": {"notCompletedFallback": "plan-recovery"}},
        {"id": "code"},
    )

    outcome = make_runner(invoker).run(steps, tmp_path)

    assert outcome.status == RunStatus.STOPPED
    assert outcome.reason == "recovered"
    assert invoker.agent_ids == ["plan-recovery"]
    assert tracking.completed_steps() == {0}


def test_undecodable_prompt_file_aborts_the_run(
    tmp_path: Path, catalog, signal_source, make_invoker, make_executor
) -> None:
    (tmp_path / "prompts").mkdir()
    (tmp_path / "prompts" / "plan.md").write_bytes(b"\xff\xfe\x00\x81")
    invoker = make_invoker()
    executor = make_executor(invoker, prompt_loader=read_prompt_file, sink_factory=_silent_sinks)
    steps = _steps(catalog, {"id": "plan"}, {"id": "code"})

    outcome = WorkflowRunner(executor, signal_source, catalog=catalog).run(steps, tmp_path)

    assert outcome.status == RunStatus.ABORTED
    assert "Failed to load prompt for Planner" in (outcome.reason or "")
    assert invoker.calls == []


def test_fallback_is_not_used_for_a_clean_start(tmp_path: Path, catalog, make_invoker, make_runner) -> None:
    invoker = make_invoker()
    steps = _steps(catalog, {"id": "plan", "overrides": {"notCompletedFallback": "plan-recovery"}})

    make_runner(invoker).run(steps, tmp_path)

    assert invoker.agent_ids == ["plan"]


def test_tolerant_step_failure_is_logged_and_the_run_continues(
    tmp_path: Path, catalog, make_invoker, make_runner, tracking
) -> None:
    invoker = make_invoker({"code": ExecutionError("exit 1", agent_id="code")})
    steps = _steps(catalog, {"id": "plan"}, {"id": "code", "overrides": {"tolerant": True}}, {"id": "review"})

    outcome = make_runner(invoker).run(steps, tmp_path)

    assert outcome.status == RunStatus.COMPLETED
    assert outcome.messages == ("Coder failed: exit 1",)
    assert invoker.agent_ids == ["plan", "code", "review"]
    assert tracking.not_completed_steps() == {1}
    assert tracking.completed_steps() == {0, 2}


def test_failure_aborts_and_keeps_completed_markers(
    tmp_path: Path, catalog, make_invoker, make_runner, tracking
) -> None:
    invoker = make_invoker({"code": ExecutionError("exit 2", agent_id="code")})
    steps = _steps(catalog, {"id": "plan"}, {"id": "code"}, {"id": "review"})

    outcome = make_runner(invoker).run(steps, tmp_path)

    assert outcome.status == RunStatus.ABORTED
    assert outcome.reason == "exit 2"
    assert invoker.agent_ids == ["plan", "code"]
    assert tracking.completed_steps() == {0}


def test_cancellation_during_a_step_aborts(tmp_path: Path, catalog, make_invoker, make_runner) -> None:
    invoker = make_invoker({"code": CancelledError("cancelled", agent_id="code")})
    steps = _steps(catalog, {"id": "plan"}, {"id": "code"}, {"id": "review"})

    outcome = make_runner(invoker).run(steps, tmp_path)

    assert outcome.status == RunStatus.ABORTED
    assert outcome.reason == "cancelled"
    assert invoker.agent_ids == ["plan", "code"]


def test_cancellation_between_steps_prevents_new_steps(
    tmp_path: Path, catalog, make_invoker, make_runner
) -> None:
    cancel = threading.Event()

    def plan_and_cancel(**_kwargs: Any) -> str:
        cancel.set()
        return "planned"

    invoker = make_invoker({"plan": plan_and_cancel})
    steps = _steps(catalog, {"id": "plan"}, {"id": "code"})

    outcome = make_runner(invoker).run(steps, tmp_path, cancel)

    assert outcome.status == RunStatus.ABORTED
    assert outcome.reason == "cancelled"
    assert invoker.agent_ids == ["plan"]


def test_signals_from_the_behavior_file(tmp_path: Path, catalog, make_invoker, make_runner) -> None:
    behavior_file = tmp_path / ".orchestrator" / "memory" / "behavior.json"

    def write_checkpoint(**_kwargs: Any) -> str:
        behavior_file.parent.mkdir(parents=True, exist_ok=True)
        behavior_file.write_text(
            json.dumps({"action": "checkpoint", "reason": "approve the plan"}), encoding="utf-8"
        )
        return "plan written"

    invoker = make_invoker({"plan": write_checkpoint})
    steps = _steps(catalog, {"id": "plan"}, {"id": "code"})

    runner = make_runner(invoker, signals=FileBehaviorSignalSource(".orchestrator"))
    outcome = runner.run(steps, tmp_path)

    assert outcome.status == RunStatus.STOPPED
    assert outcome.reason == "approve the plan"


def test_malformed_behavior_file_is_treated_as_no_signal(
    tmp_path: Path, catalog, make_invoker, make_runner
) -> None:
    behavior_file = tmp_path / ".orchestrator" / "memory" / "behavior.json"
    behavior_file.parent.mkdir(parents=True)
    behavior_file.write_text("{not json", encoding="utf-8")

    invoker = make_invoker()
    steps = _steps(catalog, {"id": "plan"}, {"id": "code"})

    runner = make_runner(invoker, signals=FileBehaviorSignalSource(".orchestrator"))
    outcome = runner.run(steps, tmp_path)

    assert outcome.status == RunStatus.COMPLETED
    assert invoker.agent_ids == ["plan", "code"]


def test_runs_without_tracking_store(tmp_path: Path, catalog, make_invoker, make_runner) -> None:
    invoker = make_invoker()
    steps = _steps(catalog, {"id": "plan", "overrides": {"executeOnce": True}})

    runner = make_runner(invoker, tracking=None)
    runner.run(steps, tmp_path)
    runner.run(steps, tmp_path)

    assert invoker.agent_ids == ["plan", "plan"]
