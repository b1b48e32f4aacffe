"""Test configuration and fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from step_orchestrator.engines.invoker import AgentInvoker, ChunkSink, InvocationResult
from step_orchestrator.orchestrator.catalog import AgentCatalog
from step_orchestrator.orchestrator.workflow.executor import StepExecutor
from step_orchestrator.orchestrator.workflow.signals import InMemoryBehaviorSignalSource
from step_orchestrator.orchestrator.workflow.steps import BehaviorSignal

Response = str | BaseException | Callable[..., str]


@dataclass(frozen=True)
class FakeCall:
    agent_id: str
    prompt: str
    model: str | None
    working_dir: Path
    reasoning_effort: str | None = None
    engine: str | None = None


class FakeInvoker(AgentInvoker):
    """Scripted agent engine.

    `responses` maps an agent id to a response or a list of responses consumed
    one per call (the last one repeats). A response is the output text, an
    exception to raise, or a callable returning the text.

    `signals` maps an agent id to a list of signals published (one per call)
    to `signal_source` after the agent "ran"; `None` entries publish nothing.
    """

    def __init__(
        self,
        responses: dict[str, Response | list[Response]] | None = None,
        *,
        signal_source: InMemoryBehaviorSignalSource | None = None,
        signals: dict[str, list[BehaviorSignal | None]] | None = None,
    ) -> None:
        self.responses = {
            agent_id: list(v) if isinstance(v, list) else [v]
            for agent_id, v in (responses or {}).items()
        }
        self.signal_source = signal_source
        self.signals = {k: list(v) for k, v in (signals or {}).items()}
        self.calls: list[FakeCall] = []
        self._lock = threading.Lock()

    @property
    def agent_ids(self) -> list[str]:
        return [call.agent_id for call in self.calls]

    def _next(self, table: dict[str, list[Any]], agent_id: str, default: Any) -> Any:
        queue = table.get(agent_id)
        if not queue:
            return default
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def invoke(
        self,
        *,
        agent_id: str,
        prompt: str,
        working_dir: Path,
        cancel_event: threading.Event,
        on_chunk: ChunkSink,
        on_error_chunk: ChunkSink,
        model: str | None = None,
        reasoning_effort: str | None = None,
        engine: str | None = None,
        timeout: float | None = None,
    ) -> InvocationResult:
        with self._lock:
            self.calls.append(FakeCall(agent_id, prompt, model, working_dir, reasoning_effort, engine))
            response = self._next(self.responses, agent_id, f"{agent_id} done")
            queue = self.signals.get(agent_id)
            signal = queue.pop(0) if queue else None

        if callable(response):
            response = response(agent_id=agent_id, prompt=prompt, cancel_event=cancel_event)
        if isinstance(response, BaseException):
            raise response

        on_chunk(response)
        if signal is not None and self.signal_source is not None:
            self.signal_source.publish(working_dir, signal)
        return InvocationResult(text=response)


def fake_prompt_loader(prompt_path: str, working_dir: Path) -> str:
    return f"prompt from {prompt_path}"


@pytest.fixture
def catalog_data() -> dict[str, Any]:
    """A small catalog covering agents, a loop module and a trigger module."""
    return {
        "agents": [
            {"id": "plan", "name": "Planner", "promptPath": "prompts/plan.md"},
            {"id": "code", "name": "Coder", "promptPath": "prompts/code.md", "model": "gpt-5"},
            {"id": "review", "name": "Reviewer", "promptPath": "prompts/review.md"},
            {"id": "fix", "name": "Fixer", "promptPath": "prompts/fix.md"},
            {"id": "plan-recovery", "name": "Plan Recovery", "promptPath": "prompts/recover.md"},
            {"id": "agents-builder", "name": "Agents Builder", "promptPath": "prompts/builder.md"},
        ],
        "modules": [
            {
                "id": "check-tasks",
                "name": "Task Checker",
                "promptPath": "prompts/check.md",
                "behavior": {
                    "type": "loop",
                    "action": "stepBack",
                    "steps": 2,
                    "trigger": "TASKS_REMAINING",
                    "maxIterations": 3,
                    "skip": ["plan"],
                },
            },
            {
                "id": "dispatcher",
                "name": "Dispatcher",
                "promptPath": "prompts/dispatch.md",
                "behavior": {"type": "trigger", "action": "mainAgentCall", "triggerAgentId": "fix"},
            },
        ],
    }


@pytest.fixture
def catalog(catalog_data: dict[str, Any]) -> AgentCatalog:
    return AgentCatalog.from_dict(catalog_data)


@pytest.fixture
def signal_source() -> InMemoryBehaviorSignalSource:
    return InMemoryBehaviorSignalSource()


@pytest.fixture
def make_executor(tmp_path: Path, catalog: AgentCatalog) -> Callable[[AgentInvoker], StepExecutor]:
    """Build a `StepExecutor` that reads no prompt files."""

    def _make(invoker: AgentInvoker, **kwargs: Any) -> StepExecutor:
        kwargs.setdefault("catalog", catalog)
        kwargs.setdefault("prompt_loader", fake_prompt_loader)
        return StepExecutor(invoker, state_dir=tmp_path / ".orchestrator", **kwargs)

    return _make


@pytest.fixture
def make_invoker(signal_source: InMemoryBehaviorSignalSource) -> Callable[..., FakeInvoker]:
    """Build a `FakeInvoker` publishing into the shared in-memory signal source."""

    def _make(
        responses: dict[str, Response | list[Response]] | None = None,
        signals: dict[str, list[BehaviorSignal | None]] | None = None,
    ) -> FakeInvoker:
        return FakeInvoker(responses, signal_source=signal_source, signals=signals)

    return _make
