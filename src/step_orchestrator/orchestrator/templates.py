"""Template resolution: step declarations + catalog -> concrete step list.

Resolution is pure and deterministic. The only lookup is into the catalog,
so resolving the same declaration twice yields equal `Step` values.

Override precedence is always: explicit override > catalog default > error.
"""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from step_orchestrator.orchestrator.catalog import (
    AgentCatalog,
    CatalogEntry,
    LoopBehaviorConfig,
    StepKind,
    TriggerBehaviorConfig,
)
from step_orchestrator.orchestrator.errors import MissingFieldError, TemplateError
from step_orchestrator.orchestrator.workflow.steps import (
    BehaviorDescriptor,
    LoopBehavior,
    Step,
    TriggerBehavior,
)

logger = logging.getLogger(__name__)


class _TemplateModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        protected_namespaces=(),
        frozen=True,
    )


class StepOverrides(_TemplateModel):
    """Per-declaration overrides merged onto the catalog entry."""

    agent_name: str | None = None
    prompt_path: str | None = None
    model: str | None = None
    model_reasoning_effort: Literal["low", "medium", "high"] | None = None
    engine: str | None = None
    execute_once: bool = False
    not_completed_fallback: str | None = None
    tolerant: bool = False
    scaffold: bool = False

    loop_steps: float | None = None
    loop_trigger: str | None = None
    loop_max_iterations: float | None = None
    loop_skip: list[str] | None = None

    trigger_agent_id: str | None = None


class StepDeclaration(_TemplateModel):
    type: StepKind = StepKind.AGENT
    id: str = Field(min_length=1)
    overrides: StepOverrides = Field(default_factory=StepOverrides)


class WorkflowTemplate(_TemplateModel):
    name: str = Field(min_length=1)
    steps: list[StepDeclaration] = Field(default_factory=list)
    sub_agent_ids: list[str] = Field(default_factory=list)


def _positive_floor(value: float | None) -> int | None:
    if value is None or not math.isfinite(value) or value <= 0:
        return None
    floored = math.floor(value)
    return floored if floored > 0 else None


def _resolve_loop(reference: str, base: LoopBehaviorConfig, overrides: StepOverrides) -> LoopBehavior | None:
    trigger = overrides.loop_trigger if overrides.loop_trigger is not None else base.trigger
    if trigger is None:
        raise MissingFieldError(reference, ["trigger"])
    if not trigger.strip():
        logger.debug("Loop behavior has a blank trigger; treating it as inert", extra={"step": reference})
        return None

    steps_candidate = overrides.loop_steps if overrides.loop_steps is not None else base.steps
    steps_back = _positive_floor(steps_candidate) or 1

    max_candidate = (
        overrides.loop_max_iterations
        if overrides.loop_max_iterations is not None
        else base.max_iterations
    )
    skip = overrides.loop_skip if overrides.loop_skip is not None else base.skip

    return LoopBehavior(
        steps_back=steps_back,
        trigger=trigger,
        max_iterations=_positive_floor(max_candidate),
        skip=frozenset(skip),
    )


def _resolve_behavior(reference: str, entry: CatalogEntry, overrides: StepOverrides) -> BehaviorDescriptor | None:
    base = entry.behavior
    if isinstance(base, LoopBehaviorConfig):
        return _resolve_loop(reference, base, overrides)
    if isinstance(base, TriggerBehaviorConfig):
        target = overrides.trigger_agent_id or base.trigger_agent_id
        return TriggerBehavior(target_step_id=target)
    return None


def _build_step(
    entry: CatalogEntry, overrides: StepOverrides, behavior: BehaviorDescriptor | None
) -> Step:
    agent_name = overrides.agent_name or entry.name
    prompt_path = overrides.prompt_path or entry.prompt_path

    missing = [
        label
        for label, value in (("name", agent_name), ("promptPath", prompt_path))
        if not (value and value.strip())
    ]
    if agent_name is None or prompt_path is None or missing:
        raise MissingFieldError(f"{entry.kind.value.capitalize()} {entry.id}", missing)

    return Step(
        agent_id=entry.id,
        agent_name=agent_name,
        prompt_path=prompt_path,
        model=overrides.model or entry.model,
        model_reasoning_effort=overrides.model_reasoning_effort or entry.model_reasoning_effort,
        engine=overrides.engine or entry.engine,
        module_id=entry.id if entry.kind == StepKind.MODULE else None,
        behavior=behavior,
        execute_once=overrides.execute_once,
        not_completed_fallback=overrides.not_completed_fallback,
        tolerant=overrides.tolerant,
        scaffold=overrides.scaffold,
    )


def resolve_step(
    agent_id: str, overrides: StepOverrides | None = None, *, catalog: AgentCatalog
) -> Step:
    """Resolve a plain agent step."""

    entry = catalog.get(agent_id, StepKind.AGENT)
    return _build_step(entry, overrides or StepOverrides(), behavior=None)


def resolve_module(
    module_id: str, overrides: StepOverrides | None = None, *, catalog: AgentCatalog
) -> Step:
    """Resolve a module step, including its loop or trigger behavior."""

    overrides = overrides or StepOverrides()
    entry = catalog.get(module_id, StepKind.MODULE)
    behavior = _resolve_behavior(f"Module {module_id}", entry, overrides)
    return _build_step(entry, overrides, behavior)


def resolve_declaration(declaration: StepDeclaration, *, catalog: AgentCatalog) -> Step:
    if declaration.type == StepKind.MODULE:
        return resolve_module(declaration.id, declaration.overrides, catalog=catalog)
    return resolve_step(declaration.id, declaration.overrides, catalog=catalog)


def resolve_template(template: WorkflowTemplate, *, catalog: AgentCatalog) -> list[Step]:
    """Resolve every declaration; fails fast on the first bad reference.

    `subAgentIds` name catalog agents the workflow may hand off to outside its
    step list (trigger targets). They are checked here so a missing one fails
    before any step runs.
    """

    steps = [resolve_declaration(d, catalog=catalog) for d in template.steps]
    for agent_id in template.sub_agent_ids:
        catalog.get(agent_id, StepKind.AGENT)
    return steps


def load_template(path: Path) -> WorkflowTemplate:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise TemplateError(f"Template file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise TemplateError(f"Template file is not valid JSON: {path}: {e}") from e

    try:
        return WorkflowTemplate.model_validate(raw)
    except ValidationError as e:
        raise TemplateError(f"Invalid workflow template {path}: {e}") from e
