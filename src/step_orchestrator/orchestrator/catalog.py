"""Typed catalog of known agents and workflow modules.

The catalog is validated once, at load time: duplicate ids, unknown behavior
types and behaviors attached to plain agents are rejected with a precise
`CatalogError` instead of surfacing later as a generic lookup miss.

File format (JSON, camelCase keys accepted)::

    {
      "agents": [{"id": "plan-agent", "name": "Planner", "promptPath": "prompts/plan.md"}],
      "modules": [{"id": "check-task", "name": "Check Task", "promptPath": "...",
                   "behavior": {"type": "loop", "steps": 2, "trigger": "TASKS_REMAINING"}}]
    }
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from step_orchestrator.orchestrator.errors import CatalogError, UnknownReferenceError

logger = logging.getLogger(__name__)


class StepKind(str, Enum):
    AGENT = "agent"
    MODULE = "module"


class _CatalogModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        protected_namespaces=(),
    )


class LoopBehaviorConfig(_CatalogModel):
    type: Literal["loop"]
    action: Literal["stepBack"] = "stepBack"
    steps: float | None = None
    trigger: str | None = None
    max_iterations: float | None = None
    skip: list[str] = Field(default_factory=list)


class TriggerBehaviorConfig(_CatalogModel):
    type: Literal["trigger"]
    action: Literal["mainAgentCall"] = "mainAgentCall"
    trigger_agent_id: str | None = None


BehaviorConfig = Annotated[LoopBehaviorConfig | TriggerBehaviorConfig, Field(discriminator="type")]


class CatalogEntry(_CatalogModel):
    id: str = Field(min_length=1)
    kind: StepKind = StepKind.AGENT
    name: str | None = None
    description: str | None = None
    prompt_path: str | None = None
    model: str | None = None
    model_reasoning_effort: Literal["low", "medium", "high"] | None = None
    engine: str | None = None
    behavior: BehaviorConfig | None = None


class AgentCatalog:
    """Lookup of catalog entries by (kind, id)."""

    def __init__(self, entries: Iterable[CatalogEntry]) -> None:
        self._entries: dict[tuple[StepKind, str], CatalogEntry] = {}
        for entry in entries:
            key = (entry.kind, entry.id)
            if key in self._entries:
                raise CatalogError(f"Duplicate {entry.kind.value} id in catalog: {entry.id}")
            if entry.kind == StepKind.AGENT and entry.behavior is not None:
                raise CatalogError(
                    f"Agent '{entry.id}' declares a behavior; behaviors belong to modules"
                )
            self._entries[key] = entry

    def __iter__(self) -> Iterator[CatalogEntry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, entry_id: str, kind: StepKind = StepKind.AGENT) -> CatalogEntry:
        entry = self._entries.get((kind, entry_id))
        if entry is None:
            raise UnknownReferenceError(entry_id, kind=kind.value)
        return entry

    def find(self, entry_id: str) -> CatalogEntry | None:
        """Look an id up as an agent first, then as a module."""

        for kind in (StepKind.AGENT, StepKind.MODULE):
            entry = self._entries.get((kind, entry_id))
            if entry is not None:
                return entry
        return None

    def ids(self, kind: StepKind) -> list[str]:
        return [entry_id for (k, entry_id) in self._entries if k == kind]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentCatalog:
        entries: list[CatalogEntry] = []
        try:
            for raw in data.get("agents", []):
                entries.append(CatalogEntry.model_validate({**raw, "kind": StepKind.AGENT}))
            for raw in data.get("modules", []):
                entries.append(CatalogEntry.model_validate({**raw, "kind": StepKind.MODULE}))
        except ValidationError as e:
            raise CatalogError(f"Invalid catalog entry: {e}") from e
        except TypeError as e:
            raise CatalogError(f"Catalog entries must be objects: {e}") from e
        return cls(entries)

    @classmethod
    def from_file(cls, path: Path) -> AgentCatalog:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise CatalogError(f"Catalog file not found: {path}") from e
        except json.JSONDecodeError as e:
            raise CatalogError(f"Catalog file is not valid JSON: {path}: {e}") from e
        if not isinstance(raw, dict):
            raise CatalogError(f"Catalog file must contain a JSON object: {path}")

        catalog = cls.from_dict(raw)
        logger.info("Catalog loaded", extra={"path": str(path), "entries": len(catalog)})
        return catalog
