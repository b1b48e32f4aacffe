"""Persisted registry of agent invocations.

Every step, fallback, triggered step and script task gets a record so a run
can be inspected after the fact. Writes are serialised with a lock because
parallel script tasks register concurrently.

This is intentionally minimal: a JSON file next to the tracking data.
"""

from __future__ import annotations

import json
import threading
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel


class AgentRunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class AgentRunRecord(BaseModel):
    run_id: str
    agent_id: str
    name: str
    status: AgentRunStatus
    started_at: str
    ended_at: str | None = None

    parent_id: str | None = None
    error: str | None = None


def _utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat()


@dataclass
class RunRegistry:
    path: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _load_unlocked(self) -> list[AgentRunRecord]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return []
        if not isinstance(raw, list):
            return []
        return [AgentRunRecord.model_validate(item) for item in raw]

    def _save_unlocked(self, runs: list[AgentRunRecord]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [r.model_dump(mode="json") for r in runs]
        self.path.write_text(
            json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
        )

    def list(self) -> list[AgentRunRecord]:
        with self._lock:
            return self._load_unlocked()

    def get(self, run_id: str) -> AgentRunRecord | None:
        with self._lock:
            for run in self._load_unlocked():
                if run.run_id == run_id:
                    return run
            return None

    def start(self, *, agent_id: str, name: str, parent_id: str | None = None) -> AgentRunRecord:
        with self._lock:
            runs = self._load_unlocked()
            record = AgentRunRecord(
                run_id=uuid.uuid4().hex,
                agent_id=agent_id,
                name=name,
                status=AgentRunStatus.RUNNING,
                started_at=_utc_iso_now(),
                parent_id=parent_id,
            )
            runs.append(record)
            self._save_unlocked(runs)
            return record

    def finish(
        self, run_id: str, *, status: AgentRunStatus, error: str | None = None
    ) -> AgentRunRecord:
        with self._lock:
            runs = self._load_unlocked()
            for idx, run in enumerate(runs):
                if run.run_id != run_id:
                    continue
                merged = run.model_copy(
                    update={"status": status, "ended_at": _utc_iso_now(), "error": error}
                )
                runs[idx] = merged
                self._save_unlocked(runs)
                return merged
            raise KeyError(run_id)
