"""Behavior signal sources.

Agents communicate control flow (loop, checkpoint, trigger) out of band. The
runner receives the source as an injected dependency so tests can drive it
from memory instead of the filesystem.

A signal is consumed once: after a source has returned a record, the same
record is disregarded until it is rewritten.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Protocol

from step_orchestrator.orchestrator.errors import SignalParseError

from .steps import BehaviorSignal

logger = logging.getLogger(__name__)


class BehaviorSignalSource(Protocol):
    def read(self, working_dir: Path) -> BehaviorSignal | None: ...


class FileBehaviorSignalSource:
    """Read `<state_dir>/memory/behavior.json` below the working directory.

    The file is left in place (the agent owns it); a record is only reported
    again when its modification time or content changes.
    """

    def __init__(self, state_dir: Path | str = ".orchestrator") -> None:
        self._state_dir = Path(state_dir)
        self._seen: dict[Path, tuple[int, str]] = {}
        self._lock = threading.Lock()

    def path_for(self, working_dir: Path) -> Path:
        return working_dir / self._state_dir / "memory" / "behavior.json"

    def read(self, working_dir: Path) -> BehaviorSignal | None:
        path = self.path_for(working_dir)
        try:
            stat = path.stat()
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise SignalParseError(f"Failed to read behavior file {path}: {e}") from e

        fingerprint = (stat.st_mtime_ns, raw)
        with self._lock:
            if self._seen.get(path) == fingerprint:
                return None
            self._seen[path] = fingerprint

        if not raw.strip():
            return None
        try:
            obj = json.loads(raw)
        except json.JSONDecodeError as e:
            raise SignalParseError(f"Failed to parse behavior file {path}: {e}") from e
        if not isinstance(obj, dict):
            raise SignalParseError(f"Behavior file {path} must contain a JSON object")
        try:
            return BehaviorSignal.from_json(obj)
        except ValueError as e:
            raise SignalParseError(f"Invalid behavior signal in {path}: {e}") from e


class InMemoryBehaviorSignalSource:
    """Signal handoff without a side-channel file.

    `publish()` stores the next signal for a working directory; `read()` hands it
    over exactly once.
    """

    def __init__(self) -> None:
        self._pending: dict[Path, BehaviorSignal] = {}
        self._lock = threading.Lock()

    def publish(self, working_dir: Path, signal: BehaviorSignal) -> None:
        with self._lock:
            self._pending[working_dir] = signal

    def read(self, working_dir: Path) -> BehaviorSignal | None:
        with self._lock:
            return self._pending.pop(working_dir, None)


def read_signal_safely(source: BehaviorSignalSource, working_dir: Path) -> BehaviorSignal | None:
    """Read a signal, treating unreadable or malformed records as "no signal"."""

    try:
        return source.read(working_dir)
    except SignalParseError as e:
        logger.warning("Ignoring behavior signal", extra={"error": str(e)})
        return None
