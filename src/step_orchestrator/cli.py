"""Convenience module so `python -m step_orchestrator.cli` works.

The CLI is implemented in `step_orchestrator.orchestrator.main`.
"""

from __future__ import annotations

from step_orchestrator.orchestrator.main import main

__all__ = ["main"]


if __name__ == "__main__":
    raise SystemExit(main())
