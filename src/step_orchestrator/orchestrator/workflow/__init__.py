"""Workflow execution.

This package holds first-class types for:
- Steps and their loop/trigger behavior descriptors
- Behavior signals written by agents, and the evaluators that read them
- The immutable execution cursor and the runner that drives it

Sequencing decisions are pure functions of the cursor, the step and the
signal, so a run can be resumed from persisted completion markers.
"""

__all__: list[str] = []
