#!/usr/bin/env python3
"""Programmatic orchestration example.

This demonstrates using the orchestrator components directly:

* load settings from `.env`
* run a workflow template (or an orchestration script) in a project directory
* report the terminal outcome

The agent command comes from `ORCHESTRATOR_AGENT_COMMAND`; pass `--script` to
run an ad-hoc script such as `"plan 'add search' && code 'api' & code 'ui'"`.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Sequence

from step_orchestrator.core.orchestrator import StepOrchestrator
from step_orchestrator.orchestrator.config import OrchestratorSettings
from step_orchestrator.orchestrator.logging import configure_logging
from step_orchestrator.orchestrator.workflow.steps import RunStatus


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a workflow (programmatic example).")
    parser.add_argument("--dir", default=".", help="Project directory the agents work in")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--template", help="Workflow template JSON, e.g. config/templates/default.json")
    source.add_argument("--script", help="Orchestration script to run instead of a template")
    parser.add_argument("--fresh", action="store_true", help="Ignore previously completed steps")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = OrchestratorSettings()
    configure_logging(settings.log_level, settings.log_format)

    orchestrator = StepOrchestrator(settings)
    working_dir = Path(args.dir).resolve()

    if args.script:
        result = orchestrator.run_script(args.script, working_dir)
        for task in result.results:
            print(f"{task.name}: {'ok' if task.success else task.error}")
        outcome = result.outcome
    else:
        outcome = orchestrator.run_template(Path(args.template), working_dir, fresh=args.fresh)

    for message in outcome.messages:
        print(message)
    print(f"Workflow {outcome.status.value}" + (f": {outcome.reason}" if outcome.reason else ""))
    return 0 if outcome.status != RunStatus.ABORTED else 1


if __name__ == "__main__":
    raise SystemExit(main())
