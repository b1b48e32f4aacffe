"""CLI entrypoint for the step orchestrator.

Exit codes:
- 0: completed
- 1: unexpected failure
- 2: configuration, catalog, template or script error (nothing ran)
- 3: stopped at a checkpoint
- 4: aborted (agent failure or cancellation)
"""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import TypeVar

from pydantic import ValidationError

from step_orchestrator import __version__
from step_orchestrator.core.orchestrator import StepOrchestrator
from step_orchestrator.orchestrator.config import OrchestratorSettings
from step_orchestrator.orchestrator.errors import (
    CatalogError,
    ExecutionError,
    MissingFieldError,
    ScriptSyntaxError,
    TemplateError,
    UnknownReferenceError,
)
from step_orchestrator.orchestrator.logging import configure_logging
from step_orchestrator.orchestrator.workflow.steps import RunOutcome, RunStatus

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_STOPPED = 3
EXIT_ABORTED = 4

_EXIT_CODES = {
    RunStatus.COMPLETED: EXIT_OK,
    RunStatus.STOPPED: EXIT_STOPPED,
    RunStatus.ABORTED: EXIT_ABORTED,
}

T = TypeVar("T")


def _add_common_arguments(parser: argparse.ArgumentParser, *, catalog: bool = True) -> None:
    parser.add_argument(
        "--dir",
        dest="working_dir",
        default=".",
        help="Working directory the agents operate in (default: current directory)",
    )
    if catalog:
        parser.add_argument(
            "--catalog",
            default=None,
            help="Agent catalog JSON (overrides ORCHESTRATOR_CATALOG_PATH)",
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="orchestrator",
        description="Run multi-agent step workflows and orchestration scripts",
    )
    parser.add_argument("--version", action="version", version=f"step-orchestrator {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run a workflow template")
    run.add_argument("--template", required=True, help="Path to the workflow template JSON")
    run.add_argument(
        "--fresh",
        action="store_true",
        help="Discard completion tracking and start from the first step",
    )
    _add_common_arguments(run)

    orchestrate = subparsers.add_parser(
        "orchestrate",
        help="Run an orchestration script, e.g. \"plan 'x' && build 'a' & test 'b'\"",
    )
    orchestrate.add_argument("script", help="Orchestration script")
    _add_common_arguments(orchestrate)

    step = subparsers.add_parser("step", help="Run a single catalog agent")
    step.add_argument("agent_id", help="Agent id from the catalog")
    step.add_argument("--model", default=None, help="Override the agent's model")
    step.add_argument(
        "--reasoning",
        choices=("low", "medium", "high"),
        default=None,
        help="Override the agent's reasoning effort",
    )
    _add_common_arguments(step)

    reset = subparsers.add_parser("reset", help="Clear completed/not-completed step tracking")
    _add_common_arguments(reset, catalog=False)

    return parser


def run_cancellable(target: Callable[[threading.Event], T]) -> T:
    """Run `target` on a worker thread; Ctrl-C sets its cancel event instead of killing it."""

    cancel_event = threading.Event()
    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="orchestrator") as pool:
        future = pool.submit(target, cancel_event)
        while True:
            try:
                return future.result(timeout=0.5)
            except TimeoutError:
                continue
            except KeyboardInterrupt:
                logger.warning("Interrupted; cancelling the run")
                cancel_event.set()


def _report(outcome: RunOutcome) -> int:
    for message in outcome.messages:
        print(message)
    if outcome.status == RunStatus.COMPLETED:
        print("Completed")
    elif outcome.status == RunStatus.STOPPED:
        print(f"Stopped at checkpoint: {outcome.reason}")
    else:
        print(f"Aborted: {outcome.reason}", file=sys.stderr)
    return _EXIT_CODES[outcome.status]


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = OrchestratorSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return EXIT_USAGE

    configure_logging(settings.log_level, settings.log_format)

    catalog_path = getattr(args, "catalog", None)
    if catalog_path:
        settings = settings.model_copy(update={"catalog_path": Path(catalog_path)})

    working_dir = Path(args.working_dir).resolve()

    try:
        orchestrator = StepOrchestrator(settings)

        if args.command == "run":
            outcome = run_cancellable(
                lambda cancel: orchestrator.run_template(
                    Path(args.template), working_dir, cancel, fresh=args.fresh
                )
            )
            return _report(outcome)

        if args.command == "orchestrate":
            result = run_cancellable(
                lambda cancel: orchestrator.run_script(args.script, working_dir, cancel)
            )
            for task in result.results:
                status = "ok" if task.success else f"failed: {task.error}"
                print(f"{task.name}: {status}")
            return _report(result.outcome)

        if args.command == "step":
            output = run_cancellable(
                lambda cancel: orchestrator.run_step(
                    args.agent_id,
                    working_dir,
                    cancel,
                    model=args.model,
                    reasoning_effort=args.reasoning,
                )
            )
            print(output)
            return EXIT_OK

        if args.command == "reset":
            orchestrator.reset(working_dir)
            print(f"Cleared step tracking in {settings.state_path(working_dir)}")
            return EXIT_OK

        logger.error("Unknown command", extra={"command": args.command})
        return EXIT_USAGE

    except (
        CatalogError,
        TemplateError,
        UnknownReferenceError,
        MissingFieldError,
        ScriptSyntaxError,
    ) as e:
        logger.error(str(e))
        print(str(e), file=sys.stderr)
        return EXIT_USAGE

    except ExecutionError as e:
        logger.error(str(e), extra={"agent": e.agent_id})
        print(f"Aborted: {e}", file=sys.stderr)
        return EXIT_ABORTED

    except Exception:
        logger.exception("Command failed")
        return EXIT_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
