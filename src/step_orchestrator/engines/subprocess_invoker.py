"""Run agents as CLI subprocesses.

The command line comes from a template such as
`codex exec --profile {profile} -C {cwd}`; `{profile}` and `{cwd}` are
substituted per invocation and the prompt is written to the child's stdin.
Steps that name an engine use that engine's own command template instead.

stdout and stderr are read concurrently using `selectors` and forwarded to the
chunk sinks as they arrive. Between reads the cancel event and the deadline
are checked; on either the child is terminated (then killed if it lingers).
"""

from __future__ import annotations

import codecs
import logging
import os
import re
import selectors
import shlex
import subprocess
import threading
import time
from collections.abc import Mapping
from pathlib import Path
from typing import IO

from step_orchestrator.engines.invoker import AgentInvoker, ChunkSink, InvocationResult
from step_orchestrator.orchestrator.errors import CancelledError, ExecutionError

logger = logging.getLogger(__name__)

_READ_SIZE = 4096
_TERMINATE_GRACE_SECONDS = 5.0
_OVERWRITTEN_LINE = re.compile(r"^.*\r([^\r\n]*)", re.MULTILINE)


def normalize_output(text: str) -> str:
    """Collapse carriage-return overwrites and excessive blank lines."""

    text = text.replace("\r\n", "\n")
    text = _OVERWRITTEN_LINE.sub(r"\1", text)
    text = text.replace("\r", "\n")
    return re.sub(r"\n{3,}", "\n\n", text)


class SubprocessAgentInvoker(AgentInvoker):
    """Agent engine backed by an external CLI."""

    def __init__(
        self,
        command_template: str,
        *,
        model_flag: str | None = "--model",
        reasoning_flag: str | None = "--config",
        engine_commands: Mapping[str, str] | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        """Initialize the subprocess engine.

        Args:
            command_template: Command line with optional `{profile}`/`{cwd}` placeholders.
            model_flag: Flag used to pass a model override; None disables it.
            reasoning_flag: Flag used to pass `model_reasoning_effort=<level>`; None disables it.
            engine_commands: Command templates for named engines, used when a step selects one.
            env: Extra environment variables for the child process.
        """
        if not command_template.strip():
            raise ValueError("Agent command template is required")
        self.command_template = command_template
        self.model_flag = model_flag
        self.reasoning_flag = reasoning_flag
        self.engine_commands = dict(engine_commands or {})
        self.env = env or {}

    def build_command(
        self,
        *,
        agent_id: str,
        working_dir: Path,
        model: str | None,
        reasoning_effort: str | None = None,
        engine: str | None = None,
    ) -> list[str]:
        template = self.command_template
        if engine is not None:
            if engine not in self.engine_commands:
                known = ", ".join(sorted(self.engine_commands)) or "none configured"
                raise ExecutionError(
                    f"Unknown engine '{engine}' for agent '{agent_id}' (known: {known})",
                    agent_id=agent_id,
                )
            template = self.engine_commands[engine]

        argv = [
            part.format(profile=agent_id, cwd=str(working_dir))
            for part in shlex.split(template)
        ]
        if model and self.model_flag:
            argv.extend([self.model_flag, model])
        if reasoning_effort and self.reasoning_flag:
            argv.extend([self.reasoning_flag, f'model_reasoning_effort="{reasoning_effort}"'])
        return argv

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
        if cancel_event.is_set():
            raise CancelledError(f"Agent '{agent_id}' cancelled before start", agent_id=agent_id)

        argv = self.build_command(
            agent_id=agent_id,
            working_dir=working_dir,
            model=model,
            reasoning_effort=reasoning_effort,
            engine=engine,
        )
        logger.debug("Spawning agent process", extra={"agent_id": agent_id, "argv": argv})

        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(working_dir),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env={**os.environ, **self.env},
            )
        except OSError as e:
            raise ExecutionError(f"Failed to start agent '{agent_id}': {e}", agent_id=agent_id) from e

        if proc.stdin is None or proc.stdout is None or proc.stderr is None:
            _terminate(proc)
            raise ExecutionError(f"Agent '{agent_id}' started without pipes", agent_id=agent_id)

        feeder = threading.Thread(
            target=_feed_stdin, args=(proc.stdin, prompt), name=f"stdin-{agent_id}", daemon=True
        )
        feeder.start()

        decoders = {
            proc.stdout.fileno(): codecs.getincrementaldecoder("utf-8")(errors="replace"),
            proc.stderr.fileno(): codecs.getincrementaldecoder("utf-8")(errors="replace"),
        }
        sinks = {proc.stdout.fileno(): on_chunk, proc.stderr.fileno(): on_error_chunk}
        out_chunks: list[str] = []
        err_chunks: list[str] = []
        captured = {proc.stdout.fileno(): out_chunks, proc.stderr.fileno(): err_chunks}

        deadline = time.monotonic() + timeout if timeout else None
        sel = selectors.DefaultSelector()
        sel.register(proc.stdout, selectors.EVENT_READ)
        sel.register(proc.stderr, selectors.EVENT_READ)

        try:
            while sel.get_map():
                if cancel_event.is_set():
                    _terminate(proc)
                    raise CancelledError(f"Agent '{agent_id}' cancelled", agent_id=agent_id)
                if deadline is not None and time.monotonic() > deadline:
                    _terminate(proc)
                    raise ExecutionError(
                        f"Agent '{agent_id}' timed out after {timeout:g}s", agent_id=agent_id
                    )

                for key, _ in sel.select(timeout=0.1):
                    fd = key.fd
                    data = os.read(fd, _READ_SIZE)
                    if not data:
                        sel.unregister(key.fileobj)
                        tail = decoders[fd].decode(b"", final=True)
                        if tail:
                            captured[fd].append(tail)
                            sinks[fd](tail)
                        continue
                    text = decoders[fd].decode(data)
                    if text:
                        captured[fd].append(text)
                        sinks[fd](text)

            exit_code = proc.wait()
        finally:
            sel.close()
            proc.stdout.close()
            proc.stderr.close()

        stdout = normalize_output("".join(out_chunks))
        stderr = "".join(err_chunks)
        if exit_code != 0:
            detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no stderr output"
            raise ExecutionError(
                f"Agent '{agent_id}' exited with code {exit_code}: {detail}",
                agent_id=agent_id,
                exit_code=exit_code,
            )
        return InvocationResult(text=stdout, stderr=stderr, exit_code=exit_code)


def _feed_stdin(stream: IO[bytes], prompt: str) -> None:
    try:
        stream.write(prompt.encode("utf-8"))
        stream.close()
    except (BrokenPipeError, ValueError, OSError) as e:
        # The child exited (or was terminated) without reading its prompt.
        logger.debug(f"Agent stdin closed early: {e}")


def _terminate(proc: subprocess.Popen[bytes]) -> None:
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=_TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        logger.warning("Agent process ignored SIGTERM; killing", extra={"pid": proc.pid})
        proc.kill()
        proc.wait()
