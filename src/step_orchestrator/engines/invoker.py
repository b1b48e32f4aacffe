"""Abstract base class for agent engines."""

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

ChunkSink = Callable[[str], None]


@dataclass(frozen=True, slots=True)
class InvocationResult:
    text: str
    stderr: str = ""
    exit_code: int = 0


class AgentInvoker(ABC):
    """Abstract base class for agent engines.

    This interface allows pluggable agent backends (CLI subprocesses, in-process
    fakes, etc.). Implementations must stream output as it arrives and must
    honor the cancellation event promptly.
    """

    @abstractmethod
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
        """Run an agent to completion.

        Args:
            agent_id: Catalog id of the agent; engines use it as their profile.
            prompt: Fully rendered prompt text.
            working_dir: Directory the agent works in.
            cancel_event: Set by the caller to abort the invocation.
            on_chunk: Receives stdout chunks as they arrive.
            on_error_chunk: Receives stderr chunks as they arrive.
            model: Optional model override.
            reasoning_effort: Optional reasoning effort (`low`, `medium`, `high`).
            engine: Optional engine name; None selects the default engine.
            timeout: Optional timeout in seconds.

        Returns:
            The full captured output.

        Raises:
            ExecutionError: If the agent fails or times out.
            CancelledError: If `cancel_event` was set before the agent finished.
        """
        pass
