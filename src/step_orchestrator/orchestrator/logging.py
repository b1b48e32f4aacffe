"""Structured logging configuration.

Uses standard library logging with a JSON formatter. Agent output is routed
through per-agent loggers (`step_orchestrator.agent.<identity>`) so streamed
chunks can be filtered or redirected like any other log record.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

AGENT_LOGGER_PREFIX = "step_orchestrator.agent"

_RESERVED_LOG_RECORD_ATTRS: set[str] = {
    "args",
    "asctime",
    "created",
    "exc_info",
    "exc_text",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "msg",
    "name",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "taskName",
    "thread",
    "threadName",
}


class JsonFormatter(logging.Formatter):
    """A minimal JSON formatter for logging records."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_LOG_RECORD_ATTRS and not key.startswith("_")
        }
        if extra:
            payload["extra"] = extra

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str, fmt: str = "json") -> None:
    """Configure root logging with structured JSON (or plain text) output."""

    root = logging.getLogger()

    # Remove any existing handlers to avoid duplicate logs when re-configuring.
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=sys.stdout)
    if fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    root.addHandler(handler)
    root.setLevel(level.upper())


def agent_chunk_loggers(identity: str) -> tuple[Callable[[str], None], Callable[[str], None]]:
    """Return (stdout, stderr) sinks that forward agent output chunks to logging."""

    agent_logger = logging.getLogger(f"{AGENT_LOGGER_PREFIX}.{identity}")

    def _stdout(chunk: str) -> None:
        text = chunk.rstrip("\n")
        if text:
            agent_logger.info(text, extra={"agent": identity, "stream": "stdout"})

    def _stderr(chunk: str) -> None:
        text = chunk.rstrip("\n")
        if text:
            agent_logger.warning(text, extra={"agent": identity, "stream": "stderr"})

    return _stdout, _stderr
