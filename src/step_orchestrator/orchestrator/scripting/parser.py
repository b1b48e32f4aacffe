"""Orchestration script parser.

Grammar::

    script  := stage ( "&&" stage )*
    stage   := task ( "&" task )*
    task    := NAME [ "[" options "]" ] [ argument ]
    options := key ":" value ( "," key ":" value )*

The argument is a single- or double-quoted string; an unquoted remainder is
taken verbatim. Operators inside quotes or option brackets are literal.

Recognised option keys are `input` (`;`-separated file paths prepended to the
prompt), `tail` (keep only the last N output lines) and `prompt` (an
alternative to the trailing argument). Any other key is a syntax error.

The result is always `Sequential(Parallel(Task, ...), ...)`: a stage of one
task is a one-element `Parallel`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from step_orchestrator.orchestrator.errors import ScriptSyntaxError

_QUOTES = ("'", '"')
_TASK = re.compile(
    r"""^(?P<name>[^\s'"\[\]&]+)(?:\[(?P<options>[^\]]*)\])?(?:\s+(?P<rest>.*))?$""",
    re.DOTALL,
)


@dataclass(frozen=True, slots=True)
class Task:
    name: str
    argument: str = ""
    input_files: tuple[str, ...] = ()
    tail: int | None = None


@dataclass(frozen=True, slots=True)
class Parallel:
    children: tuple[Task, ...]


@dataclass(frozen=True, slots=True)
class Sequential:
    children: tuple[Parallel, ...]

    @property
    def tasks(self) -> list[Task]:
        return [task for stage in self.children for task in stage.children]


def parse_script(text: str) -> Sequential:
    """Parse an orchestration script into its stage plan.

    Raises:
        ScriptSyntaxError: On an empty script, stage or task name, an
            unterminated quote or bracket, or malformed options.
    """
    if not text.strip():
        raise ScriptSyntaxError("Script is empty")

    stages: list[Parallel] = []
    for segments in _split_stages(text):
        if len(segments) == 1 and not segments[0][1].strip():
            raise ScriptSyntaxError("Empty stage", position=segments[0][0])
        stages.append(Parallel(tuple(_parse_task(offset, raw) for offset, raw in segments)))
    return Sequential(tuple(stages))


def _split_stages(text: str) -> list[list[tuple[int, str]]]:
    """Split on top-level `&&` then `&`, keeping each segment's start offset."""

    stages: list[list[tuple[int, str]]] = [[]]
    start = 0
    quote: str | None = None
    quote_at = 0
    bracket_at: int | None = None
    i = 0
    while i < len(text):
        ch = text[i]
        if quote is not None:
            if ch == quote:
                quote = None
        elif ch in _QUOTES:
            quote, quote_at = ch, i
        elif ch == "[":
            bracket_at = i
        elif ch == "]":
            bracket_at = None
        elif ch == "&" and bracket_at is None:
            stages[-1].append((start, text[start:i]))
            if text.startswith("&&", i):
                stages.append([])
                i += 2
            else:
                i += 1
            start = i
            continue
        i += 1

    if quote is not None:
        raise ScriptSyntaxError("Unterminated quoted argument", position=quote_at)
    if bracket_at is not None:
        raise ScriptSyntaxError("Unterminated option list", position=bracket_at)
    stages[-1].append((start, text[start:]))
    return stages


def _parse_task(offset: int, raw: str) -> Task:
    stripped = raw.strip()
    position = offset + (len(raw) - len(raw.lstrip()))
    if not stripped:
        raise ScriptSyntaxError("Empty task", position=offset)
    if stripped[0] in _QUOTES:
        raise ScriptSyntaxError("Task name is missing", position=position)

    match = _TASK.match(stripped)
    if match is None:
        raise ScriptSyntaxError(
            f"Invalid task {stripped!r}; expected: name 'prompt' or name[options] 'prompt'",
            position=position,
        )

    argument = _parse_argument(match.group("rest"), position)
    input_files: tuple[str, ...] = ()
    tail: int | None = None

    for key, value in _parse_options(match.group("options") or "", position):
        if key == "input":
            input_files = tuple(p.strip() for p in value.split(";") if p.strip())
        elif key == "tail":
            try:
                tail = int(value)
            except ValueError:
                raise ScriptSyntaxError(
                    f"tail must be an integer, got {value!r}", position=position
                ) from None
            if tail <= 0:
                tail = None
        elif key == "prompt":
            argument = argument or value
        else:
            raise ScriptSyntaxError(
                f"Unknown option {key!r}; expected input, tail or prompt", position=position
            )

    return Task(
        name=match.group("name"),
        argument=argument,
        input_files=input_files,
        tail=tail,
    )


def _parse_argument(rest: str | None, position: int) -> str:
    if rest is None:
        return ""
    rest = rest.strip()
    if not rest or rest[0] not in _QUOTES:
        return rest
    quote = rest[0]
    closing = rest.find(quote, 1)
    if closing != len(rest) - 1:
        raise ScriptSyntaxError("Unexpected text after quoted argument", position=position)
    return rest[1:-1]


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] in _QUOTES and value[-1] == value[0]:
        return value[1:-1]
    return value


def _split_options(text: str) -> list[str]:
    parts: list[str] = []
    current: list[str] = []
    quote: str | None = None
    for ch in text:
        if quote is not None:
            if ch == quote:
                quote = None
        elif ch in _QUOTES:
            quote = ch
        elif ch == ",":
            parts.append("".join(current))
            current = []
            continue
        current.append(ch)
    parts.append("".join(current))
    return parts


def _parse_options(text: str, position: int) -> list[tuple[str, str]]:
    options: list[tuple[str, str]] = []
    for part in _split_options(text):
        part = part.strip()
        if not part:
            continue
        key, sep, value = part.partition(":")
        if not sep or not key.strip():
            raise ScriptSyntaxError(f"Invalid option {part!r}; expected key:value", position=position)
        options.append((key.strip(), _unquote(value)))
    return options
