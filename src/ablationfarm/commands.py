"""Command strings -> typed commands.

Precedence (first match wins):

    @complete-phase[:label]   CompletePhase
    @abort                    AbortRun
    @wait:<seconds>           Wait
    @tool:/@tool-exec:<name>  ToolCall
    @shell:<cmd>              ShellCall
    /<name> [args]            SlashCommand
    anything else             Query
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import json
import math
import re
from typing import Any, Union


_TOOL_NAME_RE = re.compile(r"[A-Za-z0-9_][A-Za-z0-9_.-]*")
_KEY_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_-]*")
_NUMBER_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")

ATTACHMENT_SELECTION_COMMANDS = frozenset({"/add-attachment", "/attachment-insert"})
SLASH_COMMANDS = frozenset(
    {"/add-prompt", "/add-attachment", "/attachment-insert", "/clear-attachments"}
)


class InvalidCommandSyntax(ValueError):
    pass


class Signal(Enum):
    PHASE_COMPLETE = "phase_complete"
    ABORT_RUN = "abort_run"


@dataclass(frozen=True)
class CompletePhase:
    label: str | None = None


@dataclass(frozen=True)
class AbortRun:
    pass


@dataclass(frozen=True)
class Wait:
    seconds: float


@dataclass(frozen=True)
class ToolCall:
    tool_name: str
    args: dict[str, Any] = field(default_factory=dict)
    inject_result: bool = True


@dataclass(frozen=True)
class ShellCall:
    command: str


@dataclass(frozen=True)
class SlashCommand:
    name: str
    argument: str = ""


@dataclass(frozen=True)
class Query:
    text: str


Command = Union[CompletePhase, AbortRun, Wait, ToolCall, ShellCall, SlashCommand, Query]


def parse_command(text: str) -> Command:
    command = text.strip()
    lowered = command.lower()

    if lowered == "@complete-phase" or lowered.startswith("@complete-phase:"):
        label = command[len("@complete-phase:") :].strip() if ":" in command else ""
        return CompletePhase(label=label or None)

    if lowered == "@abort":
        return AbortRun()

    if lowered.startswith("@wait:"):
        return Wait(seconds=_parse_seconds(command[len("@wait:") :]))

    if lowered.startswith(("@tool:", "@tool-exec:")) or lowered in ("@tool", "@tool-exec"):
        return parse_tool_call(command)

    if lowered.startswith("@shell:"):
        shell = command[len("@shell:") :].strip()
        if not shell:
            raise InvalidCommandSyntax("@shell: needs a command")
        return ShellCall(command=shell)

    if command.startswith("/"):
        parts = command.split(None, 1)
        name = parts[0].lower()
        argument = parts[1].strip() if len(parts) > 1 else ""
        return SlashCommand(name=name, argument=argument)

    return Query(text=command)


def is_attachment_selection(text: str) -> bool:
    command = parse_command_safe(text)
    return isinstance(command, SlashCommand) and command.name in ATTACHMENT_SELECTION_COMMANDS


def parse_command_safe(text: str) -> Command | None:
    try:
        return parse_command(text)
    except InvalidCommandSyntax:
        return None


def _parse_seconds(raw: str) -> float:
    text = raw.strip()
    try:
        seconds = float(text)
    except ValueError:
        raise InvalidCommandSyntax(f"@wait: expects seconds, got {text!r}") from None
    if seconds < 0 or not math.isfinite(seconds):
        raise InvalidCommandSyntax(f"@wait: seconds must be >= 0, got {text!r}")
    return seconds


def parse_tool_call(command: str) -> ToolCall:
    """Parse ``@tool:name(k='v')``, ``@tool:name {"k": "v"}`` or ``@tool:name``."""
    text = command.strip()
    if text.startswith("@tool-exec:"):
        inject = False
        rest = text[len("@tool-exec:") :].strip()
    elif text.startswith("@tool:"):
        inject = True
        rest = text[len("@tool:") :].strip()
    else:
        raise InvalidCommandSyntax(f"invalid tool call syntax: {text}")

    match = _TOOL_NAME_RE.match(rest)
    if not match:
        raise InvalidCommandSyntax(f"invalid tool call syntax: {text}")
    tool_name = match.group(0)
    tail = rest[match.end() :].strip()

    if not tail:
        args: dict[str, Any] = {}
    elif tail.startswith("("):
        if not tail.endswith(")"):
            raise InvalidCommandSyntax(f"unclosed argument list: {text}")
        args = parse_keyword_args(tail[1:-1])
    elif tail.startswith("{"):
        try:
            parsed = json.loads(tail)
        except json.JSONDecodeError as exc:
            raise InvalidCommandSyntax(f"invalid JSON arguments: {exc.msg}") from None
        if not isinstance(parsed, dict):
            raise InvalidCommandSyntax("JSON arguments must be an object")
        args = parsed
    else:
        raise InvalidCommandSyntax(f"invalid tool call syntax: {text}")

    return ToolCall(tool_name=tool_name, args=args, inject_result=inject)


def parse_keyword_args(text: str) -> dict[str, Any]:
    """Parse ``key='v', n=42, flag=true, items=[1, 2]`` into a dict."""
    args: dict[str, Any] = {}
    i = 0
    n = len(text)
    while True:
        i = _skip_ws(text, i)
        if i >= n:
            break
        match = _KEY_RE.match(text, i)
        if not match:
            raise InvalidCommandSyntax(f"expected argument name at {i}: {text!r}")
        key = match.group(0)
        i = _skip_ws(text, match.end())
        if i >= n or text[i] != "=":
            raise InvalidCommandSyntax(f"expected '=' after {key!r}")
        i = _skip_ws(text, i + 1)
        value, i = _parse_value(text, i)
        args[key] = value
        i = _skip_ws(text, i)
        if i < n:
            if text[i] != ",":
                raise InvalidCommandSyntax(f"expected ',' at {i}: {text!r}")
            i += 1
    return args


def _skip_ws(text: str, i: int) -> int:
    while i < len(text) and text[i] in " \t\r\n":
        i += 1
    return i


_ESCAPES = {"n": "\n", "t": "\t", "r": "\r"}


def _parse_value(text: str, i: int) -> tuple[Any, int]:
    if i >= len(text):
        raise InvalidCommandSyntax("missing value")

    ch = text[i]
    if ch in ("'", '"'):
        quote = ch
        i += 1
        out: list[str] = []
        while i < len(text):
            c = text[i]
            if c == "\\" and i + 1 < len(text):
                nxt = text[i + 1]
                out.append(_ESCAPES.get(nxt, nxt))
                i += 2
                continue
            if c == quote:
                return "".join(out), i + 1
            out.append(c)
            i += 1
        raise InvalidCommandSyntax("unterminated string")

    if ch in ("[", "{"):
        end = _matching_bracket(text, i)
        raw = text[i : end + 1]
        try:
            return json.loads(raw), end + 1
        except json.JSONDecodeError as exc:
            raise InvalidCommandSyntax(f"invalid JSON value {raw!r}: {exc.msg}") from None

    start = i
    while i < len(text) and text[i] != ",":
        i += 1
    raw = text[start:i].strip()
    if not raw:
        raise InvalidCommandSyntax("missing value")
    return _bare_value(raw), i


def _bare_value(raw: str) -> Any:
    if raw in ("true", "True"):
        return True
    if raw in ("false", "False"):
        return False
    if raw in ("null", "None"):
        return None
    if _NUMBER_RE.match(raw):
        number = float(raw)
        if number.is_integer() and "." not in raw and "e" not in raw.lower():
            return int(raw)
        return number
    return raw


def _matching_bracket(text: str, start: int) -> int:
    pairs = {"[": "]", "{": "}"}
    stack: list[str] = []
    in_string = False
    i = start
    while i < len(text):
        c = text[i]
        if in_string:
            if c == "\\":
                i += 2
                continue
            if c == '"':
                in_string = False
        elif c == '"':
            in_string = True
        elif c in pairs:
            stack.append(pairs[c])
        elif stack and c == stack[-1]:
            stack.pop()
            if not stack:
                return i
        i += 1
    raise InvalidCommandSyntax(f"unbalanced brackets in {text[start:]!r}")
