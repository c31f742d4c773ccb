"""Translate agent CLI stream output into provider events.

Design: print only tool calls (one line each); everything else becomes a
``ProviderEvent`` for the transcript and hook engine.
"""

from __future__ import annotations

from dataclasses import dataclass
import json
import re
from typing import Any

from rich.console import Console
from rich.text import Text

from .collaborators import EventObserver, ProviderEvent
from .util import truncate

_SHELL_WRAP_RE = re.compile(r"^/\S+\s+-lc\s+(.+)$", re.DOTALL)
_CD_PREFIX_RE = re.compile(r"^cd\s+\S+\s*&&\s*")

# Canonical tool name mapping per backend.
_TOOL_ALIASES: dict[str, str] = {
    # Claude
    "Read": "read",
    "Write": "write",
    "Edit": "edit",
    "Bash": "bash",
    "Glob": "glob",
    "Grep": "grep",
    "Task": "task",
    # Gemini
    "read_file": "read",
    "write_file": "write",
    "replace": "edit",
    "run_shell_command": "bash",
    "search_file_content": "grep",
}

_TOOL_STYLES: dict[str, tuple[set[str], str]] = {
    "mutate": ({"edit", "write"}, "magenta"),
    "observe": ({"read", "glob", "grep"}, "blue"),
    "execute": ({"bash"}, "dim"),
    "delegate": ({"task"}, "cyan"),
}


def normalize_tool(raw_name: str) -> str:
    return _TOOL_ALIASES.get(raw_name, raw_name)


def _tool_style(canonical_name: str, *, ok: bool) -> str:
    if not ok:
        return "red"
    for tools, style in _TOOL_STYLES.values():
        if canonical_name in tools:
            return style
    return "dim"


def strip_shell(cmd: str) -> str:
    """Extract the inner command from /bin/zsh -lc '...' wrappers."""
    m = _SHELL_WRAP_RE.match(cmd)
    if m:
        inner = m.group(1).strip()
        if (inner.startswith("'") and inner.endswith("'")) or (
            inner.startswith('"') and inner.endswith('"')
        ):
            inner = inner[1:-1]
        cmd = inner
    return _CD_PREFIX_RE.sub("", cmd)


def _is_interactive(console: Console) -> bool:
    return bool(console.is_terminal and not console.is_dumb_terminal)


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict):
                text = part.get("text") or part.get("content")
                if isinstance(text, str):
                    parts.append(text)
        return "\n".join(p for p in parts if p)
    if content is None:
        return ""
    return json.dumps(content, ensure_ascii=False)


@dataclass(frozen=True)
class StreamSummary:
    text: str = ""
    tokens: int = 0
    session_id: str | None = None
    failed: bool = False


class StreamTranslator:
    backend_name = "base"

    def __init__(
        self,
        console: Console | None = None,
        observer: EventObserver | None = None,
    ) -> None:
        self.console = console or Console()
        self.observer = observer
        self.interactive = _is_interactive(self.console)
        self._text_parts: list[str] = []
        self._tokens = 0
        self._session_id: str | None = None
        self._failed = False
        self._pending: dict[str, tuple[str, str]] = {}  # call_id -> (name, detail)

    # -- output --------------------------------------------------------------

    @staticmethod
    def _extract_detail(canonical_name: str, params: Any) -> str:
        if not isinstance(params, dict):
            return ""
        if canonical_name in ("read", "glob", "grep", "edit", "write"):
            for key in ("file_path", "filePath", "path", "pattern", "query"):
                v = params.get(key)
                if isinstance(v, str) and v:
                    return v
        elif canonical_name == "bash":
            for key in ("command", "cmd"):
                v = params.get(key)
                if isinstance(v, str) and v:
                    return truncate(strip_shell(v), 80)
        elif canonical_name == "task":
            v = params.get("description")
            if isinstance(v, str) and v:
                return v
        else:
            for v in params.values():
                if isinstance(v, str) and v:
                    return truncate(v, 60)
        return ""

    def _print_tool(self, name: str, detail: str, *, ok: bool) -> None:
        line = f"  {'✓' if ok else '✗'} {name}"
        if detail:
            line += f" {detail}"
        if self.interactive:
            self.console.print(Text(line, style=_tool_style(name, ok=ok)))
        else:
            self.console.print(line, markup=False)

    def _error(self, msg: str) -> None:
        self._failed = True
        if self.interactive:
            self.console.print(Text(f"  error: {msg}", style="red"))
        else:
            self.console.print(f"  error: {msg}", markup=False)
        self._emit(ProviderEvent(kind="error", text=msg, is_error=True))

    def _emit(self, event: ProviderEvent) -> None:
        if self.observer is not None:
            self.observer(event)

    # -- event helpers -------------------------------------------------------

    def _tool_call(self, call_id: str, raw_name: str, tool_input: Any) -> None:
        name = normalize_tool(raw_name)
        params = tool_input if isinstance(tool_input, dict) else {}
        self._pending[call_id] = (name, self._extract_detail(name, params))
        self._emit(
            ProviderEvent(
                kind="tool_call",
                tool_name=raw_name,
                tool_input=dict(params),
                call_id=call_id,
            )
        )

    def _tool_result(self, call_id: str, output: str, *, ok: bool) -> None:
        name, detail = self._pending.pop(call_id, ("?", ""))
        self._print_tool(name, detail, ok=ok)
        self._emit(
            ProviderEvent(
                kind="tool_result",
                tool_output=output,
                call_id=call_id,
                is_error=not ok,
            )
        )

    def _text(self, text: str) -> None:
        if text:
            self._text_parts.append(text)
            self._emit(ProviderEvent(kind="text", text=text))

    def _usage(self, tokens: int) -> None:
        if tokens > 0:
            self._tokens += tokens
            self._emit(ProviderEvent(kind="usage", tokens=tokens))

    # -- driver --------------------------------------------------------------

    def process_line(self, line: str) -> None:
        if not line.strip():
            return
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            return
        if isinstance(event, dict):
            self.handle(event)

    def handle(self, event: dict[str, Any]) -> None:
        raise NotImplementedError

    def finish(self) -> StreamSummary:
        for call_id in list(self._pending):
            name, detail = self._pending.pop(call_id)
            self._print_tool(name, detail, ok=True)
        return StreamSummary(
            text="\n".join(self._text_parts).strip(),
            tokens=self._tokens,
            session_id=self._session_id,
            failed=self._failed,
        )


class ClaudeStreamTranslator(StreamTranslator):
    """Claude ``--output-format stream-json`` events."""

    backend_name = "claude"

    def handle(self, event: dict[str, Any]) -> None:
        etype = event.get("type", "")
        sid = event.get("session_id")
        if isinstance(sid, str) and sid:
            self._session_id = sid

        if etype == "assistant":
            message = event.get("message", {})
            blocks = message.get("content", []) if isinstance(message, dict) else []
            if isinstance(blocks, str):
                self._text(blocks)
                return
            for block in blocks if isinstance(blocks, list) else []:
                if not isinstance(block, dict):
                    continue
                if block.get("type") == "text":
                    self._text(block.get("text", ""))
                elif block.get("type") == "tool_use":
                    self._tool_call(
                        str(block.get("id", "")), str(block.get("name", "?")), block.get("input")
                    )

        elif etype == "user":
            message = event.get("message", {})
            blocks = message.get("content", []) if isinstance(message, dict) else []
            for block in blocks if isinstance(blocks, list) else []:
                if isinstance(block, dict) and block.get("type") == "tool_result":
                    self._tool_result(
                        str(block.get("tool_use_id", "")),
                        _content_text(block.get("content")),
                        ok=not block.get("is_error", False),
                    )

        elif etype == "result":
            usage = event.get("usage")
            if isinstance(usage, dict):
                self._usage(
                    int(usage.get("input_tokens") or 0) + int(usage.get("output_tokens") or 0)
                )
            if event.get("is_error") or event.get("subtype", "success") != "success":
                self._error(str(event.get("result") or event.get("subtype") or "error"))

        elif etype == "error":
            self._error(str(event.get("error", event)))


class CodexStreamTranslator(StreamTranslator):
    """Codex ``exec --json`` JSONL events."""

    backend_name = "codex"

    def handle(self, event: dict[str, Any]) -> None:
        etype = event.get("type", "")
        item = event.get("item", {})
        if not isinstance(item, dict):
            item = {}
        item_type = item.get("type", "")
        item_id = str(item.get("id", ""))

        if etype == "thread.started":
            tid = event.get("thread_id")
            if isinstance(tid, str):
                self._session_id = tid

        elif etype == "item.started":
            if item_type == "command_execution":
                self._tool_call(item_id, "bash", {"command": item.get("command", "")})
            elif item_type == "mcp_tool_call":
                self._tool_call(item_id, str(item.get("tool", "?")), item.get("arguments"))

        elif etype == "item.completed":
            if item_type == "command_execution":
                if item_id not in self._pending:
                    self._tool_call(item_id, "bash", {"command": item.get("command", "")})
                self._tool_result(
                    item_id,
                    str(item.get("aggregated_output") or ""),
                    ok=item.get("exit_code") == 0,
                )
            elif item_type == "mcp_tool_call":
                if item_id not in self._pending:
                    self._tool_call(item_id, str(item.get("tool", "?")), item.get("arguments"))
                result = item.get("result")
                self._tool_result(
                    item_id,
                    _content_text(result.get("content") if isinstance(result, dict) else result),
                    ok=item.get("status") != "failed",
                )
            elif item_type in ("message", "agent_message"):
                self._text(_content_text(item.get("text") or item.get("content")))

        elif etype == "turn.completed":
            usage = event.get("usage")
            if isinstance(usage, dict):
                self._usage(
                    int(usage.get("input_tokens") or 0) + int(usage.get("output_tokens") or 0)
                )

        elif etype in ("error", "turn.failed"):
            err = event.get("error", event.get("message", event))
            if isinstance(err, dict):
                err = err.get("message", err)
            self._error(str(err))


class GeminiStreamTranslator(StreamTranslator):
    """Gemini ``--output-format stream-json`` events."""

    backend_name = "gemini"

    def handle(self, event: dict[str, Any]) -> None:
        etype = event.get("type", "")

        if etype == "init":
            sid = event.get("session_id")
            if isinstance(sid, str):
                self._session_id = sid

        elif etype == "tool_use":
            raw = event.get("tool_name", "?")
            self._tool_call(
                str(event.get("tool_id", "")),
                raw if isinstance(raw, str) else "?",
                event.get("parameters"),
            )

        elif etype == "tool_result":
            status = event.get("status")
            status_text = status.lower() if isinstance(status, str) else ""
            self._tool_result(
                str(event.get("tool_id", "")),
                _content_text(event.get("output")),
                ok=status_text in ("success", "ok", ""),
            )

        elif etype == "message":
            if event.get("role") == "assistant":
                content = event.get("content")
                if isinstance(content, str):
                    self._text(content)

        elif etype == "result":
            for key in ("stats", "usage"):
                stats = event.get(key)
                if isinstance(stats, dict):
                    total = stats.get("total_tokens", stats.get("totalTokens"))
                    if isinstance(total, int):
                        self._usage(total)
                        break
            status = event.get("status")
            if isinstance(status, str) and status.lower() != "success":
                self._error(f"result status {status}")

        elif etype == "error":
            err = event.get("error")
            if isinstance(err, dict):
                msg = str(err.get("message") or err.get("details") or err)
            elif isinstance(err, str) and err:
                msg = err
            else:
                msg = str(event.get("message") or event)
            self._error(msg)


def get_translator(
    backend_name: str,
    console: Console | None = None,
    observer: EventObserver | None = None,
) -> StreamTranslator:
    if backend_name == "claude":
        return ClaudeStreamTranslator(console, observer)
    if backend_name == "gemini":
        return GeminiStreamTranslator(console, observer)
    if backend_name == "codex":
        return CodexStreamTranslator(console, observer)
    raise KeyError(f"no stream translator for backend '{backend_name}'")
