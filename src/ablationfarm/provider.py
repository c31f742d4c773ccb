"""Model provider that drives agent CLIs (claude, codex, gemini) as subprocesses."""

from __future__ import annotations

import json
import os
import queue
import subprocess
import threading
from pathlib import Path
from typing import Any, Callable, Sequence

from rich.console import Console
from rich.text import Text

from .collaborators import (
    AttachmentInfo,
    CancelPredicate,
    EventObserver,
    QueryResult,
    ToolResult,
)
from .stream import get_translator


class ProviderError(RuntimeError):
    pass


_CLAUDE_THINKING_TOKENS = {
    "low": 4000,
    "medium": 10000,
    "high": 32000,
}


class AgentBackend:
    name: str = ""
    resumable: bool = False

    def build_argv(
        self,
        prompt: str,
        *,
        model: str,
        thinking: str | None,
        cwd: Path,
        session_id: str | None = None,
        max_turns: int | None = None,
        mcp_config_path: str | None = None,
    ) -> list[str]:
        raise NotImplementedError

    def run_env(self, *, thinking: str | None) -> dict[str, str] | None:
        return None


class ClaudeBackend(AgentBackend):
    name = "claude"
    resumable = True

    def build_argv(
        self,
        prompt: str,
        *,
        model: str,
        thinking: str | None,
        cwd: Path,
        session_id: str | None = None,
        max_turns: int | None = None,
        mcp_config_path: str | None = None,
    ) -> list[str]:
        argv = [
            "claude",
            "--dangerously-skip-permissions",
            "-p",
            "--output-format",
            "stream-json",
            "--verbose",
            "--model",
            model,
        ]
        if max_turns:
            argv += ["--max-turns", str(max_turns)]
        if mcp_config_path:
            argv += ["--mcp-config", mcp_config_path]
        if session_id:
            argv += ["--resume", session_id]
        argv.append(prompt)
        return argv

    def run_env(self, *, thinking: str | None) -> dict[str, str] | None:
        if not thinking:
            return None
        budget = _CLAUDE_THINKING_TOKENS.get(thinking.lower())
        if budget is None and thinking.isdigit():
            budget = int(thinking)
        if budget is None:
            return None
        env = dict(os.environ)
        env["MAX_THINKING_TOKENS"] = str(budget)
        return env


class CodexBackend(AgentBackend):
    name = "codex"

    def build_argv(
        self,
        prompt: str,
        *,
        model: str,
        thinking: str | None,
        cwd: Path,
        session_id: str | None = None,
        max_turns: int | None = None,
        mcp_config_path: str | None = None,
    ) -> list[str]:
        argv = [
            "codex",
            "exec",
            "--dangerously-bypass-approvals-and-sandbox",
            "--json",
            "-C",
            str(cwd),
            "-m",
            model,
        ]
        if thinking:
            argv += ["-c", f"model_reasoning_effort={thinking}"]
        argv.append(prompt)
        return argv


class GeminiBackend(AgentBackend):
    name = "gemini"

    def build_argv(
        self,
        prompt: str,
        *,
        model: str,
        thinking: str | None,
        cwd: Path,
        session_id: str | None = None,
        max_turns: int | None = None,
        mcp_config_path: str | None = None,
    ) -> list[str]:
        return [
            "gemini",
            "--output-format",
            "stream-json",
            "--model",
            model,
            "--yolo",
            "--prompt",
            prompt,
        ]


_BACKENDS: dict[str, AgentBackend] = {
    "claude": ClaudeBackend(),
    "codex": CodexBackend(),
    "gemini": GeminiBackend(),
}


def get_backend(name: str) -> AgentBackend:
    b = _BACKENDS.get(name)
    if b is None:
        raise ValueError(f"unknown provider: {name!r} (available: {sorted(_BACKENDS)})")
    return b


def list_backends() -> list[str]:
    return sorted(_BACKENDS)


def stream_lines(
    argv: list[str],
    *,
    cwd: Path,
    on_line: Callable[[str], None],
    cancel: CancelPredicate,
    env: dict[str, str] | None = None,
    poll_seconds: float = 0.1,
) -> tuple[int | None, bool]:
    """Run ``argv`` and feed stdout lines to ``on_line``.

    Returns ``(exit_code, cancelled)``. The process is terminated as soon as
    ``cancel`` returns True.
    """
    try:
        proc = subprocess.Popen(
            argv,
            cwd=cwd,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
    except FileNotFoundError:
        raise ProviderError(f"agent CLI not found: {argv[0]}") from None
    assert proc.stdout is not None

    lines: queue.Queue[str | None] = queue.Queue()

    def pump() -> None:
        assert proc.stdout is not None
        for raw in proc.stdout:
            lines.put(raw.rstrip("\n"))
        lines.put(None)

    reader = threading.Thread(target=pump, daemon=True, name=f"{argv[0]}-stdout")
    reader.start()

    cancelled = False
    while True:
        if cancel():
            cancelled = True
            break
        try:
            line = lines.get(timeout=poll_seconds)
        except queue.Empty:
            continue
        if line is None:
            break
        on_line(line)

    if cancelled:
        proc.terminate()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
        reader.join(timeout=1)
        return proc.returncode, True

    reader.join(timeout=1)
    return proc.wait(), False


class AgentCliProvider:
    def __init__(
        self,
        *,
        cwd: Path,
        mcp_config_path: str | None = None,
        console: Console | None = None,
    ) -> None:
        self.cwd = cwd
        self.mcp_config_path = mcp_config_path
        self.console = console or Console()
        self.name = ""
        self.model = ""
        self.thinking: str | None = None
        self._session_id: str | None = None
        self._injected: list[str] = []

    def switch_to(self, provider: str, model: str, thinking: str | None = None) -> None:
        get_backend(provider)
        self.name = provider
        self.model = model
        self.thinking = thinking
        self.clear_context()

    def clear_context(self) -> None:
        self._session_id = None
        self._injected = []

    def save_state(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "model": self.model,
            "thinking": self.thinking,
            "session_id": self._session_id,
            "injected": list(self._injected),
        }

    def restore_state(self, state: Any) -> None:
        if not isinstance(state, dict):
            return
        self.name = state.get("name", "")
        self.model = state.get("model", "")
        self.thinking = state.get("thinking")
        self._session_id = state.get("session_id")
        self._injected = list(state.get("injected") or [])

    def inject_tool_result(
        self, tool_name: str, args: dict[str, Any], result: ToolResult
    ) -> None:
        self._injected.append(
            f"[tool result] {tool_name}({json.dumps(args, ensure_ascii=False)}):\n"
            f"{result.display_text}"
        )

    def compose_prompt(
        self, text: str, attachments: Sequence[AttachmentInfo] | None = None
    ) -> str:
        parts: list[str] = []
        if self._injected:
            parts.append("\n\n".join(self._injected))
            self._injected = []
        parts.append(text)
        if attachments:
            listing = "\n".join(f"- {a.path}" for a in attachments)
            parts.append(f"Attached files:\n{listing}")
        return "\n\n".join(parts)

    def process_query(
        self,
        text: str,
        attachments: Sequence[AttachmentInfo] | None,
        cancel: CancelPredicate,
        observer: EventObserver | None = None,
        *,
        max_iterations: int | None = None,
    ) -> QueryResult:
        if not self.name:
            raise ProviderError("no provider selected")
        backend = get_backend(self.name)
        prompt = self.compose_prompt(text, attachments)
        argv = backend.build_argv(
            prompt,
            model=self.model,
            thinking=self.thinking,
            cwd=self.cwd,
            session_id=self._session_id if backend.resumable else None,
            max_turns=max_iterations,
            mcp_config_path=self.mcp_config_path,
        )
        translator = get_translator(self.name, self.console, observer)
        exit_code, cancelled = stream_lines(
            argv,
            cwd=self.cwd,
            on_line=translator.process_line,
            cancel=cancel,
            env=backend.run_env(thinking=self.thinking),
        )
        summary = translator.finish()
        if summary.session_id and backend.resumable:
            self._session_id = summary.session_id
        if summary.text:
            self.console.print()
            self.console.print(Text(summary.text))

        if not cancelled and exit_code not in (0, None):
            raise ProviderError(f"{self.name} exited with code {exit_code}")
        return QueryResult(text=summary.text, tokens=summary.tokens, cancelled=cancelled)
