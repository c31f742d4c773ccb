from __future__ import annotations

import io
from pathlib import Path
from typing import Any, Sequence

import pytest
from rich.console import Console

from ablationfarm.attachments import AttachmentCatalog
from ablationfarm.chat import ChatHistory
from ablationfarm.collaborators import AttachmentInfo, QueryResult, ToolResult
from ablationfarm.prompts import PromptLibrary
from ablationfarm.tools import ToolRegistry


@pytest.fixture
def stdout() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def stderr() -> io.StringIO:
    return io.StringIO()


def make_console(buf: io.StringIO) -> Console:
    return Console(file=buf, force_terminal=False, color_system=None, width=120)


@pytest.fixture
def console(stdout: io.StringIO) -> Console:
    return make_console(stdout)


class FakeProvider:
    """Records every call; replies with a canned answer per query."""

    def __init__(self, *, reply: str = "ok", tokens: int = 10) -> None:
        self.name = ""
        self.model = ""
        self.reply = reply
        self.tokens = tokens
        self.calls: list[tuple[str, Any]] = []
        self.queries: list[str] = []
        self.injected: list[tuple[str, dict[str, Any], ToolResult]] = []
        self.on_query = None

    def switch_to(self, provider: str, model: str, thinking: str | None = None) -> None:
        self.calls.append(("switch_to", (provider, model, thinking)))
        self.name = provider
        self.model = model

    def process_query(
        self,
        text: str,
        attachments: Sequence[AttachmentInfo] | None,
        cancel,
        observer=None,
        *,
        max_iterations: int | None = None,
    ) -> QueryResult:
        self.calls.append(("process_query", text))
        self.queries.append(text)
        if self.on_query is not None:
            self.on_query(text, observer)
        return QueryResult(text=self.reply, tokens=self.tokens)

    def inject_tool_result(self, tool_name: str, args: dict[str, Any], result: ToolResult) -> None:
        self.calls.append(("inject_tool_result", tool_name))
        self.injected.append((tool_name, args, result))

    def clear_context(self) -> None:
        self.calls.append(("clear_context", None))

    def save_state(self) -> Any:
        self.calls.append(("save_state", None))
        return {"name": self.name, "model": self.model}

    def restore_state(self, state: Any) -> None:
        self.calls.append(("restore_state", state))


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def tool_log() -> list[tuple[str, dict[str, Any]]]:
    return []


@pytest.fixture
def tools(tool_log: list[tuple[str, dict[str, Any]]]) -> ToolRegistry:
    registry = ToolRegistry()

    @registry.tool()
    def echo(**kwargs: Any) -> dict[str, Any]:
        """Return the arguments."""
        tool_log.append(("echo", kwargs))
        return dict(kwargs)

    @registry.tool()
    def note(text: str = "") -> str:
        tool_log.append(("note", {"text": text}))
        return f"noted {text}"

    @registry.tool()
    def explode() -> str:
        raise RuntimeError("boom")

    return registry


@pytest.fixture
def home(tmp_path: Path) -> Path:
    root = tmp_path / "home"
    for d in ("attachments", "prompts", "outputs", "runs", "ablations"):
        (root / d).mkdir(parents=True)
    return root


@pytest.fixture
def chat() -> ChatHistory:
    return ChatHistory()


@pytest.fixture
def attachments(home: Path) -> AttachmentCatalog:
    return AttachmentCatalog(home / "attachments")


@pytest.fixture
def prompts(home: Path) -> PromptLibrary:
    return PromptLibrary(home / "prompts")
