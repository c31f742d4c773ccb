"""Contracts for the collaborators the engine sequences but does not own."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Protocol, Sequence


@dataclass(frozen=True)
class AttachmentInfo:
    file_name: str
    path: Path
    size: int = 0
    mime_type: str = "application/octet-stream"


@dataclass(frozen=True)
class ToolInfo:
    name: str
    description: str = ""


@dataclass(frozen=True)
class ToolResult:
    display_text: str
    content_blocks: list[dict[str, Any]] = field(default_factory=list)
    success: bool = True
    structured: dict[str, Any] | None = None


@dataclass(frozen=True)
class ProviderEvent:
    """One observation from a running agent turn.

    kind is one of ``text``, ``tool_call``, ``tool_result``, ``usage``, ``error``.
    """

    kind: str
    text: str = ""
    tool_name: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)
    tool_output: str = ""
    call_id: str = ""
    is_error: bool = False
    tokens: int = 0


@dataclass(frozen=True)
class QueryResult:
    text: str = ""
    tokens: int = 0
    cancelled: bool = False


@dataclass(frozen=True)
class ChatFiles:
    file_path: Path
    md_file_path: Path


@dataclass(frozen=True)
class PromptInfo:
    name: str
    description: str = ""
    arguments: tuple[str, ...] = ()
    path: Path | None = None


CancelPredicate = Callable[[], bool]
EventObserver = Callable[[ProviderEvent], None]


class ModelProvider(Protocol):
    name: str
    model: str

    def switch_to(self, provider: str, model: str, thinking: str | None = None) -> None:
        ...

    def process_query(
        self,
        text: str,
        attachments: Sequence[AttachmentInfo] | None,
        cancel: CancelPredicate,
        observer: EventObserver | None = None,
        *,
        max_iterations: int | None = None,
    ) -> QueryResult:
        ...

    def inject_tool_result(
        self, tool_name: str, args: dict[str, Any], result: ToolResult
    ) -> None:
        ...

    def clear_context(self) -> None:
        ...

    def save_state(self) -> Any:
        ...

    def restore_state(self, state: Any) -> None:
        ...


class ToolExecutor(Protocol):
    def execute(self, tool_name: str, args: dict[str, Any]) -> ToolResult:
        ...

    def list_tools(self) -> list[ToolInfo]:
        ...


class ChatHistoryManager(Protocol):
    def start_session(self, metadata: dict[str, Any]) -> None:
        ...

    def add_user_message(
        self, text: str, attachments: Sequence[AttachmentInfo] | None = None
    ) -> None:
        ...

    def add_assistant_message(self, text: str) -> None:
        ...

    def add_tool_execution(
        self,
        tool_name: str,
        tool_input: dict[str, Any],
        tool_output: str,
        *,
        source: str,
        success: bool = True,
        trigger: dict[str, Any] | None = None,
    ) -> None:
        ...

    def add_phase_event(
        self, kind: str, phase: str, trigger: dict[str, Any] | None = None
    ) -> None:
        ...

    def referenced_attachments(self) -> list[str]:
        ...

    def end_session(self, summary: str, *, directory: Path) -> ChatFiles:
        ...


class AttachmentManager(Protocol):
    def list(self) -> list[AttachmentInfo]:
        ...

    def resolve(self, ref: str) -> AttachmentInfo | None:
        ...


class PromptCatalog(Protocol):
    def list(self) -> list[PromptInfo]:
        ...

    def resolve(self, ref: str) -> PromptInfo | None:
        ...

    def render(self, prompt: PromptInfo, args: dict[str, Any] | None = None) -> str:
        ...
