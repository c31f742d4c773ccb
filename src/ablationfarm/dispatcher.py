"""Execute parsed commands against the provider, tools, shell and catalogs."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.text import Text

from .collaborators import (
    AttachmentInfo,
    AttachmentManager,
    CancelPredicate,
    ChatHistoryManager,
    EventObserver,
    ModelProvider,
    PromptCatalog,
    ToolExecutor,
)
from .commands import (
    AbortRun,
    Command,
    CompletePhase,
    Query,
    ShellCall,
    Signal,
    SlashCommand,
    ToolCall,
    Wait,
    parse_command,
)
from .config import SHELL_TIMEOUT_ENV
from .control import InterruptController
from .util import env_int, json_dumps_compact, truncate

if TYPE_CHECKING:
    from .hooks import HookEngine


SHELL_TIMEOUT_SECONDS = 300


class CommandExecutionError(RuntimeError):
    pass


class ToolExecutionError(CommandExecutionError):
    def __init__(self, message: str, partial: ToolExecResult) -> None:
        super().__init__(message)
        self.partial = partial


class ShellCommandError(CommandExecutionError):
    def __init__(self, message: str, *, returncode: int | None, output: str) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.output = output


@dataclass(frozen=True)
class ToolExecResult:
    tool_name: str
    args: dict[str, Any]
    display_text: str
    success: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "args": dict(self.args),
            "display_text": self.display_text,
            "success": self.success,
        }


@dataclass(frozen=True)
class DispatchResult:
    signal: Signal | None = None
    tool: ToolExecResult | None = None
    shell_output: str | None = None


def _never() -> bool:
    return False


@dataclass
class DispatchContext:
    """Mutable per-phase state threaded through every command."""

    phase_name: str | None = None
    max_iterations: int | None = None
    dry_run: bool = False
    cancel: CancelPredicate = _never
    observer: EventObserver | None = None
    pending_attachments: list[AttachmentInfo] = field(default_factory=list)
    tokens: int = 0
    tool_calls: list[ToolExecResult] = field(default_factory=list)


class CommandDispatcher:
    def __init__(
        self,
        *,
        tools: ToolExecutor,
        provider: ModelProvider,
        chat: ChatHistoryManager,
        attachments: AttachmentManager,
        prompts: PromptCatalog,
        hooks: HookEngine | None = None,
        controller: InterruptController | None = None,
        console: Console | None = None,
        cwd: Path | None = None,
    ) -> None:
        self.tools = tools
        self.provider = provider
        self.chat = chat
        self.attachments = attachments
        self.prompts = prompts
        self.hooks = hooks
        self.controller = controller or InterruptController()
        self.console = console or Console()
        self.cwd = cwd

    def execute_text(
        self,
        text: str,
        ctx: DispatchContext,
        *,
        fire_hooks: bool = True,
        source: str = "command",
        trigger: dict[str, Any] | None = None,
    ) -> DispatchResult:
        return self.execute(
            parse_command(text), ctx, fire_hooks=fire_hooks, source=source, trigger=trigger
        )

    def execute(
        self,
        command: Command,
        ctx: DispatchContext,
        *,
        fire_hooks: bool = True,
        source: str = "command",
        trigger: dict[str, Any] | None = None,
    ) -> DispatchResult:
        if isinstance(command, CompletePhase):
            return self._complete_phase(command, ctx)
        if isinstance(command, AbortRun):
            self.console.print("[yellow]⏹ @abort: aborting this run[/yellow]")
            return DispatchResult(signal=Signal.ABORT_RUN)
        if isinstance(command, Wait):
            self._wait(command, ctx)
            return DispatchResult()
        if isinstance(command, ToolCall):
            result = self._tool(
                command, ctx, fire_hooks=fire_hooks, source=source, trigger=trigger
            )
            return DispatchResult(tool=result)
        if isinstance(command, ShellCall):
            output = self._shell(command, source=source, trigger=trigger)
            return DispatchResult(shell_output=output)
        if isinstance(command, SlashCommand):
            self._slash(command, ctx)
            return DispatchResult()
        if isinstance(command, Query):
            self._query(command.text, ctx)
            return DispatchResult()
        raise TypeError(f"unhandled command: {command!r}")

    # -- control -------------------------------------------------------------

    def _complete_phase(self, command: CompletePhase, ctx: DispatchContext) -> DispatchResult:
        if command.label and ctx.phase_name and command.label != ctx.phase_name:
            self.console.print(
                f"[dim]@complete-phase:{command.label} ignored "
                f"(current phase is {ctx.phase_name})[/dim]"
            )
            return DispatchResult()
        self.console.print("[green]✓ @complete-phase[/green]")
        return DispatchResult(signal=Signal.PHASE_COMPLETE)

    def _wait(self, command: Wait, ctx: DispatchContext) -> None:
        self.console.print(f"[dim]⏳ waiting {command.seconds:g}s[/dim]")
        if self.controller.wait(command.seconds, ctx.cancel):
            self.console.print("[dim]wait cancelled[/dim]")

    # -- tools ---------------------------------------------------------------

    def _tool(
        self,
        command: ToolCall,
        ctx: DispatchContext,
        *,
        fire_hooks: bool,
        source: str,
        trigger: dict[str, Any] | None,
    ) -> ToolExecResult:
        hooks = self.hooks if fire_hooks else None
        if hooks is not None:
            hooks.fire_before(command.tool_name, command.args, self.hook_runner(ctx))

        label = "@tool" if command.inject_result else "@tool-exec"
        self.console.print(
            Text(f"  → {label}:{command.tool_name} {json_dumps_compact(command.args)}", style="cyan")
        )
        try:
            tool_result = self.tools.execute(command.tool_name, dict(command.args))
        except Exception as exc:
            partial = ToolExecResult(
                tool_name=command.tool_name,
                args=dict(command.args),
                display_text=str(exc),
                success=False,
            )
            ctx.tool_calls.append(partial)
            self.chat.add_tool_execution(
                command.tool_name,
                dict(command.args),
                str(exc),
                source=source,
                success=False,
                trigger=trigger,
            )
            raise ToolExecutionError(
                f"tool {command.tool_name!r} failed: {exc}", partial
            ) from exc

        result = ToolExecResult(
            tool_name=command.tool_name,
            args=dict(command.args),
            display_text=tool_result.display_text,
            success=tool_result.success,
        )
        ctx.tool_calls.append(result)
        self.chat.add_tool_execution(
            command.tool_name,
            dict(command.args),
            tool_result.display_text,
            source=source,
            success=tool_result.success,
            trigger=trigger,
        )
        style = "green" if tool_result.success else "red"
        self.console.print(
            Text(f"  {'✓' if tool_result.success else '✗'} {truncate(tool_result.display_text, 200)}", style=style)
        )

        if command.inject_result:
            if ctx.dry_run:
                self.console.print(Text("[dry-run] tool result not injected", style="dim"))
            else:
                self.provider.inject_tool_result(command.tool_name, dict(command.args), tool_result)

        if hooks is not None:
            hooks.fire_after(
                command.tool_name, command.args, tool_result, self.hook_runner(ctx)
            )

        return result

    def hook_runner(self, ctx: DispatchContext):
        def run(text: str, trigger: dict[str, Any] | None = None) -> DispatchResult:
            return self.execute_text(
                text, ctx, fire_hooks=False, source="hook", trigger=trigger
            )

        return run

    # -- shell ---------------------------------------------------------------

    def _shell(
        self,
        command: ShellCall,
        *,
        source: str,
        trigger: dict[str, Any] | None,
    ) -> str:
        self.console.print(Text(f"  $ {command.command}", style="dim"))
        timeout = env_int(SHELL_TIMEOUT_ENV, SHELL_TIMEOUT_SECONDS)
        try:
            proc = subprocess.run(
                command.command,
                shell=True,
                cwd=self.cwd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            output = _combine(_decode(exc.stdout), _decode(exc.stderr))
            self.chat.add_tool_execution(
                "shell",
                {"command": command.command},
                output,
                source=source,
                success=False,
                trigger=trigger,
            )
            raise ShellCommandError(
                f"shell command timed out after {timeout}s: {command.command}",
                returncode=None,
                output=output,
            ) from None

        output = _combine(proc.stdout, proc.stderr)
        ok = proc.returncode == 0
        self.chat.add_tool_execution(
            "shell",
            {"command": command.command},
            output,
            source=source,
            success=ok,
            trigger=trigger,
        )
        if not ok:
            raise ShellCommandError(
                f"shell command exited {proc.returncode}: {command.command}",
                returncode=proc.returncode,
                output=output,
            )
        if output.strip():
            self.console.print(Text(truncate(output.strip(), 500), style="dim"))
        return output

    # -- slash commands ------------------------------------------------------

    def _slash(self, command: SlashCommand, ctx: DispatchContext) -> None:
        if command.name in ("/add-attachment", "/attachment-insert"):
            if not command.argument:
                raise CommandExecutionError(f"usage: {command.name} <index|filename>")
            info = self.attachments.resolve(command.argument)
            if info is None:
                raise CommandExecutionError(f"attachment not found: {command.argument}")
            if all(a.file_name != info.file_name for a in ctx.pending_attachments):
                ctx.pending_attachments.append(info)
            self.console.print(f"[dim]📎 {info.file_name}[/dim]")
            return

        if command.name == "/clear-attachments":
            ctx.pending_attachments.clear()
            return

        if command.name == "/add-prompt":
            self._add_prompt(command.argument, ctx)
            return

        self.console.print(
            f"[yellow]⚠ Unknown command {command.name!r}, skipping[/yellow]"
        )

    def _add_prompt(self, argument: str, ctx: DispatchContext) -> None:
        if not argument:
            raise CommandExecutionError("usage: /add-prompt <index|name> [json-args]")
        ref, _, raw_args = argument.partition(" ")
        info = self.prompts.resolve(ref)
        if info is None:
            raise CommandExecutionError(f"prompt not found: {ref}")

        args: dict[str, Any] = {}
        raw_args = raw_args.strip()
        if raw_args:
            try:
                parsed = json.loads(raw_args)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict):
                args = parsed
            else:
                self.console.print(
                    "[yellow]⚠ /add-prompt arguments are not a JSON object, ignored[/yellow]"
                )
        self._query(self.prompts.render(info, args), ctx)

    # -- queries -------------------------------------------------------------

    def _query(self, text: str, ctx: DispatchContext) -> None:
        attachments = list(ctx.pending_attachments)
        ctx.pending_attachments.clear()
        self.chat.add_user_message(text, attachments or None)

        if ctx.dry_run:
            self.console.print(
                Text(f"[dry-run] query not sent: {truncate(text, 80)}", style="dim")
            )
            return

        self.console.print(Text(f"> {truncate(text, 120)}", style="bold"))
        result = self.provider.process_query(
            text,
            attachments or None,
            ctx.cancel,
            ctx.observer,
            max_iterations=ctx.max_iterations,
        )
        ctx.tokens += result.tokens
        if result.text:
            self.chat.add_assistant_message(result.text)
        if result.cancelled:
            self.console.print("[dim]query cancelled[/dim]")


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def _combine(stdout: str | None, stderr: str | None) -> str:
    out = stdout or ""
    err = stderr or ""
    if out and err:
        return out.rstrip("\n") + "\n" + err
    return out or err

