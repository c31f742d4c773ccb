"""Drive the iteration x model x phase matrix of an ablation study."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from .collaborators import (
    AttachmentManager,
    ChatHistoryManager,
    ModelProvider,
    PromptCatalog,
    ProviderEvent,
    ToolExecutor,
    ToolResult,
)
from .commands import Signal, is_attachment_selection
from .control import InputMonitor, InterruptController, PauseSession, ReadLineFn
from .definition import AblationDefinition, AblationModel, AblationPhase
from .dispatcher import CommandDispatcher, CommandExecutionError, DispatchContext
from .events import AblationEvent, EventSink
from .hooks import HookEngine
from .recorder import (
    ABORTED,
    COMPLETED,
    FAILED,
    AblationRun,
    AblationRunResult,
    RunRecorder,
)
from .staging import ResourceStager
from .util import monotonic_ms, utc_now_iso


class AblationOrchestrator:
    def __init__(
        self,
        definition: AblationDefinition,
        *,
        run_dir: Path,
        provider: ModelProvider,
        tools: ToolExecutor,
        chat: ChatHistoryManager,
        attachments: AttachmentManager,
        prompts: PromptCatalog,
        stager: ResourceStager,
        hooks: HookEngine | None = None,
        controller: InterruptController | None = None,
        monitor: InputMonitor | None = None,
        read_line: ReadLineFn | None = None,
        event_sink: EventSink | None = None,
        dry_run: bool = False,
        cwd: Path | None = None,
        console: Console | None = None,
    ) -> None:
        self.definition = definition
        self.provider = provider
        self.tools = tools
        self.chat = chat
        self.attachments = attachments
        self.prompts = prompts
        self.stager = stager
        self.console = console or Console()
        self.hooks = hooks or HookEngine(console=self.console)
        self.controller = controller or InterruptController()
        self.monitor = monitor
        self.read_line = read_line
        self.event_sink = event_sink
        self.dry_run = dry_run

        self.run_state = AblationRun(
            ablation_name=definition.name,
            run_dir=run_dir,
            dry_run=dry_run,
        )
        self.recorder = RunRecorder(
            self.run_state,
            multiple_runs=definition.runs > 1,
            console=self.console,
        )
        self.dispatcher = CommandDispatcher(
            tools=tools,
            provider=provider,
            chat=chat,
            attachments=attachments,
            prompts=prompts,
            hooks=self.hooks,
            controller=self.controller,
            console=self.console,
            cwd=cwd,
        )

    @property
    def clear_context(self) -> bool:
        return self.definition.settings.clear_context_between_phases

    # -- events --------------------------------------------------------------

    def _emit(
        self,
        event_type: str,
        *,
        phase: str | None = None,
        model: AblationModel | None = None,
        iteration: int | None = None,
        **payload: Any,
    ) -> None:
        if self.event_sink is None:
            return
        self.event_sink(
            AblationEvent(
                type=event_type,
                timestamp=utc_now_iso(),
                phase=phase,
                model=model.label if model else None,
                iteration=iteration,
                payload=payload,
            )
        )

    # -- study ---------------------------------------------------------------

    def run(self) -> AblationRun:
        d = self.definition
        self.console.print(
            Panel(
                f"[bold]{d.name}[/bold] · {len(d.models)} model(s) × "
                f"{len(d.phases)} phase(s) × {d.runs} run(s)"
                + ("  [yellow](dry run)[/yellow]" if self.dry_run else ""),
                title="Ablation",
                style="cyan",
                expand=False,
            )
        )

        self.recorder.write_definition_snapshot(d)
        self.recorder.write_tools_snapshot(self.tools.list_tools())
        if d.uses_prompts():
            self.recorder.write_prompts_snapshot(self.prompts.list())
        self.recorder.save()
        self._emit(
            "ablation.start",
            name=d.name,
            run_dir=str(self.run_state.run_dir),
            total_cells=d.total_cells,
            dry_run=self.dry_run,
        )

        saved_state = None if self.dry_run else self.provider.save_state()
        self.hooks.suspend()
        self.controller.enable_abort_mode()
        if self.monitor is not None:
            self.monitor.start()
        self.stager.stash()
        try:
            for iteration in range(1, d.runs + 1):
                for model in d.models:
                    self._run_model(model, iteration)
        finally:
            if self.monitor is not None:
                self.monitor.stop()
            self.controller.disable_abort_mode()
            self.hooks.clear()
            self.hooks.resume()
            self.stager.restore()
            if not self.dry_run:
                self.provider.restore_state(saved_state)
            self.recorder.finalize()

        counts = self.run_state.counts()
        self._emit("ablation.end", **counts, total_tokens=self.run_state.total_tokens)
        self.recorder.print_summary()
        return self.run_state

    # -- model ---------------------------------------------------------------

    def _run_model(self, model: AblationModel, iteration: int) -> None:
        d = self.definition
        self.controller.reset_abort()
        self.hooks.reset_flags()
        self.stager.clear()
        if not self.dry_run:
            self.provider.switch_to(model.provider, model.model, model.thinking)

        self._checkpoint(
            DispatchContext(dry_run=self.dry_run),
            model=model,
            iteration=iteration,
            between_models=True,
        )
        if self.controller.is_abort_requested():
            self.console.print(Text(f"⏹ Skipping {model.label}", style="yellow"))
            self.controller.reset()
            return

        suffix = f" (run {iteration}/{d.runs})" if d.runs > 1 else ""
        self.console.print(f"\n[bold cyan]▶ {model.label}[/bold cyan]{suffix}")
        self._emit("model.start", model=model, iteration=iteration)

        model_results: list[AblationRunResult] = []
        if not self.clear_context:
            if not self.dry_run:
                self.provider.clear_context()
            self.chat.start_session(self._session_meta(model, iteration, phase=None))

        for phase in d.phases:
            if self.controller.is_abort_requested():
                break
            result = self._run_phase(phase, model, iteration)
            model_results.append(result)
            if result.status in (FAILED, ABORTED):
                if phase is not d.phases[-1]:
                    self.console.print(
                        Text(
                            f"  skipping remaining phases for {model.label}",
                            style="dim",
                        )
                    )
                break

        if self.controller.is_abort_requested():
            self.controller.reset()

        if not self.clear_context:
            files = self.chat.end_session(
                f"{model.label} run {iteration}",
                directory=self.recorder.model_dir(model, iteration),
            )
            for result in model_results:
                result.chat_file = str(files.file_path)
            self.recorder.save()

        self._emit(
            "model.end",
            model=model,
            iteration=iteration,
            statuses=[r.status for r in model_results],
        )

    def _session_meta(
        self, model: AblationModel, iteration: int, *, phase: str | None
    ) -> dict[str, Any]:
        meta: dict[str, Any] = {
            "ablation": self.definition.name,
            "provider": model.provider,
            "model": model.model,
            "run": iteration,
            "dry_run": self.dry_run,
        }
        if model.thinking:
            meta["thinking"] = model.thinking
        if phase is not None:
            meta["phase"] = phase
        return meta

    # -- phase ---------------------------------------------------------------

    def _run_phase(
        self, phase: AblationPhase, model: AblationModel, iteration: int
    ) -> AblationRunResult:
        result = self.recorder.begin(phase.name, model, iteration)
        phase_dir = self.recorder.phase_dir(model, iteration, phase.name)
        self.console.print(f"[cyan]  ◆ {phase.name}[/cyan]")
        self._emit("phase.start", phase=phase.name, model=model, iteration=iteration)

        started = monotonic_ms()
        self.hooks.load(self.definition.hooks, phase.hooks)
        self.hooks.reset_flags()
        if self.clear_context:
            if not self.dry_run:
                self.provider.clear_context()
            self.chat.start_session(self._session_meta(model, iteration, phase=phase.name))
        self.chat.add_phase_event("start", phase.name)

        ctx = DispatchContext(
            phase_name=phase.name,
            max_iterations=self.definition.settings.max_iterations,
            dry_run=self.dry_run,
            cancel=self.controller.cancel_predicate(
                lambda: self.hooks.phase_complete_requested,
                lambda: self.hooks.abort_run_requested,
            ),
        )
        ctx.observer = self._make_observer(ctx)

        status = FAILED
        error: str | None = None
        try:
            signal = self._run_commands(phase.on_start, ctx, lifecycle="onStart")
            if signal is None and not self._aborting():
                selections = [c for c in phase.commands if is_attachment_selection(c)]
                rest = [c for c in phase.commands if not is_attachment_selection(c)]
                signal = self._run_commands(selections + rest, ctx)
            if signal is not Signal.ABORT_RUN and not self._aborting():
                self.hooks.reset_phase_complete()
                end_signal = self._run_commands(phase.on_end, ctx, lifecycle="onEnd")
                if end_signal is Signal.ABORT_RUN:
                    signal = end_signal
            status = self._classify(signal)
        except KeyboardInterrupt:
            self.controller.request_abort()
            status = ABORTED
        except Exception as exc:
            status = FAILED
            error = str(exc) or type(exc).__name__
            self.console.print(Text(f"  ✗ {phase.name}: {error}", style="red"))
        finally:
            self.hooks.clear()
            duration_ms = monotonic_ms() - started
            self._finish_phase(phase, phase_dir, ctx)
            result.tool_calls = list(ctx.tool_calls)
            result.finish(
                status,
                duration_ms=duration_ms,
                tokens=None if self.dry_run else ctx.tokens,
                error=error,
            )
            if self.clear_context:
                files = self.chat.end_session(
                    f"{phase.name} / {model.label}: {status}", directory=phase_dir
                )
                result.chat_file = str(files.file_path)
            self.recorder.save()

        style = {COMPLETED: "green", ABORTED: "yellow"}.get(status, "red")
        self.console.print(Text(f"  {status} {phase.name}", style=style))
        self._emit(
            "phase.end",
            phase=phase.name,
            model=model,
            iteration=iteration,
            status=status,
            duration_ms=result.duration_ms,
            tokens=result.tokens,
            error=error,
        )
        return result

    def _finish_phase(self, phase: AblationPhase, phase_dir: Path, ctx: DispatchContext) -> None:
        moved = self.stager.capture(phase_dir / "outputs")
        copied = self.stager.capture_attachments(
            self.chat.referenced_attachments(), phase_dir / "attachments"
        )
        if moved or copied:
            self.console.print(
                Text(f"  captured {moved} output(s), {copied} attachment(s)", style="dim")
            )
        self.chat.add_phase_event("end", phase.name)
        ctx.pending_attachments.clear()

    def _aborting(self) -> bool:
        return self.controller.is_abort_requested() or self.hooks.abort_run_requested

    def _classify(self, signal: Signal | None) -> str:
        if self.controller.is_abort_requested():
            return ABORTED
        if signal is Signal.ABORT_RUN or self.hooks.abort_run_requested:
            return ABORTED
        return COMPLETED

    def _run_commands(
        self,
        commands: tuple[str, ...] | list[str],
        ctx: DispatchContext,
        *,
        lifecycle: str | None = None,
    ) -> Signal | None:
        trigger = {"lifecycle": lifecycle} if lifecycle else None
        if lifecycle and commands:
            self.chat.add_phase_event(lifecycle, ctx.phase_name or "", trigger)
        for text in commands:
            signal = self._checkpoint(ctx)
            if signal is not None:
                return signal
            if self.controller.is_abort_requested():
                return None
            signal = self._hook_signal()
            if signal is not None:
                return signal

            outcome = self.dispatcher.execute_text(text, ctx, trigger=trigger)
            if outcome.signal is not None:
                return outcome.signal
            signal = self._checkpoint(ctx)
            if signal is not None:
                return signal
        return self._hook_signal()

    def _hook_signal(self) -> Signal | None:
        if self.hooks.abort_run_requested:
            return Signal.ABORT_RUN
        if self.hooks.phase_complete_requested:
            return Signal.PHASE_COMPLETE
        return None

    # -- pause ---------------------------------------------------------------

    def _checkpoint(
        self,
        ctx: DispatchContext,
        *,
        model: AblationModel | None = None,
        iteration: int | None = None,
        between_models: bool = False,
    ) -> Signal | None:
        if self.controller.is_abort_requested():
            return None
        if not self.controller.is_interrupt_requested():
            return None

        self._emit("ablation.pause", phase=ctx.phase_name, model=model, iteration=iteration)

        def run_command(line: str) -> Any:
            if between_models:
                raise CommandExecutionError(
                    f"{line!r} not run: no phase is active. "
                    "Enter resumes, /abort skips this model."
                )
            return self.dispatcher.execute_text(line, ctx)

        session = PauseSession(
            controller=self.controller,
            run_command=run_command,
            read_line=self.read_line,
            console=self.console,
            monitor=self.monitor,
        )
        outcome = session.run()
        self._emit(
            "ablation.resume",
            phase=ctx.phase_name,
            model=model,
            iteration=iteration,
            aborted=outcome.aborted,
        )
        return outcome.signal

    # -- provider events -----------------------------------------------------

    def _make_observer(self, ctx: DispatchContext) -> Callable[[ProviderEvent], None]:
        pending: dict[str, tuple[str, dict[str, Any]]] = {}
        run_hook = self.dispatcher.hook_runner(ctx)

        def observe(event: ProviderEvent) -> None:
            if event.kind == "tool_call":
                pending[event.call_id] = (event.tool_name, dict(event.tool_input))
                self.hooks.fire_before(event.tool_name, event.tool_input, run_hook)
            elif event.kind == "tool_result":
                name, tool_input = pending.pop(
                    event.call_id, (event.tool_name, dict(event.tool_input))
                )
                self.chat.add_tool_execution(
                    name,
                    tool_input,
                    event.tool_output,
                    source="agent",
                    success=not event.is_error,
                )
                self.hooks.fire_after(
                    name,
                    tool_input,
                    ToolResult(display_text=event.tool_output, success=not event.is_error),
                    run_hook,
                )
            elif event.kind == "error":
                self.console.print(Text(f"  provider error: {event.text}", style="red"))

        return observe
