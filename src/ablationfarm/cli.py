"""CLI entry point for ablationfarm."""

from __future__ import annotations

import argparse
import json
import sys

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import __version__
from .attachments import AttachmentCatalog
from .chat import ChatHistory
from .config import NO_MONITOR_ENV, AblationfarmPaths, find_repo_root
from .control import InputMonitor, InterruptController, TerminalKeySource
from .definition import (
    AblationDefinition,
    ArgumentError,
    DefinitionError,
    resolve_arguments,
)
from .hooks import HookEngine, HookStore
from .orchestrator import AblationOrchestrator
from .prompts import PromptLibrary
from .provider import AgentCliProvider
from .staging import ResourceStager
from .store import AblationNotFound, AblationStore, model_short_name
from .tools import ToolRegistry, load_tools
from .util import env_flag, format_ms


_EXAMPLE_ABLATION = """\
name: example
description: Compare two models on a two-phase task
runs: 1
settings:
  maxIterations: 20
  clearContextBetweenPhases: true
arguments:
  - name: topic
    type: string
    required: false
    default: sorting algorithms
models:
  - provider: claude
    model: sonnet
  - provider: codex
    model: gpt-5
    thinking: medium
phases:
  - name: research
    commands:
      - "Write a short note about {{topic}} to outputs/notes.md"
  - name: review
    commands:
      - "Review outputs/notes.md and list three improvements"
      - "@complete-phase"
"""

_STATUS_STYLES = {"completed": "green", "failed": "red", "aborted": "yellow"}


def _store(paths: AblationfarmPaths) -> AblationStore:
    return AblationStore(paths.ablations, paths.runs)


def _parse_kv(pairs: list[str]) -> dict[str, str]:
    out: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ArgumentError(f"--arg expects key=value, got {pair!r}")
        out[key.strip()] = value
    return out


def cmd_init(paths: AblationfarmPaths, console: Console) -> int:
    paths.ensure()
    example = paths.ablations / "example.yaml"
    if not any(paths.ablations.glob("*.yaml")):
        example.write_text(_EXAMPLE_ABLATION, encoding="utf-8")
    if not paths.hooks_file.exists():
        paths.hooks_file.write_text("hooks: []\n", encoding="utf-8")
    console.print(Panel(
        f"Initialized [bold]{paths.home}[/bold]",
        style="green",
        expand=False,
    ))
    return 0


def cmd_list(paths: AblationfarmPaths, console: Console) -> int:
    definitions = _store(paths).list()
    if not definitions:
        console.print("[yellow]No ablation studies found.[/yellow] [dim]Try: ablationfarm init[/dim]")
        return 0
    table = Table(title="Ablations", expand=False, show_edge=False, pad_edge=False)
    table.add_column("Name", style="bold")
    table.add_column("Models")
    table.add_column("Phases", justify="right")
    table.add_column("Runs", justify="right")
    table.add_column("Cells", justify="right", style="dim")
    table.add_column("Created", style="dim")
    for d in definitions:
        table.add_row(
            d.name,
            ", ".join(model_short_name(m) for m in d.models) or "-",
            str(len(d.phases)),
            str(d.runs),
            str(d.total_cells),
            d.created[:19],
        )
    console.print(table)
    return 0


def _definition_panel(d: AblationDefinition) -> Panel:
    body = Text()
    if d.description:
        body.append(d.description + "\n\n")
    body.append("Models\n", style="bold")
    for m in d.models:
        body.append(f"  • {m.label}\n")
    body.append("Phases\n", style="bold")
    for p in d.phases:
        body.append(f"  ◆ {p.name}", style="cyan")
        body.append(f"  ({len(p.commands)} command(s), {len(p.hooks)} hook(s))\n", style="dim")
        for c in p.on_start:
            body.append(f"      onStart: {c}\n", style="dim")
        for c in p.commands:
            body.append(f"      {c}\n")
        for c in p.on_end:
            body.append(f"      onEnd: {c}\n", style="dim")
    if d.hooks:
        body.append("Hooks\n", style="bold")
        for h in d.hooks:
            body.append(f"  ↪ {h.trigger}: {h.run}\n")
    if d.arguments:
        body.append("Arguments\n", style="bold")
        for a in d.arguments:
            flag = "required" if a.required else f"default={a.default!r}"
            body.append(f"  {a.name} ({a.type}, {flag}) {a.description}\n")
    s = d.settings
    body.append(
        f"\nmaxIterations={s.max_iterations} "
        f"clearContextBetweenPhases={str(s.clear_context_between_phases).lower()} "
        f"runs={d.runs} cells={d.total_cells}",
        style="dim",
    )
    return Panel(body, title=d.name, style="cyan", expand=False)


def cmd_show(argv: list[str], paths: AblationfarmPaths, console: Console) -> int:
    if not argv:
        console.print(Text("usage: ablationfarm show <name>", style="red"))
        return 1
    d = _store(paths).load(argv[0])
    console.print(_definition_panel(d))
    return 0


def _run_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ablationfarm run")
    p.add_argument("name")
    p.add_argument("--dry-run", action="store_true")
    p.add_argument("--arg", action="append", default=[], metavar="KEY=VALUE")
    p.add_argument("--tools", default=None, metavar="MODULE:ATTR")
    p.add_argument("--no-monitor", action="store_true")
    p.add_argument("--json", action="store_true")
    return p


def cmd_run(argv: list[str], paths: AblationfarmPaths, console: Console) -> int:
    args = _run_parser().parse_args(argv)
    if args.json:
        # stdout carries only the JSON payload
        console = Console(stderr=True)
    paths.ensure()
    store = _store(paths)
    definition = store.load(args.name)

    attachments = AttachmentCatalog(paths.attachments)
    values = resolve_arguments(definition, _parse_kv(args.arg), attachments=attachments)
    definition = definition.with_arguments(values)
    if not definition.models or not definition.phases:
        console.print(Text(f"{definition.name}: needs at least one model and one phase", style="red"))
        return 1

    mcp_config_path = definition.settings.mcp_config_path
    tools = load_tools(args.tools, mcp_config_path=mcp_config_path) if args.tools else ToolRegistry()
    cwd = find_repo_root()

    controller = InterruptController()
    monitor = None
    no_monitor = args.no_monitor or env_flag(NO_MONITOR_ENV)
    if not no_monitor and TerminalKeySource.available():
        monitor = InputMonitor(controller=controller, source=TerminalKeySource())
        console.print("[dim]Ctrl+A pause · Ctrl+C abort current model[/dim]")

    orchestrator = AblationOrchestrator(
        definition,
        run_dir=store.create_run_directory(definition.name),
        provider=AgentCliProvider(cwd=cwd, mcp_config_path=mcp_config_path, console=console),
        tools=tools,
        chat=ChatHistory(),
        attachments=attachments,
        prompts=PromptLibrary(paths.prompts),
        stager=ResourceStager(paths.outputs, paths.attachments, console=console),
        hooks=HookEngine(client_hooks=HookStore(paths.hooks_file).enabled_hooks(), console=console),
        controller=controller,
        monitor=monitor,
        dry_run=args.dry_run,
        cwd=cwd,
        console=console,
    )
    run = orchestrator.run()

    if args.json:
        json.dump(run.to_dict(), sys.stdout, indent=2)
        print()

    return 0 if run.succeeded else 1


def cmd_results(argv: list[str], paths: AblationfarmPaths, console: Console) -> int:
    if not argv:
        console.print(Text("usage: ablationfarm results <name>", style="red"))
        return 1
    runs = _store(paths).list_runs(argv[0])
    if not runs:
        console.print(f"[yellow]No runs recorded for {argv[0]}.[/yellow]")
        return 0

    table = Table(title=f"Runs: {argv[0]}", expand=False, show_edge=False, pad_edge=False)
    table.add_column("Timestamp", style="bold")
    table.add_column("Cells", justify="right")
    table.add_column("Completed", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Aborted", justify="right", style="yellow")
    table.add_column("Tokens", justify="right", style="dim")
    table.add_column("Time", justify="right", style="dim")
    for stamp, data in runs[:10]:
        results = data.get("results") or []
        count = {s: sum(1 for r in results if r.get("status") == s) for s in _STATUS_STYLES}
        table.add_row(
            stamp + (" (dry)" if data.get("dry_run") else ""),
            str(len(results)),
            str(count["completed"]),
            str(count["failed"]),
            str(count["aborted"]),
            str(data.get("total_tokens", 0)),
            format_ms(data.get("total_duration_ms")),
        )
    console.print(table)

    stamp, latest = runs[0]
    detail = Table(title=f"Latest ({stamp})", expand=False, show_edge=False, pad_edge=False)
    detail.add_column("Run", justify="right", style="dim")
    detail.add_column("Model", style="bold")
    detail.add_column("Phase")
    detail.add_column("Status")
    detail.add_column("Duration", justify="right", style="dim")
    detail.add_column("Error", style="red")
    for r in latest.get("results") or []:
        model = r.get("model") or {}
        label = f"{model.get('provider', '?')}/{model.get('model', '?')}"
        status = str(r.get("status", ""))
        detail.add_row(
            str(r.get("run", 1)),
            label,
            str(r.get("phase", "")),
            Text(status, style=_STATUS_STYLES.get(status, "dim")),
            format_ms(r.get("duration_ms")),
            Text((r.get("error") or "")[:60]),
        )
    console.print(detail)
    return 0


def cmd_delete(argv: list[str], paths: AblationfarmPaths, console: Console) -> int:
    if not argv:
        console.print(Text("usage: ablationfarm delete <name>", style="red"))
        return 1
    if not _store(paths).delete(argv[0]):
        console.print(Text(f"Ablation not found: {argv[0]}", style="red"))
        return 1
    console.print(f"[green]Deleted {argv[0]}[/green]")
    return 0


def cmd_hooks(argv: list[str], paths: AblationfarmPaths, console: Console) -> int:
    store = HookStore(paths.hooks_file)
    action = argv[0] if argv else "list"

    if action == "list":
        hooks = store.list()
        if not hooks:
            console.print("[dim]No client hooks.[/dim]")
            return 0
        table = Table(title="Client Hooks", expand=False, show_edge=False, pad_edge=False)
        table.add_column("ID", style="bold")
        table.add_column("Enabled")
        table.add_column("Trigger", style="cyan")
        table.add_column("Run")
        for h in hooks:
            table.add_row(
                h.id,
                Text("yes", style="green") if h.enabled else Text("no", style="dim"),
                h.hook.trigger,
                Text(h.hook.run),
            )
        console.print(table)
        return 0

    if action not in ("enable", "disable", "remove"):
        console.print(Text(f"unknown hooks action: {action}", style="red"))
        return 1
    if len(argv) < 2:
        console.print(Text(f"usage: ablationfarm hooks {action} <id>", style="red"))
        return 1

    hook_id = argv[1]
    if action == "remove":
        ok = store.remove(hook_id)
    elif action == "enable":
        ok = store.enable(hook_id) is not None
    else:
        ok = store.disable(hook_id) is not None
    if not ok:
        console.print(Text(f"Hook not found: {hook_id}", style="red"))
        return 1
    console.print(f"[green]{action.capitalize()}d hook {hook_id}[/green]")
    return 0


def _print_help(console: Console) -> None:
    help_text = Text()
    help_text.append("ablationfarm", style="bold")
    help_text.append(f" {__version__}", style="dim")
    help_text.append(" · ablation studies for agent CLIs")
    console.print(help_text)
    console.print()

    cmds = Table(show_header=False, expand=False, show_edge=False, pad_edge=False, box=None)
    cmds.add_column("Command", style="bold cyan")
    cmds.add_column("Description")
    cmds.add_row("ablationfarm init", "Scaffold the data directory with an example study")
    cmds.add_row("ablationfarm list", "List ablation studies")
    cmds.add_row("ablationfarm show <name>", "Show a study definition")
    cmds.add_row("ablationfarm run <name>", "Run every model × phase cell of a study")
    cmds.add_row("ablationfarm results <name>", "Show recorded runs")
    cmds.add_row("ablationfarm delete <name>", "Delete a study definition")
    cmds.add_row(Text("ablationfarm hooks [list|enable|disable|remove] [id]"), "Manage client hooks")
    console.print(cmds)
    console.print()

    opts = Table(show_header=False, expand=False, show_edge=False, pad_edge=False, box=None)
    opts.add_column("Option", style="bold")
    opts.add_column("Description", style="dim")
    opts.add_row("--dry-run", "Run without sending queries to providers")
    opts.add_row("--arg KEY=VALUE", "Study argument (repeatable)")
    opts.add_row("--tools MODULE:ATTR", "Tool registry or factory")
    opts.add_row("--no-monitor", "Disable Ctrl+A / Ctrl+C key monitor")
    opts.add_row("--json", "JSON output")
    opts.add_row("--version", "Show version")
    console.print(opts)


_COMMANDS = {
    "show": cmd_show,
    "run": cmd_run,
    "results": cmd_results,
    "delete": cmd_delete,
    "hooks": cmd_hooks,
}


def main(argv: list[str] | None = None) -> None:
    raw = argv if argv is not None else sys.argv[1:]
    console = Console()

    if "--version" in raw:
        console.print(Text(f"ablationfarm {__version__}", style="bold"))
        sys.exit(0)
    if not raw or raw == ["--help"] or raw == ["-h"]:
        _print_help(console)
        sys.exit(0)

    paths = AblationfarmPaths.resolve()
    command, rest = raw[0], raw[1:]
    try:
        if command == "init":
            sys.exit(cmd_init(paths, console))
        if command == "list":
            sys.exit(cmd_list(paths, console))
        handler = _COMMANDS.get(command)
        if handler is None:
            console.print(Text(f"Unknown command: {command}", style="red"))
            _print_help(console)
            sys.exit(2)
        sys.exit(handler(rest, paths, console))
    except AblationNotFound as exc:
        console.print(Text(f"Ablation not found: {exc.args[0]}", style="red"))
        sys.exit(1)
    except (DefinitionError, ArgumentError, ValueError) as exc:
        console.print(Text(str(exc), style="red"))
        sys.exit(1)


if __name__ == "__main__":
    main()
