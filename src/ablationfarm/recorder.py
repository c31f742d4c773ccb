"""Per-cell results, run snapshots and the results summary."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
from pathlib import Path
from typing import Any, Sequence

from rich.console import Console
from rich.table import Table
from rich.text import Text
import yaml

from .collaborators import PromptInfo, ToolInfo
from .definition import AblationDefinition, AblationModel, phase_folder_name
from .dispatcher import ToolExecResult
from .util import atomic_write_text, format_ms, utc_now_iso


RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
ABORTED = "aborted"
TERMINAL_STATUSES = (COMPLETED, FAILED, ABORTED)

_STATUS_STYLES = {
    COMPLETED: "green",
    FAILED: "red",
    ABORTED: "yellow",
    RUNNING: "cyan",
}


@dataclass
class AblationRunResult:
    phase: str
    model: AblationModel
    run: int = 1
    status: str = RUNNING
    duration_ms: int | None = None
    tokens: int | None = None
    error: str | None = None
    chat_file: str | None = None
    tool_calls: list[ToolExecResult] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def finish(
        self,
        status: str,
        *,
        duration_ms: int,
        tokens: int | None = None,
        error: str | None = None,
    ) -> None:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"not a terminal status: {status!r}")
        if self.finished:
            raise RuntimeError(
                f"result for {self.phase} / {self.model.label} already {self.status}"
            )
        self.status = status
        self.duration_ms = duration_ms
        self.tokens = tokens
        self.error = error

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "model": self.model.to_dict(),
            "run": self.run,
            "status": self.status,
            "duration_ms": self.duration_ms,
            "tokens": self.tokens,
            "error": self.error,
            "chat_file": self.chat_file,
            "tool_calls": [call.to_dict() for call in self.tool_calls],
        }


@dataclass
class AblationRun:
    ablation_name: str
    run_dir: Path
    started_at: str = field(default_factory=utc_now_iso)
    completed_at: str | None = None
    results: list[AblationRunResult] = field(default_factory=list)
    dry_run: bool = False

    @property
    def total_tokens(self) -> int:
        return sum(r.tokens or 0 for r in self.results)

    @property
    def total_duration_ms(self) -> int:
        return sum(r.duration_ms or 0 for r in self.results)

    @property
    def succeeded(self) -> bool:
        return all(r.status == COMPLETED for r in self.results)

    def counts(self) -> dict[str, int]:
        out = {status: 0 for status in TERMINAL_STATUSES}
        for r in self.results:
            if r.status in out:
                out[r.status] += 1
        return out

    def to_dict(self) -> dict[str, Any]:
        return {
            "ablation_name": self.ablation_name,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "dry_run": self.dry_run,
            "run_dir": str(self.run_dir),
            "total_tokens": self.total_tokens,
            "total_duration_ms": self.total_duration_ms,
            "results": [r.to_dict() for r in self.results],
        }


def _write_json(path: Path, data: Any) -> None:
    atomic_write_text(path, json.dumps(data, indent=2, ensure_ascii=False) + "\n")


class RunRecorder:
    DEFINITION_SNAPSHOT = "definition-snapshot.yaml"
    TOOLS_SNAPSHOT = "tools-snapshot.json"
    PROMPTS_SNAPSHOT = "prompts-snapshot.json"
    RESULTS = "results.json"

    def __init__(
        self,
        run: AblationRun,
        *,
        multiple_runs: bool = False,
        console: Console | None = None,
    ) -> None:
        self.run = run
        self.multiple_runs = multiple_runs
        self.console = console or Console()

    @property
    def run_dir(self) -> Path:
        return self.run.run_dir

    # -- snapshots -----------------------------------------------------------

    def write_definition_snapshot(self, definition: AblationDefinition) -> Path:
        path = self.run_dir / self.DEFINITION_SNAPSHOT
        atomic_write_text(
            path,
            yaml.safe_dump(definition.to_dict(), sort_keys=False, allow_unicode=True),
        )
        return path

    def write_tools_snapshot(self, tools: Sequence[ToolInfo]) -> Path:
        path = self.run_dir / self.TOOLS_SNAPSHOT
        _write_json(
            path,
            {
                "captured_at": utc_now_iso(),
                "tools": [{"name": t.name, "description": t.description} for t in tools],
            },
        )
        return path

    def write_prompts_snapshot(self, prompts: Sequence[PromptInfo]) -> Path:
        path = self.run_dir / self.PROMPTS_SNAPSHOT
        _write_json(
            path,
            {
                "captured_at": utc_now_iso(),
                "prompts": [
                    {
                        "name": p.name,
                        "description": p.description,
                        "arguments": list(p.arguments),
                    }
                    for p in prompts
                ],
            },
        )
        return path

    # -- layout --------------------------------------------------------------

    def model_dir(self, model: AblationModel, iteration: int) -> Path:
        base = self.run_dir / model.dir_name
        if self.multiple_runs:
            return base / f"run-{iteration}"
        return base

    def phase_dir(self, model: AblationModel, iteration: int, phase: str) -> Path:
        return self.model_dir(model, iteration) / (phase_folder_name(phase) or "phase")

    # -- results -------------------------------------------------------------

    def begin(self, phase: str, model: AblationModel, iteration: int) -> AblationRunResult:
        result = AblationRunResult(phase=phase, model=model, run=iteration)
        self.run.results.append(result)
        return result

    def save(self) -> Path:
        path = self.run_dir / self.RESULTS
        _write_json(path, self.run.to_dict())
        return path

    def finalize(self) -> Path:
        self.run.completed_at = utc_now_iso()
        return self.save()

    # -- summary -------------------------------------------------------------

    def summary_table(self) -> Table:
        table = Table(
            title=f"Ablation: {self.run.ablation_name}",
            expand=False,
            show_edge=False,
            pad_edge=False,
        )
        if self.multiple_runs:
            table.add_column("Run", justify="right", style="dim")
        table.add_column("Model", style="bold")
        table.add_column("Phase")
        table.add_column("Status")
        table.add_column("Duration", justify="right", style="dim")
        table.add_column("Tokens", justify="right", style="dim")
        table.add_column("Error", style="red")
        for r in self.run.results:
            row = [
                r.model.label,
                r.phase,
                Text(r.status, style=_STATUS_STYLES.get(r.status, "dim")),
                format_ms(r.duration_ms),
                "-" if r.tokens is None else str(r.tokens),
                Text((r.error or "")[:60]),
            ]
            if self.multiple_runs:
                row.insert(0, str(r.run))
            table.add_row(*row)
        return table

    def print_summary(self) -> None:
        self.console.print()
        self.console.print(self.summary_table())
        counts = self.run.counts()
        tokens = "-" if self.run.dry_run else str(self.run.total_tokens)
        self.console.print(
            f"[green]{counts[COMPLETED]} completed[/green]  "
            f"[red]{counts[FAILED]} failed[/red]  "
            f"[yellow]{counts[ABORTED]} aborted[/yellow]  "
            f"[dim]tokens={tokens} time={format_ms(self.run.total_duration_ms)}[/dim]"
        )
        self.console.print(f"[dim]Results: {self.run_dir}[/dim]")


def load_results(path: Path) -> dict[str, Any]:
    return json.loads(path.read_text(encoding="utf-8"))
