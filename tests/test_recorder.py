from __future__ import annotations

import io
import json
from pathlib import Path

import pytest
import yaml

from ablationfarm.collaborators import PromptInfo, ToolInfo
from ablationfarm.definition import AblationDefinition, AblationModel
from ablationfarm.dispatcher import ToolExecResult
from ablationfarm.recorder import (
    ABORTED,
    COMPLETED,
    FAILED,
    RUNNING,
    AblationRun,
    AblationRunResult,
    RunRecorder,
    load_results,
)

from conftest import make_console


MODEL = AblationModel(provider="claude", model="claude-sonnet-4.5", thinking="high")


def test_result_finishes_once_with_terminal_status() -> None:
    r = AblationRunResult(phase="p", model=MODEL)
    assert r.status == RUNNING and not r.finished

    with pytest.raises(ValueError):
        r.finish(RUNNING, duration_ms=1)
    r.finish(FAILED, duration_ms=12, tokens=3, error="boom")
    assert r.finished and r.error == "boom"
    with pytest.raises(RuntimeError, match="already failed"):
        r.finish(COMPLETED, duration_ms=1)


def test_result_to_dict_includes_tool_calls() -> None:
    r = AblationRunResult(phase="p", model=MODEL, run=2)
    r.tool_calls.append(ToolExecResult("search", {"q": "x"}, "found", success=True))
    r.finish(COMPLETED, duration_ms=5, tokens=None)
    d = r.to_dict()
    assert d["model"] == {"provider": "claude", "model": "claude-sonnet-4.5", "thinking": "high"}
    assert d["run"] == 2
    assert d["tool_calls"] == [
        {"tool_name": "search", "args": {"q": "x"}, "display_text": "found", "success": True}
    ]


def test_run_totals_and_counts(tmp_path: Path) -> None:
    run = AblationRun(ablation_name="s", run_dir=tmp_path)
    for status, ms, tokens in ((COMPLETED, 10, 5), (FAILED, 20, None), (ABORTED, 30, 7)):
        r = AblationRunResult(phase="p", model=MODEL)
        r.finish(status, duration_ms=ms, tokens=tokens)
        run.results.append(r)
    assert run.total_tokens == 12
    assert run.total_duration_ms == 60
    assert run.counts() == {COMPLETED: 1, FAILED: 1, ABORTED: 1}
    assert not run.succeeded


def test_layout_uses_run_subfolders_only_for_multiple_runs(tmp_path: Path) -> None:
    single = RunRecorder(AblationRun(ablation_name="s", run_dir=tmp_path))
    multi = RunRecorder(AblationRun(ablation_name="s", run_dir=tmp_path), multiple_runs=True)
    assert single.phase_dir(MODEL, 1, "draft") == tmp_path / "claude-claude-sonnet-4-5-high" / "draft"
    assert multi.phase_dir(MODEL, 3, "draft") == (
        tmp_path / "claude-claude-sonnet-4-5-high" / "run-3" / "draft"
    )



def test_phase_dir_is_a_single_sanitized_segment(tmp_path: Path) -> None:
    recorder = RunRecorder(AblationRun(ablation_name="s", run_dir=tmp_path))
    model_dir = recorder.model_dir(MODEL, 1)
    assert recorder.phase_dir(MODEL, 1, "../../escape") == model_dir / "escape"
    assert recorder.phase_dir(MODEL, 1, "build/test") == model_dir / "build-test"
    assert recorder.phase_dir(MODEL, 1, "Draft Review") == model_dir / "draft-review"
    assert recorder.phase_dir(MODEL, 1, "..") == model_dir / "phase"


def test_snapshots_and_results_file(tmp_path: Path) -> None:
    definition = AblationDefinition.from_dict(
        {"name": "s", "models": [MODEL.to_dict()], "phases": [{"name": "p", "commands": ["hi"]}]}
    )
    run = AblationRun(ablation_name="s", run_dir=tmp_path)
    recorder = RunRecorder(run, console=make_console(io.StringIO()))

    recorder.write_definition_snapshot(definition)
    recorder.write_tools_snapshot([ToolInfo("search", "Search things")])
    recorder.write_prompts_snapshot([PromptInfo("review", "Review it", ("topic",))])
    result = recorder.begin("p", MODEL, 1)
    path = recorder.save()

    snap = yaml.safe_load((tmp_path / RunRecorder.DEFINITION_SNAPSHOT).read_text())
    assert AblationDefinition.from_dict(snap) == definition
    tools = json.loads((tmp_path / RunRecorder.TOOLS_SNAPSHOT).read_text())
    assert tools["tools"] == [{"name": "search", "description": "Search things"}]
    prompts = json.loads((tmp_path / RunRecorder.PROMPTS_SNAPSHOT).read_text())
    assert prompts["prompts"][0]["arguments"] == ["topic"]

    data = load_results(path)
    assert data["completed_at"] is None
    assert data["results"][0]["status"] == RUNNING

    result.finish(COMPLETED, duration_ms=1, tokens=2)
    data = load_results(recorder.finalize())
    assert data["completed_at"]
    assert data["results"][0]["status"] == COMPLETED
    assert data["total_tokens"] == 2


def test_print_summary(tmp_path: Path) -> None:
    buf = io.StringIO()
    run = AblationRun(ablation_name="study", run_dir=tmp_path)
    recorder = RunRecorder(run, console=make_console(buf))
    r = recorder.begin("draft", MODEL, 1)
    r.finish(FAILED, duration_ms=1500, tokens=0, error="tool 'x' failed")
    recorder.print_summary()

    out = buf.getvalue()
    assert "Ablation: study" in out
    assert "draft" in out
    assert "tool 'x' failed" in out
    assert "0 completed" in out and "1 failed" in out
