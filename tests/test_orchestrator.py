from __future__ import annotations

import io
import json
from pathlib import Path
from dataclasses import replace
from typing import Any

import pytest

from ablationfarm.attachments import AttachmentCatalog
from ablationfarm.chat import ChatHistory
from ablationfarm.collaborators import ProviderEvent
from ablationfarm.control import InterruptController
from ablationfarm.definition import AblationDefinition, AblationPhase, PostToolHook
from ablationfarm.events import AblationEvent
from ablationfarm.hooks import HookEngine
from ablationfarm.orchestrator import AblationOrchestrator
from ablationfarm.prompts import PromptLibrary
from ablationfarm.recorder import ABORTED, COMPLETED, FAILED, RunRecorder
from ablationfarm.staging import ResourceStager
from ablationfarm.tools import ToolRegistry

from conftest import FakeProvider, make_console


def _definition(phases: list[dict], *, models: tuple[str, ...] | list[str] = ("a",), **extra: Any) -> AblationDefinition:
    data: dict[str, Any] = {
        "name": "study",
        "models": [{"provider": "claude", "model": m} for m in models],
        "phases": phases,
    }
    data.update(extra)
    return AblationDefinition.from_dict(data)


def _orchestrator(
    home: Path,
    definition: AblationDefinition,
    provider: FakeProvider,
    tools: ToolRegistry,
    **kwargs: Any,
) -> AblationOrchestrator:
    console = make_console(io.StringIO())
    return AblationOrchestrator(
        definition,
        run_dir=home / "runs" / "study" / "t1",
        provider=provider,
        tools=tools,
        chat=ChatHistory(),
        attachments=AttachmentCatalog(home / "attachments"),
        prompts=PromptLibrary(home / "prompts"),
        stager=ResourceStager(home / "outputs", home / "attachments", console=console),
        cwd=home,
        console=console,
        **kwargs,
    )


def _statuses(run) -> list[tuple[str, str, str]]:
    return [(r.model.model, r.phase, r.status) for r in run.results]


def test_every_cell_runs_and_signal_less_phases_complete(
    home: Path, provider: FakeProvider, tools: ToolRegistry
) -> None:
    d = _definition(
        [
            {"name": "one", "commands": ["hello"]},
            {"name": "two", "commands": ["again", "@complete-phase"]},
        ],
        models=["a", "b"],
        runs=2,
    )
    run = _orchestrator(home, d, provider, tools).run()

    assert len(run.results) == d.total_cells == 8
    assert all(r.status == COMPLETED for r in run.results)
    assert run.succeeded
    assert provider.queries == ["hello", "again"] * 4
    assert [r.run for r in run.results] == [1, 1, 1, 1, 2, 2, 2, 2]
    assert (run.run_dir / "claude-b" / "run-2" / "two" / "chat.json").exists()
    assert run.total_tokens == 80


def test_provider_state_is_saved_and_restored(
    home: Path, provider: FakeProvider, tools: ToolRegistry
) -> None:
    d = _definition([{"name": "one", "commands": ["hello"]}])
    _orchestrator(home, d, provider, tools).run()

    assert provider.calls[0] == ("save_state", None)
    assert provider.calls[-1] == ("restore_state", {"name": "", "model": ""})
    assert ("switch_to", ("claude", "a", None)) in provider.calls
    assert ("clear_context", None) in provider.calls


def test_abort_skips_remaining_phases_for_that_model_only(
    home: Path, provider: FakeProvider, tools: ToolRegistry
) -> None:
    controller = InterruptController()

    def on_query(text: str, observer) -> None:
        if text == "stop here" and provider.model == "a":
            controller.request_abort()

    provider.on_query = on_query
    d = _definition(
        [
            {"name": "p1", "commands": ["start"]},
            {"name": "p2", "commands": ["stop here", "never for a"]},
            {"name": "p3", "commands": ["finish"]},
        ],
        models=["a", "b"],
    )
    run = _orchestrator(home, d, provider, tools, controller=controller).run()

    assert _statuses(run) == [
        ("a", "p1", COMPLETED),
        ("a", "p2", ABORTED),
        ("b", "p1", COMPLETED),
        ("b", "p2", COMPLETED),
        ("b", "p3", COMPLETED),
    ]
    assert provider.queries.count("never for a") == 1
    assert not run.succeeded


def test_abort_command_ends_phase_but_on_end_is_skipped(
    home: Path, provider: FakeProvider, tools: ToolRegistry, tool_log: list
) -> None:
    d = _definition(
        [
            {
                "name": "p1",
                "commands": ["@abort", "unreachable"],
                "onEnd": ["@tool-exec:note(text='end')"],
            },
            {"name": "p2", "commands": ["later"]},
        ]
    )
    run = _orchestrator(home, d, provider, tools).run()
    assert _statuses(run) == [("a", "p1", ABORTED)]
    assert provider.queries == []
    assert tool_log == []


def test_failure_marks_phase_failed_and_skips_rest(
    home: Path, provider: FakeProvider, tools: ToolRegistry
) -> None:
    d = _definition(
        [
            {"name": "p1", "commands": ["@tool:explode", "unreachable"]},
            {"name": "p2", "commands": ["later"]},
        ],
        models=["a", "b"],
    )
    run = _orchestrator(home, d, provider, tools).run()

    assert _statuses(run) == [("a", "p1", FAILED), ("b", "p1", FAILED)]
    first = run.results[0]
    assert "boom" in (first.error or "")
    assert [c.tool_name for c in first.tool_calls] == ["explode"]
    assert first.tool_calls[0].success is False
    assert provider.queries == []


def test_before_hook_runs_before_tool_and_after_hook_needs_matching_output(
    home: Path, provider: FakeProvider, tools: ToolRegistry, tool_log: list
) -> None:
    d = _definition(
        [
            {
                "name": "p1",
                "commands": ["@tool:echo(status='fail')", "@tool-exec:note(text='next')"],
                "hooks": [
                    {"before": "echo", "run": "@tool-exec:note(text='pre')"},
                    {"after": "echo", "run": "@abort", "whenOutput": {"status": "ok"}},
                ],
            }
        ]
    )
    run = _orchestrator(home, d, provider, tools).run()

    assert _statuses(run) == [("a", "p1", COMPLETED)]
    assert tool_log == [
        ("note", {"text": "pre"}),
        ("echo", {"status": "fail"}),
        ("note", {"text": "next"}),
    ]


def test_hook_complete_phase_stops_commands_then_runs_on_end(
    home: Path, provider: FakeProvider, tools: ToolRegistry, tool_log: list
) -> None:
    d = _definition(
        [
            {
                "name": "p1",
                "onStart": ["@tool-exec:note(text='start')"],
                "commands": ["@tool:echo(done=true)", "@tool-exec:note(text='skipped')"],
                "onEnd": ["@tool-exec:note(text='end')"],
            },
            {"name": "p2", "commands": ["@tool-exec:note(text='p2')"]},
        ],
        hooks=[{"after": "echo", "run": "@complete-phase", "whenOutput": {"done": True}}],
    )
    run = _orchestrator(home, d, provider, tools).run()

    assert _statuses(run) == [("a", "p1", COMPLETED), ("a", "p2", COMPLETED)]
    assert [entry[1].get("text") for entry in tool_log if entry[0] == "note"] == [
        "start",
        "end",
        "p2",
    ]


def test_client_hooks_are_suspended_during_the_study(
    home: Path, provider: FakeProvider, tools: ToolRegistry, tool_log: list
) -> None:
    client = PostToolHook(when="after", tool="echo", run="@tool-exec:note(text='client')")
    engine = HookEngine(
        client_hooks=[client],
        console=make_console(io.StringIO()),
    )
    d = _definition([{"name": "p1", "commands": ["@tool:echo(x=1)"]}])
    _orchestrator(home, d, provider, tools, hooks=engine).run()

    assert tool_log == [("echo", {"x": 1})]
    assert not engine.suspended
    assert engine.active_hooks() == [client]


def test_dry_run_makes_no_provider_calls_but_runs_tools_and_shell(
    home: Path, provider: FakeProvider, tools: ToolRegistry, tool_log: list
) -> None:
    d = _definition(
        [
            {
                "name": "p1",
                "commands": ["Write a plan", "@tool-exec:note(text='x')", "@shell: echo dry"],
            }
        ]
    )
    run = _orchestrator(home, d, provider, tools, dry_run=True).run()

    assert provider.calls == []
    assert run.dry_run
    assert run.results[0].status == COMPLETED
    assert run.results[0].tokens is None
    assert tool_log == [("note", {"text": "x"})]

    chat = json.loads(Path(run.results[0].chat_file).read_text())
    tool_names = [m["tool_name"] for m in chat["messages"] if m["role"] == "tool"]
    assert tool_names == ["note", "shell"]
    assert chat["metadata"]["dry_run"] is True


def test_outputs_are_captured_per_phase_and_user_outputs_restored(
    home: Path, provider: FakeProvider, tools: ToolRegistry
) -> None:
    (home / "outputs" / "mine.txt").write_text("user file")
    d = _definition(
        [
            {"name": "p1", "commands": ["@shell: echo one > outputs/result.txt"]},
            {"name": "p2", "commands": ["@shell: mkdir -p outputs/sub && echo two > outputs/sub/r.txt"]},
        ]
    )
    run = _orchestrator(home, d, provider, tools).run()

    model_dir = run.run_dir / "claude-a"
    assert (model_dir / "p1" / "outputs" / "result.txt").read_text().strip() == "one"
    assert (model_dir / "p2" / "outputs" / "sub" / "r.txt").read_text().strip() == "two"
    assert not (model_dir / "p2" / "outputs" / "result.txt").exists()
    assert sorted(p.name for p in (home / "outputs").iterdir()) == ["mine.txt"]
    assert not (home / "outputs.stash").exists()


def test_referenced_attachments_are_copied_into_phase_dir(
    home: Path, provider: FakeProvider, tools: ToolRegistry
) -> None:
    (home / "attachments" / "paper.pdf").write_bytes(b"%PDF")
    d = _definition([{"name": "p1", "commands": ["Summarize", "/add-attachment paper.pdf"]}])
    run = _orchestrator(home, d, provider, tools).run()

    assert (run.run_dir / "claude-a" / "p1" / "attachments" / "paper.pdf").exists()
    assert (home / "attachments" / "paper.pdf").exists()
    assert provider.queries == ["Summarize"]


def test_shared_context_writes_one_chat_per_model(
    home: Path, provider: FakeProvider, tools: ToolRegistry
) -> None:
    d = _definition(
        [{"name": "p1", "commands": ["one"]}, {"name": "p2", "commands": ["two"]}],
        settings={"clearContextBetweenPhases": False},
    )
    run = _orchestrator(home, d, provider, tools).run()

    chat_file = run.run_dir / "claude-a" / "chat.json"
    assert chat_file.exists()
    assert {r.chat_file for r in run.results} == {str(chat_file)}
    contents = [m.get("content") for m in json.loads(chat_file.read_text())["messages"]]
    assert "one" in contents and "two" in contents


def test_agent_tool_events_fire_hooks(
    home: Path, provider: FakeProvider, tools: ToolRegistry, tool_log: list
) -> None:
    def on_query(text: str, observer) -> None:
        observer(ProviderEvent(kind="tool_call", tool_name="Bash", tool_input={"command": "ls"}, call_id="c1"))
        observer(ProviderEvent(kind="tool_result", tool_output='{"ok": true}', call_id="c1"))

    provider.on_query = on_query
    d = _definition(
        [
            {
                "name": "p1",
                "commands": ["List files"],
                "hooks": [
                    {"before": "Bash", "run": "@tool-exec:note(text='pre')"},
                    {"after": "Bash", "run": "@tool-exec:note(text='post')", "whenInput": {"command": "ls"}},
                ],
            }
        ]
    )
    run = _orchestrator(home, d, provider, tools).run()

    assert tool_log == [("note", {"text": "pre"}), ("note", {"text": "post"})]
    chat = json.loads(Path(run.results[0].chat_file).read_text())
    agent = [m for m in chat["messages"] if m.get("source") == "agent"]
    assert agent[0]["tool_name"] == "Bash"
    assert agent[0]["tool_input"] == {"command": "ls"}


def test_interrupt_pauses_and_runs_typed_commands(
    home: Path, provider: FakeProvider, tools: ToolRegistry
) -> None:
    controller = InterruptController()
    events: list[AblationEvent] = []

    def on_query(text: str, observer) -> None:
        if text == "first":
            controller.request_interrupt()

    lines = iter(["extra question", ""])
    provider.on_query = on_query
    d = _definition([{"name": "p1", "commands": ["first", "second"]}])
    run = _orchestrator(
        home,
        d,
        provider,
        tools,
        controller=controller,
        read_line=lambda prompt: next(lines),
        event_sink=events.append,
    ).run()

    assert provider.queries == ["first", "extra question", "second"]
    assert run.results[0].status == COMPLETED
    types = [e.type for e in events]
    assert "ablation.pause" in types and "ablation.resume" in types


def test_events_and_results_file(
    home: Path, provider: FakeProvider, tools: ToolRegistry
) -> None:
    events: list[AblationEvent] = []
    d = _definition([{"name": "p1", "commands": ["hi"]}])
    run = _orchestrator(home, d, provider, tools, event_sink=events.append).run()

    assert [e.type for e in events] == [
        "ablation.start",
        "model.start",
        "phase.start",
        "phase.end",
        "model.end",
        "ablation.end",
    ]
    assert events[3].payload["status"] == COMPLETED
    assert events[3].model == "claude/a"

    data = json.loads((run.run_dir / RunRecorder.RESULTS).read_text())
    assert data["completed_at"]
    assert data["results"][0]["status"] == COMPLETED
    assert (run.run_dir / RunRecorder.DEFINITION_SNAPSHOT).exists()
    assert (run.run_dir / RunRecorder.TOOLS_SNAPSHOT).exists()
    assert not (run.run_dir / RunRecorder.PROMPTS_SNAPSHOT).exists()


@pytest.mark.parametrize("label, expected", [("p1", ["hi"]), ("other", ["hi", "bye"])])
def test_complete_phase_label_must_match(
    home: Path, provider: FakeProvider, tools: ToolRegistry, label: str, expected: list[str]
) -> None:
    d = _definition([{"name": "p1", "commands": ["hi", f"@complete-phase:{label}", "bye"]}])
    _orchestrator(home, d, provider, tools).run()
    assert provider.queries == expected


def test_interrupt_during_last_command_opens_pause_before_next_model(
    home: Path, provider: FakeProvider, tools: ToolRegistry
) -> None:
    controller = InterruptController()
    events: list[AblationEvent] = []
    prompts: list[tuple[str, str]] = []

    def on_query(text: str, observer) -> None:
        if provider.model == "a":
            controller.request_interrupt()

    def read_line(prompt: str) -> str:
        prompts.append((prompt, provider.model))
        return ""

    provider.on_query = on_query
    d = _definition([{"name": "p", "commands": ["work"]}], models=["a", "b"])
    run = _orchestrator(
        home,
        d,
        provider,
        tools,
        controller=controller,
        read_line=read_line,
        event_sink=events.append,
    ).run()

    assert prompts == [("paused> ", "a")]
    pauses = [e for e in events if e.type == "ablation.pause"]
    assert [e.phase for e in pauses] == ["p"]
    assert _statuses(run) == [("a", "p", COMPLETED), ("b", "p", COMPLETED)]
    assert provider.queries == ["work", "work"]


def test_pause_between_models_follows_switch_and_refuses_free_text(
    home: Path, provider: FakeProvider, tools: ToolRegistry
) -> None:
    controller = InterruptController()
    switch_to = provider.switch_to
    seen: list[str] = []

    def switch_and_interrupt(name: str, model: str, thinking: str | None = None) -> None:
        switch_to(name, model, thinking)
        if model == "b":
            controller.request_interrupt()

    lines = iter(["hello there", ""])

    def read_line(prompt: str) -> str:
        seen.append(provider.model)
        return next(lines)

    provider.switch_to = switch_and_interrupt
    d = _definition([{"name": "p", "commands": ["work"]}], models=["a", "b"])
    orch = _orchestrator(home, d, provider, tools, controller=controller, read_line=read_line)
    run = orch.run()

    assert seen == ["b", "b"]
    assert provider.queries == ["work", "work"]
    assert "no phase is active" in orch.console.file.getvalue()
    assert _statuses(run) == [("a", "p", COMPLETED), ("b", "p", COMPLETED)]


def test_phase_names_cannot_escape_the_run_directory(
    home: Path, provider: FakeProvider, tools: ToolRegistry
) -> None:
    d = _definition([{"name": "p", "commands": ["hi"]}])
    d = replace(d, phases=(AblationPhase(name="../../escape", commands=("hi",)),))
    run = _orchestrator(home, d, provider, tools).run()

    chat_file = Path(run.results[0].chat_file)
    assert chat_file == run.run_dir / "claude-a" / "escape" / "chat.json"
    assert chat_file.exists()
    assert not (home / "runs" / "study" / "escape").exists()
