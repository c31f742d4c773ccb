from __future__ import annotations

import io
import json

import pytest

from ablationfarm.collaborators import ProviderEvent
from ablationfarm.stream import (
    ClaudeStreamTranslator,
    CodexStreamTranslator,
    GeminiStreamTranslator,
    get_translator,
    normalize_tool,
    strip_shell,
)

from conftest import make_console


def _feed(translator, *events: dict) -> None:
    for event in events:
        translator.process_line(json.dumps(event))


def _collect() -> tuple[list[ProviderEvent], io.StringIO]:
    return [], io.StringIO()


def test_helpers() -> None:
    assert normalize_tool("Read") == "read"
    assert normalize_tool("run_shell_command") == "bash"
    assert normalize_tool("custom") == "custom"
    assert strip_shell("/bin/zsh -lc 'cd /repo && ls -la'") == "ls -la"
    assert strip_shell("echo hi") == "echo hi"


def test_claude_stream_events_and_summary() -> None:
    events, buf = _collect()
    t = ClaudeStreamTranslator(make_console(buf), events.append)
    t.process_line("not json")
    t.process_line("")
    _feed(
        t,
        {"type": "system", "subtype": "init", "session_id": "sess-1"},
        {
            "type": "assistant",
            "message": {
                "content": [
                    {"type": "text", "text": "Looking."},
                    {"type": "tool_use", "id": "t1", "name": "Read", "input": {"file_path": "a.py"}},
                ]
            },
        },
        {
            "type": "user",
            "message": {
                "content": [
                    {"type": "tool_result", "tool_use_id": "t1", "content": [{"type": "text", "text": "body"}]}
                ]
            },
        },
        {"type": "assistant", "message": {"content": [{"type": "text", "text": "Done."}]}},
        {"type": "result", "subtype": "success", "usage": {"input_tokens": 100, "output_tokens": 20}},
    )
    summary = t.finish()

    assert summary.text == "Looking.\nDone."
    assert summary.tokens == 120
    assert summary.session_id == "sess-1"
    assert not summary.failed
    kinds = [e.kind for e in events]
    assert kinds == ["text", "tool_call", "tool_result", "text", "usage"]
    assert events[1].tool_name == "Read" and events[1].tool_input == {"file_path": "a.py"}
    assert events[2].call_id == "t1" and events[2].tool_output == "body"
    assert "✓ read a.py" in buf.getvalue()


def test_claude_error_result_marks_failure() -> None:
    events, buf = _collect()
    t = ClaudeStreamTranslator(make_console(buf), events.append)
    _feed(t, {"type": "result", "subtype": "error_max_turns", "is_error": True})
    assert t.finish().failed
    assert events[-1].kind == "error"
    assert "error: error_max_turns" in buf.getvalue()


def test_codex_command_and_mcp_items() -> None:
    events, buf = _collect()
    t = CodexStreamTranslator(make_console(buf), events.append)
    _feed(
        t,
        {"type": "thread.started", "thread_id": "th-1"},
        {"type": "item.started", "item": {"id": "i1", "type": "command_execution", "command": "bash -lc 'pytest -q'"}},
        {
            "type": "item.completed",
            "item": {"id": "i1", "type": "command_execution", "aggregated_output": "1 failed", "exit_code": 1},
        },
        {
            "type": "item.completed",
            "item": {
                "id": "i2",
                "type": "mcp_tool_call",
                "tool": "search",
                "arguments": {"q": "x"},
                "result": {"content": [{"type": "text", "text": "hits"}]},
            },
        },
        {"type": "item.completed", "item": {"id": "i3", "type": "agent_message", "text": "All set."}},
        {"type": "turn.completed", "usage": {"input_tokens": 5, "output_tokens": 7}},
    )
    summary = t.finish()

    assert summary.text == "All set."
    assert summary.tokens == 12
    assert summary.session_id == "th-1"
    results = [e for e in events if e.kind == "tool_result"]
    assert [(e.call_id, e.is_error, e.tool_output) for e in results] == [
        ("i1", True, "1 failed"),
        ("i2", False, "hits"),
    ]
    calls = [e for e in events if e.kind == "tool_call"]
    assert [e.tool_name for e in calls] == ["bash", "search"]
    assert "✗ bash" in buf.getvalue()


def test_codex_turn_failed() -> None:
    events, buf = _collect()
    t = CodexStreamTranslator(make_console(buf), events.append)
    _feed(t, {"type": "turn.failed", "error": {"message": "rate limited"}})
    assert t.finish().failed
    assert events[-1].text == "rate limited"


def test_gemini_stream() -> None:
    events, buf = _collect()
    t = GeminiStreamTranslator(make_console(buf), events.append)
    _feed(
        t,
        {"type": "init", "session_id": "g1"},
        {"type": "tool_use", "tool_id": "x1", "tool_name": "read_file", "parameters": {"path": "README.md"}},
        {"type": "tool_result", "tool_id": "x1", "status": "success", "output": "hello"},
        {"type": "message", "role": "assistant", "content": "Summary."},
        {"type": "message", "role": "user", "content": "ignored"},
        {"type": "result", "status": "success", "stats": {"total_tokens": 42}},
    )
    summary = t.finish()
    assert summary.text == "Summary."
    assert summary.tokens == 42
    assert summary.session_id == "g1"
    assert "✓ read README.md" in buf.getvalue()


def test_finish_flushes_unanswered_tool_calls() -> None:
    events, buf = _collect()
    t = ClaudeStreamTranslator(make_console(buf), events.append)
    _feed(
        t,
        {
            "type": "assistant",
            "message": {"content": [{"type": "tool_use", "id": "t9", "name": "Bash", "input": {"command": "make"}}]},
        },
    )
    t.finish()
    assert "✓ bash make" in buf.getvalue()


def test_get_translator() -> None:
    assert isinstance(get_translator("claude"), ClaudeStreamTranslator)
    assert isinstance(get_translator("codex"), CodexStreamTranslator)
    assert isinstance(get_translator("gemini"), GeminiStreamTranslator)
    with pytest.raises(KeyError):
        get_translator("kimi")
