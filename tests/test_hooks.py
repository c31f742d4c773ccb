from __future__ import annotations

import io
from pathlib import Path

import pytest
import yaml

from ablationfarm.collaborators import ToolResult
from ablationfarm.commands import Signal
from ablationfarm.definition import PostToolHook
from ablationfarm.dispatcher import DispatchResult
from ablationfarm.hooks import (
    HookEngine,
    HookStore,
    predicate_matches,
    tool_output_mapping,
    values_match,
)

from conftest import make_console


def _after(tool: str, run: str, **kwargs) -> PostToolHook:
    return PostToolHook(when="after", tool=tool, run=run, **kwargs)


def _before(tool: str, run: str) -> PostToolHook:
    return PostToolHook(when="before", tool=tool, run=run)


def test_values_match_coerces_but_keeps_bools_distinct() -> None:
    assert values_match(5, "5")
    assert values_match("true", True)
    assert values_match(0.5, "0.5")
    assert not values_match(1, True)
    assert not values_match("1", "true")
    assert not values_match("a", "b")


def test_predicate_matches_requires_every_key() -> None:
    assert predicate_matches(None, {})
    assert predicate_matches({"a": 1}, {"a": "1", "b": 2})
    assert not predicate_matches({"a": 1, "c": 3}, {"a": 1})


def test_tool_output_mapping_prefers_structured_then_json() -> None:
    assert tool_output_mapping(ToolResult("x", structured={"ok": True})) == {"ok": True}
    assert tool_output_mapping(ToolResult('\x1b[32m{"ok": false}\x1b[0m')) == {"ok": False}
    assert tool_output_mapping(ToolResult("[1, 2]")) == {}
    assert tool_output_mapping(ToolResult("plain text")) == {}


def test_active_hooks_pools_and_suspension() -> None:
    client = _after("search", "@shell: true")
    engine = HookEngine(client_hooks=[client], console=make_console(io.StringIO()))
    g = _after("write", "g")
    p = _after("read", "p")

    assert engine.active_hooks() == [client]
    engine.load([g], [p])
    assert engine.active_hooks() == [g, p, client]
    engine.suspend()
    assert engine.active_hooks() == [g, p]
    engine.clear()
    assert engine.active_hooks() == []
    engine.resume()
    assert engine.active_hooks() == [client]


def test_matching_after_uses_input_and_output_predicates() -> None:
    engine = HookEngine(console=make_console(io.StringIO()))
    hit = _after("search", "hit", when_input={"limit": 5}, when_output={"found": True})
    miss = _after("search", "miss", when_output={"found": False})
    other = _after("write", "other")
    engine.load([hit, miss, other])

    result = ToolResult('{"found": true}')
    assert engine.matching_after("search", {"limit": "5"}, result) == [hit]
    assert engine.matching_after("search", {"limit": 6}, result) == []


def test_fire_before_runs_hooks_in_order_and_sets_flags() -> None:
    engine = HookEngine(console=make_console(io.StringIO()))
    engine.load([_before("search", "first"), _before("search", "@complete-phase")])
    ran: list[tuple[str, dict]] = []

    def run(text: str, trigger=None) -> DispatchResult:
        ran.append((text, trigger))
        if text == "@complete-phase":
            return DispatchResult(signal=Signal.PHASE_COMPLETE)
        return DispatchResult()

    assert engine.fire_before("search", {}, run) == 2
    assert ran == [("first", {"hook": "before:search"}), ("@complete-phase", {"hook": "before:search"})]
    assert engine.phase_complete_requested
    assert not engine.abort_run_requested

    engine.reset_flags()
    assert not engine.phase_complete_requested


def test_fire_after_abort_signal_and_failing_hook_is_a_warning() -> None:
    buf = io.StringIO()
    engine = HookEngine(console=make_console(buf))
    engine.load([_after("search", "broken"), _after("search", "@abort")])

    def run(text: str, trigger=None) -> DispatchResult:
        if text == "broken":
            raise RuntimeError("nope")
        return DispatchResult(signal=Signal.ABORT_RUN)

    assert engine.fire_after("search", {}, ToolResult("{}"), run) == 2
    assert engine.abort_run_requested
    assert "hook after:search failed: nope" in buf.getvalue()


def test_hooks_do_not_fire_recursively() -> None:
    engine = HookEngine(console=make_console(io.StringIO()))
    engine.load([_before("search", "nested")])
    depth: list[int] = []

    def run(text: str, trigger=None) -> DispatchResult:
        depth.append(engine.fire_before("search", {}, run))
        return DispatchResult()

    assert engine.fire_before("search", {}, run) == 1
    assert depth == [0]


def test_hook_store_add_toggle_remove(tmp_path: Path) -> None:
    store = HookStore(tmp_path / "hooks.yaml")
    assert store.list() == []

    a = store.add(_after("search", "@shell: echo a", when_output={"ok": True}))
    b = store.add(_before("write", "@shell: echo b"), enabled=False)
    assert [h.id for h in store.list()] == [a.id, b.id]
    assert store.enabled_hooks() == [a.hook]

    store.enable(b.id[:6])
    assert len(store.enabled_hooks()) == 2
    store.disable(a.id)
    assert store.enabled_hooks() == [b.hook]

    data = yaml.safe_load((tmp_path / "hooks.yaml").read_text())
    assert data["hooks"][0]["whenOutput"] == {"ok": True}
    assert data["hooks"][0]["enabled"] is False

    assert store.remove(a.id)
    assert not store.remove(a.id)
    assert store.get("zzzz") is None
    assert [h.id for h in store.list()] == [b.id]


def test_hook_store_ambiguous_prefix(tmp_path: Path) -> None:
    path = tmp_path / "hooks.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "hooks": [
                    {"id": "abc1", "after": "x", "run": "a"},
                    {"id": "abc2", "after": "x", "run": "b", "enabled": "false"},
                ]
            }
        )
    )
    store = HookStore(path)
    assert store.get("abc1").hook.run == "a"
    assert store.get("abc2").enabled is False
    with pytest.raises(ValueError, match="ambiguous"):
        store.get("abc")
