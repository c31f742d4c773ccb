"""Before/after tool-call hooks: matching, firing and the client hook store."""

from __future__ import annotations

from dataclasses import dataclass, replace
import json
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Mapping, Sequence
import uuid

from rich.console import Console
from rich.text import Text
import yaml

from .collaborators import ToolResult
from .commands import Signal
from .definition import DefinitionError, PostToolHook, coerce_scalar
from .util import atomic_write_text, strip_ansi

if TYPE_CHECKING:
    from .dispatcher import DispatchResult


RunFn = Callable[..., "DispatchResult"]


def values_match(expected: Any, actual: Any) -> bool:
    expected = coerce_scalar(expected)
    actual = coerce_scalar(actual)
    if isinstance(expected, bool) or isinstance(actual, bool):
        return isinstance(expected, bool) and isinstance(actual, bool) and expected == actual
    return expected == actual


def predicate_matches(predicate: Mapping[str, Any] | None, data: Mapping[str, Any]) -> bool:
    if not predicate:
        return True
    for key, expected in predicate.items():
        if key not in data:
            return False
        if not values_match(expected, data[key]):
            return False
    return True


def tool_output_mapping(result: ToolResult) -> dict[str, Any]:
    """Structured payload if present, else display text parsed as a JSON object."""
    if isinstance(result.structured, dict):
        return result.structured
    text = strip_ansi(result.display_text or "").strip()
    if not text:
        return {}
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def hook_matches_after(
    hook: PostToolHook,
    tool_name: str,
    tool_input: Mapping[str, Any],
    tool_output: Mapping[str, Any],
) -> bool:
    if hook.when != "after" or hook.tool != tool_name:
        return False
    return predicate_matches(hook.when_input, tool_input) and predicate_matches(
        hook.when_output, tool_output
    )


class HookEngine:
    def __init__(
        self,
        *,
        client_hooks: Sequence[PostToolHook] = (),
        console: Console | None = None,
    ) -> None:
        self.console = console or Console()
        self._global: tuple[PostToolHook, ...] = ()
        self._phase: tuple[PostToolHook, ...] = ()
        self._loaded = False
        self._client: tuple[PostToolHook, ...] = tuple(client_hooks)
        self._suspended = False
        self._firing = False
        self.phase_complete_requested = False
        self.abort_run_requested = False

    # -- pools ---------------------------------------------------------------

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def suspended(self) -> bool:
        return self._suspended

    def load(
        self,
        global_hooks: Sequence[PostToolHook],
        phase_hooks: Sequence[PostToolHook] = (),
    ) -> None:
        self._global = tuple(global_hooks)
        self._phase = tuple(phase_hooks)
        self._loaded = True

    def clear(self) -> None:
        self._global = ()
        self._phase = ()
        self._loaded = False

    def set_client_hooks(self, hooks: Sequence[PostToolHook]) -> None:
        self._client = tuple(hooks)

    def suspend(self) -> None:
        self._suspended = True

    def resume(self) -> None:
        self._suspended = False

    def active_hooks(self) -> list[PostToolHook]:
        hooks: list[PostToolHook] = []
        if self._loaded:
            hooks.extend(self._global)
            hooks.extend(self._phase)
        if not self._suspended:
            hooks.extend(self._client)
        return hooks

    # -- flags ---------------------------------------------------------------

    def reset_phase_complete(self) -> None:
        self.phase_complete_requested = False

    def reset_abort_run(self) -> None:
        self.abort_run_requested = False

    def reset_flags(self) -> None:
        self.phase_complete_requested = False
        self.abort_run_requested = False

    # -- firing --------------------------------------------------------------

    def matching_before(self, tool_name: str) -> list[PostToolHook]:
        return [h for h in self.active_hooks() if h.when == "before" and h.tool == tool_name]

    def matching_after(
        self,
        tool_name: str,
        tool_input: Mapping[str, Any],
        result: ToolResult,
    ) -> list[PostToolHook]:
        output = tool_output_mapping(result)
        return [
            h
            for h in self.active_hooks()
            if hook_matches_after(h, tool_name, tool_input, output)
        ]

    def fire_before(self, tool_name: str, tool_input: Mapping[str, Any], run: RunFn) -> int:
        if self._firing:
            return 0
        return self._fire(self.matching_before(tool_name), run)

    def fire_after(
        self,
        tool_name: str,
        tool_input: Mapping[str, Any],
        result: ToolResult,
        run: RunFn,
    ) -> int:
        if self._firing:
            return 0
        return self._fire(self.matching_after(tool_name, tool_input, result), run)

    def _fire(self, hooks: list[PostToolHook], run: RunFn) -> int:
        if not hooks:
            return 0
        self._firing = True
        fired = 0
        try:
            for hook in hooks:
                self.console.print(Text(f"  ↪ hook {hook.trigger}: {hook.run}", style="magenta"))
                fired += 1
                try:
                    result = run(hook.run, {"hook": hook.trigger})
                except Exception as exc:
                    self.console.print(
                        Text(f"  ⚠ hook {hook.trigger} failed: {exc}", style="yellow")
                    )
                    continue
                signal = getattr(result, "signal", None)
                if signal is Signal.PHASE_COMPLETE:
                    self.phase_complete_requested = True
                elif signal is Signal.ABORT_RUN:
                    self.abort_run_requested = True
        finally:
            self._firing = False
        return fired


# ---------------------------------------------------------------------------
# Client hooks (operator-level, persisted in hooks.yaml)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClientHook:
    id: str
    hook: PostToolHook
    enabled: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "enabled": self.enabled, **self.hook.to_dict()}

    @classmethod
    def from_dict(cls, d: Mapping[str, Any], *, field: str = "hook") -> ClientHook:
        hook_id = str(d.get("id") or "").strip()
        if not hook_id:
            raise DefinitionError(f"{field}.id must be a non-empty string")
        body = {k: v for k, v in d.items() if k not in ("id", "enabled")}
        enabled = d.get("enabled", True)
        return cls(
            id=hook_id,
            hook=PostToolHook.from_dict(body, field=field),
            enabled=coerce_scalar(enabled) is not False,
        )


class HookStore:
    """hooks.yaml-backed list of operator hooks."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def _load(self) -> list[ClientHook]:
        if not self.path.exists():
            return []
        data = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
        raw = data.get("hooks") if isinstance(data, dict) else data
        if not isinstance(raw, list):
            raise DefinitionError(f"{self.path}: hooks must be a list")
        return [
            ClientHook.from_dict(item, field=f"hooks[{idx}]")
            for idx, item in enumerate(raw)
            if isinstance(item, dict)
        ]

    def _save(self, hooks: list[ClientHook]) -> None:
        atomic_write_text(
            self.path,
            yaml.safe_dump(
                {"hooks": [h.to_dict() for h in hooks]},
                sort_keys=False,
                allow_unicode=True,
            ),
        )

    def list(self) -> list[ClientHook]:
        return self._load()

    def enabled_hooks(self) -> list[PostToolHook]:
        return [h.hook for h in self._load() if h.enabled]

    def get(self, hook_id: str) -> ClientHook | None:
        """Exact id, else a unique id prefix."""
        hooks = self._load()
        for h in hooks:
            if h.id == hook_id:
                return h
        candidates = [h for h in hooks if h.id.startswith(hook_id)]
        if len(candidates) > 1:
            raise ValueError(
                f"ambiguous hook id {hook_id!r}: " + ", ".join(h.id for h in candidates)
            )
        return candidates[0] if candidates else None

    def add(self, hook: PostToolHook, *, enabled: bool = True) -> ClientHook:
        hooks = self._load()
        entry = ClientHook(id=uuid.uuid4().hex[:8], hook=hook, enabled=enabled)
        hooks.append(entry)
        self._save(hooks)
        return entry

    def remove(self, hook_id: str) -> bool:
        target = self.get(hook_id)
        if target is None:
            return False
        self._save([h for h in self._load() if h.id != target.id])
        return True

    def set_enabled(self, hook_id: str, enabled: bool) -> ClientHook | None:
        target = self.get(hook_id)
        if target is None:
            return None
        updated = replace(target, enabled=enabled)
        self._save([updated if h.id == target.id else h for h in self._load()])
        return updated

    def enable(self, hook_id: str) -> ClientHook | None:
        return self.set_enabled(hook_id, True)

    def disable(self, hook_id: str) -> ClientHook | None:
        return self.set_enabled(hook_id, False)
