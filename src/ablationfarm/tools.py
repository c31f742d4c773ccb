from __future__ import annotations

from dataclasses import dataclass
import importlib
import inspect
import json
from typing import Any, Callable

from .collaborators import ToolInfo, ToolResult


ToolFn = Callable[..., Any]


@dataclass(frozen=True)
class RegisteredTool:
    name: str
    fn: ToolFn
    description: str = ""


def to_tool_result(value: Any) -> ToolResult:
    if isinstance(value, ToolResult):
        return value
    if value is None:
        return ToolResult(display_text="")
    if isinstance(value, str):
        return ToolResult(display_text=value)
    if isinstance(value, dict):
        return ToolResult(
            display_text=json.dumps(value, ensure_ascii=False, default=str),
            structured=value,
        )
    try:
        text = json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        text = str(value)
    return ToolResult(display_text=text)


class ToolRegistry:
    """Python callables exposed as tools. Calls receive the arguments as kwargs."""

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def register(self, name: str, fn: ToolFn, *, description: str = "") -> None:
        if not name:
            raise ValueError("tool name cannot be empty")
        existing = self._tools.get(name)
        if existing is not None:
            if existing.fn is fn:
                return
            raise ValueError(f"tool already registered: {name}")
        desc = description or (inspect.getdoc(fn) or "").split("\n", 1)[0]
        self._tools[name] = RegisteredTool(name=name, fn=fn, description=desc)

    def tool(
        self, name: str | None = None, *, description: str = ""
    ) -> Callable[[ToolFn], ToolFn]:
        def decorator(fn: ToolFn) -> ToolFn:
            self.register(name or fn.__name__, fn, description=description)
            return fn

        return decorator

    def get(self, name: str) -> RegisteredTool:
        if name in self._tools:
            return self._tools[name]
        available = ", ".join(sorted(self._tools)) or "(none)"
        raise KeyError(f"unknown tool '{name}'. available: {available}")

    def list_tools(self) -> list[ToolInfo]:
        return [
            ToolInfo(name=t.name, description=t.description)
            for t in sorted(self._tools.values(), key=lambda t: t.name)
        ]

    def execute(self, tool_name: str, args: dict[str, Any]) -> ToolResult:
        return to_tool_result(self.get(tool_name).fn(**args))


def load_tools(spec: str, *, mcp_config_path: str | None = None) -> ToolRegistry:
    """Load a registry from ``module:attr``.

    ``attr`` is either a ``ToolRegistry`` or a factory called with
    ``mcp_config_path`` that returns one.
    """
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"tools must look like 'module:attr', got {spec!r}")
    module = importlib.import_module(module_name)
    try:
        target = getattr(module, attr)
    except AttributeError:
        raise ValueError(f"{module_name} has no attribute {attr!r}") from None

    if isinstance(target, ToolRegistry):
        return target
    if callable(target):
        registry = target(mcp_config_path=mcp_config_path)
        if isinstance(registry, ToolRegistry):
            return registry
    raise ValueError(f"{spec} did not provide a ToolRegistry")
