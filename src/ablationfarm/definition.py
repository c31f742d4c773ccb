"""Ablation study definitions: models, phases, hooks, arguments."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import re
from typing import TYPE_CHECKING, Any, Mapping

from .util import sanitize_folder_name, utc_now_iso

if TYPE_CHECKING:
    from .collaborators import AttachmentManager


_INT_RE = re.compile(r"^[+-]?\d+$")
_FLOAT_RE = re.compile(r"^[+-]?(\d+\.\d*|\.\d+|\d+)([eE][+-]?\d+)?$")
_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_-]*)\s*\}\}")
_TRIGGER_RE = re.compile(r"^(before|after):(.+)$")

ARGUMENT_TYPES = ("string", "attachment")
DEFAULT_MAX_ITERATIONS = 20


class DefinitionError(ValueError):
    pass


class ArgumentError(ValueError):
    pass


def coerce_scalar(value: Any) -> Any:
    """Turn "true"/"false" and numeric-looking strings into bool/int/float."""
    if not isinstance(value, str):
        return value
    text = value.strip()
    lowered = text.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if _INT_RE.match(text):
        return int(text)
    if _FLOAT_RE.match(text):
        return float(text)
    return value


def _as_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    if not stripped:
        return None
    return stripped


def _as_str_tuple(value: object, *, field: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise DefinitionError(f"{field} must be a list of strings")

    out: list[str] = []
    for idx, item in enumerate(value):
        text = _as_str(item)
        if text is None:
            raise DefinitionError(f"{field}[{idx}] must be a non-empty string")
        out.append(text)
    return tuple(out)


def _as_predicate(value: object, *, field: str) -> dict[str, Any] | None:
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise DefinitionError(f"{field} must be a mapping")
    return {str(k): coerce_scalar(v) for k, v in value.items()}


def _as_bool(value: object, *, field: str, default: bool) -> bool:
    if value is None:
        return default
    coerced = coerce_scalar(value)
    if not isinstance(coerced, bool):
        raise DefinitionError(f"{field} must be a boolean")
    return coerced


def _as_int(value: object, *, field: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    coerced = coerce_scalar(value)
    if isinstance(coerced, bool) or not isinstance(coerced, int):
        raise DefinitionError(f"{field} must be an integer")
    if coerced < minimum:
        raise DefinitionError(f"{field} must be >= {minimum}")
    return coerced


def substitute_placeholders(text: str, values: Mapping[str, str]) -> str:
    def repl(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in values:
            return str(values[name])
        return match.group(0)

    return _PLACEHOLDER_RE.sub(repl, text)


@dataclass(frozen=True)
class PostToolHook:
    when: str  # "before" | "after"
    tool: str
    run: str
    when_input: dict[str, Any] | None = None
    when_output: dict[str, Any] | None = None

    @property
    def trigger(self) -> str:
        return f"{self.when}:{self.tool}"

    @classmethod
    def from_dict(cls, d: object, *, field: str = "hook") -> PostToolHook:
        if not isinstance(d, Mapping):
            raise DefinitionError(f"{field} must be a mapping")

        when: str | None = None
        tool: str | None = None
        trigger = _as_str(d.get("trigger"))
        if trigger:
            match = _TRIGGER_RE.match(trigger)
            if not match:
                raise DefinitionError(
                    f"{field}.trigger must look like 'before:<tool>' or 'after:<tool>'"
                )
            when, tool = match.group(1), match.group(2).strip()
        elif _as_str(d.get("before")):
            when, tool = "before", _as_str(d.get("before"))
        elif _as_str(d.get("after")):
            when, tool = "after", _as_str(d.get("after"))
        if not when or not tool:
            raise DefinitionError(f"{field} needs 'before', 'after' or 'trigger'")

        run = _as_str(d.get("run"))
        if run is None:
            raise DefinitionError(f"{field}.run must be a non-empty command")

        when_input = _as_predicate(d.get("whenInput"), field=f"{field}.whenInput")
        when_output = _as_predicate(d.get("whenOutput"), field=f"{field}.whenOutput")
        if when == "before" and (when_input or when_output):
            raise DefinitionError(f"{field}: before hooks cannot have predicates")

        return cls(
            when=when,
            tool=tool,
            run=run,
            when_input=when_input,
            when_output=when_output,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {self.when: self.tool, "run": self.run}
        if self.when_input:
            out["whenInput"] = dict(self.when_input)
        if self.when_output:
            out["whenOutput"] = dict(self.when_output)
        return out


def _parse_hooks(value: object, *, field: str) -> tuple[PostToolHook, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise DefinitionError(f"{field} must be a list")
    return tuple(
        PostToolHook.from_dict(item, field=f"{field}[{idx}]")
        for idx, item in enumerate(value)
    )


@dataclass(frozen=True)
class AblationModel:
    provider: str
    model: str
    thinking: str | None = None

    @property
    def label(self) -> str:
        base = f"{self.provider}/{self.model}"
        return f"{base} ({self.thinking})" if self.thinking else base

    @property
    def dir_name(self) -> str:
        parts = [self.provider, self.model]
        if self.thinking:
            parts.append(self.thinking)
        return sanitize_folder_name("-".join(parts).replace(".", "-").replace("/", "-"))

    @classmethod
    def from_dict(cls, d: object, *, field: str = "model") -> AblationModel:
        if not isinstance(d, Mapping):
            raise DefinitionError(f"{field} must be a mapping")
        provider = _as_str(d.get("provider"))
        model = _as_str(d.get("model"))
        if provider is None:
            raise DefinitionError(f"{field}.provider must be a non-empty string")
        if model is None:
            raise DefinitionError(f"{field}.model must be a non-empty string")
        thinking = _as_str(d.get("thinking")) or _as_str(d.get("thinkingLevel"))
        return cls(provider=provider, model=model, thinking=thinking)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"provider": self.provider, "model": self.model}
        if self.thinking:
            out["thinking"] = self.thinking
        return out


def phase_folder_name(name: str) -> str:
    """Single path segment for a phase's results folder."""
    return sanitize_folder_name(name.replace(".", "-").replace("/", "-").replace("\\", "-"))


@dataclass(frozen=True)
class AblationPhase:
    name: str
    commands: tuple[str, ...] = ()
    hooks: tuple[PostToolHook, ...] = ()
    on_start: tuple[str, ...] = ()
    on_end: tuple[str, ...] = ()

    @property
    def dir_name(self) -> str:
        return phase_folder_name(self.name)

    @classmethod
    def from_dict(cls, d: object, *, field: str = "phase") -> AblationPhase:
        if not isinstance(d, Mapping):
            raise DefinitionError(f"{field} must be a mapping")
        name = _as_str(d.get("name"))
        if name is None:
            raise DefinitionError(f"{field}.name must be a non-empty string")
        return cls(
            name=name,
            commands=_as_str_tuple(d.get("commands"), field=f"{field}.commands"),
            hooks=_parse_hooks(d.get("hooks"), field=f"{field}.hooks"),
            on_start=_as_str_tuple(d.get("onStart"), field=f"{field}.onStart"),
            on_end=_as_str_tuple(d.get("onEnd"), field=f"{field}.onEnd"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "commands": list(self.commands)}
        if self.hooks:
            out["hooks"] = [hook.to_dict() for hook in self.hooks]
        if self.on_start:
            out["onStart"] = list(self.on_start)
        if self.on_end:
            out["onEnd"] = list(self.on_end)
        return out

    def all_commands(self) -> tuple[str, ...]:
        return self.on_start + self.commands + self.on_end


@dataclass(frozen=True)
class AblationArgument:
    name: str
    type: str = "string"
    required: bool = True
    default: str | None = None
    description: str = ""

    @classmethod
    def from_dict(cls, d: object, *, field: str = "argument") -> AblationArgument:
        if not isinstance(d, Mapping):
            raise DefinitionError(f"{field} must be a mapping")
        name = _as_str(d.get("name"))
        if name is None:
            raise DefinitionError(f"{field}.name must be a non-empty string")
        arg_type = _as_str(d.get("type")) or "string"
        if arg_type not in ARGUMENT_TYPES:
            raise DefinitionError(
                f"{field}.type must be one of {', '.join(ARGUMENT_TYPES)}"
            )
        default = d.get("default")
        return cls(
            name=name,
            type=arg_type,
            required=_as_bool(d.get("required"), field=f"{field}.required", default=True),
            default=None if default is None else str(default),
            description=str(d.get("description") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "type": self.type,
            "required": self.required,
        }
        if self.default is not None:
            out["default"] = self.default
        if self.description:
            out["description"] = self.description
        return out


@dataclass(frozen=True)
class AblationSettings:
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    mcp_config_path: str | None = None
    clear_context_between_phases: bool = True

    @classmethod
    def from_dict(cls, d: object, *, field: str = "settings") -> AblationSettings:
        if d is None:
            return cls()
        if not isinstance(d, Mapping):
            raise DefinitionError(f"{field} must be a mapping")
        return cls(
            max_iterations=_as_int(
                d.get("maxIterations"),
                field=f"{field}.maxIterations",
                default=DEFAULT_MAX_ITERATIONS,
            ),
            mcp_config_path=_as_str(d.get("mcpConfigPath")),
            clear_context_between_phases=_as_bool(
                d.get("clearContextBetweenPhases"),
                field=f"{field}.clearContextBetweenPhases",
                default=True,
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "maxIterations": self.max_iterations,
            "clearContextBetweenPhases": self.clear_context_between_phases,
        }
        if self.mcp_config_path:
            out["mcpConfigPath"] = self.mcp_config_path
        return out


@dataclass(frozen=True)
class AblationDefinition:
    name: str
    description: str = ""
    phases: tuple[AblationPhase, ...] = ()
    models: tuple[AblationModel, ...] = ()
    settings: AblationSettings = field(default_factory=AblationSettings)
    arguments: tuple[AblationArgument, ...] = ()
    hooks: tuple[PostToolHook, ...] = ()
    runs: int = 1
    created: str = ""
    updated: str | None = None

    @property
    def total_runs(self) -> int:
        return self.runs * len(self.models)

    @property
    def total_cells(self) -> int:
        return self.total_runs * len(self.phases)

    def uses_prompts(self) -> bool:
        for phase in self.phases:
            for command in phase.all_commands():
                if command.strip().lower().startswith("/add-prompt"):
                    return True
        return False

    def placeholders(self) -> set[str]:
        names: set[str] = set()
        for text in self._command_strings():
            names.update(m.group(1) for m in _PLACEHOLDER_RE.finditer(text))
        return names

    def _command_strings(self) -> list[str]:
        texts = [hook.run for hook in self.hooks]
        for phase in self.phases:
            texts.extend(phase.all_commands())
            texts.extend(hook.run for hook in phase.hooks)
        return texts

    def with_arguments(self, values: Mapping[str, str]) -> AblationDefinition:
        """Return a copy with ``{{name}}`` placeholders substituted everywhere."""
        if not values:
            return self

        def sub_all(items: tuple[str, ...]) -> tuple[str, ...]:
            return tuple(substitute_placeholders(item, values) for item in items)

        def sub_hooks(hooks: tuple[PostToolHook, ...]) -> tuple[PostToolHook, ...]:
            return tuple(
                replace(hook, run=substitute_placeholders(hook.run, values))
                for hook in hooks
            )

        phases = tuple(
            replace(
                phase,
                commands=sub_all(phase.commands),
                on_start=sub_all(phase.on_start),
                on_end=sub_all(phase.on_end),
                hooks=sub_hooks(phase.hooks),
            )
            for phase in self.phases
        )
        return replace(self, phases=phases, hooks=sub_hooks(self.hooks))

    @classmethod
    def from_dict(cls, d: object) -> AblationDefinition:
        if not isinstance(d, Mapping):
            raise DefinitionError("ablation definition must be a mapping")
        name = _as_str(d.get("name"))
        if name is None:
            raise DefinitionError("name must be a non-empty string")

        raw_phases = d.get("phases") or []
        if not isinstance(raw_phases, list):
            raise DefinitionError("phases must be a list")
        phases = tuple(
            AblationPhase.from_dict(item, field=f"phases[{idx}]")
            for idx, item in enumerate(raw_phases)
        )
        seen: dict[str, str] = {}
        for idx, phase in enumerate(phases):
            if not phase.dir_name:
                raise DefinitionError(
                    f"phases[{idx}].name must contain a letter or digit: {phase.name!r}"
                )
            if phase.dir_name in seen:
                other = seen[phase.dir_name]
                if other == phase.name:
                    raise DefinitionError(f"duplicate phase name: {phase.name!r}")
                raise DefinitionError(
                    f"phase names {other!r} and {phase.name!r} share folder {phase.dir_name!r}"
                )
            seen[phase.dir_name] = phase.name

        raw_models = d.get("models") or []
        if not isinstance(raw_models, list):
            raise DefinitionError("models must be a list")
        models = tuple(
            AblationModel.from_dict(item, field=f"models[{idx}]")
            for idx, item in enumerate(raw_models)
        )
        model_dirs: dict[str, str] = {}
        for model in models:
            if model.dir_name in model_dirs:
                raise DefinitionError(
                    f"models {model_dirs[model.dir_name]!r} and {model.label!r} "
                    f"share folder {model.dir_name!r}"
                )
            model_dirs[model.dir_name] = model.label

        raw_arguments = d.get("arguments") or []
        if not isinstance(raw_arguments, list):
            raise DefinitionError("arguments must be a list")
        arguments = tuple(
            AblationArgument.from_dict(item, field=f"arguments[{idx}]")
            for idx, item in enumerate(raw_arguments)
        )

        return cls(
            name=name,
            description=str(d.get("description") or ""),
            phases=phases,
            models=models,
            settings=AblationSettings.from_dict(d.get("settings")),
            arguments=arguments,
            hooks=_parse_hooks(d.get("hooks"), field="hooks"),
            runs=_as_int(d.get("runs"), field="runs", default=1),
            created=str(d.get("created") or utc_now_iso()),
            updated=_as_str(d.get("updated")),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "created": self.created,
        }
        if self.updated:
            out["updated"] = self.updated
        out["runs"] = self.runs
        out["settings"] = self.settings.to_dict()
        if self.arguments:
            out["arguments"] = [arg.to_dict() for arg in self.arguments]
        if self.hooks:
            out["hooks"] = [hook.to_dict() for hook in self.hooks]
        out["models"] = [model.to_dict() for model in self.models]
        out["phases"] = [phase.to_dict() for phase in self.phases]
        return out


def resolve_arguments(
    definition: AblationDefinition,
    supplied: Mapping[str, str] | None = None,
    *,
    attachments: AttachmentManager | None = None,
) -> dict[str, str]:
    supplied = dict(supplied or {})
    known = {arg.name for arg in definition.arguments}
    unknown = sorted(set(supplied) - known)
    if unknown:
        raise ArgumentError(f"unknown argument(s): {', '.join(unknown)}")

    values: dict[str, str] = {}
    for arg in definition.arguments:
        value = supplied.get(arg.name)
        if value is None or value == "":
            value = arg.default
        if value is None:
            if arg.required:
                raise ArgumentError(f"missing required argument: {arg.name}")
            value = ""
        if arg.type == "attachment" and value:
            if attachments is None:
                raise ArgumentError(
                    f"argument {arg.name!r} needs an attachment catalog"
                )
            info = attachments.resolve(value)
            if info is None:
                raise ArgumentError(
                    f"argument {arg.name!r}: attachment not found: {value}"
                )
            value = info.file_name
        values[arg.name] = value
    return values
