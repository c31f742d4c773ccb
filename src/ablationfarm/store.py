"""YAML-backed ablation definitions and their run directories."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Any, Iterable

import yaml

from .definition import (
    AblationDefinition,
    AblationModel,
    AblationPhase,
    DefinitionError,
)
from .recorder import RunRecorder, load_results
from .util import atomic_write_text, run_timestamp, sanitize_folder_name, utc_now_iso


class AblationNotFound(KeyError):
    pass


def model_short_name(model: AblationModel) -> str:
    name = model.model
    if "claude" in name:
        for family in ("haiku", "sonnet", "opus"):
            if family in name:
                return family
    for prefix, short in (
        ("gpt-4o-mini", "gpt-4o-mini"),
        ("gpt-4o", "gpt-4o"),
        ("gpt-4", "gpt-4"),
        ("gpt-5-mini", "gpt-5-mini"),
        ("gpt-5", "gpt-5"),
        ("gemini-2.5-flash", "gemini-flash"),
        ("gemini-2.5-pro", "gemini-pro"),
        ("gemini", "gemini"),
    ):
        if prefix in name:
            return short
    if len(name) <= 15:
        return name
    return name[:12] + "..."


def _same_model(a: AblationModel, b: AblationModel) -> bool:
    return a.provider == b.provider and a.model == b.model


class AblationStore:
    """``ablations/<name>.yaml`` definitions plus ``runs/<name>/<timestamp>/``."""

    def __init__(self, ablations_dir: Path, runs_dir: Path) -> None:
        self.ablations_dir = ablations_dir
        self.runs_dir = runs_dir

    # -- definitions ---------------------------------------------------------

    def path_for(self, name: str) -> Path:
        return self.ablations_dir / f"{sanitize_folder_name(name)}.yaml"

    def exists(self, name: str) -> bool:
        return self.path_for(name).exists()

    def create(self, definition: AblationDefinition) -> AblationDefinition:
        name = sanitize_folder_name(definition.name)
        if not name:
            raise DefinitionError("name must contain letters or digits")
        if self.exists(name):
            raise DefinitionError(f'ablation "{name}" already exists')
        created = replace(definition, name=name, created=utc_now_iso(), updated=None)
        self.save(created)
        return created

    def save(self, definition: AblationDefinition) -> Path:
        data = definition.to_dict()
        # whatever is written must load back
        AblationDefinition.from_dict(data)
        path = self.path_for(definition.name)
        atomic_write_text(path, yaml.safe_dump(data, sort_keys=False, allow_unicode=True))
        return path

    def load(self, name: str) -> AblationDefinition:
        path = self.path_for(name)
        if not path.exists():
            raise AblationNotFound(name)
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
        return AblationDefinition.from_dict(data)

    def get(self, name: str) -> AblationDefinition | None:
        try:
            return self.load(name)
        except AblationNotFound:
            return None

    def list(self) -> list[AblationDefinition]:
        if not self.ablations_dir.is_dir():
            return []
        out: list[AblationDefinition] = []
        for path in sorted(self.ablations_dir.glob("*.yaml")):
            try:
                out.append(self.load(path.stem))
            except (DefinitionError, yaml.YAMLError):
                continue
        return sorted(out, key=lambda d: d.created, reverse=True)

    def update(self, name: str, **changes: Any) -> AblationDefinition:
        current = self.load(name)
        changes.pop("name", None)
        changes.pop("created", None)
        changes.pop("updated", None)
        updated = replace(current, **changes, updated=utc_now_iso())
        self.save(updated)
        return updated

    def delete(self, name: str) -> bool:
        path = self.path_for(name)
        if not path.exists():
            return False
        path.unlink()
        return True

    # -- phases and models ---------------------------------------------------

    def add_phase(self, name: str, phase: AblationPhase) -> AblationDefinition:
        current = self.load(name)
        if any(p.name == phase.name for p in current.phases):
            raise DefinitionError(f"phase {phase.name!r} already exists")
        return self.update(name, phases=current.phases + (phase,))

    def remove_phase(self, name: str, phase_name: str) -> AblationDefinition:
        current = self.load(name)
        return self.update(
            name, phases=tuple(p for p in current.phases if p.name != phase_name)
        )

    def update_phase(self, name: str, phase_name: str, **changes: Any) -> AblationDefinition:
        current = self.load(name)
        if not any(p.name == phase_name for p in current.phases):
            raise DefinitionError(f"no phase named {phase_name!r}")
        phases = tuple(
            replace(p, **changes) if p.name == phase_name else p for p in current.phases
        )
        return self.update(name, phases=phases)

    def add_models(self, name: str, models: Iterable[AblationModel]) -> AblationDefinition:
        current = self.load(name)
        merged = list(current.models)
        for model in models:
            if not any(_same_model(m, model) for m in merged):
                merged.append(model)
        return self.update(name, models=tuple(merged))

    def remove_models(self, name: str, models: Iterable[AblationModel]) -> AblationDefinition:
        current = self.load(name)
        drop = list(models)
        kept = tuple(m for m in current.models if not any(_same_model(m, d) for d in drop))
        return self.update(name, models=kept)

    @staticmethod
    def total_runs(definition: AblationDefinition) -> int:
        return definition.total_runs

    # -- runs ----------------------------------------------------------------

    def create_run_directory(self, name: str) -> Path:
        base = self.runs_dir / sanitize_folder_name(name)
        stamp = run_timestamp()
        run_dir = base / stamp
        n = 2
        while run_dir.exists():
            run_dir = base / f"{stamp}-{n}"
            n += 1
        run_dir.mkdir(parents=True)
        return run_dir

    def list_runs(self, name: str) -> list[tuple[str, dict[str, Any]]]:
        base = self.runs_dir / sanitize_folder_name(name)
        if not base.is_dir():
            return []
        runs: list[tuple[str, dict[str, Any]]] = []
        for folder in base.iterdir():
            if not folder.is_dir():
                continue
            results = self.load_run_results(folder)
            if results is not None:
                runs.append((folder.name, results))
        return sorted(runs, key=lambda item: item[0], reverse=True)

    @staticmethod
    def load_run_results(run_dir: Path) -> dict[str, Any] | None:
        path = run_dir / RunRecorder.RESULTS
        if not path.exists():
            return None
        try:
            return load_results(path)
        except ValueError:
            return None
