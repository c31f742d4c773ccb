"""Prompt templates: read markdown, split frontmatter, substitute arguments."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from .collaborators import PromptInfo
from .definition import substitute_placeholders


def _split_frontmatter(text: str) -> tuple[dict, str]:
    """Split optional YAML frontmatter from markdown body."""
    if not text.startswith("---"):
        return {}, text
    parts = text.split("---", 2)
    if len(parts) < 3:
        return {}, text
    try:
        meta = yaml.safe_load(parts[1]) or {}
    except yaml.YAMLError:
        return {}, text
    if not isinstance(meta, dict):
        return {}, text
    return meta, parts[2].lstrip("\n")


def _first_non_empty_line(text: str) -> str:
    for line in text.splitlines():
        stripped = line.strip()
        if stripped:
            return stripped
    return ""


def _arguments(meta: dict) -> tuple[str, ...]:
    raw = meta.get("arguments")
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        return ()
    names: list[str] = []
    for item in raw:
        if isinstance(item, dict):
            item = item.get("name")
        if isinstance(item, str) and item.strip():
            names.append(item.strip())
    return tuple(names)


def read_prompt(path: Path) -> PromptInfo:
    meta, body = _split_frontmatter(path.read_text(encoding="utf-8"))
    raw = meta.get("description")
    desc = raw.strip() if isinstance(raw, str) else ""
    return PromptInfo(
        name=path.stem,
        description=desc or _first_non_empty_line(body),
        arguments=_arguments(meta),
        path=path,
    )


class PromptLibrary:
    """``prompts/*.md`` templates, addressable by 1-based index or name."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def list(self) -> list[PromptInfo]:
        if not self.directory.is_dir():
            return []
        return [read_prompt(path) for path in sorted(self.directory.glob("*.md"))]

    def resolve(self, ref: str) -> PromptInfo | None:
        ref = ref.strip()
        items = self.list()
        if ref.isdigit():
            idx = int(ref) - 1
            return items[idx] if 0 <= idx < len(items) else None
        for item in items:
            if item.name == ref:
                return item
        return None

    def render(self, prompt: PromptInfo, args: dict[str, Any] | None = None) -> str:
        if prompt.path is None:
            raise ValueError(f"prompt {prompt.name!r} has no template file")
        _, body = _split_frontmatter(prompt.path.read_text(encoding="utf-8"))
        values = {k: str(v) for k, v in (args or {}).items()}
        return substitute_placeholders(body, values).strip()
