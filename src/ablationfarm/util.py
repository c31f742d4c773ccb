from __future__ import annotations

import json
import os
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def run_timestamp(now: datetime | None = None) -> str:
    """Folder-friendly local timestamp, e.g. ``2026-01-31-142501``."""
    now = now or datetime.now()
    return now.strftime("%Y-%m-%d-%H%M%S")


def format_ms(duration_ms: int | None) -> str:
    if duration_ms is None:
        return "-"
    return f"{duration_ms / 1000:.1f}s"


def json_dumps_compact(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def sanitize_folder_name(name: str) -> str:
    """Lowercase, keep [a-z0-9-], collapse whitespace and dashes."""
    text = name.lower()
    text = re.sub(r"[^a-z0-9\s-]", "", text)
    text = re.sub(r"\s+", "-", text)
    text = re.sub(r"-+", "-", text)
    return text.strip("-")


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def truncate(text: str, n: int = 100) -> str:
    return text[: n - 3] + "..." if len(text) > n else text


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


def atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)
