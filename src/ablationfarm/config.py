from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path


HOME_ENV = "ABLATIONFARM_HOME"
OUTPUTS_ENV = "ABLATIONFARM_OUTPUTS_DIR"
SHELL_TIMEOUT_ENV = "ABLATIONFARM_SHELL_TIMEOUT"
NO_MONITOR_ENV = "ABLATIONFARM_NO_MONITOR"


def find_repo_root(start: Path | None = None) -> Path:
    """Walk up to find .git directory."""
    cwd = (start or Path.cwd()).resolve()
    p = cwd
    while p != p.parent:
        if (p / ".git").exists():
            return p
        p = p.parent
    return cwd


@dataclass(frozen=True)
class AblationfarmPaths:
    home: Path
    outputs: Path

    @classmethod
    def resolve(cls, cwd: Path | None = None) -> AblationfarmPaths:
        raw_home = os.environ.get(HOME_ENV, "").strip()
        home = Path(raw_home).expanduser() if raw_home else find_repo_root(cwd) / ".ablationfarm"
        raw_outputs = os.environ.get(OUTPUTS_ENV, "").strip()
        outputs = Path(raw_outputs).expanduser() if raw_outputs else home / "outputs"
        return cls(home=home, outputs=outputs)

    @property
    def ablations(self) -> Path:
        return self.home / "ablations"

    @property
    def runs(self) -> Path:
        return self.home / "runs"

    @property
    def attachments(self) -> Path:
        return self.home / "attachments"

    @property
    def prompts(self) -> Path:
        return self.home / "prompts"

    @property
    def hooks_file(self) -> Path:
        return self.home / "hooks.yaml"

    def ensure(self) -> None:
        for d in (self.ablations, self.runs, self.outputs, self.attachments, self.prompts):
            d.mkdir(parents=True, exist_ok=True)
