"""Outputs/attachments directory staging around an ablation study."""

from __future__ import annotations

import os
from pathlib import Path
import shutil
from typing import Iterable

from rich.console import Console


class ResourceStager:
    def __init__(
        self,
        outputs_dir: Path,
        attachments_dir: Path,
        *,
        console: Console | None = None,
    ) -> None:
        self.outputs_dir = outputs_dir
        self.attachments_dir = attachments_dir
        self.console = console or Console()

    @property
    def stash_dir(self) -> Path:
        return self.outputs_dir.with_name(self.outputs_dir.name + ".stash")

    @property
    def stashed(self) -> bool:
        return self.stash_dir.exists()

    def stash(self) -> None:
        """Move outputs aside so the study starts from an empty directory."""
        if self.stash_dir.exists():
            self.console.print(
                f"[yellow]⚠ Restoring stale outputs stash {self.stash_dir}[/yellow]"
            )
            self.restore()
        if self.outputs_dir.exists():
            os.replace(self.outputs_dir, self.stash_dir)
        else:
            self.stash_dir.mkdir(parents=True)
        self.outputs_dir.mkdir(parents=True, exist_ok=True)

    def restore(self) -> None:
        if not self.stash_dir.exists():
            return
        if self.outputs_dir.exists():
            shutil.rmtree(self.outputs_dir)
        os.replace(self.stash_dir, self.outputs_dir)

    def clear(self) -> None:
        if self.outputs_dir.exists():
            for child in self.outputs_dir.iterdir():
                if child.is_dir() and not child.is_symlink():
                    shutil.rmtree(child)
                else:
                    child.unlink()
        else:
            self.outputs_dir.mkdir(parents=True)

    def capture(self, dest: Path, *, move: bool = True) -> int:
        """Transfer every file under outputs into ``dest``; returns files transferred."""
        if not self.outputs_dir.is_dir():
            return 0
        return transfer_tree(self.outputs_dir, dest, move=move)

    def capture_attachments(
        self, names: Iterable[str], dest: Path, *, move: bool = False
    ) -> int:
        count = 0
        for name in sorted(set(names)):
            src = self.attachments_dir / name
            if not src.is_file():
                continue
            target = dest / name
            if target.exists():
                continue
            dest.mkdir(parents=True, exist_ok=True)
            if move:
                shutil.move(str(src), str(target))
            else:
                shutil.copy2(src, target)
            count += 1
        return count


def transfer_tree(src: Path, dest: Path, *, move: bool) -> int:
    """Post-order copy/move of files. Directories are created only for files.

    Copying skips files already present in ``dest``. Moving always drains
    ``src``; a name taken in ``dest`` gets a numeric suffix (``a-2.txt``).
    """
    count = 0
    for dirpath, dirnames, filenames in os.walk(src, topdown=False):
        here = Path(dirpath)
        rel = here.relative_to(src)
        target_dir = dest / rel
        links = [d for d in dirnames if (here / d).is_symlink()] if move else []
        for name in sorted(filenames + links):
            source = here / name
            target = target_dir / name
            if target.exists():
                if not move:
                    continue
                target = _free_name(target)
            target_dir.mkdir(parents=True, exist_ok=True)
            if move:
                shutil.move(str(source), str(target))
            else:
                shutil.copy2(source, target)
            count += 1
        if move and here != src:
            here.rmdir()
    return count


def _free_name(path: Path) -> Path:
    n = 2
    while True:
        candidate = path.with_name(f"{path.stem}-{n}{path.suffix}")
        if not candidate.exists():
            return candidate
        n += 1
