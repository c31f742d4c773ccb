from __future__ import annotations

import mimetypes
from pathlib import Path

from .collaborators import AttachmentInfo


class AttachmentCatalog:
    """Files in the attachments directory, addressable by 1-based index or name."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def list(self) -> list[AttachmentInfo]:
        if not self.directory.is_dir():
            return []
        out: list[AttachmentInfo] = []
        for path in sorted(self.directory.iterdir(), key=lambda p: p.name):
            if not path.is_file() or path.name.startswith("."):
                continue
            mime, _ = mimetypes.guess_type(path.name)
            out.append(
                AttachmentInfo(
                    file_name=path.name,
                    path=path,
                    size=path.stat().st_size,
                    mime_type=mime or "application/octet-stream",
                )
            )
        return out

    def resolve(self, ref: str) -> AttachmentInfo | None:
        ref = ref.strip()
        items = self.list()
        if ref.isdigit():
            idx = int(ref) - 1
            if 0 <= idx < len(items):
                return items[idx]
            return None
        for item in items:
            if item.file_name == ref:
                return item
        return None
