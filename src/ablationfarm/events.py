from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable


@dataclass(frozen=True)
class AblationEvent:
    type: str
    timestamp: str
    phase: str | None
    model: str | None
    iteration: int | None
    payload: dict[str, Any] = field(default_factory=dict)


EventSink = Callable[[AblationEvent], None]
