from __future__ import annotations

from typing import TYPE_CHECKING

__all__ = [
    "__version__",
    "AblationDefinition",
    "AblationEvent",
    "AblationOrchestrator",
    "AblationRun",
    "AblationStore",
]

__version__ = "0.1.0"

if TYPE_CHECKING:
    from .definition import AblationDefinition
    from .events import AblationEvent
    from .orchestrator import AblationOrchestrator
    from .recorder import AblationRun
    from .store import AblationStore


def __getattr__(name: str):
    if name == "AblationDefinition":
        from .definition import AblationDefinition

        return AblationDefinition
    if name == "AblationEvent":
        from .events import AblationEvent

        return AblationEvent
    if name == "AblationOrchestrator":
        from .orchestrator import AblationOrchestrator

        return AblationOrchestrator
    if name == "AblationRun":
        from .recorder import AblationRun

        return AblationRun
    if name == "AblationStore":
        from .store import AblationStore

        return AblationStore
    raise AttributeError(f"module 'ablationfarm' has no attribute {name!r}")
