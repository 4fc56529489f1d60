"""Worker runtime package."""

from .models import (
    CycleOutcome,
    WorkerCounters,
    WorkerPhase,
    WorkerState,
)

__all__ = [
    "CycleOutcome",
    "WorkerCounters",
    "WorkerPhase",
    "WorkerState",
]
