"""Worker runtime data models."""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Literal

from ..queue import Claim

CycleReason = Literal[
    "no_work",
    "completed",
    "failed",
    "released_on_shutdown",
    "no_actionable_node",
]


class WorkerPhase(str, Enum):
    IDLE = "idle"
    CLAIMING = "claiming"
    NO_WORK = "no_work"
    CLAIMED = "claimed"
    PROVISIONING = "provisioning"
    EXECUTING = "executing"
    RELEASING = "releasing"
    SHUT_DOWN = "shut_down"


class WorkerState:
    """Mutable state shared between the loop and its signal handlers.

    Only the stop flag is written from signal context; everything else is
    touched by the loop thread alone.
    """

    def __init__(self) -> None:
        self._stop = threading.Event()
        self.phase = WorkerPhase.IDLE
        self.current_claim: Claim | None = None
        self.stop_signal: int | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self, signum: int | None = None) -> None:
        if signum is not None and self.stop_signal is None:
            self.stop_signal = signum
        self._stop.set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return early (``True``) once stop is requested."""
        return self._stop.wait(seconds)


@dataclass
class WorkerCounters:
    claims: int = 0
    empty_polls: int = 0
    phases_completed: int = 0
    errors: int = 0
    release_failures: int = 0

    def snapshot(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class CycleOutcome:
    reason: CycleReason
    action_id: str | None = None
    phase: str | None = None
    exit_code: int | None = None
    error: str | None = None

    @property
    def claimed(self) -> bool:
        return self.reason != "no_work"
