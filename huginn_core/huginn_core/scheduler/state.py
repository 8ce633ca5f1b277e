from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from ..models import utcnow


class LoopPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    BACKOFF = "backoff"
    STOPPED = "stopped"


@dataclass
class ScheduleState:
    """Per-loop bookkeeping. Lives in memory only."""
    name: str
    interval: float
    phase: LoopPhase = LoopPhase.IDLE
    last_run_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    consecutive_failures: int = 0
    next_run_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def begin(self) -> None:
        self.phase = LoopPhase.RUNNING
        self.last_run_at = utcnow()

    def succeed(self) -> None:
        self.phase = LoopPhase.IDLE
        self.last_success_at = utcnow()
        self.consecutive_failures = 0
        self.last_error = None

    def fail(self, error: BaseException) -> None:
        self.phase = LoopPhase.BACKOFF
        self.consecutive_failures += 1
        self.last_error = f"{type(error).__name__}: {error}"

    def pause(self) -> None:
        # Not a failure: waiting for enrollment
        self.phase = LoopPhase.IDLE
        self.next_run_at = None

    def schedule(self, delay: float) -> None:
        self.next_run_at = utcnow() + timedelta(seconds=delay)

    def stop(self) -> None:
        self.phase = LoopPhase.STOPPED
        self.next_run_at = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "phase": self.phase.value,
            "interval_s": self.interval,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "consecutive_failures": self.consecutive_failures,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "last_error": self.last_error,
        }
