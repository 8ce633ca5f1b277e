"""
Periodic check-in, telemetry and health loops with retry/backoff.
"""

from .engine import CHECKIN, HEALTH, TELEMETRY, AgentScheduler
from .state import LoopPhase, ScheduleState

__all__ = ["AgentScheduler", "LoopPhase", "ScheduleState", "CHECKIN", "TELEMETRY", "HEALTH"]
