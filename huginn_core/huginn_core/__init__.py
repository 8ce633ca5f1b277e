"""
Huginn endpoint agent core.

Enrollment and credential lifecycle, the check-in / telemetry / health
scheduling loops, and the task execution engine.
"""

__version__ = "1.0.0"

from .agent import HuginnAgent
from .config import AgentConfig, load_config
from .events import AgentEvent, EventKind, StatusBroadcaster
from .models import AgentStatus, Credential, Task, TaskKind, TaskResult

__all__ = [
    "__version__",
    "HuginnAgent",
    "AgentConfig",
    "load_config",
    "AgentEvent",
    "EventKind",
    "StatusBroadcaster",
    "AgentStatus",
    "Credential",
    "Task",
    "TaskKind",
    "TaskResult",
]
