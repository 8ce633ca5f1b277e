"""
Task execution: command, script, install and policy strategies behind a
single ``TaskExecutor.execute(task)`` entry point.
"""

from .executor import TaskExecutor
from .process import Deadline, ProcessOutput, ProcessRunner, kill_process_tree, terminate_tree
from .safety import CommandFilter

__all__ = [
    "TaskExecutor",
    "Deadline",
    "ProcessOutput",
    "ProcessRunner",
    "kill_process_tree",
    "terminate_tree",
    "CommandFilter",
]
