"""
Control feature — the task-orchestration control loop.

Public API:
    from features.control import ControlState, ControlDispatcher, ControlLoop
    from features.control import ControlInput, ControlResult, Task
"""

from features.control.continuation import ContinuationPlanner
from features.control.dispatcher import COMMANDS, QUERIES, UPDATES, ControlDispatcher
from features.control.host import ContinuationRequested, ControlHost
from features.control.loop import ControlLoop, LoopTerminatedError, TaskFailedError
from features.control.models import (
    ControlConfiguration,
    ControlInput,
    ControlMetrics,
    ControlResult,
    ControlStatus,
    Task,
    TaskRecord,
    TaskStatus,
)
from features.control.state import ControlState

__all__ = [
    "COMMANDS",
    "QUERIES",
    "UPDATES",
    "ContinuationPlanner",
    "ContinuationRequested",
    "ControlConfiguration",
    "ControlDispatcher",
    "ControlHost",
    "ControlInput",
    "ControlLoop",
    "ControlMetrics",
    "ControlResult",
    "ControlState",
    "ControlStatus",
    "LoopTerminatedError",
    "Task",
    "TaskFailedError",
    "TaskRecord",
    "TaskStatus",
]
