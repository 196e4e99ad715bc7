"""
Data models for the control loop.

Everything here crosses the Temporal boundary (workflow input/result,
signal/query/update payloads), so the models are plain dataclasses with
str-valued enums and ISO-8601 timestamp strings.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Any

import config
from features.resilience.policies import RETRY_POLICIES

TASK_PRIORITIES = ("low", "normal", "high", "critical")


class ControlStatus(str, Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    TERMINATED = "terminated"
    COMPLETED = "completed"
    COMPLETED_WITH_FAILURES = "completed_with_failures"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({
    ControlStatus.CANCELLED,
    ControlStatus.TERMINATED,
    ControlStatus.COMPLETED,
    ControlStatus.COMPLETED_WITH_FAILURES,
    ControlStatus.FAILED,
})


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class Task:
    """A unit of work. `id` is assigned by the caller and must be unique."""
    id: str
    type: str
    payload: dict = field(default_factory=dict)
    priority: str = "normal"
    timeout_sec: float | None = None  # falls back to the run configuration
    metadata: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "Task":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class TaskRecord:
    """Audit record of a task that left the pending queue."""
    task: Task
    status: TaskStatus
    result: Any = None
    error: str | None = None
    error_kind: str | None = None
    error_category: str | None = None
    attempts: int = 0
    started_at: str | None = None
    finished_at: str | None = None
    duration_sec: float | None = None


@dataclass
class ControlConfiguration:
    """Runtime-editable options for one control loop run."""
    priority: str = "normal"
    timeout_sec: float = config.DEFAULT_TASK_TIMEOUT
    retry_policy: str | None = None  # preset name; None = per-category preset
    validate_tasks: bool = True
    stop_on_failure: bool = False
    notify_on_completion: bool = False
    notification_recipient: str = "system"
    generate_report: bool = True
    schedule_interval_sec: float = 0.0
    continuation_threshold: int = config.CONTINUATION_THRESHOLD
    snapshot_interval: int = config.SNAPSHOT_INTERVAL
    wait_on_open_circuit: bool = True
    compensate_on_failure: bool = True
    feature_flags: dict[str, bool] = field(default_factory=dict)

    def merged(self, changes: dict) -> "ControlConfiguration":
        """Return a copy with `changes` applied; unknown or invalid values raise ValueError."""
        known = {f.name for f in fields(self)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")

        changes = dict(changes)
        if "feature_flags" in changes:
            changes["feature_flags"] = {**self.feature_flags, **(changes["feature_flags"] or {})}
        updated = replace(self, **changes)
        updated.validate()
        return updated

    def validate(self) -> None:
        if self.priority not in TASK_PRIORITIES:
            raise ValueError(f"Invalid priority: {self.priority!r}")
        if self.retry_policy is not None and self.retry_policy not in RETRY_POLICIES:
            raise ValueError(f"Unknown retry policy: {self.retry_policy!r}")
        if self.timeout_sec <= 0:
            raise ValueError("timeout_sec must be positive")
        if self.schedule_interval_sec < 0:
            raise ValueError("schedule_interval_sec must not be negative")
        if self.continuation_threshold < 1:
            raise ValueError("continuation_threshold must be at least 1")


def check_task_changes(changes: dict) -> None:
    """Reject priority and timeout values a task could not run with."""
    if "priority" in changes and changes["priority"] not in TASK_PRIORITIES:
        raise ValueError(f"Invalid priority: {changes['priority']!r}")
    if "timeout_sec" in changes:
        timeout = changes["timeout_sec"]
        if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0):
            raise ValueError("timeout_sec must be positive")


def task_timeout(task: Task, configuration: ControlConfiguration) -> float:
    return task.timeout_sec if task.timeout_sec is not None else configuration.timeout_sec


@dataclass
class ControlMetrics:
    tasks_started: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    tasks_skipped: int = 0
    retries: int = 0
    total_execution_sec: float = 0.0
    average_execution_sec: float = 0.0
    last_updated: str | None = None


@dataclass
class InteractionRecord:
    """One logged command or update."""
    kind: str  # command | update
    name: str
    timestamp: str
    payload: Any = None


@dataclass
class Snapshot:
    timestamp: str
    reason: str
    state: dict
    run_info: dict = field(default_factory=dict)


@dataclass
class ControlInput:
    """Workflow input — also the carry-over state for a continuation."""
    tasks: list[Task] = field(default_factory=list)
    configuration: ControlConfiguration = field(default_factory=ControlConfiguration)
    metadata: dict = field(default_factory=dict)
    paused: bool = False
    debug_mode: bool = False


@dataclass
class ControlResult:
    """Terminal value returned when the loop finishes."""
    status: ControlStatus
    completed_tasks: list[TaskRecord] = field(default_factory=list)
    failed_tasks: list[TaskRecord] = field(default_factory=list)
    skipped_tasks: list[TaskRecord] = field(default_factory=list)
    metrics: ControlMetrics = field(default_factory=ControlMetrics)
    interactions_received: int = 0
    snapshots_taken: int = 0
    execution_sec: float = 0.0
    compensation_error: dict | None = None

    def to_dict(self) -> dict:
        return asdict(self)
