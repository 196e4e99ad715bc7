"""
Control State — the loop's single mutable aggregate.

All mutation goes through this class, from either the loop or the
dispatcher. Neither ever awaits while mutating, so on a single event loop
every mutation is atomic with respect to the other side.

Bounded buffers (errors, snapshots, interactions) drop their oldest entry
once full.
"""

from __future__ import annotations

import copy
import logging
from collections import deque
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Callable

import config
from features.control.models import (
    ControlConfiguration,
    ControlMetrics,
    ControlStatus,
    InteractionRecord,
    Snapshot,
    Task,
    TaskRecord,
    TaskStatus,
)

log = logging.getLogger(__name__)

SCHEDULED_FOR = "scheduled_for"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_when(value: str | datetime) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    dt = value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class ControlState:
    def __init__(
        self,
        tasks: list[Task] | None = None,
        configuration: ControlConfiguration | None = None,
        metadata: dict | None = None,
        clock: Callable[[], datetime] = _utcnow,
        max_errors: int = config.MAX_ERRORS,
        max_snapshots: int = config.MAX_SNAPSHOTS,
        max_interactions: int = config.MAX_INTERACTIONS,
    ):
        self.clock = clock
        self.status = ControlStatus.INITIALIZING
        self.is_paused = False
        self.is_debug_mode = False
        self.interrupt_requested = False
        self.status_reason: str | None = None
        self.current_task: Task | None = None
        self.pending_tasks: list[Task] = []
        self.completed_tasks: list[TaskRecord] = []
        self.failed_tasks: list[TaskRecord] = []
        self.skipped_tasks: list[TaskRecord] = []
        self.configuration = configuration or ControlConfiguration()
        self.metadata: dict = dict(metadata or {})
        self.metrics = ControlMetrics()
        self.errors: deque[dict] = deque(maxlen=max_errors)
        self.snapshots: deque[Snapshot] = deque(maxlen=max_snapshots)
        self.interactions: deque[InteractionRecord] = deque(maxlen=max_interactions)
        self.interactions_received = 0
        self.snapshots_taken = 0
        self.version = 0

        for task in tasks or []:
            self.enqueue(task)

    # ── Clock ─────────────────────────────────────────────────────────

    def now_iso(self) -> str:
        return self.clock().isoformat()

    def touch(self) -> None:
        """Bump the mutation counter so cooperative waits re-evaluate."""
        self.version += 1
        self.metrics.last_updated = self.now_iso()

    # ── Status ────────────────────────────────────────────────────────

    @property
    def effective_status(self) -> ControlStatus:
        if self.status == ControlStatus.RUNNING and self.is_paused:
            return ControlStatus.PAUSED
        return self.status

    @property
    def is_running(self) -> bool:
        return self.status == ControlStatus.RUNNING

    def set_status(self, status: ControlStatus, reason: str | None = None) -> None:
        if status != self.status:
            log.info("Control status %s → %s%s", self.status.value, status.value,
                     f" ({reason})" if reason else "")
        self.status = status
        if reason:
            self.status_reason = reason
        self.touch()

    # ── Task lookup ───────────────────────────────────────────────────

    def _index_of(self, task_id: str) -> int:
        for i, task in enumerate(self.pending_tasks):
            if task.id == task_id:
                return i
        return -1

    def find_pending(self, task_id: str) -> Task | None:
        i = self._index_of(task_id)
        return self.pending_tasks[i] if i >= 0 else None

    def find_task(self, task_id: str) -> dict | None:
        """Locate a task anywhere in the state, with its lifecycle status."""
        if self.current_task is not None and self.current_task.id == task_id:
            return {"status": TaskStatus.IN_FLIGHT.value, "task": asdict(self.current_task)}
        task = self.find_pending(task_id)
        if task is not None:
            return {"status": TaskStatus.PENDING.value, "task": asdict(task)}
        for records in (self.completed_tasks, self.failed_tasks, self.skipped_tasks):
            for record in records:
                if record.task.id == task_id:
                    return {"status": record.status.value, "record": asdict(record)}
        return None

    def has_task(self, task_id: str) -> bool:
        return self.find_task(task_id) is not None

    # ── Pending queue ─────────────────────────────────────────────────

    def _check_new(self, task: Task) -> None:
        if not task.id:
            raise ValueError("Task must have an id")
        if self.has_task(task.id):
            raise ValueError(f"Duplicate task id: {task.id}")

    def enqueue(self, task: Task) -> None:
        self._check_new(task)
        self.pending_tasks.append(task)
        self.touch()

    def push_front(self, task: Task) -> None:
        self._check_new(task)
        self.pending_tasks.insert(0, task)
        self.touch()

    def requeue_front(self, task: Task) -> None:
        """Return an interrupted in-flight task to the head of the queue."""
        if self.current_task is not None and self.current_task.id == task.id:
            self.current_task = None
        self.pending_tasks.insert(0, task)
        self.touch()

    def remove(self, task_id: str) -> Task | None:
        i = self._index_of(task_id)
        if i < 0:
            return None
        task = self.pending_tasks.pop(i)
        self.touch()
        return task

    def scheduled_for(self, task: Task) -> datetime | None:
        raw = task.metadata.get(SCHEDULED_FOR)
        return parse_when(raw) if raw else None

    def pop_next_ready(self) -> Task | None:
        """Pop the first pending task that is not scheduled for later."""
        now = self.clock()
        for i, task in enumerate(self.pending_tasks):
            when = self.scheduled_for(task)
            if when is None or when <= now:
                self.pending_tasks.pop(i)
                self.touch()
                return task
        return None

    def seconds_until_next_due(self) -> float | None:
        times = [self.scheduled_for(t) for t in self.pending_tasks]
        times = [t for t in times if t is not None]
        if not times:
            return None
        return max((min(times) - self.clock()).total_seconds(), 0.0)

    # ── Task lifecycle ────────────────────────────────────────────────

    def start_task(self, task: Task) -> None:
        self.current_task = task
        self.metrics.tasks_started += 1
        self.touch()

    def record_completion(self, record: TaskRecord) -> None:
        self.current_task = None
        self.completed_tasks.append(record)
        m = self.metrics
        m.tasks_completed += 1
        m.total_execution_sec = round(m.total_execution_sec + (record.duration_sec or 0.0), 6)
        m.average_execution_sec = round(m.total_execution_sec / m.tasks_completed, 6)
        self.touch()

    def record_failure(self, record: TaskRecord) -> None:
        self.current_task = None
        self.failed_tasks.append(record)
        self.metrics.tasks_failed += 1
        self.record_error(record.error or "unknown error", task_id=record.task.id,
                          kind=record.error_kind, category=record.error_category)

    def record_skip(self, task: Task, reason: str = "") -> TaskRecord:
        record = TaskRecord(task=task, status=TaskStatus.SKIPPED, result=None,
                            error=reason or None, finished_at=self.now_iso())
        self.skipped_tasks.append(record)
        self.metrics.tasks_skipped += 1
        self.touch()
        return record

    def record_error(self, message: str, **context: Any) -> None:
        entry = {"error": message, "timestamp": self.now_iso()}
        entry.update({k: v for k, v in context.items() if v is not None})
        self.errors.append(entry)
        self.touch()

    # ── Interactions & snapshots ──────────────────────────────────────

    def log_interaction(self, kind: str, name: str, payload: Any = None) -> None:
        self.interactions.append(InteractionRecord(
            kind=kind, name=name, timestamp=self.now_iso(), payload=copy.deepcopy(payload),
        ))
        self.interactions_received += 1

    def take_snapshot(self, reason: str, run_info: dict | None = None) -> Snapshot:
        snap = Snapshot(
            timestamp=self.now_iso(),
            reason=reason,
            state=self.to_dict(include_history=False),
            run_info=dict(run_info or {}),
        )
        self.snapshots.append(snap)
        self.snapshots_taken += 1
        return snap

    # ── Views ─────────────────────────────────────────────────────────

    def progress(self) -> dict:
        completed = len(self.completed_tasks)
        total = (len(self.pending_tasks) + completed + len(self.failed_tasks)
                 + len(self.skipped_tasks) + (1 if self.current_task else 0))
        return {
            "completed": completed,
            "failed": len(self.failed_tasks),
            "skipped": len(self.skipped_tasks),
            "pending": len(self.pending_tasks),
            "total": total,
            "percentage": round(completed / total * 100, 2) if total else 0.0,
        }

    def to_dict(self, include_history: bool = True) -> dict:
        """Deep, detached copy of the whole state."""
        data = {
            "status": self.effective_status.value,
            "status_reason": self.status_reason,
            "is_paused": self.is_paused,
            "is_debug_mode": self.is_debug_mode,
            "current_task": asdict(self.current_task) if self.current_task else None,
            "pending_tasks": [asdict(t) for t in self.pending_tasks],
            "completed_tasks": [asdict(r) for r in self.completed_tasks],
            "failed_tasks": [asdict(r) for r in self.failed_tasks],
            "skipped_tasks": [asdict(r) for r in self.skipped_tasks],
            "configuration": asdict(self.configuration),
            "metadata": copy.deepcopy(self.metadata),
            "metrics": asdict(self.metrics),
            "errors": [dict(e) for e in self.errors],
            "version": self.version,
        }
        if include_history:
            data["snapshots"] = [asdict(s) for s in self.snapshots]
            data["interactions"] = [asdict(i) for i in self.interactions]
        return data

    @classmethod
    def from_input(cls, control_input, clock: Callable[[], datetime] = _utcnow, **limits: int) -> "ControlState":
        """Build the initial state for a run from its ControlInput."""
        state = cls(
            tasks=list(control_input.tasks),
            configuration=control_input.configuration,
            metadata=control_input.metadata,
            clock=clock,
            **limits,
        )
        state.is_paused = control_input.paused
        state.is_debug_mode = control_input.debug_mode
        return state
